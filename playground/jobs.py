# playground/jobs.py
import asyncio
import enum
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import AlreadyGeneratingError, NotFoundError


class GenerationState(str, enum.Enum):
    idle = "idle"
    streaming = "streaming"
    finalizing = "finalizing"
    settled = "settled"
    aborted = "aborted"
    failed = "failed"


ACTIVE_STATES = {GenerationState.idle, GenerationState.streaming, GenerationState.finalizing}


@dataclass
class Generation:
    id: str
    key: str                     # "thread:<id>" or "report:<id>"
    operation: str               # generation|enhance|edit|section_add
    owner_id: Optional[int] = None
    state: GenerationState = GenerationState.idle
    error: Optional[str] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_STATES


class GenerationRegistry:
    """
    In-process book of running generations. At most one active generation per
    key; a second ``acquire`` for a busy key raises AlreadyGeneratingError.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_id: Dict[str, Generation] = {}
        self._by_key: Dict[str, str] = {}

    def acquire(self, key: str, operation: str, owner_id: Optional[int] = None) -> Generation:
        with self._lock:
            gid = self._by_key.get(key)
            if gid and self._by_id[gid].active:
                raise AlreadyGeneratingError(key)
            g = Generation(id=uuid.uuid4().hex, key=key, operation=operation, owner_id=owner_id)
            self._by_id[g.id] = g
            self._by_key[key] = g.id
        return g

    def get(self, gid: str) -> Optional[Generation]:
        with self._lock:
            return self._by_id.get(gid)

    def is_busy(self, key: str) -> bool:
        with self._lock:
            gid = self._by_key.get(key)
            return bool(gid and self._by_id[gid].active)

    def set_state(self, gid: str, state: GenerationState, error: Optional[str] = None) -> None:
        with self._lock:
            g = self._by_id.get(gid)
            if not g:
                return
            g.state = state
            if error is not None:
                g.error = error

    def begin_finalizing(self, gid: str) -> bool:
        """Streaming -> Finalizing unless a cancel got in first."""
        with self._lock:
            g = self._by_id.get(gid)
            if not g or g.cancel_event.is_set():
                return False
            g.state = GenerationState.finalizing
            return True

    def cancel(self, gid: str) -> bool:
        """
        Request an abort. Returns False when the generation is already
        finalizing or finished; the commit is never interrupted.
        """
        with self._lock:
            g = self._by_id.get(gid)
            if not g:
                raise NotFoundError("generation", gid)
            if g.state not in (GenerationState.idle, GenerationState.streaming):
                return False
            g.cancel_event.set()
            return True

    def release(self, gid: str) -> None:
        with self._lock:
            g = self._by_id.pop(gid, None)
            if g and self._by_key.get(g.key) == gid:
                self._by_key.pop(g.key, None)


GENERATIONS = GenerationRegistry()
