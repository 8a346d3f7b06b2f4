# playground/client/ticker.py
"""
Usage ticker: polls a report's usage and renders the running total.

Polls every ``base_interval`` seconds, tightening to ``fast_interval`` for
``fast_window`` seconds after a change is observed. While a stream is running
the display adds a local estimate on top of the last snapshot; the estimate is
dropped (never merged) as soon as a new authoritative snapshot arrives.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from playground.errors import ApiError
from playground.services.pricing import calculate_cost, format_cost, format_tokens

logger = logging.getLogger(__name__)


class UsageTicker:
    def __init__(
        self,
        api,
        report_id: str,
        *,
        base_interval: float = 2.0,
        fast_interval: float = 0.5,
        fast_window: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.report_id = report_id
        self.base_interval = base_interval
        self.fast_interval = fast_interval
        self.fast_window = fast_window
        self._clock = clock
        self._fast_until = 0.0
        self.snapshot: Optional[dict] = None
        self._estimate: Optional[tuple] = None  # (tokens, cost)

    @property
    def interval(self) -> float:
        return self.fast_interval if self._clock() < self._fast_until else self.base_interval

    def _changed(self, usage: dict) -> bool:
        prev = self.snapshot
        if prev is None:
            return True
        return (
            usage.get("totalTokens") != prev.get("totalTokens")
            or usage.get("totalCost") != prev.get("totalCost")
            or len(usage.get("operations") or []) != len(prev.get("operations") or [])
        )

    def accept(self, usage: dict) -> bool:
        """Take an authoritative snapshot (from a poll or a ``complete`` event)."""
        changed = self._changed(usage)
        if changed and self.snapshot is not None:
            self._fast_until = self._clock() + self.fast_window
        self.snapshot = usage
        self._estimate = None
        return changed

    def observe_stream(self, input_tokens: int, output_tokens: int,
                       provider: Optional[str] = None, model: Optional[str] = None) -> None:
        self._estimate = (
            input_tokens + output_tokens,
            calculate_cost(provider, model, input_tokens, output_tokens),
        )

    async def poll_once(self) -> bool:
        try:
            usage = await self.api.get_usage(self.report_id)
        except (ApiError, httpx.HTTPError) as e:
            logger.debug("Usage poll for %s failed: %s", self.report_id, e)
            return False
        return self.accept(usage)

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    @property
    def total_tokens(self) -> int:
        base = (self.snapshot or {}).get("totalTokens", 0)
        return base + (self._estimate[0] if self._estimate else 0)

    @property
    def total_cost(self) -> float:
        base = (self.snapshot or {}).get("totalCost", 0.0)
        return base + (self._estimate[1] if self._estimate else 0.0)

    @property
    def estimating(self) -> bool:
        return self._estimate is not None

    def render(self) -> str:
        tail = " (live)" if self.estimating else ""
        return f"{format_tokens(self.total_tokens)} tokens · {format_cost(self.total_cost)}{tail}"
