"""Domain errors shared by the store, the orchestrator and the routers."""


class PlaygroundError(RuntimeError):
    pass


class NotFoundError(PlaygroundError):
    def __init__(self, kind: str, ident: object):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class AlreadyGeneratingError(PlaygroundError):
    """A generation for the same report (or thread) is still streaming or finalizing."""

    def __init__(self, key: str):
        super().__init__("A generation is already in progress for this report")
        self.key = key


class LLMError(PlaygroundError):
    pass


class StreamClosedError(PlaygroundError):
    """The event stream ended before a terminal frame ([DONE] or error) arrived."""


class ApiError(PlaygroundError):
    """Non-2xx answer seen by the client library."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
