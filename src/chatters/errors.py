"""Error taxonomy shared by backends, normalizers, the store and the engine."""


class ChattersError(Exception):
    """Base class for all chatters errors."""


class BackendUnavailable(ChattersError):
    """Transient transport failure or a backend that is not connected.

    Handled inside the owning backend's supervisor: the backend goes
    Degraded and reconnects with backoff.
    """

    def __init__(self, backend_id: str, reason: str = "unavailable") -> None:
        super().__init__(f"backend {backend_id} unavailable: {reason}")
        self.backend_id = backend_id
        self.reason = reason


class NotFound(ChattersError):
    """A conversation or message is unknown to the backend. Not retried."""

    def __init__(self, backend_id: str, native_id: str) -> None:
        super().__init__(f"{native_id!r} not found on backend {backend_id}")
        self.backend_id = backend_id
        self.native_id = native_id


class MalformedEvent(ChattersError):
    """Raw backend input a normalizer cannot translate."""

    def __init__(self, kind: str, reason: str, raw: object = None) -> None:
        super().__init__(f"malformed {kind} event: {reason}")
        self.kind = kind
        self.reason = reason
        self.raw = raw


class SendFailed(ChattersError):
    """An outgoing message could not be dispatched. Re-sending is a new send."""

    def __init__(self, conversation: str, reason: str) -> None:
        super().__init__(f"send to {conversation} failed: {reason}")
        self.conversation = conversation
        self.reason = reason


class StoreInvariantError(ChattersError):
    """A mutation would break a conversation store invariant.

    This is a programming error and is never swallowed by the engine.
    """
