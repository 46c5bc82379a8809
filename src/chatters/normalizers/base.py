"""Base normalizer interface and registry.

A normalizer translates one backend kind's raw events into unified
mutations. Translation is deterministic and performs no I/O; whatever a
normalizer remembers between events (aliases, memberships) is derived only
from the events it has already seen.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from chatters.backends.base import RawEvent, SendHandle
from chatters.errors import MalformedEvent
from chatters.logging import get_logger
from chatters.models import ConversationKey
from chatters.mutations import Mutation

logger = get_logger("normalizers")

__all__ = ["Normalizer", "NormalizerRegistry", "require", "require_int"]


def require(raw: dict[str, Any], field: str, kind: str) -> Any:
    """Return raw[field], raising MalformedEvent when it is missing or empty."""
    value = raw.get(field)
    if value is None or value == "":
        raise MalformedEvent(kind, f"missing {field}", raw)
    return value


def require_int(raw: dict[str, Any], field: str, kind: str) -> int:
    value = require(raw, field, kind)
    if isinstance(value, bool):
        raise MalformedEvent(kind, f"{field} is not an integer", raw)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedEvent(kind, f"{field} is not an integer", raw) from None


class Normalizer(ABC):
    """Base class for per-backend event normalizers.

    Subclasses set `kind` and implement the three `translate_*` methods,
    which may raise MalformedEvent. The engine calls the `normalize_*`
    wrappers, which drop malformed input with a warning instead.
    """

    kind: str

    def __init__(self, backend_id: str, self_id: str | None = None) -> None:
        self.backend_id = backend_id
        self.self_id = self_id
        self.dropped = 0

    def key(self, native_id: str) -> ConversationKey:
        return ConversationKey(self.backend_id, native_id)

    @abstractmethod
    def translate_event(self, raw: RawEvent) -> list[Mutation]:
        """Translate a live event."""

    @abstractmethod
    def translate_conversation(self, raw: RawEvent) -> list[Mutation]:
        """Translate a conversation summary from list_conversations()."""

    @abstractmethod
    def translate_history(self, conversation_id: str, raw: RawEvent) -> list[Mutation]:
        """Translate one history item of a conversation."""

    def note_outgoing(self, handle: SendHandle, key: ConversationKey) -> None:
        """Remember a send started through the engine. No-op by default."""

    def normalize_event(self, raw: RawEvent) -> list[Mutation]:
        return self._guarded("event", self.translate_event, raw)

    def normalize_conversation(self, raw: RawEvent) -> list[Mutation]:
        return self._guarded("conversation", self.translate_conversation, raw)

    def normalize_history(self, conversation_id: str, raw: RawEvent) -> list[Mutation]:
        return self._guarded("history", lambda r: self.translate_history(conversation_id, r), raw)

    def _guarded(self, what: str, translate: Callable[[RawEvent], list[Mutation]], raw: RawEvent) -> list[Mutation]:
        try:
            if not isinstance(raw, dict):
                raise MalformedEvent(self.kind, f"expected a mapping, got {type(raw).__name__}", raw)
            return translate(raw)
        except MalformedEvent as exc:
            reason = exc.reason
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            reason = f"{type(exc).__name__}: {exc}"
        self.dropped += 1
        logger.warning("Dropped malformed %s: backend=%s kind=%s reason=%s", what, self.backend_id, self.kind, reason)
        return []


class NormalizerRegistry:
    """Registry of normalizer classes by backend kind."""

    _normalizers: dict[str, type[Normalizer]] = {}

    @classmethod
    def register(cls, normalizer: type[Normalizer]) -> None:
        """Register a normalizer class."""
        cls._normalizers[normalizer.kind] = normalizer

    @classmethod
    def get(cls, kind: str) -> type[Normalizer] | None:
        """Get normalizer class by backend kind."""
        return cls._normalizers.get(kind)

    @classmethod
    def create(cls, kind: str, backend_id: str, self_id: str | None = None) -> Normalizer:
        """Instantiate the normalizer for a backend.

        Raises:
            ValueError: if no normalizer is registered for `kind`
        """
        normalizer = cls._normalizers.get(kind)
        if normalizer is None:
            raise ValueError(f"No normalizer for backend kind: {kind!r}")
        return normalizer(backend_id, self_id)

    @classmethod
    def all_kinds(cls) -> list[str]:
        """List all registered backend kinds."""
        return list(cls._normalizers.keys())
