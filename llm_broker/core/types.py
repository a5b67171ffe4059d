"""
Request and response types shared across the broker.

Defines call types, lane priorities, and the immutable response record.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import ErrorKind


class CallType(Enum):
    """Classification of a request. Determines lane, timeout, and cache TTL."""
    DECISION = "decision"
    NARRATIVE = "narrative"
    CONVERSATION = "conversation"

    @property
    def priority(self) -> int:
        """Lane priority (lower is served first)."""
        return _PRIORITIES[self]

    @classmethod
    def parse(cls, value: str) -> "CallType":
        """Parse a call type name, case-insensitively."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = [c.value for c in cls]
            raise ValueError(f"Unknown call type '{value}', must be one of: {valid}")


_PRIORITIES = {
    CallType.DECISION: 0,
    CallType.NARRATIVE: 1,
    CallType.CONVERSATION: 2,
}


class ResponseSource(Enum):
    """Where a response came from."""
    PROVIDER = "provider"
    CACHE = "cache"
    OFFLINE = "offline"
    REPLAY = "replay"


@dataclass(frozen=True)
class Response:
    """Immutable result of a text-generation call.

    Failed responses carry a structural ``error_kind`` (and ``status_code``
    for provider errors) so retry decisions never depend on message text.
    """
    success: bool
    content: str = ""
    input_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    status_code: Optional[int] = None
    source: ResponseSource = ResponseSource.PROVIDER
    attempts: int = 1
    fallback: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        duration_ms: int = 0,
    ) -> "Response":
        """Build a failed response of the given kind."""
        return cls(
            success=False,
            error=message,
            error_kind=kind,
            status_code=status_code,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        data["source"] = self.source.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Response":
        kind = data.get("error_kind")
        return cls(
            success=bool(data["success"]),
            content=data.get("content", ""),
            input_tokens=int(data.get("input_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
            cost_usd=float(data.get("cost_usd", 0.0)),
            duration_ms=int(data.get("duration_ms", 0)),
            error=data.get("error"),
            error_kind=ErrorKind(kind) if kind else None,
            status_code=data.get("status_code"),
            source=ResponseSource(data.get("source", ResponseSource.PROVIDER.value)),
            attempts=int(data.get("attempts", 1)),
            fallback=bool(data.get("fallback", False)),
        )


Callback = Callable[[Response], None]


@dataclass
class Request:
    """A queued text-generation request.

    Owned by its lane until dispatched; the handle tracks completion.
    """
    id: int
    prompt: str
    call_type: CallType
    enqueued_at: float
    tick: int = 0
    occurrence: int = 0
    entity_ids: Tuple[int, ...] = ()
    callback: Optional[Callback] = None
    handle: Any = field(default=None, repr=False)

    @property
    def priority(self) -> int:
        return self.call_type.priority
