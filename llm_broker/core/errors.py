"""
Error taxonomy for provider and replay failures.

Errors are classified once at the provider boundary into an ErrorKind;
retry decisions are made from the kind and status code alone.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Closed set of failure classes."""
    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_RESPONSE = "malformed_response"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    REPLAY_KEY_MISSING = "replay_key_missing"


_ALWAYS_RETRYABLE = {
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK_FAILURE,
    ErrorKind.MALFORMED_RESPONSE,
}


def is_retryable(kind: ErrorKind, status_code: Optional[int] = None) -> bool:
    """Decide whether a failure should be retried with backoff.

    Provider errors are retryable only for server-class (5xx) and
    rate-limit (429) statuses; auth, malformed-request and not-found
    statuses fail immediately.
    """
    if kind in _ALWAYS_RETRYABLE:
        return True
    if kind == ErrorKind.PROVIDER_ERROR:
        if status_code is None:
            return True
        return status_code >= 500 or status_code == 429
    return False


class BrokerError(Exception):
    """Base error carrying its classified kind."""
    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message)
        self.kind = kind


class ProviderFailure(BrokerError):
    """Raised by providers' transport layer; converted to a failed Response."""
    def __init__(self, message: str, kind: ErrorKind, status_code: Optional[int] = None):
        super().__init__(message, kind)
        self.status_code = status_code


class ReplayKeyMissing(BrokerError):
    """Replay trace has no entry for the requested (tick, call type).

    This is a determinism fault, never a transient backend issue.
    """
    def __init__(self, tick: int, call_type: str, occurrence: int = 0):
        super().__init__(
            f"No replay entry for tick {tick}, call type '{call_type}' (occurrence {occurrence})",
            ErrorKind.REPLAY_KEY_MISSING,
        )
        self.tick = tick
        self.call_type = call_type
        self.occurrence = occurrence


class ReplayDivergence(BrokerError):
    """The live prompt differs from the one recorded under the same replay key."""
    def __init__(self, tick: int, call_type: str, occurrence: int = 0):
        super().__init__(
            f"Prompt for tick {tick}, call type '{call_type}' (occurrence {occurrence}) "
            f"differs from the recorded prompt",
            ErrorKind.REPLAY_KEY_MISSING,
        )
        self.tick = tick
        self.call_type = call_type
        self.occurrence = occurrence


class RequestAbandoned(BrokerError):
    """The request was superseded while its provider call was in progress."""
    def __init__(self, call_type: str):
        super().__init__(f"Superseded {call_type} request abandoned", ErrorKind.PROVIDER_ERROR)
        self.call_type = call_type
