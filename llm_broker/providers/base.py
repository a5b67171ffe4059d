"""
Provider contract.

Every backend exposes availability and a generate call that returns a
Response; failures are returned, never raised, and carry a classified
ErrorKind.
"""

import time
from abc import ABC, abstractmethod
from typing import Optional

from ..core.errors import ErrorKind
from ..core.types import CallType, Response


class Provider(ABC):
    """Text-generation backend."""

    name: str = "provider"

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backend can currently serve calls."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        temperature: float,
        call_type: Optional[CallType] = None
    ) -> Response:
        """Generate text for a prompt.

        Implementations must not raise for backend failures; they return
        ``Response.failure`` with the classified kind instead.
        """


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def unavailable(message: str) -> Response:
    return Response.failure(ErrorKind.PROVIDER_UNAVAILABLE, message)
