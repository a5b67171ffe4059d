"""
Remote-hosted backend over the OpenAI SDK.

Wraps chat completions and converts SDK exceptions into classified
failed Responses at this boundary.
"""

import logging
import time
from typing import Optional, Tuple

import openai
from openai import OpenAI

from .base import Provider, elapsed_ms, unavailable
from ..core.errors import ErrorKind
from ..core.pricing import estimate_cost
from ..core.token_counter import TokenUsage
from ..core.types import CallType, Response

logger = logging.getLogger(__name__)


def classify_openai_error(exc: Exception) -> Tuple[ErrorKind, Optional[int]]:
    """Map an OpenAI SDK exception to an error kind and HTTP status."""
    # APITimeoutError subclasses APIConnectionError, so check it first
    if isinstance(exc, openai.APITimeoutError):
        return ErrorKind.TIMEOUT, None
    if isinstance(exc, openai.APIConnectionError):
        return ErrorKind.NETWORK_FAILURE, None
    if isinstance(exc, openai.APIStatusError):
        return ErrorKind.PROVIDER_ERROR, exc.status_code
    if isinstance(exc, openai.APIResponseValidationError):
        return ErrorKind.MALFORMED_RESPONSE, None
    return ErrorKind.PROVIDER_ERROR, None


class RemoteProvider(Provider):
    """OpenAI-compatible remote backend.

    Available iff an API key is configured. SDK-level retries are disabled;
    retry policy belongs to the resilience controller.
    """

    name = "remote"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize remote provider.

        Args:
            api_key: API credential (never logged)
            model: Model name (required)
            base_url: Optional alternative API endpoint
            client: Pre-built client, mainly for tests

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.base_url = base_url
        self._has_key = bool(api_key)
        self.client = client
        if self.client is None and self._has_key:
            self.client = OpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    def __repr__(self) -> str:
        return f"RemoteProvider(model={self.model!r}, credential={'set' if self._has_key else 'missing'})"

    def is_available(self) -> bool:
        return self._has_key and self.client is not None

    def generate(
        self,
        prompt: str,
        temperature: float,
        call_type: Optional[CallType] = None
    ) -> Response:
        """Create a chat completion for the prompt.

        Args:
            prompt: User prompt text
            temperature: Sampling temperature
            call_type: Unused by this backend

        Returns:
            Successful Response with token counts and cost, or a classified failure
        """
        if not self.is_available():
            return unavailable("Remote API key not configured")

        started = time.monotonic()
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
            )
        except openai.OpenAIError as exc:
            kind, status = classify_openai_error(exc)
            logger.debug("Remote %s call failed: %s (status=%s)", self.model, kind.value, status)
            return Response.failure(kind, f"{type(exc).__name__}: {exc}", status, elapsed_ms(started))

        usage = completion.usage
        if not usage or not completion.choices:
            return Response.failure(
                ErrorKind.MALFORMED_RESPONSE,
                "Remote response missing usage or choices",
                duration_ms=elapsed_ms(started),
            )
        content = completion.choices[0].message.content or ""

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens
        )

        return Response(
            success=True,
            content=content,
            input_tokens=token_usage.prompt_tokens,
            completion_tokens=token_usage.completion_tokens,
            cost_usd=estimate_cost(self.model, token_usage),
            duration_ms=elapsed_ms(started),
        )
