"""
Local inference backend over HTTP (Ollama-compatible API).
"""

import logging
import time
from typing import Optional

import httpx

from .base import Provider, elapsed_ms, unavailable
from ..core.errors import ErrorKind, ProviderFailure
from ..core.types import CallType, Response

logger = logging.getLogger(__name__)


class LocalProvider(Provider):
    """Local model server reached via ``/api/generate``.

    Available iff an endpoint is configured and answers a health check.
    Local inference is free, so cost is always zero.
    """

    name = "local"

    def __init__(
        self,
        endpoint: Optional[str],
        model: str,
        health_timeout: float = 1.0,
        request_timeout: float = 120.0,
        client: Optional[httpx.Client] = None
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.model = model
        self.health_timeout = health_timeout
        self.request_timeout = request_timeout
        self.client = client or httpx.Client()

    def __repr__(self) -> str:
        return f"LocalProvider(endpoint={self.endpoint!r}, model={self.model!r})"

    def is_available(self) -> bool:
        if not self.endpoint:
            return False
        try:
            response = self.client.get(f"{self.endpoint}/api/tags", timeout=self.health_timeout)
        except httpx.HTTPError as exc:
            logger.debug("Local endpoint %s unreachable: %s", self.endpoint, exc)
            return False
        return response.status_code == 200

    def generate(
        self,
        prompt: str,
        temperature: float,
        call_type: Optional[CallType] = None
    ) -> Response:
        if not self.endpoint:
            return unavailable("Local endpoint not configured")

        started = time.monotonic()
        try:
            body = self._post_generate(prompt, temperature)
            content = body["response"]
            if not isinstance(content, str):
                raise ProviderFailure("'response' is not a string", ErrorKind.MALFORMED_RESPONSE)
        except ProviderFailure as exc:
            return Response.failure(exc.kind, str(exc), exc.status_code, elapsed_ms(started))
        except KeyError as exc:
            return Response.failure(
                ErrorKind.MALFORMED_RESPONSE,
                f"Local response missing field {exc}",
                duration_ms=elapsed_ms(started),
            )

        return Response(
            success=True,
            content=content,
            input_tokens=int(body.get("prompt_eval_count", 0)),
            completion_tokens=int(body.get("eval_count", 0)),
            cost_usd=0.0,
            duration_ms=elapsed_ms(started),
        )

    def _post_generate(self, prompt: str, temperature: float) -> dict:
        """POST the prompt; transport errors become ProviderFailure."""
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        try:
            response = self.client.post(f"{self.endpoint}/api/generate", json=payload, timeout=self.request_timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise ProviderFailure(f"Local request timed out: {exc}", ErrorKind.TIMEOUT)
        except httpx.HTTPStatusError as exc:
            raise ProviderFailure(
                f"Local server returned {exc.response.status_code}",
                ErrorKind.PROVIDER_ERROR,
                exc.response.status_code,
            )
        except httpx.TransportError as exc:
            raise ProviderFailure(f"Local endpoint unreachable: {exc}", ErrorKind.NETWORK_FAILURE)
        except ValueError as exc:
            raise ProviderFailure(f"Local response is not JSON: {exc}", ErrorKind.MALFORMED_RESPONSE)

        if not isinstance(body, dict):
            raise ProviderFailure("Local response is not an object", ErrorKind.MALFORMED_RESPONSE)
        if "error" in body:
            raise ProviderFailure(f"Local server error: {body['error']}", ErrorKind.PROVIDER_ERROR)
        return body

    def close(self) -> None:
        self.client.close()
