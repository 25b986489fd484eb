"""
Completion service client.

Talks to an OpenAI-compatible chat-completions endpoint (OpenRouter by
default) over httpx. Every call carries a bounded timeout and is never
retried; any failure surfaces as ExternalServiceDegraded so callers can fall
back to their conservative default.
"""

from typing import Optional
import logging
import threading

import httpx

from .config import (
    COMPLETION_API_KEY,
    COMPLETION_BASE_URL,
    COMPLETION_MODEL,
    COMPLETION_TEMPERATURE,
    COMPLETION_TIMEOUT_SECONDS,
    COMPLETION_MAX_TOKENS,
)
from .errors import ExternalServiceDegraded

logger = logging.getLogger(__name__)


class CompletionService:
    """Stateless request/response text completion."""

    def __init__(
        self,
        api_key: str = COMPLETION_API_KEY,
        model: str = COMPLETION_MODEL,
        base_url: str = COMPLETION_BASE_URL,
        temperature: float = COMPLETION_TEMPERATURE,
        timeout: float = COMPLETION_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.endpoint = base_url.rstrip("/")
        if not self.endpoint.endswith("/chat/completions"):
            self.endpoint += "/chat/completions"

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.configured = bool(api_key) or transport is not None
        self.http_client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
            headers=headers,
            transport=transport,
        )
        self._calls = 0
        self._calls_lock = threading.Lock()

    @property
    def calls(self) -> int:
        return self._calls

    def complete(self, system_prompt: str, user_prompt: str,
                 max_tokens: int = COMPLETION_MAX_TOKENS) -> str:
        """Return the assistant text, or raise ExternalServiceDegraded."""
        with self._calls_lock:
            self._calls += 1
        if not self.configured:
            raise ExternalServiceDegraded("Completion service has no API key configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": max_tokens,
        }
        try:
            response = self.http_client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Completion request timed out: %s", exc)
            raise ExternalServiceDegraded(f"timeout: {exc}") from exc
        except httpx.RequestError as exc:
            logger.warning("Completion request failed: %s", exc)
            raise ExternalServiceDegraded(f"request error: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("Completion service returned status %d", response.status_code)
            raise ExternalServiceDegraded(f"status {response.status_code}")

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Completion response has no message content: %s", exc)
            raise ExternalServiceDegraded(f"malformed response: {exc}") from exc

        if not isinstance(content, str) or not content.strip():
            raise ExternalServiceDegraded("empty completion")
        return content

    def close(self):
        self.http_client.close()
        logger.info("HTTP client closed")
