""":class:`LLMClient` that talks to a JSON Responses-style HTTP endpoint."""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Iterable, Optional

from .llm import LLMClient, LLMResponseFormatError, LLMTransportError

Transport = Callable[[Dict[str, Any]], str]

DEFAULT_ENDPOINT = "https://api.openai.com/v1/responses"


class ResponsesClient(LLMClient):
    """Send structured requests over HTTP, or over an injected transport in tests."""

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_ENDPOINT,
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("AUTOPATCH_LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport
        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = self._extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:  # noqa: S310
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model endpoint timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message[:500]}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")

    @classmethod
    def _extract_output_text(cls, raw_response: str) -> Optional[str]:
        """Return the first output text in a Responses payload, else the raw body."""
        if not raw_response:
            return None
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response
        if not isinstance(data, dict):
            return raw_response

        for key in ("output", "outputs", "choices"):
            text = cls._first_text(data.get(key))
            if text:
                return text
        nested = data.get("response")
        if isinstance(nested, dict):
            text = cls._first_text(nested.get("output"))
            if text:
                return text
        return raw_response

    @staticmethod
    def _first_text(container: Any) -> Optional[str]:
        if not container:
            return None
        items: Iterable[Any] = [container] if isinstance(container, dict) else container
        for item in items:
            if not isinstance(item, dict):
                continue
            contents = item.get("content")
            if isinstance(contents, list):
                for part in contents:
                    if not isinstance(part, dict):
                        continue
                    if isinstance(part.get("json"), (dict, list)):
                        return json.dumps(part["json"])
                    text = part.get("text")
                    if isinstance(text, str) and text.strip():
                        return text
            message = item.get("message")
            if isinstance(message, dict):
                text = message.get("content")
                if isinstance(text, str) and text.strip():
                    return text
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                return text
        return None


__all__ = ["ResponsesClient", "Transport"]
