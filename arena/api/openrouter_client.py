from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import requests

from arena.models.schemas import ModelResponse


class ModelInvocationError(Exception):
    """Raised when a chat completion cannot be obtained."""


class ModelTimeoutError(ModelInvocationError):
    """Raised when the model did not answer within the timeout."""


class ModelRequestError(ModelInvocationError):
    """Raised for rejected requests (bad key, unknown model, oversized context)."""


class OpenRouterClient:
    """Chat-completion client for OpenRouter with simple retry/backoff."""

    API_URL = "https://openrouter.ai/api/v1/chat/completions"
    RETRY_STATUS = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        timeout: float = 600.0,
        retries: int = 1,
        temperature: float = 0.0,
        max_tokens: int = 16000,
        backoff: float = 2.0,
        max_backoff: float = 30.0,
    ):
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.url = url or self.API_URL
        self.timeout = timeout
        self.retries = retries
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.session = requests.Session()

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ModelTimeoutError(f"OpenRouter request timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise ModelInvocationError(f"OpenRouter request failed: {exc}") from exc

        if response.status_code in self.RETRY_STATUS:
            raise ModelInvocationError(f"OpenRouter API error ({response.status_code}): {response.text}")
        if response.status_code >= 400:
            raise ModelRequestError(f"OpenRouter rejected request ({response.status_code}): {response.text}")
        try:
            return response.json()
        except ValueError as exc:
            raise ModelInvocationError("OpenRouter response was not valid JSON") from exc

    def chat(self, model_id: str, messages: List[Dict[str, str]]) -> ModelResponse:
        """Send role-tagged messages and return the first choice."""
        if not self.api_key:
            raise ModelInvocationError("Missing OPENROUTER_API_KEY environment variable")

        payload = {
            "model": model_id,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        delay = self.backoff
        last_error: Optional[ModelInvocationError] = None

        for attempt in range(self.retries + 1):
            started = time.monotonic()
            try:
                data = self._post(payload)
            except ModelRequestError:
                raise
            except ModelInvocationError as exc:
                last_error = exc
                if attempt < self.retries:
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_backoff)
                continue

            try:
                return self._to_response(data, model_id, started)
            except (AttributeError, LookupError, TypeError, ValueError) as exc:
                raise ModelInvocationError(f"OpenRouter returned a malformed response: {exc}") from exc

        raise last_error or ModelInvocationError("OpenRouter request unexpectedly exhausted retries")

    def _to_response(self, data: Any, model_id: str, started: float) -> ModelResponse:
        if not isinstance(data, dict):
            raise ModelInvocationError("OpenRouter response was not a JSON object")
        choices = data.get("choices") or []
        if not choices:
            raise ModelInvocationError("OpenRouter returned empty response")
        choice = choices[0]
        message = choice.get("message") or {}
        usage = data.get("usage") or {}
        return ModelResponse(
            content=message.get("content") or "",
            model=data.get("model") or model_id,
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
            finish_reason=choice.get("finish_reason"),
            response_time_ms=int((time.monotonic() - started) * 1000),
        )
