"""LLM completion engines over httpx, one per provider wire format."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx

from mission_control.config import LlmProviderSettings
from mission_control.jobs.engines.base import EngineError, EngineRequest
from mission_control.jobs.models import EngineOutcome, OutcomeStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
QUOTA_STATUS_CODES = frozenset({402, 429})
QUOTA_MARKERS = (
    "quota",
    "insufficient_quota",
    "rate limit",
    "rate_limit",
    "billing",
    "credit balance",
    "resource_exhausted",
)
ERROR_EXCERPT_CHARS = 500
RESULT_FILENAME = "result.md"


class QuotaExhaustedError(EngineError):
    """Provider refused the request because of quota, billing or rate limits."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class LlmEngine(ABC):
    """Base class: send one prompt, write the completion to `result.md`."""

    provider_name = "llm"

    def __init__(
        self,
        settings: LlmProviderSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            transport=transport or httpx.HTTPTransport(retries=DEFAULT_MAX_RETRIES),
        )

    def close(self) -> None:
        self._client.close()

    def execute(self, request: EngineRequest) -> EngineOutcome:
        if not self.settings.api_key:
            raise EngineError(
                f"API key for {self.provider_name} is not configured.",
                transient=False,
            )
        model = request.model or self.settings.model
        try:
            response = self._send(request=request, model=model)
        except httpx.TimeoutException as error:
            raise EngineError(
                f"{self.provider_name} request timed out: {error}",
                transient=True,
            ) from error
        except httpx.HTTPError as error:
            raise EngineError(
                f"{self.provider_name} transport error: {error}",
                transient=True,
            ) from error

        if not response.is_success:
            body = response.text[:ERROR_EXCERPT_CHARS]
            message = f"{self.provider_name} HTTP {response.status_code}: {body}"
            if response.status_code in QUOTA_STATUS_CODES or _mentions_quota(body):
                raise QuotaExhaustedError(message)
            raise EngineError(message, transient=response.status_code >= 500)  # noqa: PLR2004

        try:
            payload = response.json()
        except ValueError as error:
            raise EngineError(
                f"{self.provider_name} returned non-JSON body: "
                f"{response.text[:ERROR_EXCERPT_CHARS]}",
                transient=False,
            ) from error

        text = self._extract_text(payload)
        if not text.strip():
            raise EngineError(
                f"{self.provider_name} returned an empty completion.",
                transient=False,
            )

        result_path = _write_result(request.job_output_dir, text)
        return EngineOutcome(
            status=OutcomeStatus.OK,
            result_text=text,
            log_reference=str(result_path),
            raw={
                "ok": True,
                "provider": self.provider_name,
                "model": model,
                "usage": payload.get("usage") or payload.get("usageMetadata") or {},
            },
        )

    @abstractmethod
    def _send(self, *, request: EngineRequest, model: str) -> httpx.Response:
        """POST the prompt in the provider's wire format."""

    @abstractmethod
    def _extract_text(self, payload: dict[str, Any]) -> str:
        """Pull the completion text out of a decoded response body."""


class AnthropicEngine(LlmEngine):
    """Anthropic Messages API."""

    provider_name = "claude"
    api_version = "2023-06-01"

    def _send(self, *, request: EngineRequest, model: str) -> httpx.Response:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self.settings.max_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        return self._client.post(
            "/v1/messages",
            json=body,
            headers={
                "x-api-key": self.settings.api_key,
                "anthropic-version": self.api_version,
            },
        )

    def _extract_text(self, payload: dict[str, Any]) -> str:
        blocks = payload.get("content") or []
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )


class OpenAIEngine(LlmEngine):
    """OpenAI Chat Completions API."""

    provider_name = "openai"

    def _send(self, *, request: EngineRequest, model: str) -> httpx.Response:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return self._client.post(
            "/v1/chat/completions",
            json={
                "model": model,
                "messages": messages,
                "max_tokens": self.settings.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.settings.api_key}"},
        )

    def _extract_text(self, payload: dict[str, Any]) -> str:
        choices = payload.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""


class GeminiEngine(LlmEngine):
    """Gemini generateContent API."""

    provider_name = "gemini"

    def _send(self, *, request: EngineRequest, model: str) -> httpx.Response:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {"maxOutputTokens": self.settings.max_tokens},
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        return self._client.post(
            f"/v1beta/models/{model}:generateContent",
            json=body,
            headers={"x-goog-api-key": self.settings.api_key},
        )

    def _extract_text(self, payload: dict[str, Any]) -> str:
        candidates = payload.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


def _mentions_quota(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in QUOTA_MARKERS)


def _write_result(job_output_dir: Path, text: str) -> Path:
    job_output_dir.mkdir(parents=True, exist_ok=True)
    result_path = job_output_dir / RESULT_FILENAME
    result_path.write_text(text, "utf-8")
    return result_path
