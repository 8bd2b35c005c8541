from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel

from assessment_api.app.outcome import MalformedResponseError
from assessment_api.config.settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)


class LLMAdapter(Protocol):
    """Interface for structured LLM completions.

    Replies are untrusted: an adapter validates them against ``response_model``
    and lets ``json.JSONDecodeError`` or ``ValidationError`` escape on a bad one.
    """

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...


class OpenAIChatCompletionsAdapter:
    """Small OpenAI adapter using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__.lower(),
                    # Reply models keep extra keys such as the free-form risk list.
                    "strict": False,
                    "schema": response_model.model_json_schema(),
                },
            },
        }
        response_json = self._request_with_retry(payload, timeout_s=timeout_s)
        content = self._extract_content(response_json)
        return response_model.model_validate(json.loads(content))

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "llm_adapter event=request_failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if isinstance(exc, error.HTTPError) and not _is_retryable_status(exc.code):
                    raise
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "llm_adapter event=trace_request model=%s url=%s timeout_s=%s",
                self.model,
                url,
                timeout_s,
            )
        raw_payload = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=url,
            data=raw_payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        if _trace_enabled():
            logger.warning("llm_adapter event=trace_response model=%s status=ok", self.model)
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise MalformedResponseError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        refusal = message.get("refusal")
        if refusal:
            raise MalformedResponseError(f"Model refused to answer: {refusal}")
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise MalformedResponseError("OpenAI response content could not be parsed as text")


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    if settings.llm_provider.lower() != "openai":
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def _is_retryable_status(status: int) -> bool:
    # Rate limits and server errors may pass; other client errors will not.
    return status == 429 or status >= 500


def _trace_enabled() -> bool:
    return os.getenv("ASSESSMENT_API_LLM_TRACE", "0").strip() == "1"
