# core/adapters.py
"""
Provider adapters: one implementation per provider family, each turning a
rendered prompt into text over HTTP (or, for the local draft model, offline).

Adapters are immutable once constructed. The gateway caches them per
(model id, credential fingerprint) and shares them across concurrent calls.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

from __future__ import annotations

import asyncio
import json
import random
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from config import settings
from core.errors import ProviderError
from models.gateway_models import (
    AdapterOutput,
    GenerationOptions,
    ModelDescriptor,
    ProviderFamily,
)
from utils.text_processing import count_words, extract_json_payload

logger = structlog.get_logger(__name__)

GEMINI_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


class ModelAdapter(ABC):
    """Generate text for a rendered prompt using one provider model."""

    def __init__(self, descriptor: ModelDescriptor, credential: str | None = None):
        self._descriptor = descriptor
        self._credential = credential

    @property
    def model_id(self) -> str:
        return self._descriptor.id

    @property
    def descriptor(self) -> ModelDescriptor:
        return self._descriptor

    @abstractmethod
    async def generate(self, prompt: str, options: GenerationOptions) -> AdapterOutput:
        """Return the provider's raw text.

        Raises:
            ProviderError: transport or provider failure after retries.
        """

    async def aclose(self) -> None:
        """Release any held resources."""


class HttpModelAdapter(ModelAdapter):
    """Shared retry/backoff loop for adapters talking to an HTTP API."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        credential: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        super().__init__(descriptor, credential)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.HTTPX_TIMEOUT)
        self._retry_attempts = max(
            1, retry_attempts if retry_attempts is not None else settings.LLM_RETRY_ATTEMPTS
        )
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.LLM_RETRY_DELAY_SECONDS
        )

    async def _backoff_delay(self, attempt: int) -> None:
        """Sleep for an exponentially increasing delay with jitter."""
        delay = self._retry_delay * (2**attempt)
        jitter = random.uniform(0, delay / 2)
        await asyncio.sleep(delay + jitter)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @abstractmethod
    def _build_request(
        self, prompt: str, options: GenerationOptions
    ) -> tuple[str, dict[str, Any], dict[str, str]]:
        """Return ``(url, json_payload, headers)``."""

    @abstractmethod
    def _parse_response(self, data: dict[str, Any]) -> AdapterOutput:
        """Extract text and usage from a decoded response body."""

    async def generate(self, prompt: str, options: GenerationOptions) -> AdapterOutput:
        if not prompt or not prompt.strip():
            raise ProviderError(self.model_id, "Empty prompt")

        url, payload, headers = self._build_request(prompt, options)
        last_exc: Exception | None = None
        status_code: int | None = None

        for attempt in range(self._retry_attempts):
            try:
                response = await self._client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                output = self._parse_response(response.json())
                self._log_usage(output.usage)
                return output
            except httpx.HTTPStatusError as e_status:
                last_exc = e_status
                status_code = e_status.response.status_code
                logger.warning(
                    "Provider returned error status",
                    model_id=self.model_id,
                    attempt=attempt + 1,
                    status_code=status_code,
                    body=e_status.response.text[:200],
                )
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(
                        "Client-side error. Aborting retries.",
                        model_id=self.model_id,
                        status_code=status_code,
                    )
                    break
            except httpx.RequestError as e_req:
                last_exc = e_req
                logger.warning(
                    "Provider request error",
                    model_id=self.model_id,
                    attempt=attempt + 1,
                    error=str(e_req) or type(e_req).__name__,
                )
            except (
                json.JSONDecodeError,
                KeyError,
                TypeError,
                AttributeError,
                ProviderError,
            ) as e_body:
                last_exc = e_body
                logger.warning(
                    "Provider response unusable",
                    model_id=self.model_id,
                    attempt=attempt + 1,
                    error=str(e_body),
                )

            if attempt < self._retry_attempts - 1:
                await self._backoff_delay(attempt)

        message = str(last_exc) if last_exc else "Unknown provider failure"
        raise ProviderError(self.model_id, message, status_code=status_code) from last_exc

    def _log_usage(self, usage: dict[str, int] | None) -> None:
        if usage:
            logger.info(
                "LLM usage",
                model_id=self.model_id,
                prompt_tokens=usage.get("prompt_tokens"),
                completion_tokens=usage.get("completion_tokens"),
                total_tokens=usage.get("total_tokens"),
            )
        else:
            logger.debug("LLM response missing usage information", model_id=self.model_id)


class OpenAICompatibleAdapter(HttpModelAdapter):
    """Chat-completions API (OpenAI and OpenAI-compatible local servers)."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        credential: str | None = None,
        *,
        api_base: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(descriptor, credential, **kwargs)
        if api_base is None:
            api_base = (
                settings.OPENAI_API_BASE
                if descriptor.family is ProviderFamily.OPENAI
                else settings.LOCAL_LLM_API_BASE
            )
        self._api_base = api_base.rstrip("/")

    def _build_request(
        self, prompt: str, options: GenerationOptions
    ) -> tuple[str, dict[str, Any], dict[str, str]]:
        payload: dict[str, Any] = {
            "model": self.descriptor.remote_name,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature
            if options.temperature is not None
            else settings.TEMPERATURE_DEFAULT,
            "top_p": options.top_p if options.top_p is not None else settings.LLM_TOP_P,
            _completion_token_param(self._api_base): options.max_output_tokens
            or settings.MAX_GENERATION_TOKENS,
            "stream": False,
        }
        headers = {"Content-Type": "application/json"}
        if self._credential:
            headers["Authorization"] = f"Bearer {self._credential}"
        return f"{self._api_base}/chat/completions", payload, headers

    def _parse_response(self, data: dict[str, Any]) -> AdapterOutput:
        choices = data.get("choices") or []
        message = choices[0].get("message") if choices else None
        if not message or message.get("content") is None:
            raise ProviderError(
                self.model_id, "Invalid response structure: missing choices/content"
            )
        return AdapterOutput(text=message["content"], usage=data.get("usage"))


class AnthropicAdapter(HttpModelAdapter):
    """Anthropic messages API."""

    def _build_request(
        self, prompt: str, options: GenerationOptions
    ) -> tuple[str, dict[str, Any], dict[str, str]]:
        payload: dict[str, Any] = {
            "model": self.descriptor.remote_name,
            "max_tokens": options.max_output_tokens or settings.MAX_GENERATION_TOKENS,
            "temperature": min(
                1.0,
                options.temperature
                if options.temperature is not None
                else settings.TEMPERATURE_DEFAULT,
            ),
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._credential or "",
            "anthropic-version": settings.ANTHROPIC_API_VERSION,
        }
        return f"{settings.ANTHROPIC_API_BASE.rstrip('/')}/messages", payload, headers

    def _parse_response(self, data: dict[str, Any]) -> AdapterOutput:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError(self.model_id, "Invalid response structure: missing content")
        text = "".join(
            block.get("text", "") for block in blocks if block.get("type") == "text"
        )
        raw_usage = data.get("usage") or {}
        usage = None
        if raw_usage:
            prompt_tokens = int(raw_usage.get("input_tokens", 0))
            completion_tokens = int(raw_usage.get("output_tokens", 0))
            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            }
        return AdapterOutput(text=text, usage=usage)


class GeminiAdapter(HttpModelAdapter):
    """Gemini ``generateContent`` REST API."""

    def _build_request(
        self, prompt: str, options: GenerationOptions
    ) -> tuple[str, dict[str, Any], dict[str, str]]:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": options.temperature
                if options.temperature is not None
                else settings.TEMPERATURE_DEFAULT,
                "topK": 1,
                "topP": options.top_p if options.top_p is not None else settings.LLM_TOP_P,
                "maxOutputTokens": options.max_output_tokens
                or settings.MAX_GENERATION_TOKENS,
            },
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_NONE"}
                for category in GEMINI_SAFETY_CATEGORIES
            ],
        }
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self._credential or "",
        }
        url = (
            f"{settings.GEMINI_API_BASE.rstrip('/')}/models/"
            f"{self.descriptor.remote_name}:generateContent"
        )
        return url, payload, headers

    def _parse_response(self, data: dict[str, Any]) -> AdapterOutput:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ProviderError(self.model_id, f"Prompt blocked: {block_reason}")
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError(self.model_id, "Invalid response structure: no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        meta = data.get("usageMetadata") or {}
        usage = None
        if meta:
            usage = {
                "prompt_tokens": int(meta.get("promptTokenCount", 0)),
                "completion_tokens": int(meta.get("candidatesTokenCount", 0)),
                "total_tokens": int(meta.get("totalTokenCount", 0)),
            }
        return AdapterOutput(text=text, usage=usage)


_EXAMPLE_MARKER = re.compile(r"^EXAMPLE RESPONSE:\s*$", flags=re.MULTILINE)


class LocalDraftAdapter(ModelAdapter):
    """Offline model behind ``default-model``.

    Answers with the example response embedded in the prompt after an
    ``EXAMPLE RESPONSE:`` line (the shipped templates all carry one), so every
    stage can run end to end without a provider. Prompts without an example get
    a plain-text echo of their first paragraph. Output is deterministic.
    """

    async def generate(self, prompt: str, options: GenerationOptions) -> AdapterOutput:
        if not prompt or not prompt.strip():
            raise ProviderError(self.model_id, "Empty prompt")

        markers = list(_EXAMPLE_MARKER.finditer(prompt))
        if markers:
            example = prompt[markers[-1].end() :].strip()
            payload = extract_json_payload(example)
            text = json.dumps(payload, ensure_ascii=False) if payload is not None else example
        else:
            first_paragraph = prompt.strip().split("\n\n", 1)[0]
            text = f"Draft based on: {first_paragraph}"

        prompt_words = count_words(prompt)
        completion_words = count_words(text)
        return AdapterOutput(
            text=text,
            usage={
                "prompt_tokens": prompt_words,
                "completion_tokens": completion_words,
                "total_tokens": prompt_words + completion_words,
            },
        )


_ADAPTER_CLASSES: dict[ProviderFamily, type[ModelAdapter]] = {
    ProviderFamily.LOCAL: LocalDraftAdapter,
    ProviderFamily.OPENAI: OpenAICompatibleAdapter,
    ProviderFamily.OPENAI_COMPATIBLE: OpenAICompatibleAdapter,
    ProviderFamily.ANTHROPIC: AnthropicAdapter,
    ProviderFamily.GEMINI: GeminiAdapter,
}


def create_adapter(
    descriptor: ModelDescriptor,
    credential: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> ModelAdapter:
    """Instantiate the adapter for ``descriptor``'s provider family."""
    adapter_cls = _ADAPTER_CLASSES[descriptor.family]
    if issubclass(adapter_cls, HttpModelAdapter):
        return adapter_cls(descriptor, credential, client=client)
    return adapter_cls(descriptor, credential)
