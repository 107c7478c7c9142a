# core/model_gateway.py
"""
Single entry point for generation calls.

Resolves a model id to an adapter, supplies credentials, walks the fallback
chain and turns provider text into a structured or raw result.

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
from collections.abc import Callable, Mapping

import httpx
import structlog

import config
from config import settings
from core.adapters import ModelAdapter, create_adapter
from core.errors import (
    AllModelsFailedError,
    ConfigurationError,
    MissingCredentialError,
    UnconfiguredModelError,
)
from models.gateway_models import (
    AttemptRecord,
    GatewayRequest,
    GatewayResponse,
    GenerationOptions,
    GenerationOutcome,
    ModelDescriptor,
    ProviderConfig,
    ProviderFamily,
    RawResult,
    StructuredResult,
)
from orchestration.token_accountant import TokenAccountant
from prompt_renderer import fill_template
from utils.text_processing import clean_model_response, extract_json_payload
from utils.tokens import count_tokens

logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[ModelDescriptor, "str | None"], ModelAdapter]


def _default_credentials() -> dict[ProviderFamily, str | None]:
    return {
        ProviderFamily.OPENAI: settings.OPENAI_API_KEY,
        ProviderFamily.ANTHROPIC: settings.ANTHROPIC_API_KEY,
        ProviderFamily.GEMINI: settings.GEMINI_API_KEY,
    }


def parse_model_output(text: str, expect_structured: bool = True) -> StructuredResult | RawResult:
    """Clean provider text and parse JSON; unparseable output degrades to raw."""
    cleaned = clean_model_response(text)
    if not expect_structured:
        return RawResult(text=cleaned)
    payload = extract_json_payload(cleaned)
    if payload is None:
        return RawResult(text=cleaned)
    return StructuredResult(data=payload, text=cleaned)


class ModelGateway:
    """Model-id to adapter resolution with per-request fallback.

    Adapters are cached per ``(model_id, credential fingerprint)`` so two
    credentials for the same model never share a client. Cached adapters are
    never mutated, so concurrent calls may share them.
    """

    def __init__(
        self,
        descriptors: Mapping[str, ModelDescriptor] | None = None,
        fallback_chains: Mapping[str, list[str]] | None = None,
        *,
        adapter_factory: AdapterFactory | None = None,
        default_credentials: Mapping[ProviderFamily, str | None] | None = None,
        accountant: TokenAccountant | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.descriptors = dict(descriptors if descriptors is not None else config.MODEL_DESCRIPTORS)
        self.fallback_chains = {
            k: list(v)
            for k, v in (
                fallback_chains if fallback_chains is not None else config.FALLBACK_CHAINS
            ).items()
        }
        self._http_client = http_client
        self._adapter_factory = adapter_factory or (
            lambda descriptor, credential: create_adapter(
                descriptor, credential, client=self._http_client
            )
        )
        self._default_credentials = dict(
            default_credentials if default_credentials is not None else _default_credentials()
        )
        self.accountant = accountant or TokenAccountant()
        self._adapters: dict[tuple[str, str], ModelAdapter] = {}
        self._cache_lock = asyncio.Lock()

    # --- Resolution ---

    def descriptor(self, model_id: str) -> ModelDescriptor:
        try:
            return self.descriptors[model_id]
        except KeyError:
            raise UnconfiguredModelError(model_id) from None

    def attempt_chain(self, model_id: str) -> list[str]:
        """``[model_id] + fallback chain`` with duplicates removed."""
        chain = [model_id]
        for candidate in self.fallback_chains.get(model_id, []):
            if candidate not in chain:
                chain.append(candidate)
        return chain

    def resolve_credential(
        self,
        descriptor: ModelDescriptor,
        credential: str | None = None,
        credentials: Mapping[str, str] | None = None,
    ) -> str | None:
        """Per-call credential, then per-model map, then settings default."""
        resolved = credential or (credentials or {}).get(descriptor.id)
        if not resolved:
            resolved = self._default_credentials.get(descriptor.family)
        if descriptor.requires_credential and not resolved:
            raise MissingCredentialError(descriptor.id)
        return resolved or None

    async def get_adapter(self, model_id: str, credential: str | None = None) -> ModelAdapter:
        descriptor = self.descriptor(model_id)
        key = ProviderConfig(model_id=model_id, credential=credential).cache_key
        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter
        async with self._cache_lock:
            adapter = self._adapters.get(key)
            if adapter is None:
                adapter = self._adapter_factory(descriptor, credential)
                self._adapters[key] = adapter
                logger.debug(
                    "Created adapter",
                    model_id=model_id,
                    credential_fingerprint=key[1],
                )
        return adapter

    @property
    def cached_adapter_keys(self) -> list[tuple[str, str]]:
        return list(self._adapters)

    # --- Generation ---

    async def generate(
        self,
        model_id: str,
        credential: str | None,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        action: str = "generate",
        credentials: Mapping[str, str] | None = None,
    ) -> GenerationOutcome:
        """Generate with ``model_id``, falling back through its chain.

        Raises:
            UnconfiguredModelError / MissingCredentialError: for the requested
                model, before any provider call.
            AllModelsFailedError: every model in the chain failed.
        """
        options = options or GenerationOptions()
        primary = self.descriptor(model_id)
        primary_credential = self.resolve_credential(primary, credential, credentials)

        attempts: list[tuple[str, Exception]] = []
        for attempt_id in self.attempt_chain(model_id):
            try:
                if attempt_id == model_id:
                    attempt_credential = primary_credential
                else:
                    descriptor = self.descriptor(attempt_id)
                    same_family = descriptor.family is primary.family
                    attempt_credential = self.resolve_credential(
                        descriptor,
                        credential if same_family else None,
                        credentials,
                    )
                adapter = await self.get_adapter(attempt_id, attempt_credential)
                logger.info("Attempting generation", model_id=attempt_id, action=action)
                output = await adapter.generate(prompt, options)
            except Exception as exc:
                # Any failure here moves on to the next model in the chain
                attempts.append((attempt_id, exc))
                logger.warning(
                    "Model attempt failed",
                    model_id=attempt_id,
                    action=action,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            result = parse_model_output(output.text, options.expect_structured)
            if options.expect_structured and isinstance(result, RawResult):
                logger.warning(
                    "Model output was not structured; using raw text",
                    model_id=attempt_id,
                    action=action,
                )
            usage = output.usage or self._estimate_usage(prompt, output.text, adapter)
            self.accountant.record_usage(action, usage)
            if attempts:
                logger.warning(
                    "Generation succeeded on fallback model",
                    requested=model_id,
                    model_id=attempt_id,
                    action=action,
                )
            return GenerationOutcome(
                result=result,
                model_id=attempt_id,
                action=action,
                attempts=[AttemptRecord(m, str(e)) for m, e in attempts]
                + [AttemptRecord(attempt_id)],
                usage=usage,
            )

        error = AllModelsFailedError(action, attempts)
        logger.error(
            "All models failed",
            requested=model_id,
            action=action,
            attempted=[m for m, _ in attempts],
            last_error=str(error.last_error),
        )
        raise error

    def _estimate_usage(self, prompt: str, text: str, adapter: ModelAdapter) -> dict[str, int]:
        model_name = adapter.descriptor.remote_name
        prompt_tokens = count_tokens(prompt, model_name)
        completion_tokens = count_tokens(text, model_name)
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    async def process_request(
        self, request: GatewayRequest, credentials: Mapping[str, str] | None = None
    ) -> GatewayResponse:
        """Render ``request`` and generate, reporting failures in the envelope."""
        prompt = fill_template(request.prompt_template, request.dynamic_variables)
        try:
            outcome = await self.generate(
                request.model_id,
                request.credential,
                prompt,
                request.options,
                action=request.action,
                credentials=credentials,
            )
        except ConfigurationError as e:
            return GatewayResponse(success=False, message=str(e))
        except AllModelsFailedError as e:
            return GatewayResponse(
                success=False,
                message="Failed to process AI request",
                details=str(e),
            )
        return GatewayResponse(
            success=True,
            result={
                **outcome.result.model_dump(),
                "modelId": outcome.model_id,
            },
        )

    async def aclose(self) -> None:
        async with self._cache_lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            await adapter.aclose()
