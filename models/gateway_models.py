# models/gateway_models.py
"""Types exchanged with the model gateway and its adapters."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class ProviderFamily(str, Enum):
    """Which adapter implementation backs a model id."""

    LOCAL = "local"
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENAI_COMPATIBLE = "openai_compatible"


class ModelDescriptor(BaseModel):
    """Identity of a generation provider. Immutable reference data."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    family: ProviderFamily
    requires_credential: bool = False
    credential_placeholder: str = ""
    provider_model_name: str | None = None

    @property
    def remote_name(self) -> str:
        """Model name sent to the provider API."""
        return self.provider_model_name or self.id


def credential_fingerprint(credential: str | None) -> str:
    """Short stable digest of a credential, never the credential itself."""
    if not credential:
        return "anonymous"
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


class ProviderConfig(BaseModel):
    """One resolved, ready-to-call provider instance key."""

    model_config = ConfigDict(frozen=True)

    model_id: str
    credential: str | None = Field(default=None, repr=False, exclude=True)

    @property
    def fingerprint(self) -> str:
        return credential_fingerprint(self.credential)

    @property
    def cache_key(self) -> tuple[str, str]:
        return (self.model_id, self.fingerprint)


class GenerationOptions(BaseModel):
    """Per-call generation parameters. ``None`` means adapter default."""

    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    expect_structured: bool = True


class StructuredResult(BaseModel):
    """Provider output that parsed into the expected JSON shape."""

    kind: Literal["structured"] = "structured"
    data: dict[str, Any] | list[Any]
    text: str = ""


class RawResult(BaseModel):
    """Provider output that could not be parsed; carries the cleaned text."""

    kind: Literal["raw"] = "raw"
    text: str


GenerationResult = Annotated[
    Union[StructuredResult, RawResult], Field(discriminator="kind")
]


@dataclass
class AdapterOutput:
    """What an adapter returns before structured parsing."""

    text: str
    usage: dict[str, int] | None = None


@dataclass
class AttemptRecord:
    """One model tried during a gateway call."""

    model_id: str
    error: str | None = None


@dataclass
class GenerationOutcome:
    """Successful gateway call: the result plus which model produced it."""

    result: StructuredResult | RawResult
    model_id: str
    action: str
    attempts: list[AttemptRecord] = field(default_factory=list)
    usage: dict[str, int] | None = None

    @property
    def is_structured(self) -> bool:
        return isinstance(self.result, StructuredResult)

    @property
    def used_fallback(self) -> bool:
        return len(self.attempts) > 1


class GatewayRequest(BaseModel):
    """Transport-independent generation invocation."""

    model_config = ConfigDict(populate_by_name=True)

    action: str
    model_id: str = Field(..., alias="modelId")
    credential: str | None = Field(default=None, alias="apiKey", repr=False)
    prompt_template: str = Field(..., alias="promptTemplate")
    dynamic_variables: dict[str, Any] = Field(
        default_factory=dict, alias="dynamicVariables"
    )
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class GatewayResponse(BaseModel):
    """Response envelope: ``{success, result?, message?, details?}``."""

    success: bool
    result: Any | None = None
    message: str | None = None
    details: str | None = None
