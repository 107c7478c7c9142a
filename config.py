# config.py
"""Configuration settings for the StoryLoom generation core.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from models.gateway_models import ModelDescriptor, ProviderFamily

load_dotenv()

logger = structlog.get_logger()


class StoryLoomSettings(BaseSettings):
    """Full configuration for the StoryLoom system."""

    # Provider endpoints
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    ANTHROPIC_API_BASE: str = "https://api.anthropic.com/v1"
    ANTHROPIC_API_VERSION: str = "2023-06-01"
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    LOCAL_LLM_API_BASE: str = "http://127.0.0.1:8080/v1"
    OLLAMA_EMBED_URL: str = "http://127.0.0.1:11434"

    # Default credentials (a per-call credential always wins)
    OPENAI_API_KEY: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    GEMINI_API_KEY: str | None = None

    # Adapter call settings
    HTTPX_TIMEOUT: float = 600.0
    LLM_RETRY_ATTEMPTS: int = 3
    LLM_RETRY_DELAY_SECONDS: float = 3.0
    TEMPERATURE_DEFAULT: float = 0.9
    LLM_TOP_P: float = 1.0
    MAX_GENERATION_TOKENS: int = 8000
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10

    # Model catalogue override (YAML with `models` and/or `fallback_chains`)
    MODEL_CATALOG_FILE: str | None = None
    DEFAULT_MODEL_ID: str = "default-model"

    # Embeddings and retrieval
    EMBEDDING_BACKEND: str = "hashing"
    EMBEDDING_MODEL: str = "nomic-embed-text:latest"
    EXPECTED_EMBEDDING_DIM: int = 768
    EMBEDDING_DTYPE: str = "float32"
    EMBEDDING_CACHE_SIZE: int = 128
    MEMORY_RETRIEVAL_LIMIT: int = 3
    MEMORY_CONTEXT_MAX_TOKENS: int = 4096
    AUTHOR_STYLE_EXAMPLE_COUNT: int = 5
    AUTHOR_STYLE_EXAMPLE_MAX_CHARS: int = 600

    # Workflow
    MIN_SOURCE_WORD_COUNT: int = 100
    SOURCE_PREVIEW_CHARS: int = 12000
    MAX_PARALLEL_CHAPTERS: int = 4
    SEQUENTIAL_CHAPTER_DELAY_SECONDS: float = 0.0
    AUTOSAVE_INTERVAL_SECONDS: float = 30.0
    SUMMARIZE_CHAPTERS_WITH_MODEL: bool = True

    # Output
    BASE_OUTPUT_DIR: str = "storyloom_output"
    PROJECTS_DIR: str = "projects"
    MEMORY_DIR: str = "memory"
    EXPORTS_DIR: str = "exports"

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="STORYLOOM_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = None
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def check_parallel_cap(self) -> StoryLoomSettings:
        if self.MAX_PARALLEL_CHAPTERS < 0:
            raise ValueError("MAX_PARALLEL_CHAPTERS must be >= 0 (0 means unbounded)")
        if self.EMBEDDING_BACKEND not in ("hashing", "ollama"):
            raise ValueError(
                f"Unsupported EMBEDDING_BACKEND '{self.EMBEDDING_BACKEND}'"
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = StoryLoomSettings()


# --- Model catalogue (reference data, loaded at startup) ---
_DEFAULT_DESCRIPTORS: list[ModelDescriptor] = [
    ModelDescriptor(
        id="default-model",
        name="Default (balanced)",
        family=ProviderFamily.LOCAL,
        requires_credential=False,
    ),
    ModelDescriptor(
        id="gemini-1.5-flash",
        name="Gemini 1.5 Flash",
        family=ProviderFamily.GEMINI,
        requires_credential=True,
        credential_placeholder="Enter a Gemini API key",
    ),
    ModelDescriptor(
        id="gemini-1.5-pro",
        name="Gemini 1.5 Pro",
        family=ProviderFamily.GEMINI,
        requires_credential=True,
        credential_placeholder="Enter a Gemini API key",
    ),
    ModelDescriptor(
        id="gpt-4o",
        name="GPT-4o",
        family=ProviderFamily.OPENAI,
        requires_credential=True,
        credential_placeholder="Enter an OpenAI API key",
    ),
    ModelDescriptor(
        id="gpt-4-turbo",
        name="GPT-4 Turbo",
        family=ProviderFamily.OPENAI,
        requires_credential=True,
        credential_placeholder="Enter an OpenAI API key",
    ),
    ModelDescriptor(
        id="claude-3-opus",
        name="Claude 3 Opus",
        provider_model_name="claude-3-opus-20240229",
        family=ProviderFamily.ANTHROPIC,
        requires_credential=True,
        credential_placeholder="Enter a Claude API key",
    ),
    ModelDescriptor(
        id="claude-3-sonnet",
        name="Claude 3 Sonnet",
        provider_model_name="claude-3-sonnet-20240229",
        family=ProviderFamily.ANTHROPIC,
        requires_credential=True,
        credential_placeholder="Enter a Claude API key",
    ),
    ModelDescriptor(
        id="claude-3-haiku",
        name="Claude 3 Haiku",
        provider_model_name="claude-3-haiku-20240307",
        family=ProviderFamily.ANTHROPIC,
        requires_credential=True,
        credential_placeholder="Enter a Claude API key",
    ),
    ModelDescriptor(
        id="llama-3-8b",
        name="Llama 3 (8B)",
        provider_model_name="llama3:8b",
        family=ProviderFamily.OPENAI_COMPATIBLE,
        requires_credential=False,
    ),
    ModelDescriptor(
        id="llama-3-70b",
        name="Llama 3 (70B)",
        provider_model_name="llama3:70b",
        family=ProviderFamily.OPENAI_COMPATIBLE,
        requires_credential=False,
    ),
]

_DEFAULT_FALLBACK_CHAINS: dict[str, list[str]] = {
    "gemini-1.5-pro": ["gemini-1.5-flash"],
    "gpt-4o": ["gpt-4-turbo"],
    "claude-3-opus": ["claude-3-sonnet"],
}


def _load_catalog_file(file_path: str) -> dict[str, Any]:
    """Load a YAML model catalogue. Returns an empty dict when unusable."""
    try:
        with open(file_path, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning("Model catalogue file not found. Using defaults.", file_path=file_path)
        return {}
    except yaml.YAMLError:
        logger.error(
            "Error parsing model catalogue YAML. Using defaults.",
            file_path=file_path,
            exc_info=True,
        )
        return {}
    if not isinstance(content, dict):
        logger.warning(
            "Model catalogue root is not a mapping. Using defaults.",
            file_path=file_path,
        )
        return {}
    return content


def load_model_catalog(
    file_path: str | None = None,
) -> tuple[dict[str, ModelDescriptor], dict[str, list[str]]]:
    """Return the model descriptors and fallback chains in effect."""
    descriptors = {d.id: d for d in _DEFAULT_DESCRIPTORS}
    chains = {k: list(v) for k, v in _DEFAULT_FALLBACK_CHAINS.items()}
    if not file_path:
        return descriptors, chains

    content = _load_catalog_file(file_path)
    raw_models = content.get("models")
    if isinstance(raw_models, list):
        descriptors = {}
        for item in raw_models:
            descriptor = ModelDescriptor.model_validate(item)
            descriptors[descriptor.id] = descriptor
    raw_chains = content.get("fallback_chains")
    if isinstance(raw_chains, dict):
        chains = {str(k): [str(m) for m in (v or [])] for k, v in raw_chains.items()}
    logger.info(
        "Loaded model catalogue",
        file_path=file_path,
        models=len(descriptors),
        chains=len(chains),
    )
    return descriptors, chains


MODEL_DESCRIPTORS, FALLBACK_CHAINS = load_model_catalog(settings.MODEL_CATALOG_FILE)

PROJECTS_DIR = os.path.join(settings.BASE_OUTPUT_DIR, settings.PROJECTS_DIR)
MEMORY_DIR = os.path.join(settings.BASE_OUTPUT_DIR, settings.MEMORY_DIR)
EXPORTS_DIR = os.path.join(settings.BASE_OUTPUT_DIR, settings.EXPORTS_DIR)
