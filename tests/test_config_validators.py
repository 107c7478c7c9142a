# tests/test_config_validators.py

import config
import pytest
from config import StoryLoomSettings, load_model_catalog
from models.gateway_models import ProviderFamily


def test_negative_parallel_cap_raises():
    with pytest.raises(ValueError):
        StoryLoomSettings(MAX_PARALLEL_CHAPTERS=-1)


def test_unknown_embedding_backend_raises():
    with pytest.raises(ValueError):
        StoryLoomSettings(EMBEDDING_BACKEND="word2vec")


def test_zero_parallel_cap_is_unbounded_and_valid():
    assert StoryLoomSettings(MAX_PARALLEL_CHAPTERS=0).MAX_PARALLEL_CHAPTERS == 0


def test_default_catalog_contents():
    descriptors, chains = load_model_catalog()
    assert len(descriptors) == 10
    assert descriptors["default-model"].family is ProviderFamily.LOCAL
    assert not descriptors["default-model"].requires_credential
    assert descriptors["claude-3-opus"].remote_name == "claude-3-opus-20240229"
    assert descriptors["gpt-4o"].remote_name == "gpt-4o"
    assert chains == {
        "gemini-1.5-pro": ["gemini-1.5-flash"],
        "gpt-4o": ["gpt-4-turbo"],
        "claude-3-opus": ["claude-3-sonnet"],
    }


def test_catalog_file_overrides_models_and_chains(tmp_path):
    catalog = tmp_path / "models.yaml"
    catalog.write_text(
        "models:\n"
        "  - id: house-model\n"
        "    name: House\n"
        "    family: openai_compatible\n"
        "    provider_model_name: mistral:7b\n"
        "fallback_chains:\n"
        "  house-model: [default-model]\n",
        encoding="utf-8",
    )
    descriptors, chains = load_model_catalog(str(catalog))
    assert list(descriptors) == ["house-model"]
    assert descriptors["house-model"].remote_name == "mistral:7b"
    assert chains == {"house-model": ["default-model"]}


def test_catalog_file_with_only_chains_keeps_default_models(tmp_path):
    catalog = tmp_path / "chains.yaml"
    catalog.write_text("fallback_chains:\n  gpt-4o: []\n", encoding="utf-8")
    descriptors, chains = load_model_catalog(str(catalog))
    assert "default-model" in descriptors
    assert chains == {"gpt-4o": []}


def test_missing_catalog_file_warns_and_uses_defaults(monkeypatch, tmp_path):
    warnings: list[str] = []

    def fake_warning(msg: str, **_kw: object) -> None:
        warnings.append(msg)

    monkeypatch.setattr(config.logger, "warning", fake_warning)
    descriptors, _ = load_model_catalog(str(tmp_path / "absent.yaml"))
    assert "default-model" in descriptors
    assert any("not found" in msg for msg in warnings)


def test_invalid_yaml_logs_error(monkeypatch, tmp_path):
    errors: list[str] = []
    monkeypatch.setattr(config.logger, "error", lambda msg, **_kw: errors.append(msg))
    catalog = tmp_path / "bad.yaml"
    catalog.write_text("models: [unclosed\n", encoding="utf-8")
    descriptors, _ = load_model_catalog(str(catalog))
    assert len(descriptors) == 10
    assert errors
