"""Unit tests for `ModelRouter` provider selection."""

from __future__ import annotations

import pytest

from src.composer.services.model_router import ModelRouter, ProviderSelection


def test_openai_preferred_for_generation_when_key_present():
    router = ModelRouter(env={"OPENAI_API_KEY": "sk", "COMPOSER_ENABLE_LOCAL_PROVIDER": "1"})
    selection = router.select_provider("generation")
    assert isinstance(selection, ProviderSelection)
    assert selection.name == "openai"
    assert selection.model == "gpt-4o"


def test_classification_uses_classifier_model_override():
    router = ModelRouter(env={"OPENAI_API_KEY": "sk", "OPENAI_CLASSIFIER_MODEL": "gpt-4.1-nano"})
    assert router.select_provider("classification").model == "gpt-4.1-nano"


def test_local_requires_enable_flag():
    assert ModelRouter(env={}).maybe_select_provider("generation") is None
    router = ModelRouter(env={"COMPOSER_ENABLE_LOCAL_PROVIDER": "1", "LOCAL_MODEL": "llama3.2"})
    selection = router.select_provider("generation")
    assert selection.name == "local"
    assert selection.model == "llama3.2"
    assert selection.requires_api_key is False


def test_forced_local_provider_wins():
    router = ModelRouter(
        env={
            "OPENAI_API_KEY": "sk",
            "COMPOSER_MODEL_PROVIDER": "local",
            "COMPOSER_FORCE_MODEL_PROVIDER": "true",
        }
    )
    assert router.select_provider("generation").name == "local"


def test_preferred_provider_only_reorders():
    router = ModelRouter(env={"OPENAI_API_KEY": "sk", "COMPOSER_MODEL_PROVIDER": "local"})
    # local is preferred but not enabled, so openai still answers
    assert router.select_provider("generation").name == "openai"


def test_classification_never_routes_to_local():
    router = ModelRouter(env={"COMPOSER_ENABLE_LOCAL_PROVIDER": "1"})
    with pytest.raises(RuntimeError):
        router.select_provider("classification")
    assert router.maybe_select_provider("classification") is None


def test_allowed_providers_filter():
    router = ModelRouter(env={"OPENAI_API_KEY": "sk"}, allowed_providers=["local"])
    assert router.provider_available("openai") is False
    assert router.provider_available("unknown") is False
