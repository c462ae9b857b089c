"""Routing helpers for selecting the model provider behind a task.

The router does not couple to concrete SDK clients; it returns a provider
configuration that the calling service uses to build the LLM client. This
keeps the selection policy unit-testable without importing SDKs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Set


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router between the hosted and the local model."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "classifier_model_env": "OPENAI_CLASSIFIER_MODEL",
            "default_model": "gpt-4o",
            "default_classifier_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "llama3.1:8b",
            "default_base_url": "http://127.0.0.1:11434",
            "requires_api_key": False,
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        # Post drafting streams from the strongest configured model.
        "generation": ("openai", "local"),
        # Response classification needs structured output, hosted only.
        "classification": ("openai",),
    }

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("COMPOSER_MODEL_PROVIDER") or "").strip().lower()
        force_flag = (self._env.get("COMPOSER_FORCE_MODEL_PROVIDER") or "").strip().lower() in ("1", "true", "yes")
        self._forced_provider = preferred if preferred and force_flag else None
        self._preferred_provider = preferred if preferred else None

    # ------------------------------------------------------------------
    # Provider resolution helpers
    # ------------------------------------------------------------------
    def provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))

        enforced = self._forced_provider == provider
        enabled_flag = (self._env.get("COMPOSER_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        if not (enforced or enabled_flag):
            return False
        base_url_env = cfg.get("base_url_env")
        return bool(base_url_env and self._env.get(str(base_url_env))) or bool(cfg.get("default_base_url"))

    def _resolve_selection(self, provider: str, purpose: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model_env = str(cfg.get("model_env") or "")
        model = self._env.get(model_env) or str(cfg.get("default_model") or "")
        if purpose == "classification" and cfg.get("classifier_model_env"):
            model = self._env.get(str(cfg["classifier_model_env"])) or str(cfg.get("default_classifier_model") or model)
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=cfg.get("api_key_env"),  # type: ignore[arg-type]
            base_url_env=cfg.get("base_url_env"),  # type: ignore[arg-type]
            default_base_url=cfg.get("default_base_url"),  # type: ignore[arg-type]
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no provider configured for the purpose is available.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["generation"]))
        if self._preferred_provider and self._preferred_provider in priority:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        if self._forced_provider and self._forced_provider in priority:
            if self.provider_available(self._forced_provider):
                return self._resolve_selection(self._forced_provider, purpose)
        for provider in priority:
            if self.provider_available(provider):
                return self._resolve_selection(provider, purpose)
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None
