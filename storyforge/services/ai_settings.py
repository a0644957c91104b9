"""Persisted AI provider settings and the model catalogue cached with them."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from flask import current_app

from ..extensions import db
from ..models import AISettings
from .generation import PROVIDERS, GenerationDispatcher, UnknownProviderError
from .providers import LocalProvider, OpenAIProvider, OpenRouterProvider, ProviderError
from .records import AIModel

LOGGER = logging.getLogger(__name__)

FALLBACK_LOCAL_MODEL = AIModel(id="local", name="Local Model", provider="local")
KEY_PROVIDERS = {"openai": "openai_key", "openrouter": "openrouter_key"}


class AISettingsError(RuntimeError):
    """Raised when AI settings cannot be read or updated."""


def get_or_create_settings() -> AISettings:
    settings = AISettings.query.order_by(AISettings.created_at).first()
    if settings is None:
        settings = AISettings(available_models=[])
        db.session.add(settings)
        db.session.commit()
        LOGGER.info("Created AI settings record %s", settings.id)
    return settings


def _config(config: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return config if config is not None else current_app.config


def local_api_url(settings: AISettings, config: Optional[Mapping[str, Any]] = None) -> str:
    return settings.local_api_url or _config(config).get("LOCAL_API_URL") or ""


def provider_key(settings: AISettings, provider: str, config: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    stored = getattr(settings, KEY_PROVIDERS[provider])
    if stored:
        return stored
    return _config(config).get(f"{provider.upper()}_API_KEY")


def build_dispatcher(settings: AISettings, config: Optional[Mapping[str, Any]] = None) -> GenerationDispatcher:
    """Create provider adapters for one event loop.

    Providers whose API key is missing are left out; dispatching to them
    raises :class:`~storyforge.services.providers.ProviderError`.
    """

    config = _config(config)
    timeout = float(config.get("AI_REQUEST_TIMEOUT") or 120)
    providers: Dict[str, Any] = {"local": LocalProvider(local_api_url(settings, config), timeout=timeout)}

    openai_key = provider_key(settings, "openai", config)
    if openai_key:
        providers["openai"] = OpenAIProvider(openai_key, timeout=timeout)

    openrouter_key = provider_key(settings, "openrouter", config)
    if openrouter_key:
        providers["openrouter"] = OpenRouterProvider(
            openrouter_key,
            base_url=config.get("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1",
            referer=config.get("OPENROUTER_REFERER"),
            title=config.get("OPENROUTER_TITLE"),
            timeout=timeout,
        )
    return GenerationDispatcher(providers)


def cached_models(settings: AISettings, provider: Optional[str] = None) -> List[AIModel]:
    models = [AIModel.from_dict(item) for item in settings.available_models or ()]
    if provider:
        models = [model for model in models if model.provider == provider]
    return models


async def refresh_models(settings: AISettings, provider: str, dispatcher: Optional[GenerationDispatcher] = None) -> List[AIModel]:
    """Fetch ``provider``'s models and replace its part of the cached catalogue."""

    if provider not in PROVIDERS:
        raise UnknownProviderError(f"Unknown AI provider: {provider!r}")

    owns_dispatcher = dispatcher is None
    dispatcher = dispatcher or build_dispatcher(settings)
    try:
        models = await _fetch_models(dispatcher, provider)
    finally:
        if owns_dispatcher:
            await dispatcher.aclose()

    others = [item for item in settings.available_models or () if item.get("provider") != provider]
    settings.available_models = others + [model.to_dict() for model in models]
    settings.last_models_fetch = datetime.utcnow()
    db.session.commit()
    LOGGER.info("Stored %d %s models (%d total)", len(models), provider, len(settings.available_models))
    return models


async def _fetch_models(dispatcher: GenerationDispatcher, provider: str) -> List[AIModel]:
    if provider == "local":
        try:
            models = await dispatcher.available_models("local")
        except ProviderError as exc:
            LOGGER.warning("Falling back to the default local model: %s", exc)
            return [FALLBACK_LOCAL_MODEL]
        return models or [FALLBACK_LOCAL_MODEL]

    if provider not in dispatcher.providers:
        LOGGER.info("No API key for %s; skipping model fetch", provider)
        return []
    return await dispatcher.available_models(provider)


async def update_key(settings: AISettings, provider: str, key: str) -> List[AIModel]:
    if provider not in KEY_PROVIDERS:
        raise AISettingsError(f"Provider {provider!r} does not use an API key")
    setattr(settings, KEY_PROVIDERS[provider], key.strip() or None)
    db.session.commit()
    LOGGER.info("Updated API key for %s", provider)
    return await refresh_models(settings, provider)


async def update_local_api_url(settings: AISettings, url: str) -> List[AIModel]:
    url = url.strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        raise AISettingsError("The local API URL must start with http:// or https://")
    settings.local_api_url = url
    db.session.commit()
    LOGGER.info("Local API URL set to %s", url)
    return await refresh_models(settings, "local")


def _redact(key: Optional[str]) -> Optional[str]:
    if not key:
        return None
    if len(key) <= 8:
        return "****"
    return f"{key[:3]}...{key[-4:]}"


def settings_to_dict(settings: AISettings) -> Dict[str, Any]:
    return {
        "id": settings.id,
        "openai_key": _redact(settings.openai_key),
        "openrouter_key": _redact(settings.openrouter_key),
        "local_api_url": local_api_url(settings),
        "available_models": list(settings.available_models or ()),
        "last_models_fetch": settings.last_models_fetch.isoformat() if settings.last_models_fetch else None,
    }
