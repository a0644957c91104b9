"""Route generation requests to the configured provider adapter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol, Sequence

from .providers import ProviderError, StreamResponse
from .records import AIModel, PromptMessage, PromptRecord

LOGGER = logging.getLogger(__name__)

PROVIDERS = ("local", "openai", "openrouter")
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048


class UnknownProviderError(RuntimeError):
    """Raised when a request names a provider that has no adapter."""


class ProviderAdapter(Protocol):
    name: str
    supported_parameters: FrozenSet[str]

    async def fetch_models(self) -> List[AIModel]:
        ...

    async def generate(self, messages: Sequence[PromptMessage], model_id: str, **params: Any) -> StreamResponse:
        ...

    async def aclose(self) -> None:
        ...


@dataclass(frozen=True)
class GenerationParams:
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repetition_penalty: Optional[float] = None
    min_p: Optional[float] = None

    @classmethod
    def from_prompt(cls, prompt: Optional[PromptRecord]) -> "GenerationParams":
        if prompt is None:
            return cls()
        return cls(
            temperature=prompt.temperature if prompt.temperature is not None else DEFAULT_TEMPERATURE,
            max_tokens=prompt.max_tokens or DEFAULT_MAX_TOKENS,
            top_p=prompt.top_p or None,
            top_k=prompt.top_k or None,
            repetition_penalty=prompt.repetition_penalty or None,
            min_p=prompt.min_p or None,
        )

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "GenerationParams":
        """Apply caller overrides; ``None`` leaves a value untouched."""

        if not overrides:
            return self
        known = {item.name for item in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown generation parameters: {', '.join(sorted(unknown))}")
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})

    def as_kwargs(self) -> Dict[str, Any]:
        """Parameters that are actually set; 0 and ``None`` mean "not set"."""

        values: Dict[str, Any] = {"temperature": self.temperature, "max_tokens": self.max_tokens}
        for key in ("top_p", "top_k", "repetition_penalty", "min_p"):
            value = getattr(self, key)
            if value:
                values[key] = value
        return values


class GenerationDispatcher:
    """Pick the adapter for a provider name and forward the request to it."""

    def __init__(self, providers: Mapping[str, ProviderAdapter]):
        self.providers = dict(providers)

    def adapter(self, provider: str) -> ProviderAdapter:
        if provider not in PROVIDERS:
            raise UnknownProviderError(f"Unknown AI provider: {provider!r}")
        adapter = self.providers.get(provider)
        if adapter is None:
            raise ProviderError(f"The {provider} provider is not configured", provider=provider)
        return adapter

    def unsupported_parameters(self, provider: str, params: GenerationParams) -> List[str]:
        supported = self.adapter(provider).supported_parameters
        return sorted(key for key in params.as_kwargs() if key not in supported)

    async def generate(
        self,
        provider: str,
        messages: Sequence[PromptMessage],
        model_id: str,
        params: Optional[GenerationParams] = None,
    ) -> StreamResponse:
        adapter = self.adapter(provider)
        params = params or GenerationParams()

        unsupported = self.unsupported_parameters(provider, params)
        if unsupported:
            LOGGER.warning(
                "Provider %s ignores sampling parameters: %s", provider, ", ".join(unsupported)
            )
        kwargs = {key: value for key, value in params.as_kwargs().items() if key in adapter.supported_parameters}

        LOGGER.info("Dispatching generation to %s model %s (%d messages)", provider, model_id, len(messages))
        return await adapter.generate(list(messages), model_id, **kwargs)

    async def available_models(self, provider: str) -> List[AIModel]:
        return await self.adapter(provider).fetch_models()

    async def aclose(self) -> None:
        for adapter in self.providers.values():
            try:
                await adapter.aclose()
            except Exception as exc:
                LOGGER.warning("Error closing %s provider: %s", adapter.name, exc)
