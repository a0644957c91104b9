"""Service layer for prompt assembly and AI generation."""

from __future__ import annotations

from .generation import GenerationDispatcher, GenerationParams, UnknownProviderError  # noqa: F401
from .prompt_context import ContextBuildError, ContextBuilder, ParsedPrompt, PromptParserConfig  # noqa: F401
from .prompt_parser import PromptParseError, PromptParser  # noqa: F401
from .providers import ProviderError, StreamResponse  # noqa: F401
from .resolvers import ResolutionError, default_registry  # noqa: F401
from .streaming import Complete, Failed, StreamError, Token, TokenStream  # noqa: F401

__all__ = [
    "Complete",
    "ContextBuildError",
    "ContextBuilder",
    "Failed",
    "GenerationDispatcher",
    "GenerationParams",
    "ParsedPrompt",
    "PromptParseError",
    "PromptParser",
    "PromptParserConfig",
    "ProviderError",
    "ResolutionError",
    "StreamError",
    "StreamResponse",
    "Token",
    "TokenStream",
    "UnknownProviderError",
    "default_registry",
]
