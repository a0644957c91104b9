"""Template variable resolvers and the registry the prompt parser looks them up in."""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional, Protocol

from ..interfaces import ChapterStore
from ..prompt_context import PromptContext
from ..records import LOREBOOK_CATEGORIES


class ResolutionError(RuntimeError):
    """Raised when a template variable cannot be turned into text."""


class VariableResolver(Protocol):
    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        ...


class ResolverRegistry:
    """Name → resolver lookup used by :class:`~storyforge.services.prompt_parser.PromptParser`."""

    def __init__(self, resolvers: Optional[Mapping[str, VariableResolver]] = None):
        self._resolvers: Dict[str, VariableResolver] = dict(resolvers or {})

    def register(self, name: str, resolver: VariableResolver) -> None:
        self._resolvers[name] = resolver

    def get(self, name: str) -> Optional[VariableResolver]:
        return self._resolvers.get(name)

    def names(self) -> Iterator[str]:
        return iter(sorted(self._resolvers))

    def __contains__(self, name: object) -> bool:
        return name in self._resolvers


def default_registry(chapters: ChapterStore) -> ResolverRegistry:
    """Wire every built-in resolver against ``chapters``."""

    from .brainstorm import BrainstormContextResolver, ChatHistoryResolver, UserInputResolver
    from .chapters import (
        ChapterContentResolver,
        ChapterOutlineResolver,
        ChapterSummariesResolver,
        PovResolver,
        PreviousWordsResolver,
        ScenebeatResolver,
        SelectedTextResolver,
    )
    from .lorebook import (
        AllEntriesResolver,
        CategoryResolver,
        CharacterResolver,
        LorebookFormatter,
        MatchedEntriesResolver,
        SceneBeatContextResolver,
    )

    formatter = LorebookFormatter()
    registry = ResolverRegistry(
        {
            "summaries": ChapterSummariesResolver(),
            "previous_words": PreviousWordsResolver(chapters),
            "chapter_content": ChapterContentResolver(),
            "chapter_outline": ChapterOutlineResolver(chapters),
            "scenebeat": ScenebeatResolver(),
            "pov": PovResolver(),
            "selected_text": SelectedTextResolver(),
            "chat_history": ChatHistoryResolver(),
            "user_input": UserInputResolver(),
            "brainstorm_context": BrainstormContextResolver(chapters, formatter),
            "matched_entries_chapter": MatchedEntriesResolver(formatter, source="chapter"),
            "matched_entries_scenebeat": MatchedEntriesResolver(formatter, source="scenebeat"),
            "scenebeat_context": SceneBeatContextResolver(formatter),
            "all_entries": AllEntriesResolver(formatter),
            "character": CharacterResolver(formatter),
        }
    )
    for category in LOREBOOK_CATEGORIES:
        registry.register(_category_variable(category), CategoryResolver(formatter, category))
    return registry


def _category_variable(category: str) -> str:
    plural = {"synopsis": "synopsis"}.get(category, f"{category}s")
    return "all_" + plural.replace(" ", "_")


__all__ = [
    "ResolutionError",
    "ResolverRegistry",
    "VariableResolver",
    "default_registry",
]
