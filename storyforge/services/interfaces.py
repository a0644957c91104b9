"""Capabilities the prompt pipeline consumes from the persistence layer."""

from __future__ import annotations

from typing import List, Optional, Protocol

from .records import (
    ChapterOutline,
    ChapterRecord,
    LorebookEntryRecord,
    LorebookScope,
    PromptRecord,
)


class ChapterStore(Protocol):
    """Read access to stories and their chapters."""

    async def get_chapters_by_story(self, story_id: str) -> List[ChapterRecord]:
        ...

    async def get_chapter_by_id(self, chapter_id: str) -> Optional[ChapterRecord]:
        ...

    async def get_previous_chapter(self, chapter_id: str) -> Optional[ChapterRecord]:
        ...

    async def get_chapter_outline(self, chapter_id: str) -> Optional[ChapterOutline]:
        ...


class LorebookStore(Protocol):
    """Read access to lorebook entries."""

    async def get_entries(self, scope: LorebookScope) -> List[LorebookEntryRecord]:
        """Entries stored at exactly ``scope``, disabled ones included."""
        ...

    async def get_entries_for_story(self, story_id: str) -> List[LorebookEntryRecord]:
        """Global, series and story entries visible from ``story_id``."""
        ...


class PromptCatalog(Protocol):
    async def get_prompt_by_id(self, prompt_id: str) -> Optional[PromptRecord]:
        ...
