"""Resolvers used by the brainstorming chat prompts."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from ..documents import extract_plain_text
from ..interfaces import ChapterStore
from ..prompt_context import ALL_CHAPTERS, PromptContext
from .chapters import join_summaries
from .lorebook import LorebookFormatter, enabled_entries

LOGGER = logging.getLogger(__name__)

NO_HISTORY_MESSAGE = "No previous conversation history."
NO_INPUT_MESSAGE = "No specific question or topic provided."
NO_CONTEXT_MESSAGE = (
    "No story context is available for this query. "
    "Feel free to ask about anything related to writing or storytelling in general."
)
SUMMARIES_HEADER = "Story Chapter Summaries:"
CHAPTER_CONTENT_HEADER = "Full Chapter Content:"
WORLD_HEADER = "Story World Information:"


class ChatHistoryResolver:
    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        history = context.additional_context.chat_history
        if not history:
            return NO_HISTORY_MESSAGE
        return "\n\n".join(f"{turn.role.upper()}: {turn.content}" for turn in history)


class UserInputResolver:
    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        text = (context.scenebeat or "").strip()
        return text or NO_INPUT_MESSAGE


class BrainstormContextResolver:
    """Story background for a brainstorming question.

    With ``include_full_context`` every chapter summary and every enabled
    lorebook entry is sent. Otherwise the caller picks summaries, full chapter
    texts and lorebook entries separately; chapters whose document cannot be
    loaded are skipped.
    """

    def __init__(self, chapters: ChapterStore, formatter: LorebookFormatter):
        self.chapters = chapters
        self.formatter = formatter

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        if context.additional_context.include_full_context:
            return self._full_context(context)

        summaries = await self._selected_summaries(context)
        chapter_content = await self._selected_chapter_content(context)
        lorebook = self._selected_lorebook_entries(context)

        sections = [
            (SUMMARIES_HEADER, summaries),
            (CHAPTER_CONTENT_HEADER, chapter_content),
            (WORLD_HEADER, lorebook),
        ]
        text = _join_sections(sections)
        return text or NO_CONTEXT_MESSAGE

    def _full_context(self, context: PromptContext) -> str:
        entries = enabled_entries(context.lorebook_entries)
        sections = [
            (SUMMARIES_HEADER, join_summaries(context.chapters)),
            (WORLD_HEADER, self.formatter.format_entries(entries, context.lorebook_entries) if entries else ""),
        ]
        return _join_sections(sections)

    async def _selected_summaries(self, context: PromptContext) -> str:
        selection = context.additional_context.selected_summaries
        if selection is ALL_CHAPTERS:
            return join_summaries(context.chapters)
        if not selection:
            return ""

        chapters = await asyncio.gather(*(self.chapters.get_chapter_by_id(chapter_id) for chapter_id in selection))
        return "\n\n".join(chapter.summary for chapter in chapters if chapter is not None and chapter.summary)

    async def _selected_chapter_content(self, context: PromptContext) -> str:
        chapter_ids: Sequence[str] = context.additional_context.selected_chapter_content
        if not chapter_ids:
            return ""
        contents = await asyncio.gather(*(self._chapter_text(chapter_id) for chapter_id in chapter_ids))
        return "\n\n".join(content for content in contents if content)

    async def _chapter_text(self, chapter_id: str) -> str:
        try:
            chapter = await self.chapters.get_chapter_by_id(chapter_id)
            if chapter is None:
                return ""
            text = extract_plain_text(chapter.content)
        except Exception as exc:
            LOGGER.error("Could not load chapter %s for brainstorm context: %s", chapter_id, exc)
            return ""
        if not text:
            return ""
        return f"Chapter {chapter.order} Content:\n{text}"

    def _selected_lorebook_entries(self, context: PromptContext) -> str:
        wanted = set(context.additional_context.selected_items)
        if not wanted:
            return ""
        entries = [entry for entry in enabled_entries(context.lorebook_entries) if entry.id in wanted]
        if not entries:
            return ""
        return self.formatter.format_entries(entries, context.lorebook_entries)


def _join_sections(sections) -> str:
    return "\n\n".join(f"{header}\n{body}" for header, body in sections if body)
