"""Resolvers that read chapter text, summaries and point of view."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from ..documents import extract_plain_text
from ..interfaces import ChapterStore
from ..prompt_context import PromptContext
from ..records import POV_THIRD_OMNISCIENT, ChapterRecord
from . import ResolutionError

LOGGER = logging.getLogger(__name__)

DEFAULT_PREVIOUS_WORDS = 1000
CONTINUATION_MARKER = "\n\n[...]\n\n"
NO_OUTLINE_MESSAGE = "No chapter outline is available for this prompt."

_NEWLINE = "§NEWLINE§"


def join_summaries(chapters: Iterable[ChapterRecord]) -> str:
    """Non-empty summaries in chapter order, separated by blank lines."""

    ordered = sorted(chapters, key=lambda chapter: chapter.order)
    return "\n\n".join(chapter.summary for chapter in ordered if chapter.summary)


def pov_matches(pov_type: Optional[str], pov_character: Optional[str], chapter: ChapterRecord) -> bool:
    if pov_type == POV_THIRD_OMNISCIENT and chapter.pov_type == POV_THIRD_OMNISCIENT:
        return True
    return pov_type == chapter.pov_type and pov_character == chapter.pov_character


def last_words(text: str, count: int) -> Tuple[str, int]:
    """Return the last ``count`` words of ``text`` and its total word count.

    Newlines survive the cut: they are swapped for a sentinel token before
    splitting and restored afterwards, and never count as words.
    """

    tokens = text.replace("\n", f" {_NEWLINE} ").split()
    total = sum(1 for token in tokens if token != _NEWLINE)
    if count <= 0:
        return "", total

    kept: List[str] = []
    words = 0
    for token in reversed(tokens):
        if token != _NEWLINE:
            if words == count:
                break
            words += 1
        kept.append(token)
    kept.reverse()
    while kept and kept[0] == _NEWLINE:
        kept.pop(0)
    return _join_tokens(kept), total


def _join_tokens(tokens: List[str]) -> str:
    parts: List[str] = []
    for token in tokens:
        if token == _NEWLINE:
            parts.append("\n")
            continue
        if parts and not parts[-1].endswith("\n"):
            parts.append(" ")
        parts.append(token)
    return "".join(parts)


class ChapterSummariesResolver:
    """Summaries of the chapters before the current one, or of all chapters."""

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        if not context.chapters:
            return ""
        chapters: Iterable[ChapterRecord] = context.chapters
        if context.current_chapter is not None:
            current_order = context.current_chapter.order
            chapters = [chapter for chapter in chapters if chapter.order < current_order]
        return join_summaries(chapters)


class PreviousWordsResolver:
    """The text just before the generation point, topped up from the previous chapter.

    ``arg`` is the word budget (default 1000). When the current chapter holds
    fewer words than that, trailing words of the preceding chapter are
    prepended, but only if both chapters are told from the same point of view.
    """

    def __init__(self, chapters: ChapterStore):
        self.chapters = chapters

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        requested = _word_budget(arg)
        buffer = context.previous_words or ""
        text, word_count = last_words(buffer, requested)
        if word_count <= requested:
            text = buffer

        if word_count >= requested or context.current_chapter is None:
            return text
        return await self._augment(context, text, requested - word_count)

    async def _augment(self, context: PromptContext, text: str, words_needed: int) -> str:
        current = context.current_chapter
        try:
            previous = await self.chapters.get_previous_chapter(current.id)
        except Exception as exc:
            LOGGER.warning("Could not fetch the chapter before %s: %s", current.id, exc)
            return text

        if previous is None:
            LOGGER.debug("No chapter precedes %s", current.id)
            return text
        if not pov_matches(context.pov_type, context.pov_character, previous):
            LOGGER.info("Chapter %s uses a different point of view; not borrowing its words", previous.id)
            return text

        previous_text, _ = last_words(extract_plain_text(previous.content), words_needed)
        if not previous_text:
            return text

        LOGGER.info("Added up to %d words from chapter %s to the context", words_needed, previous.id)
        if not text:
            return previous_text
        return previous_text + CONTINUATION_MARKER + text


def _word_budget(arg: Optional[str]) -> int:
    if arg is None or not arg.strip():
        return DEFAULT_PREVIOUS_WORDS
    try:
        value = int(arg.strip())
    except ValueError as exc:
        raise ResolutionError(f"previous_words expects a word count, got '{arg}'.") from exc
    if value <= 0:
        raise ResolutionError("previous_words needs a positive word count.")
    return value


class ChapterContentResolver:
    """Plain text of the current chapter, extracted upstream by the caller."""

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        content = context.additional_context.plain_text_content
        if content:
            return content
        if context.current_chapter is not None:
            LOGGER.warning("No plain text content supplied for chapter %s", context.current_chapter.id)
        return ""


class ChapterOutlineResolver:
    def __init__(self, chapters: ChapterStore):
        self.chapters = chapters

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        if context.current_chapter is None:
            return NO_OUTLINE_MESSAGE
        outline = await self.chapters.get_chapter_outline(context.current_chapter.id)
        if outline is None or not outline.content:
            return NO_OUTLINE_MESSAGE
        return outline.content


class ScenebeatResolver:
    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        return (context.scenebeat or "").strip()


class PovResolver:
    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        if context.pov_character and context.pov_type != POV_THIRD_OMNISCIENT:
            return f"{context.pov_type} ({context.pov_character})"
        return context.pov_type


class SelectedTextResolver:
    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        return context.additional_context.selected_text or ""
