"""Prompt parser inputs and the per-parse context snapshot."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .interfaces import ChapterStore, LorebookStore
from .records import (
    DEFAULT_POV_TYPE,
    ChapterRecord,
    LorebookEntryRecord,
    PromptMessage,
)

LOGGER = logging.getLogger(__name__)


class ContextBuildError(RuntimeError):
    """Raised when story data needed for a prompt cannot be fetched."""


class _AllChapters:
    """Marker for "every chapter in the story" in a summary selection."""

    _instance: Optional["_AllChapters"] = None

    def __new__(cls) -> "_AllChapters":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL_CHAPTERS"


ALL_CHAPTERS = _AllChapters()
SummarySelection = Union[_AllChapters, Tuple[str, ...]]


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str


# camelCase keys sent by the editor UI mapped to field names.
_ADDITIONAL_CONTEXT_KEYS = {
    "includeFullContext": "include_full_context",
    "include_full_context": "include_full_context",
    "selectedSummaries": "selected_summaries",
    "selected_summaries": "selected_summaries",
    "selectedChapterContent": "selected_chapter_content",
    "selected_chapter_content": "selected_chapter_content",
    "selectedItems": "selected_items",
    "selected_items": "selected_items",
    "chatHistory": "chat_history",
    "chat_history": "chat_history",
    "plainTextContent": "plain_text_content",
    "plain_text_content": "plain_text_content",
    "selectedText": "selected_text",
    "selected_text": "selected_text",
    "extensions": "extensions",
}


@dataclass(frozen=True)
class AdditionalContext:
    """Caller-supplied extras for a single parse.

    Every known use has its own field. Anything else must be placed under
    ``extensions`` explicitly; :meth:`from_mapping` rejects stray keys.
    """

    include_full_context: bool = False
    selected_summaries: SummarySelection = ()
    selected_chapter_content: Tuple[str, ...] = ()
    selected_items: Tuple[str, ...] = ()
    chat_history: Tuple[ChatTurn, ...] = ()
    plain_text_content: Optional[str] = None
    selected_text: Optional[str] = None
    extensions: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "AdditionalContext":
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("additionalContext must be an object.")

        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _ADDITIONAL_CONTEXT_KEYS.get(key)
            if name is None:
                raise ValueError(
                    f"Unknown additionalContext key '{key}'. Put custom values under 'extensions'."
                )
            values[name] = value

        extensions = values.get("extensions") or {}
        if not isinstance(extensions, Mapping):
            raise ValueError("additionalContext.extensions must be an object.")

        return cls(
            include_full_context=values.get("include_full_context") is True,
            selected_summaries=_summary_selection(values.get("selected_summaries")),
            selected_chapter_content=_id_list(values.get("selected_chapter_content"), "selectedChapterContent"),
            selected_items=_id_list(values.get("selected_items"), "selectedItems"),
            chat_history=_chat_history(values.get("chat_history")),
            plain_text_content=_optional_text(values.get("plain_text_content")),
            selected_text=_optional_text(values.get("selected_text")),
            extensions=dict(extensions),
        )


def _id_list(value: Any, label: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ValueError(f"{label} must be a list of ids.")
    return tuple(str(item) for item in value if item)


def _summary_selection(value: Any) -> SummarySelection:
    ids = _id_list(value, "selectedSummaries")
    # "all" wins over any explicit ids listed next to it.
    if "all" in ids:
        return ALL_CHAPTERS
    return ids


def _chat_history(value: Any) -> Tuple[ChatTurn, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ValueError("chatHistory must be a list of messages.")
    turns = []
    for item in value:
        if isinstance(item, ChatTurn):
            turns.append(item)
            continue
        if not isinstance(item, Mapping):
            raise ValueError("chatHistory entries must be objects with role and content.")
        turns.append(ChatTurn(role=str(item.get("role") or "user"), content=str(item.get("content") or "")))
    return tuple(turns)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class SceneBeatContextSelection:
    """Which lorebook sources a scene beat wants in its context."""

    use_matched_chapter: bool = True
    use_matched_scene_beat: bool = False
    use_custom_context: bool = False
    custom_context_items: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> Optional["SceneBeatContextSelection"]:
        if data is None:
            return None
        if not isinstance(data, Mapping):
            raise ValueError("sceneBeatContext must be an object.")
        return cls(
            use_matched_chapter=bool(data.get("useMatchedChapter", True)),
            use_matched_scene_beat=bool(data.get("useMatchedSceneBeat", False)),
            use_custom_context=bool(data.get("useCustomContext", False)),
            custom_context_items=_id_list(data.get("customContextItems"), "customContextItems"),
        )


EntryMap = Mapping[str, LorebookEntryRecord]


@dataclass(frozen=True)
class PromptParserConfig:
    """What the caller wants parsed. Never modified by the pipeline."""

    story_id: str
    prompt_id: Optional[str] = None
    chapter_id: Optional[str] = None
    scenebeat: Optional[str] = None
    previous_words: Optional[str] = None
    pov_type: Optional[str] = None
    pov_character: Optional[str] = None
    matched_entries: EntryMap = field(default_factory=dict)
    chapter_matched_entries: EntryMap = field(default_factory=dict)
    scene_beat_matched_entries: EntryMap = field(default_factory=dict)
    scene_beat_context: Optional[SceneBeatContextSelection] = None
    additional_context: AdditionalContext = field(default_factory=AdditionalContext)


@dataclass(frozen=True)
class PromptContext:
    """Snapshot the resolvers read from; built fresh for every parse."""

    story_id: str
    chapters: Tuple[ChapterRecord, ...]
    current_chapter: Optional[ChapterRecord]
    lorebook_entries: Tuple[LorebookEntryRecord, ...]
    pov_type: str
    pov_character: Optional[str]
    prompt_id: Optional[str] = None
    chapter_id: Optional[str] = None
    scenebeat: Optional[str] = None
    previous_words: Optional[str] = None
    matched_entries: EntryMap = field(default_factory=dict)
    chapter_matched_entries: EntryMap = field(default_factory=dict)
    scene_beat_matched_entries: EntryMap = field(default_factory=dict)
    scene_beat_context: Optional[SceneBeatContextSelection] = None
    additional_context: AdditionalContext = field(default_factory=AdditionalContext)


@dataclass(frozen=True)
class ParsedPrompt:
    messages: List[PromptMessage]
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.messages and not self.error:
            raise ValueError("A parsed prompt needs either messages or an error.")

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.messages)

    @classmethod
    def failure(cls, error: str) -> "ParsedPrompt":
        return cls(messages=[], error=error)


class ContextBuilder:
    """Merge a parser config with freshly fetched story data."""

    def __init__(self, chapters: ChapterStore, lorebook: LorebookStore):
        self.chapters = chapters
        self.lorebook = lorebook

    async def build_context(self, config: PromptParserConfig) -> PromptContext:
        try:
            chapters, current_chapter, entries = await asyncio.gather(
                self.chapters.get_chapters_by_story(config.story_id),
                self._current_chapter(config.chapter_id),
                self.lorebook.get_entries_for_story(config.story_id),
            )
        except Exception as exc:
            LOGGER.warning("Unable to build prompt context for story %s: %s", config.story_id, exc)
            raise ContextBuildError(f"Could not load story data: {exc}") from exc

        pov_type = config.pov_type or (current_chapter.pov_type if current_chapter else None) or DEFAULT_POV_TYPE
        pov_character = config.pov_character or (current_chapter.pov_character if current_chapter else None)

        return PromptContext(
            story_id=config.story_id,
            chapters=tuple(chapters or ()),
            current_chapter=current_chapter,
            lorebook_entries=tuple(entries or ()),
            pov_type=pov_type,
            pov_character=pov_character,
            prompt_id=config.prompt_id,
            chapter_id=config.chapter_id,
            scenebeat=config.scenebeat,
            previous_words=config.previous_words,
            matched_entries=config.matched_entries,
            chapter_matched_entries=config.chapter_matched_entries,
            scene_beat_matched_entries=config.scene_beat_matched_entries,
            scene_beat_context=config.scene_beat_context,
            additional_context=config.additional_context,
        )

    async def _current_chapter(self, chapter_id: Optional[str]) -> Optional[ChapterRecord]:
        if not chapter_id:
            return None
        return await self.chapters.get_chapter_by_id(chapter_id)
