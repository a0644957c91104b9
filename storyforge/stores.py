"""SQLAlchemy-backed implementations of the prompt pipeline's stores.

Queries run on the database session of the active application context. The
methods are coroutines so the pipeline can treat every store the same way;
they do not yield to the loop while the query runs.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import or_

from .extensions import db
from .models import Chapter, LorebookEntry, Prompt, Story
from .services.documents import count_words, extract_plain_text
from .services.records import (
    AllowedModel,
    ChapterOutline,
    ChapterRecord,
    LorebookEntryRecord,
    LorebookScope,
    PromptMessage,
    PromptRecord,
)

LOGGER = logging.getLogger(__name__)


def chapter_to_record(chapter: Chapter) -> ChapterRecord:
    return ChapterRecord(
        id=chapter.id,
        story_id=chapter.story_id,
        title=chapter.title,
        order=chapter.order,
        summary=chapter.summary or "",
        content=chapter.content or "",
        outline=_outline(chapter.outline),
        word_count=chapter.word_count or count_words(extract_plain_text(chapter.content)),
        pov_type=chapter.pov_type,
        pov_character=chapter.pov_character,
    )


def _outline(value) -> Optional[ChapterOutline]:
    if not value:
        return None
    if isinstance(value, dict):
        content = value.get("content")
        return ChapterOutline(content=content) if content else None
    return ChapterOutline(content=str(value))


def entry_to_record(entry: LorebookEntry) -> LorebookEntryRecord:
    return LorebookEntryRecord(
        id=entry.id,
        name=entry.name,
        category=entry.category,
        description=entry.description or "",
        tags=tuple(entry.tags or ()),
        metadata=dict(entry.entry_metadata or {}),
        level=entry.level,
        scope_id=entry.scope_id,
        is_disabled=bool(entry.is_disabled),
    )


def prompt_to_record(prompt: Prompt) -> PromptRecord:
    messages = tuple(
        PromptMessage(role=str(message.get("role", "")), content=str(message.get("content", "")))
        for message in prompt.messages or ()
    )
    allowed = tuple(
        AllowedModel(id=str(model["id"]), provider=str(model.get("provider", "")), name=str(model.get("name") or model["id"]))
        for model in prompt.allowed_models or ()
        if model.get("id")
    )
    return PromptRecord(
        id=prompt.id,
        name=prompt.name,
        prompt_type=prompt.prompt_type,
        messages=messages,
        allowed_models=allowed,
        temperature=prompt.temperature,
        max_tokens=prompt.max_tokens,
        top_p=prompt.top_p,
        top_k=prompt.top_k,
        repetition_penalty=prompt.repetition_penalty,
        min_p=prompt.min_p,
    )


class SqlChapterStore:
    async def get_chapters_by_story(self, story_id: str) -> List[ChapterRecord]:
        chapters = Chapter.query.filter_by(story_id=story_id).order_by(Chapter.order).all()
        return [chapter_to_record(chapter) for chapter in chapters]

    async def get_chapter_by_id(self, chapter_id: str) -> Optional[ChapterRecord]:
        chapter = db.session.get(Chapter, chapter_id)
        return chapter_to_record(chapter) if chapter is not None else None

    async def get_previous_chapter(self, chapter_id: str) -> Optional[ChapterRecord]:
        chapter = db.session.get(Chapter, chapter_id)
        if chapter is None:
            return None
        previous = (
            Chapter.query.filter(Chapter.story_id == chapter.story_id, Chapter.order < chapter.order)
            .order_by(Chapter.order.desc())
            .first()
        )
        return chapter_to_record(previous) if previous is not None else None

    async def get_chapter_outline(self, chapter_id: str) -> Optional[ChapterOutline]:
        chapter = db.session.get(Chapter, chapter_id)
        if chapter is None:
            return None
        return _outline(chapter.outline)


class SqlLorebookStore:
    async def get_entries(self, scope: LorebookScope) -> List[LorebookEntryRecord]:
        query = LorebookEntry.query.filter_by(level=scope.level)
        if scope.scope_id is not None:
            query = query.filter_by(scope_id=scope.scope_id)
        return [entry_to_record(entry) for entry in query.order_by(LorebookEntry.name).all()]

    async def get_entries_for_story(self, story_id: str) -> List[LorebookEntryRecord]:
        story = db.session.get(Story, story_id)
        if story is None:
            LOGGER.warning("Lorebook requested for unknown story %s", story_id)
            return []

        scopes = [
            LorebookEntry.level == "global",
            (LorebookEntry.level == "story") & (LorebookEntry.scope_id == story.id),
        ]
        if story.series_id:
            scopes.append((LorebookEntry.level == "series") & (LorebookEntry.scope_id == story.series_id))

        entries = LorebookEntry.query.filter(or_(*scopes)).order_by(LorebookEntry.name).all()
        return [entry_to_record(entry) for entry in entries]


class SqlPromptCatalog:
    async def get_prompt_by_id(self, prompt_id: str) -> Optional[PromptRecord]:
        prompt = db.session.get(Prompt, prompt_id)
        return prompt_to_record(prompt) if prompt is not None else None
