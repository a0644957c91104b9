"""In-memory stand-ins for the stores and providers used across the tests."""

import json
from typing import Dict, Iterable, List, Optional

from storyforge.services.providers import SSE_DONE, StreamResponse, sse_event
from storyforge.services.records import ChapterOutline, ChapterRecord, LorebookEntryRecord, PromptMessage, PromptRecord


def document(*paragraphs: str) -> str:
    """Serialize ``paragraphs`` the way the editor stores chapter content."""

    return json.dumps(
        {
            "root": {
                "type": "root",
                "children": [
                    {"type": "paragraph", "children": [{"type": "text", "text": text}]} for text in paragraphs
                ],
            }
        }
    )


def chapter(chapter_id: str, order: int, *, story_id: str = "story-1", **fields) -> ChapterRecord:
    fields.setdefault("title", f"Chapter {order}")
    return ChapterRecord(id=chapter_id, story_id=story_id, order=order, **fields)


def entry(entry_id: str, name: str, category: str = "character", **fields) -> LorebookEntryRecord:
    return LorebookEntryRecord(id=entry_id, name=name, category=category, **fields)


def prompt(prompt_id: str, *messages, **fields) -> PromptRecord:
    fields.setdefault("name", prompt_id)
    fields.setdefault("prompt_type", "scene_beat")
    return PromptRecord(
        id=prompt_id,
        messages=tuple(PromptMessage(role=role, content=content) for role, content in messages),
        **fields,
    )


class FakeChapterStore:
    def __init__(
        self,
        chapters: Iterable[ChapterRecord] = (),
        *,
        fail_with: Optional[Exception] = None,
        failing_ids: Iterable[str] = (),
    ):
        self.chapters: Dict[str, ChapterRecord] = {item.id: item for item in chapters}
        self.fail_with = fail_with
        self.failing_ids = set(failing_ids)
        self.fetched_ids: List[str] = []

    async def get_chapters_by_story(self, story_id):
        if self.fail_with is not None:
            raise self.fail_with
        return sorted(
            (item for item in self.chapters.values() if item.story_id == story_id),
            key=lambda item: item.order,
        )

    async def get_chapter_by_id(self, chapter_id):
        self.fetched_ids.append(chapter_id)
        if chapter_id in self.failing_ids:
            raise ConnectionError(f"chapter {chapter_id} is unavailable")
        return self.chapters.get(chapter_id)

    async def get_previous_chapter(self, chapter_id):
        current = self.chapters.get(chapter_id)
        if current is None:
            return None
        earlier = [
            item
            for item in self.chapters.values()
            if item.story_id == current.story_id and item.order < current.order
        ]
        return max(earlier, key=lambda item: item.order) if earlier else None

    async def get_chapter_outline(self, chapter_id) -> Optional[ChapterOutline]:
        current = self.chapters.get(chapter_id)
        return current.outline if current is not None else None


class FakeLorebookStore:
    def __init__(self, entries: Iterable[LorebookEntryRecord] = ()):
        self.entries = list(entries)

    async def get_entries(self, scope):
        return [item for item in self.entries if item.level == scope.level and item.scope_id == scope.scope_id]

    async def get_entries_for_story(self, story_id):
        return list(self.entries)


class FakePromptCatalog:
    def __init__(self, prompts: Iterable[PromptRecord] = ()):
        self.prompts = {item.id: item for item in prompts}

    async def get_prompt_by_id(self, prompt_id):
        return self.prompts.get(prompt_id)


def sse_chunks(*texts: str) -> List[bytes]:
    return [sse_event(text) for text in texts] + [SSE_DONE]


async def iterate(chunks):
    for chunk in chunks:
        yield chunk


class ClosableResponse(StreamResponse):
    """A StreamResponse that records whether it was closed."""

    def __init__(self, chunks, status_code: int = 200):
        self.closed = False

        async def close():
            self.closed = True

        super().__init__(status_code=status_code, chunks=chunks, close=close)


class ScriptedProvider:
    """Provider adapter that replays canned SSE chunks and records each call."""

    def __init__(self, name="local", chunks=None, *, supported=None, error=None, models=()):
        self.name = name
        self.supported_parameters = frozenset(
            supported or {"temperature", "max_tokens", "top_p", "top_k", "repetition_penalty", "min_p"}
        )
        self.chunks = list(chunks if chunks is not None else sse_chunks("Hello", " ", "world"))
        self.error = error
        self.models = list(models)
        self.calls = []
        self.closed = False

    async def fetch_models(self):
        if self.error is not None:
            raise self.error
        return list(self.models)

    async def generate(self, messages, model_id, **params):
        self.calls.append({"messages": list(messages), "model_id": model_id, "params": params})
        if self.error is not None:
            raise self.error
        return ClosableResponse(iterate(self.chunks))

    async def aclose(self):
        self.closed = True
