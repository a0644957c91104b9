"""Parse a prompt, dispatch it to a provider and hand back the token stream.

:class:`GenerationService` is the async pipeline. :class:`GenerationJob` runs
that pipeline on a worker thread with its own event loop so that a synchronous
Flask view can stream the events to the client and be aborted from another
request.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from flask import Flask

from ..stores import SqlChapterStore, SqlLorebookStore, SqlPromptCatalog
from .documents import extract_plain_text
from .generation import PROVIDERS, GenerationDispatcher, GenerationParams
from .interfaces import ChapterStore, LorebookStore, PromptCatalog
from .lorebook_matching import build_tag_map, match_entries
from .prompt_context import (
    AdditionalContext,
    ContextBuilder,
    ParsedPrompt,
    PromptParserConfig,
    SceneBeatContextSelection,
)
from .prompt_parser import PromptParseError, PromptParser
from .records import POV_TYPES
from .resolvers import default_registry
from .streaming import StreamEvent, TokenStream

LOGGER = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


def _optional_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string.")
    return value


@dataclass(frozen=True)
class PromptRequest:
    """The parser-facing part of a request body."""

    story_id: str
    prompt_id: str
    chapter_id: Optional[str] = None
    scenebeat: Optional[str] = None
    previous_words: Optional[str] = None
    pov_type: Optional[str] = None
    pov_character: Optional[str] = None
    match_lorebook: bool = True
    scene_beat_context: Optional[SceneBeatContextSelection] = None
    additional_context: AdditionalContext = field(default_factory=AdditionalContext)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, prompt_id: Optional[str] = None) -> "PromptRequest":
        story_id = _optional_str(payload, "story_id")
        prompt_id = prompt_id or _optional_str(payload, "prompt_id")
        if not story_id:
            raise ValueError("story_id is required.")
        if not prompt_id:
            raise ValueError("prompt_id is required.")

        pov_type = _optional_str(payload, "pov_type")
        if pov_type and pov_type not in POV_TYPES:
            raise ValueError(f"Unknown pov_type {pov_type!r}.")

        return cls(
            story_id=story_id,
            prompt_id=prompt_id,
            chapter_id=_optional_str(payload, "chapter_id"),
            scenebeat=_optional_str(payload, "scenebeat"),
            previous_words=_optional_str(payload, "previous_words"),
            pov_type=pov_type,
            pov_character=_optional_str(payload, "pov_character"),
            match_lorebook=payload.get("match_lorebook", True) is not False,
            scene_beat_context=SceneBeatContextSelection.from_mapping(payload.get("scene_beat_context")),
            additional_context=AdditionalContext.from_mapping(payload.get("additional_context")),
        )


@dataclass(frozen=True)
class GenerationRequest:
    prompt: PromptRequest
    provider: str
    model_id: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    session_id: str = DEFAULT_SESSION

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "GenerationRequest":
        provider = _optional_str(payload, "provider")
        model_id = _optional_str(payload, "model_id")
        if provider not in PROVIDERS:
            raise ValueError(f"provider must be one of: {', '.join(PROVIDERS)}.")
        if not model_id:
            raise ValueError("model_id is required.")

        parameters = payload.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise ValueError("parameters must be an object.")
        GenerationParams().with_overrides(parameters)

        return cls(
            prompt=PromptRequest.from_payload(payload),
            provider=provider,
            model_id=model_id,
            parameters=dict(parameters),
            session_id=_optional_str(payload, "session_id") or DEFAULT_SESSION,
        )


class GenerationService:
    def __init__(
        self,
        chapters: ChapterStore,
        lorebook: LorebookStore,
        prompts: PromptCatalog,
        dispatcher: Optional[GenerationDispatcher] = None,
    ):
        self.chapters = chapters
        self.lorebook = lorebook
        self.prompts = prompts
        self.dispatcher = dispatcher
        self.parser = PromptParser(ContextBuilder(chapters, lorebook), prompts, default_registry(chapters))

    @classmethod
    def for_database(cls, dispatcher: Optional[GenerationDispatcher] = None) -> "GenerationService":
        return cls(SqlChapterStore(), SqlLorebookStore(), SqlPromptCatalog(), dispatcher)

    async def parser_config(self, request: PromptRequest) -> PromptParserConfig:
        chapter_matches: Dict[str, Any] = {}
        scene_beat_matches: Dict[str, Any] = {}

        if request.match_lorebook and (request.chapter_id or request.scenebeat):
            entries = await self.lorebook.get_entries_for_story(request.story_id)
            tag_map = build_tag_map(entries)
            if request.chapter_id:
                chapter = await self.chapters.get_chapter_by_id(request.chapter_id)
                if chapter is not None:
                    chapter_matches = match_entries(extract_plain_text(chapter.content), tag_map=tag_map)
            if request.scenebeat:
                scene_beat_matches = match_entries(request.scenebeat, tag_map=tag_map)

        return PromptParserConfig(
            story_id=request.story_id,
            prompt_id=request.prompt_id,
            chapter_id=request.chapter_id,
            scenebeat=request.scenebeat,
            previous_words=request.previous_words,
            pov_type=request.pov_type,
            pov_character=request.pov_character,
            matched_entries={**chapter_matches, **scene_beat_matches},
            chapter_matched_entries=chapter_matches,
            scene_beat_matched_entries=scene_beat_matches,
            scene_beat_context=request.scene_beat_context,
            additional_context=request.additional_context,
        )

    async def preview(self, request: PromptRequest) -> ParsedPrompt:
        return await self.parser.parse(await self.parser_config(request))

    async def open_stream(self, request: GenerationRequest) -> TokenStream:
        if self.dispatcher is None:
            raise RuntimeError("GenerationService was built without a dispatcher.")

        prompt = await self.prompts.get_prompt_by_id(request.prompt.prompt_id)
        if prompt is None:
            raise PromptParseError(f"Prompt '{request.prompt.prompt_id}' was not found.")

        parsed = await self.parser.parse(await self.parser_config(request.prompt), prompt)
        if not parsed.ok:
            raise PromptParseError(parsed.error)

        params = GenerationParams.from_prompt(prompt).with_overrides(request.parameters)
        response = await self.dispatcher.generate(request.provider, parsed.messages, request.model_id, params)
        return TokenStream(response)

    async def aclose(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.aclose()


_END = object()


class GenerationJob:
    """One generation running on its own thread and event loop.

    ``factory`` is called on the worker thread, inside an application context,
    and must return a fresh :class:`GenerationService`.
    """

    def __init__(self, app: Flask, request: GenerationRequest, factory: Callable[[], GenerationService]):
        self.app = app
        self.request = request
        self.factory = factory
        self.error: Optional[BaseException] = None
        self.stream: Optional[TokenStream] = None

        self._events: "queue.Queue[Any]" = queue.Queue()
        self._opened = threading.Event()
        self._finished = threading.Event()
        self._lock = threading.Lock()
        self._abort_requested = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._thread = threading.Thread(target=self._run, name="generation-job", daemon=True)

    @property
    def aborted(self) -> bool:
        return self._abort_requested

    def start(self) -> "GenerationJob":
        self._thread.start()
        return self

    def _run(self) -> None:
        with self.app.app_context():
            try:
                asyncio.run(self._main())
            except asyncio.CancelledError:
                LOGGER.info("Generation for session %s cancelled", self.request.session_id)
            except Exception as exc:
                LOGGER.exception("Generation job crashed")
                if self.error is None:
                    self.error = exc
            finally:
                self._finished.set()
                self._opened.set()
                self._events.put(_END)

    async def _main(self) -> None:
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._task = asyncio.current_task()
            if self._abort_requested:
                return

        service = self.factory()
        try:
            try:
                stream = await service.open_stream(self.request)
            except asyncio.CancelledError:
                if self._abort_requested:
                    return
                raise
            except Exception as exc:
                self.error = exc
                return

            with self._lock:
                self.stream = stream
                aborted = self._abort_requested
            if aborted:
                stream.abort()
            self._opened.set()

            async for event in stream.events():
                self._events.put(event)
        finally:
            await service.aclose()

    def wait_until_open(self, timeout: Optional[float] = None) -> bool:
        """Block until the provider answered. Re-raises a failure to get there."""

        opened = self._opened.wait(timeout)
        if self.error is not None:
            raise self.error
        return opened

    def iter_events(self) -> Iterator[StreamEvent]:
        while True:
            item = self._events.get()
            if item is _END:
                return
            yield item

    def abort(self) -> bool:
        with self._lock:
            if self._finished.is_set() or self._abort_requested:
                return False
            self._abort_requested = True
            stream = self.stream
            loop, task = self._loop, self._task

        if stream is not None:
            stream.abort()
        elif loop is not None and task is not None:
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                LOGGER.debug("Generation loop already closed")
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)
