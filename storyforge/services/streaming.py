"""Turn a provider's streaming response into an ordered sequence of events.

A :class:`TokenStream` reads one :class:`~storyforge.services.providers.StreamResponse`
and yields ``Token`` events in the order the bytes arrived, then exactly one
``Complete`` or ``Failed``. Aborting ends the stream silently: nothing else is
yielded and the underlying connection is closed.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import json
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Hashable, List, Optional, Protocol, Union

from .providers import StreamResponse

LOGGER = logging.getLogger(__name__)


class StreamError(RuntimeError):
    """Raised (and reported through ``Failed``) when a stream breaks mid-way."""


class StreamPhase(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_PHASES = frozenset({StreamPhase.COMPLETED, StreamPhase.FAILED, StreamPhase.ABORTED})


@dataclass(frozen=True)
class Token:
    text: str


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Failed:
    error: BaseException


StreamEvent = Union[Token, Complete, Failed]


class _Done(Exception):
    """Internal signal for the ``data: [DONE]`` terminator."""


def parse_sse_line(line: str) -> Optional[str]:
    """Return the content fragment carried by one SSE line, if any.

    Raises :class:`StreamError` for an error payload and :class:`_Done` for the
    terminator. Comments, other fields and non-JSON data are ignored.
    """

    line = line.rstrip("\r")
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    if data == "[DONE]":
        raise _Done()
    try:
        payload = json.loads(data)
    except ValueError:
        LOGGER.debug("Ignoring non-JSON stream line: %s", data[:200])
        return None
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise StreamError(message or "Provider reported an error")

    choices = payload.get("choices") or []
    if not choices:
        return None
    choice = choices[0] or {}
    delta = choice.get("delta") or {}
    return delta.get("content") or choice.get("text") or None


class TokenStream:
    """State for one generation's stream: phase, accumulated text and abort handle."""

    def __init__(self, response: StreamResponse):
        self.response = response
        self.phase = StreamPhase.IDLE
        self._pieces: List[str] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending_read: Optional[asyncio.Future] = None
        self._abort_requested = False

    @property
    def text(self) -> str:
        return "".join(self._pieces)

    @property
    def settled(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def abort(self) -> bool:
        """Request cancellation. Safe from any thread; a no-op once settled."""

        with self._lock:
            if self.settled or self._abort_requested:
                return False
            self._abort_requested = True
            loop = self._loop

        if loop is None:
            return True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._cancel_pending_read()
        else:
            try:
                loop.call_soon_threadsafe(self._cancel_pending_read)
            except RuntimeError:
                LOGGER.debug("Stream loop already closed; abort only flagged")
        return True

    def _cancel_pending_read(self) -> None:
        if self._pending_read is not None and not self._pending_read.done():
            self._pending_read.cancel()

    def _set_phase(self, phase: StreamPhase) -> None:
        with self._lock:
            self.phase = phase

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self.phase is not StreamPhase.IDLE:
            raise RuntimeError("A token stream can only be consumed once.")

        with self._lock:
            self._loop = asyncio.get_running_loop()
            self.phase = StreamPhase.STREAMING

        try:
            if self.response.is_cancelled or self._abort_requested:
                self._set_phase(StreamPhase.ABORTED)
                return
            if not self.response.ok:
                self._set_phase(StreamPhase.FAILED)
                yield Failed(StreamError(f"Provider responded with HTTP {self.response.status_code}"))
                return

            reader = self._read()
            try:
                async for event in reader:
                    if self._abort_requested:
                        break
                    yield event
            finally:
                await reader.aclose()

            if self._abort_requested and self.phase is StreamPhase.STREAMING:
                self._set_phase(StreamPhase.ABORTED)
                LOGGER.info("Generation stream aborted after %d characters", len(self.text))
        finally:
            if self.phase is StreamPhase.STREAMING:
                # The consumer stopped iterating early.
                self._set_phase(StreamPhase.ABORTED)
            self._pending_read = None
            await self._close()

    async def _read(self) -> AsyncIterator[StreamEvent]:
        decoder = codecs.getincrementaldecoder("utf-8")()
        iterator = self.response.chunks.__aiter__()
        buffer = ""

        while not self._abort_requested:
            read = asyncio.ensure_future(iterator.__anext__())
            self._pending_read = read
            try:
                chunk = await read
            except StopAsyncIteration:
                break
            except asyncio.CancelledError:
                if self._abort_requested:
                    return
                self._set_phase(StreamPhase.ABORTED)
                raise
            except Exception as exc:
                yield self._fail(exc)
                return
            finally:
                self._pending_read = None

            try:
                buffer += decoder.decode(chunk)
            except UnicodeDecodeError as exc:
                yield self._fail(exc)
                return

            *lines, buffer = buffer.split("\n")
            for line in lines:
                event = self._handle_line(line)
                if event is None:
                    continue
                yield event
                if not isinstance(event, Token):
                    return

        if self._abort_requested:
            return

        try:
            buffer += decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            yield self._fail(exc)
            return
        if buffer.strip():
            event = self._handle_line(buffer)
            if event is not None:
                yield event
                if not isinstance(event, Token):
                    return

        self._set_phase(StreamPhase.COMPLETED)
        yield Complete()

    def _handle_line(self, line: str) -> Optional[StreamEvent]:
        try:
            content = parse_sse_line(line)
        except _Done:
            self._set_phase(StreamPhase.COMPLETED)
            return Complete()
        except StreamError as exc:
            return self._fail(exc)
        if not content:
            return None
        self._pieces.append(content)
        return Token(content)

    def _fail(self, exc: BaseException) -> Failed:
        error = exc if isinstance(exc, StreamError) else StreamError(f"Stream interrupted: {exc}")
        if error is not exc:
            error.__cause__ = exc
        LOGGER.warning("Generation stream failed: %s", error)
        self._set_phase(StreamPhase.FAILED)
        return Failed(error)

    async def _close(self) -> None:
        try:
            await self.response.aclose()
        except Exception as exc:
            LOGGER.debug("Error while closing stream response: %s", exc)

    async def process(
        self,
        on_token: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        """Callback form of :meth:`events`."""

        async for event in self.events():
            if isinstance(event, Token):
                on_token(event.text)
            elif isinstance(event, Complete):
                on_complete()
            else:
                on_error(event.error)


class Abortable(Protocol):
    def abort(self) -> bool:
        ...


class GenerationSessions:
    """At most one active generation per session key.

    Registering a new generation aborts whatever was still running under the
    same key.
    """

    def __init__(self) -> None:
        self._active: Dict[Hashable, Abortable] = {}
        self._lock = threading.Lock()

    def start(self, key: Hashable, handle: Abortable) -> None:
        with self._lock:
            previous = self._active.get(key)
            self._active[key] = handle
        if previous is not None and previous is not handle:
            LOGGER.info("Aborting previous generation for session %s", key)
            previous.abort()

    def abort(self, key: Hashable) -> bool:
        with self._lock:
            handle = self._active.pop(key, None)
        if handle is None:
            return False
        handle.abort()
        return True

    def finish(self, key: Hashable, handle: Abortable) -> None:
        with self._lock:
            if self._active.get(key) is handle:
                del self._active[key]

    def get(self, key: Hashable) -> Optional[Abortable]:
        with self._lock:
            return self._active.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
