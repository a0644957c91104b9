"""Provider adapters that turn a chat request into a streaming HTTP-like response.

Every adapter returns a :class:`StreamResponse` whose body uses Server-Sent
Events framing (``data: {"choices": [{"delta": {"content": ...}}]}`` lines and
a final ``data: [DONE]``), so the streaming coordinator reads one wire format
no matter which service produced the tokens.

- ``local``: any OpenAI-compatible server (LM Studio, llama.cpp, ...) reached
  with ``httpx``; accepts the full sampling parameter set.
- ``openai``: the hosted OpenAI API through the ``openai`` SDK; only
  temperature and max tokens are forwarded.
- ``openrouter``: OpenRouter through the ``openai`` SDK with a different base
  URL; extra sampling knobs travel in ``extra_body``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence

import httpx
import openai

from .records import AIModel, PromptMessage

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCAL_API_URL = "http://localhost:1234/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
LOCAL_CONTEXT_LENGTH = 16384

ALL_SAMPLING_PARAMETERS: FrozenSet[str] = frozenset(
    {"temperature", "max_tokens", "top_p", "top_k", "repetition_penalty", "min_p"}
)


class ProviderError(RuntimeError):
    """Raised when a provider rejects a request or cannot be reached."""

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


async def _no_chunks() -> AsyncIterator[bytes]:
    return
    yield b""  # pragma: no cover


async def _noop() -> None:
    return None


@dataclass
class StreamResponse:
    """Minimal response handle: a status code, a byte stream and a way to close it."""

    status_code: int
    chunks: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]] = _noop

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_cancelled(self) -> bool:
        return self.status_code == 204

    async def aclose(self) -> None:
        await self.close()

    @classmethod
    def no_content(cls) -> "StreamResponse":
        return cls(status_code=204, chunks=_no_chunks())


def sse_event(content: str) -> bytes:
    payload = json.dumps({"choices": [{"delta": {"content": content}}]})
    return f"data: {payload}\n\n".encode("utf-8")


SSE_DONE = b"data: [DONE]\n\n"


def _message_payload(messages: Sequence[PromptMessage]) -> List[Dict[str, str]]:
    return [message.to_dict() for message in messages]


def _is_set(value: Any) -> bool:
    # 0 disables a knob, same as leaving it out.
    return value is not None and value != 0


class LocalProvider:
    name = "local"
    supported_parameters = ALL_SAMPLING_PARAMETERS

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.base_url = (base_url or DEFAULT_LOCAL_API_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_models(self) -> List[AIModel]:
        try:
            response = await self._client.get(f"{self.base_url}/models")
            response.raise_for_status()
            data = response.json().get("data") or []
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"Failed to fetch local models: {exc}", provider=self.name) from exc

        LOGGER.info("Received %d local models from %s", len(data), self.base_url)
        return [
            AIModel(
                id=f"local/{model['id']}",
                name=model["id"],
                provider=self.name,
                context_length=LOCAL_CONTEXT_LENGTH,
            )
            for model in data
            if model.get("id")
        ]

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float = 1.0,
        max_tokens: int = 2048,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        repetition_penalty: Optional[float] = None,
        min_p: Optional[float] = None,
    ) -> StreamResponse:
        body: Dict[str, Any] = {
            "model": model_id[len("local/"):] if model_id.startswith("local/") else model_id,
            "messages": _message_payload(messages),
            "stream": True,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        for key, value in (
            ("top_p", top_p),
            ("top_k", top_k),
            ("repetition_penalty", repetition_penalty),
            ("min_p", min_p),
        ):
            if _is_set(value):
                body[key] = value

        request = self._client.build_request("POST", f"{self.base_url}/chat/completions", json=body)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Local model request failed: {exc}", provider=self.name) from exc

        if response.is_error:
            detail = (await response.aread()).decode("utf-8", errors="replace")[:500]
            await response.aclose()
            raise ProviderError(
                f"Local model returned HTTP {response.status_code}: {detail}",
                provider=self.name,
                status_code=response.status_code,
            )
        return StreamResponse(status_code=response.status_code, chunks=response.aiter_bytes(), close=response.aclose)

    async def aclose(self) -> None:
        await self._client.aclose()


class _OpenAICompatibleProvider:
    """Shared plumbing for adapters built on :class:`openai.AsyncOpenAI`."""

    name = ""
    supported_parameters: FrozenSet[str] = frozenset()

    def __init__(self, client: openai.AsyncOpenAI):
        self._client = client

    async def _open_stream(self, **kwargs: Any) -> StreamResponse:
        try:
            stream = await self._client.chat.completions.create(stream=True, **kwargs)
        except openai.APIStatusError as exc:
            raise ProviderError(
                f"{self.name} rejected the request: {exc.message}",
                provider=self.name,
                status_code=exc.status_code,
            ) from exc
        except openai.APIError as exc:
            raise ProviderError(f"{self.name} request failed: {exc}", provider=self.name) from exc

        return StreamResponse(status_code=200, chunks=self._sse_chunks(stream), close=stream.close)

    @staticmethod
    async def _sse_chunks(stream: Any) -> AsyncIterator[bytes]:
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content if chunk.choices[0].delta else None
            if content:
                yield sse_event(content)
        yield SSE_DONE

    async def aclose(self) -> None:
        await self._client.close()


class OpenAIProvider(_OpenAICompatibleProvider):
    name = "openai"
    # The hosted API has no top_k/min_p and its penalties differ from repetition_penalty.
    supported_parameters = frozenset({"temperature", "max_tokens"})

    def __init__(self, api_key: str, *, client: Optional[openai.AsyncOpenAI] = None, timeout: float = 120.0):
        if not api_key and client is None:
            raise ProviderError("OpenAI API key not set", provider=self.name)
        super().__init__(client or openai.AsyncOpenAI(api_key=api_key, timeout=timeout))

    async def fetch_models(self) -> List[AIModel]:
        try:
            page = await self._client.models.list()
        except openai.APIError as exc:
            raise ProviderError(f"Failed to fetch OpenAI models: {exc}", provider=self.name) from exc
        return [
            AIModel(
                id=model.id,
                name=model.id,
                provider=self.name,
                context_length=getattr(model, "context_length", None) or LOCAL_CONTEXT_LENGTH,
            )
            for model in page.data
            if model.id.startswith("gpt")
        ]

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float = 1.0,
        max_tokens: int = 2048,
    ) -> StreamResponse:
        return await self._open_stream(
            model=model_id,
            messages=_message_payload(messages),
            temperature=temperature,
            max_tokens=max_tokens,
        )


class OpenRouterProvider(_OpenAICompatibleProvider):
    name = "openrouter"
    supported_parameters = ALL_SAMPLING_PARAMETERS

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = OPENROUTER_BASE_URL,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        timeout: float = 120.0,
    ):
        if not api_key and client is None:
            raise ProviderError("OpenRouter API key not set", provider=self.name)
        headers = {}
        if referer:
            headers["HTTP-Referer"] = referer
        if title:
            headers["X-Title"] = title
        super().__init__(
            client
            or openai.AsyncOpenAI(api_key=api_key, base_url=base_url, default_headers=headers, timeout=timeout)
        )

    async def fetch_models(self) -> List[AIModel]:
        try:
            page = await self._client.models.list()
        except openai.APIError as exc:
            raise ProviderError(f"Failed to fetch OpenRouter models: {exc}", provider=self.name) from exc
        return [
            AIModel(
                id=model.id,
                name=getattr(model, "name", None) or model.id,
                provider=self.name,
                context_length=getattr(model, "context_length", None) or LOCAL_CONTEXT_LENGTH,
            )
            for model in page.data
        ]

    async def generate(
        self,
        messages: Sequence[PromptMessage],
        model_id: str,
        temperature: float = 1.0,
        max_tokens: int = 2048,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        repetition_penalty: Optional[float] = None,
        min_p: Optional[float] = None,
    ) -> StreamResponse:
        kwargs: Dict[str, Any] = {
            "model": model_id,
            "messages": _message_payload(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if _is_set(top_p):
            kwargs["top_p"] = top_p
        extra_body = {
            key: value
            for key, value in (("top_k", top_k), ("repetition_penalty", repetition_penalty), ("min_p", min_p))
            if _is_set(value)
        }
        if extra_body:
            kwargs["extra_body"] = extra_body
        return await self._open_stream(**kwargs)
