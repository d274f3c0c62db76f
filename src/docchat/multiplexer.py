"""
Two-speed response delivery.

The source manifest is finalized (and encoded for the response headers) as
soon as retrieval completes, while the answer is handed to the transport
fragment by fragment through a ``FragmentChannel``. A stream that fails after
it started ends with an explicit terminal error marker instead of a silent
truncation.
"""
from __future__ import annotations

import asyncio
import base64
import contextlib
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterable, Mapping

from .config import EXCERPT_CHARS, STREAM_QUEUE_MAXSIZE
from .errors import SerializationError
from .observability import get_logger
from .retrieval import RetrievedChunk

logger = get_logger(__name__)

ELLIPSIS = "..."
# ASCII record separator; never produced by text generation in practice.
STREAM_ERROR_MARKER = "\x1e"
MESSAGE_INDEX_HEADER = "x-message-index"
SOURCES_HEADER = "x-sources"
ERROR_MARKER_HEADER = "x-stream-error-marker"


# ---------------------------------------------------------------------------
# Source manifest
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceManifestEntry:
    excerpt: str
    metadata: Mapping[str, Any]

    @classmethod
    def from_chunk(cls, chunk: RetrievedChunk, limit: int = EXCERPT_CHARS) -> "SourceManifestEntry":
        return cls(excerpt=chunk.content[:limit] + ELLIPSIS, metadata=chunk.metadata)

    def to_wire(self) -> dict[str, Any]:
        return {"pageContent": self.excerpt, "metadata": dict(self.metadata)}


def build_manifest(chunks: Iterable[RetrievedChunk]) -> tuple[SourceManifestEntry, ...]:
    return tuple(SourceManifestEntry.from_chunk(chunk) for chunk in chunks)


def encode_manifest(entries: Iterable[SourceManifestEntry]) -> str:
    """Base64-encoded JSON list, safe to place in a response header."""
    try:
        payload = json.dumps([entry.to_wire() for entry in entries], ensure_ascii=True, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Source manifest could not be encoded: {exc}") from exc
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_manifest(value: str) -> list[dict[str, Any]]:
    return json.loads(base64.b64decode(value.encode("ascii")).decode("utf-8"))


# ---------------------------------------------------------------------------
# Answer channel
# ---------------------------------------------------------------------------

class FragmentChannel:
    """Queue between the synthesis producer task and the transport consumer.

    Events are ``("chunk", text)``, ``("error", exc)`` and ``("done", None)``.
    """

    def __init__(self, source: AsyncIterator[str], maxsize: int = STREAM_QUEUE_MAXSIZE):
        self._source = source
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=max(0, int(maxsize)))
        self._task: asyncio.Task | None = None
        self._pending: tuple[str, Any] | None = None

    def start(self) -> "FragmentChannel":
        if self._task is None:
            self._task = asyncio.create_task(self._produce())
        return self

    async def _produce(self):
        try:
            async for fragment in self._source:
                await self._queue.put(("chunk", fragment))
        except Exception as exc:
            await self._queue.put(("error", exc))
            return
        finally:
            aclose = getattr(self._source, "aclose", None)
            if callable(aclose):
                await aclose()
        await self._queue.put(("done", None))

    async def prime(self) -> tuple[str, Any]:
        """Waits for the first event without consuming it."""
        if self._pending is None:
            self.start()
            self._pending = await self._queue.get()
        return self._pending

    async def next_event(self) -> tuple[str, Any]:
        if self._pending is not None:
            event, self._pending = self._pending, None
            return event
        self.start()
        return await self._queue.get()

    @property
    def producing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def aclose(self):
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class AnswerStream:
    """Ordered, finite, non-restartable async iterator of answer fragments."""

    def __init__(
        self,
        channel: FragmentChannel,
        on_finish: Callable[[BaseException | None, int], None] | None = None,
    ):
        self._channel = channel
        self._on_finish = on_finish
        self._started = False
        self._finished = False
        self.fragments = 0
        self.error: BaseException | None = None

    @property
    def completed(self) -> bool:
        return self._finished and self.error is None

    def __aiter__(self):
        if self._started:
            raise RuntimeError("AnswerStream cannot be restarted.")
        self._started = True
        return self._iterate()

    def _finish(self, error: BaseException | None):
        if self._finished:
            return
        self._finished = True
        self.error = error
        if self._on_finish is not None:
            self._on_finish(error, self.fragments)

    async def _iterate(self):
        try:
            while True:
                event, payload = await self._channel.next_event()
                if event == "chunk":
                    self.fragments += 1
                    yield payload
                elif event == "error":
                    self._finish(payload)
                    raise payload
                else:
                    self._finish(None)
                    return
        finally:
            if not self._finished:
                self._finish(asyncio.CancelledError("answer stream closed by consumer"))
            await self._channel.aclose()

    async def aclose(self):
        """Abandons a stream that will not be consumed."""
        if not self._finished:
            self._finish(asyncio.CancelledError("answer stream discarded"))
        await self._channel.aclose()

    async def read_all(self) -> str:
        async with contextlib.aclosing(self.__aiter__()) as fragments:
            return "".join([fragment async for fragment in fragments])


# ---------------------------------------------------------------------------
# Transport encoding
# ---------------------------------------------------------------------------

def format_stream_error(message: str) -> str:
    return "\n" + STREAM_ERROR_MARKER + json.dumps({"error": str(message)}, ensure_ascii=True)


def split_stream_error(body: str) -> tuple[str, str | None]:
    """Splits a received body into (answer, error message or None)."""
    head, sep, tail = body.partition("\n" + STREAM_ERROR_MARKER)
    if not sep:
        return body, None
    try:
        return head, str(json.loads(tail).get("error", ""))
    except ValueError:
        return head, tail


async def encode_body(stream: AnswerStream) -> AsyncIterator[bytes]:
    """UTF-8 body chunks; a failed stream ends with the terminal error marker."""
    try:
        async with contextlib.aclosing(stream.__aiter__()) as fragments:
            async for fragment in fragments:
                yield fragment.encode("utf-8")
    except Exception as exc:
        message = getattr(exc, "message", None) or str(exc)
        logger.warning("answer_stream_cut_off", fragments=stream.fragments, error=message)
        yield format_stream_error(message).encode("utf-8")


def response_headers(turn_index: int, encoded_sources: str) -> dict[str, str]:
    return {
        MESSAGE_INDEX_HEADER: str(int(turn_index)),
        SOURCES_HEADER: encoded_sources,
        ERROR_MARKER_HEADER: "\\x1e",
    }
