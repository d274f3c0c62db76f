# /docchat/pipeline.py
"""
Conversational RAG orchestration.

One ``PipelineRun`` per request walks a strictly sequential state machine:

    RECEIVED -> REWRITING -> RETRIEVING -> SYNTHESIZING -> STREAMING -> COMPLETED

with FAILED reachable from every non-terminal state. The source manifest is
built and encoded at the RETRIEVING -> SYNTHESIZING boundary, so it is final
before the caller sees any response metadata, while the answer keeps streaming
after ``run`` has returned.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from .clients import ServiceClients
from .errors import PipelineError, UpstreamModelError, ValidationError
from .history import normalize_history
from .multiplexer import (
    AnswerStream,
    FragmentChannel,
    SourceManifestEntry,
    build_manifest,
    encode_manifest,
    response_headers,
)
from .observability import get_logger
from .retrieval import RetrievalAdapter, RetrievalCapture
from .rewriter import QueryRewriter
from .synthesizer import AnswerSynthesizer

logger = get_logger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    REWRITING = "rewriting"
    RETRIEVING = "retrieving"
    SYNTHESIZING = "synthesizing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_NEXT_STATE = {
    PipelineState.RECEIVED: PipelineState.REWRITING,
    PipelineState.REWRITING: PipelineState.RETRIEVING,
    PipelineState.RETRIEVING: PipelineState.SYNTHESIZING,
    PipelineState.SYNTHESIZING: PipelineState.STREAMING,
    PipelineState.STREAMING: PipelineState.COMPLETED,
}
_TERMINAL = {PipelineState.COMPLETED, PipelineState.FAILED}


@dataclass
class PipelineRun:
    """Per-request state; discarded once the response completes."""

    chat_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: PipelineState = PipelineState.RECEIVED
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    started_at: float = field(default_factory=time.perf_counter)
    error: BaseException | None = None

    def advance(self, target: PipelineState):
        if self.state in _TERMINAL:
            raise RuntimeError(f"Pipeline run {self.run_id} already finished in state {self.state.value}.")
        if target is PipelineState.FAILED or _NEXT_STATE.get(self.state) is target:
            logger.info(
                "pipeline_transition",
                run_id=self.run_id,
                chat_id=self.chat_id,
                source=self.state.value,
                target=target.value,
            )
            self.state = target
            self.history.append(target)
            return
        raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {target.value}.")

    def fail(self, error: BaseException):
        if self.state in _TERMINAL:
            return
        self.error = error
        self.advance(PipelineState.FAILED)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000.0


@dataclass
class PipelineResult:
    stream: AnswerStream
    source_manifest: tuple[SourceManifestEntry, ...]
    turn_index: int
    encoded_sources: str
    capture: RetrievalCapture
    run: PipelineRun

    @property
    def headers(self) -> dict[str, str]:
        return response_headers(self.turn_index, self.encoded_sources)


class PipelineOrchestrator:
    """Sequences rewrite -> retrieve -> synthesize over shared client handles."""

    def __init__(self, clients: ServiceClients):
        self.clients = clients
        self.rewriter = QueryRewriter(clients.llm)
        self.retrieval = RetrievalAdapter(clients.vector_index, k=clients.retriever_k)
        self.synthesizer = AnswerSynthesizer(clients.llm)

    async def run(self, raw_messages: Iterable[Any] | None, chat_id: str) -> PipelineResult:
        run = PipelineRun(chat_id=str(chat_id or ""))
        try:
            return await self._run(run, raw_messages, chat_id)
        except BaseException as exc:
            run.fail(exc)
            kind = getattr(exc, "kind", type(exc).__name__)
            logger.error("pipeline_failed", run_id=run.run_id, chat_id=run.chat_id, kind=kind, error=str(exc))
            raise

    async def _run(self, run: PipelineRun, raw_messages, chat_id) -> PipelineResult:
        if not isinstance(chat_id, str) or not chat_id.strip():
            raise ValidationError("chatId is required.")
        turns = normalize_history(raw_messages)
        prior, question = turns[:-1], turns[-1].content
        turn_index = len(prior) + 1

        run.advance(PipelineState.REWRITING)
        query = await self.rewriter.rewrite(prior, question)

        run.advance(PipelineState.RETRIEVING)
        documents, capture = await self.retrieval.retrieve(query, chat_id)

        # Manifest comes from the capture, never from the synthesis input.
        manifest = build_manifest(capture.chunks)
        encoded_sources = encode_manifest(manifest)

        run.advance(PipelineState.SYNTHESIZING)
        channel = FragmentChannel(self.synthesizer.stream(documents, prior, question))
        stream = AnswerStream(channel, on_finish=lambda error, fragments: self._finish(run, error, fragments))
        event, payload = await self._first_event(channel)
        if event == "error":
            await channel.aclose()
            if isinstance(payload, PipelineError):
                raise payload
            raise UpstreamModelError(f"Answer synthesis could not be started: {payload}") from payload
        if event == "done":
            await channel.aclose()
            raise UpstreamModelError("Answer synthesis returned an empty answer.")

        run.advance(PipelineState.STREAMING)
        logger.info(
            "pipeline_streaming",
            run_id=run.run_id,
            chat_id=chat_id,
            turn_index=turn_index,
            sources=len(manifest),
            elapsed_ms=round(run.elapsed_ms, 2),
        )
        return PipelineResult(
            stream=stream,
            source_manifest=manifest,
            turn_index=turn_index,
            encoded_sources=encoded_sources,
            capture=capture,
            run=run,
        )

    @staticmethod
    async def _first_event(channel: FragmentChannel):
        try:
            return await channel.prime()
        except asyncio.CancelledError:
            await channel.aclose()
            raise

    @staticmethod
    def _finish(run: PipelineRun, error: BaseException | None, fragments: int):
        if error is None:
            run.advance(PipelineState.COMPLETED)
            logger.info("pipeline_completed", run_id=run.run_id, fragments=fragments, elapsed_ms=round(run.elapsed_ms, 2))
            return
        run.fail(error)
        logger.warning(
            "pipeline_stream_ended_early",
            run_id=run.run_id,
            fragments=fragments,
            cancelled=isinstance(error, asyncio.CancelledError),
            error=str(error),
        )
