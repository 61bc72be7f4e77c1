"""Completion pipeline.

Turns a caller utterance plus session history into spoken output:

session history -> request (system + last 10 turns + utterance) -> backend
-> token fragments -> SpeechBuffer (sentence / word-count phrases)
-> speakable chunks -> on_chunk

Each session has at most one outstanding stream. Starting a new stream cancels
the previous one, and after `cancel()` no further `on_chunk` call happens. A
cancelled stream returns normally; it is not an error.
"""

import asyncio
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import structlog

from src.relay import prompts
from src.relay.config import Config
from src.relay.errors import BackendError, BackendFailure
from src.relay.llm import CompletionClient, CompletionRequest
from src.relay.session import Session, SessionRegistry
from src.relay.voice_text import SpeechBuffer, split_into_speakable_chunks

logger = structlog.get_logger(__name__)

REQUEST_HISTORY_LIMIT = 10

ChunkCallback = Callable[[str], Awaitable[None]]


class StreamHandle:
    """Cancellation handle for one streaming completion."""

    def __init__(self, call_sid: str):
        self.call_sid = call_sid
        self.stream_id = uuid.uuid4().hex[:12]
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> bool:
        """Cancel the stream. Returns False if it was already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("Stream cancelled", call_sid=self.call_sid, stream_id=self.stream_id)
        return True


@dataclass
class CompletionResult:
    """Outcome of one completion turn."""
    text: str
    failure: Optional[BackendFailure] = None
    cancelled: bool = False
    chunks_sent: int = 0
    first_chunk_ms: float = 0.0
    total_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.cancelled


@dataclass
class _StreamState:
    started_at: float = field(default_factory=time.time)
    fragments: List[str] = field(default_factory=list)
    spoken: List[str] = field(default_factory=list)
    first_chunk_at: Optional[float] = None


class CompletionPipeline:
    """Builds completion requests from session history and delivers the replies."""

    def __init__(
        self,
        registry: SessionRegistry,
        client: CompletionClient,
        config: Config,
        system_prompt: Optional[str] = None,
    ):
        self.registry = registry
        self.client = client
        self.config = config
        self.system_prompt = system_prompt or prompts.resolve_system_prompt(config)

    def build_request(self, session: Session, user_text: str) -> CompletionRequest:
        """System instruction, the last few non-system turns, then the new utterance."""
        recent = session.history[-REQUEST_HISTORY_LIMIT:]
        messages = [entry.to_message() for entry in recent if entry.role != "system"]
        messages.append({"role": "user", "content": user_text})
        return CompletionRequest(
            system=self.system_prompt,
            messages=messages,
            model=self.config.llama_model,
            max_tokens=self.config.llama_max_tokens,
            temperature=self.config.llama_temperature,
        )

    async def complete(
        self,
        session: Session,
        user_text: str,
        *,
        lang: Optional[str] = None,
    ) -> CompletionResult:
        """Single round trip. Records the user turn, and the assistant turn on success."""
        request = self.build_request(session, user_text)
        self.registry.append_history(session.call_sid, "user", user_text, lang=lang)
        self.registry.record_llm_call()

        start_time = time.time()
        try:
            text = (await self.client.complete(request)).strip()
        except BackendError as e:
            logger.error(
                "Completion failed",
                call_sid=session.call_sid,
                failure=e.failure.value,
                error=e.detail,
            )
            return CompletionResult(
                text=prompts.apology_for(e.failure),
                failure=e.failure,
                total_ms=(time.time() - start_time) * 1000,
            )

        total_ms = (time.time() - start_time) * 1000
        if not text:
            logger.warning("Completion returned no text", call_sid=session.call_sid)
            return CompletionResult(
                text=prompts.EMPTY_COMPLETION_APOLOGY,
                failure=BackendFailure.GENERIC,
                total_ms=total_ms,
            )

        self.registry.append_history(session.call_sid, "assistant", text)
        logger.info(
            "Completion finished",
            call_sid=session.call_sid,
            response_length=len(text),
            total_ms=round(total_ms, 1),
        )
        return CompletionResult(text=text, total_ms=total_ms)

    async def complete_streaming(
        self,
        session: Session,
        user_text: str,
        on_chunk: ChunkCallback,
        *,
        lang: Optional[str] = None,
    ) -> CompletionResult:
        """
        Stream a completion as speakable chunks.

        Cancels any stream already outstanding for the session first. Returns
        with `cancelled=True` if the stream is cancelled while running.
        """
        if session.current_stream is not None:
            logger.info(
                "Cancelling previous stream",
                call_sid=session.call_sid,
                stream_id=session.current_stream.stream_id,
            )
            session.current_stream.cancel()

        handle = StreamHandle(session.call_sid)
        session.current_stream = handle

        request = self.build_request(session, user_text)
        self.registry.append_history(session.call_sid, "user", user_text, lang=lang)
        self.registry.record_llm_call()

        state = _StreamState()
        failure: Optional[BackendFailure] = None
        logger.info(
            "Stream started",
            call_sid=session.call_sid,
            stream_id=handle.stream_id,
            message_count=len(request.messages) + 1,
        )

        task = asyncio.create_task(self._consume(request, handle, on_chunk, state))
        handle.attach(task)
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not handle.cancelled or (current is not None and current.cancelling()):
                raise
        except BackendError as e:
            failure = e.failure
            logger.error(
                "Streaming completion failed",
                call_sid=session.call_sid,
                stream_id=handle.stream_id,
                failure=e.failure.value,
                error=e.detail,
            )
        finally:
            if session.current_stream is handle:
                session.current_stream = None

        total_ms = (time.time() - state.started_at) * 1000
        first_chunk_ms = (
            (state.first_chunk_at - state.started_at) * 1000 if state.first_chunk_at else 0.0
        )

        if handle.cancelled:
            spoken = " ".join(state.spoken)
            if spoken:
                self.registry.append_history(
                    session.call_sid, "assistant", spoken, interrupted=True
                )
            logger.info(
                "Stream interrupted",
                call_sid=session.call_sid,
                stream_id=handle.stream_id,
                chunks_sent=len(state.spoken),
            )
            return CompletionResult(
                text=spoken,
                cancelled=True,
                chunks_sent=len(state.spoken),
                first_chunk_ms=first_chunk_ms,
                total_ms=total_ms,
            )

        full_text = "".join(state.fragments).strip()
        if failure is None and not full_text:
            logger.warning("Stream returned no text", call_sid=session.call_sid)
            failure = BackendFailure.GENERIC
            apology = prompts.EMPTY_COMPLETION_APOLOGY
        elif failure is not None:
            apology = prompts.apology_for(failure)
        else:
            apology = ""

        if failure is not None:
            await on_chunk(apology)
            return CompletionResult(
                text=apology,
                failure=failure,
                chunks_sent=len(state.spoken) + 1,
                first_chunk_ms=first_chunk_ms,
                total_ms=total_ms,
            )

        self.registry.append_history(session.call_sid, "assistant", full_text)
        logger.info(
            "Stream complete",
            call_sid=session.call_sid,
            stream_id=handle.stream_id,
            response_length=len(full_text),
            chunks_sent=len(state.spoken),
            first_chunk_ms=round(first_chunk_ms, 1),
            total_ms=round(total_ms, 1),
        )
        return CompletionResult(
            text=full_text,
            chunks_sent=len(state.spoken),
            first_chunk_ms=first_chunk_ms,
            total_ms=total_ms,
        )

    def cancel_stream(self, session: Session) -> bool:
        """Cancel the session's outstanding stream, if any."""
        handle = session.current_stream
        if handle is None:
            return False
        session.current_stream = None
        return handle.cancel()

    async def _consume(
        self,
        request: CompletionRequest,
        handle: StreamHandle,
        on_chunk: ChunkCallback,
        state: _StreamState,
    ) -> None:
        buffer = SpeechBuffer(word_limit=self.config.stream_word_buffer)

        async with aclosing(self.client.stream(request)) as fragments:
            async for fragment in fragments:
                if handle.cancelled:
                    return
                state.fragments.append(fragment)
                for phrase in buffer.add(fragment):
                    await self._emit(phrase, handle, on_chunk, state)
                    if handle.cancelled:
                        return

        tail = buffer.flush()
        if tail:
            await self._emit(tail, handle, on_chunk, state)

    async def _emit(
        self,
        phrase: str,
        handle: StreamHandle,
        on_chunk: ChunkCallback,
        state: _StreamState,
    ) -> None:
        for chunk in split_into_speakable_chunks(phrase, self.config.max_chunk_chars):
            if handle.cancelled:
                return
            if state.first_chunk_at is None:
                state.first_chunk_at = time.time()
            state.spoken.append(chunk)
            await on_chunk(chunk)
