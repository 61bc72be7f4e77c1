"""
Protocol router.

Dispatches decoded ConversationRelay events to the session registry, the DTMF
matcher and the completion pipeline, and sends the resulting outbound messages.

Any exception raised while handling an event is caught here and turned into a
single spoken apology, so a handler defect never reaches the transport.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import structlog

from src.relay import prompts
from src.relay.config import Config
from src.relay.dtmf import DtmfMatcher, DtmfOutcome
from src.relay.errors import SessionError, SessionNotFoundError
from src.relay.pipeline import CompletionPipeline
from src.relay.protocol import (
    DtmfEvent,
    EndEvent,
    ErrorEvent,
    InboundEvent,
    InterruptEvent,
    OutboundMessage,
    PingEvent,
    PromptEvent,
    SetupEvent,
    create_end_session_message,
    create_pong_message,
    create_text_message,
)
from src.relay.session import Session, SessionRegistry
from src.relay.voice_text import clean_for_voice

logger = structlog.get_logger(__name__)

SendCallback = Callable[[OutboundMessage], Awaitable[None]]


@dataclass
class ConnectionState:
    """Per-WebSocket state: which call the socket is bound to."""
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    call_sid: Optional[str] = None
    connected_at: float = field(default_factory=time.time)


class ProtocolRouter:
    """Routes inbound events for one or many connections."""

    def __init__(
        self,
        registry: SessionRegistry,
        pipeline: CompletionPipeline,
        config: Config,
        dtmf_matcher: Optional[DtmfMatcher] = None,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.config = config
        self.dtmf = dtmf_matcher or DtmfMatcher()

    async def handle_event(
        self,
        event: InboundEvent,
        connection: ConnectionState,
        send: SendCallback,
    ) -> None:
        """Handle one inbound event. Never raises for handler failures."""
        try:
            if not isinstance(event, (SetupEvent, PingEvent)):
                self._observe_sequence(event, connection)

            if isinstance(event, SetupEvent):
                await self._handle_setup(event, connection)
            elif isinstance(event, PromptEvent):
                await self._handle_prompt(event, connection, send)
            elif isinstance(event, InterruptEvent):
                self._handle_interrupt(event, connection)
            elif isinstance(event, DtmfEvent):
                await self._handle_dtmf(event, connection, send)
            elif isinstance(event, EndEvent):
                self._handle_end(event, connection)
            elif isinstance(event, ErrorEvent):
                self._handle_error(event, connection)
            elif isinstance(event, PingEvent):
                await send(create_pong_message(event.sequence_number))
            else:
                logger.warning("Unknown message type", event=repr(event))
        except Exception:
            logger.exception(
                "Error in message handler",
                event_type=type(event).__name__,
                call_sid=connection.call_sid,
                connection_id=connection.connection_id,
            )
            self.registry.record_error()
            await self._send_apology(send, connection)

    def _observe_sequence(self, event: InboundEvent, connection: ConnectionState) -> None:
        session = self.registry.get(connection.call_sid)
        if session is not None and not session.observe_sequence(event.sequence_number):
            logger.warning(
                "Out-of-order sequence number",
                call_sid=session.call_sid,
                sequence_number=event.sequence_number,
                last_sequence_number=session.sequence_number,
            )

    def _active_session(self, connection: ConnectionState, event_name: str) -> Optional[Session]:
        if not connection.call_sid:
            logger.error("Received event before setup", event=event_name,
                         connection_id=connection.connection_id)
            return None

        try:
            return self.registry.require(connection.call_sid)
        except SessionNotFoundError as e:
            logger.error("Session not found", event=event_name, error=e.detail)
            return None

    async def _handle_setup(self, event: SetupEvent, connection: ConnectionState) -> None:
        logger.info(
            "Setting up call",
            call_sid=event.call_sid,
            from_number=event.from_number,
            to_number=event.to_number,
            direction=event.direction,
            call_status=event.call_status,
        )

        if connection.call_sid and connection.call_sid != event.call_sid:
            logger.warning(
                "Setup received on a connection bound to another call",
                call_sid=event.call_sid,
                bound_call_sid=connection.call_sid,
            )
            return

        try:
            session = self.registry.create(
                event.call_sid,
                event.from_number,
                event.to_number,
                session_id=event.session_id,
                direction=event.direction,
                call_status=event.call_status,
                custom_parameters=event.custom_parameters,
                account_sid=event.account_sid,
            )
        except SessionError as e:
            logger.warning("Setup ignored", call_sid=event.call_sid, error=e.detail)
            return

        session.observe_sequence(event.sequence_number)
        connection.call_sid = event.call_sid
        # Greeting is spoken by ConversationRelay itself (welcomeGreeting).

    async def _handle_prompt(
        self,
        event: PromptEvent,
        connection: ConnectionState,
        send: SendCallback,
    ) -> None:
        session = self._active_session(connection, "prompt")
        if session is None:
            return

        if event.last is False:
            logger.debug("Partial prompt ignored", call_sid=session.call_sid)
            return

        text = event.voice_prompt.strip()
        if not text:
            logger.debug("Empty prompt ignored", call_sid=session.call_sid)
            return

        logger.info("User said", call_sid=session.call_sid, prompt=text, lang=event.lang)
        interruptible = self.config.enable_interruptions

        if not self.config.enable_streaming:
            result = await self.pipeline.complete(session, text, lang=event.lang)
            if result.failure is not None:
                self.registry.record_error()
            token = clean_for_voice(result.text) or prompts.GENERIC_APOLOGY
            await send(create_text_message(
                token,
                last=True,
                interruptible=interruptible if result.ok else True,
                lang=event.lang,
            ))
            logger.info("Assistant response", call_sid=session.call_sid,
                        response_length=len(token), failure=result.failure)
            return

        # Hold one chunk back so the final chunk can carry `last: true`.
        held: List[str] = []

        async def on_chunk(chunk: str) -> None:
            if held:
                await send(create_text_message(
                    held.pop(), last=False, interruptible=interruptible, lang=event.lang
                ))
            held.append(chunk)

        result = await self.pipeline.complete_streaming(session, text, on_chunk, lang=event.lang)
        if result.cancelled:
            return
        if result.failure is not None:
            self.registry.record_error()

        final = held.pop() if held else ""
        await send(create_text_message(
            final,
            last=True,
            interruptible=interruptible if result.ok else True,
            lang=event.lang,
        ))
        logger.info(
            "Assistant response",
            call_sid=session.call_sid,
            response_length=len(result.text),
            chunks=result.chunks_sent,
            failure=result.failure,
        )

    def _handle_interrupt(self, event: InterruptEvent, connection: ConnectionState) -> None:
        session = self.registry.get(connection.call_sid)
        if session is None:
            logger.debug("Interrupt without session", connection_id=connection.connection_id)
            return

        session.last_interrupt = event.utterance_until_interrupt
        cancelled = self.pipeline.cancel_stream(session)
        if not cancelled and event.utterance_until_interrupt:
            for entry in reversed(session.history):
                if entry.role == "assistant":
                    entry.interrupted = True
                    break

        logger.info(
            "User interrupted",
            call_sid=session.call_sid,
            utterance=event.utterance_until_interrupt,
            duration_ms=event.duration_until_interrupt_ms,
            stream_cancelled=cancelled,
        )

    async def _handle_dtmf(
        self,
        event: DtmfEvent,
        connection: ConnectionState,
        send: SendCallback,
    ) -> None:
        if not self.config.enable_dtmf:
            logger.debug("DTMF disabled, digit ignored", call_sid=connection.call_sid)
            return

        session = self._active_session(connection, "dtmf")
        if session is None:
            return

        logger.info("DTMF digit pressed", call_sid=session.call_sid, digit=event.digit)
        result = self.dtmf.process_digit(event.digit, session)
        if result.outcome == DtmfOutcome.REJECTED:
            return
        if result.outcome in (DtmfOutcome.MATCH, DtmfOutcome.END_CALL, DtmfOutcome.CLEARED):
            self.registry.record_dtmf_command()

        token = clean_for_voice(result.message) or result.message
        await send(create_text_message(token, last=True, interruptible=True))

        if result.transfer:
            await send(create_end_session_message({"reason": "transfer", "target": result.transfer}))
        elif result.end_call:
            await send(create_end_session_message())

    def _handle_end(self, event: EndEvent, connection: ConnectionState) -> None:
        if not connection.call_sid:
            logger.debug("End without session", connection_id=connection.connection_id)
            return

        logger.info(
            "Call ending",
            call_sid=connection.call_sid,
            reason=event.reason,
            error_code=event.error_code,
        )
        self.registry.end(connection.call_sid, reason=event.reason)
        connection.call_sid = None

    def _handle_error(self, event: ErrorEvent, connection: ConnectionState) -> None:
        logger.warning(
            "Twilio error",
            call_sid=connection.call_sid,
            description=event.description,
            code=event.code,
        )

    async def _send_apology(self, send: SendCallback, connection: ConnectionState) -> None:
        try:
            await send(create_text_message(prompts.GENERIC_APOLOGY, last=True, interruptible=True))
        except Exception:
            logger.exception("Failed to send apology", call_sid=connection.call_sid)
