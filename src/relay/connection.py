"""
Per-socket event sequencing.

`RelayConnection` sits between a WebSocket read loop and the `ProtocolRouter`.
The transport only hands it raw frames and a coroutine that writes text.

Ordering rules:
- Ping is answered immediately, without touching session state
- Prompt runs as the single in-flight turn task, so an Interrupt arriving
  while the reply is still streaming can cancel it
- An Interrupt, Prompt or End that arrives before the turn has opened its
  stream cancels the turn task itself
- A new Prompt cancels the running stream, waits for that turn to unwind,
  then starts its own
- End cancels the running stream before the session is removed
- Every other event waits for the in-flight turn, so events are handled in
  arrival order
"""

import asyncio
from typing import Awaitable, Callable, Optional, Union

import structlog

from src.relay.errors import ProtocolError
from src.relay.protocol import (
    EndEvent,
    InterruptEvent,
    OutboundMessage,
    PingEvent,
    PromptEvent,
    create_pong_message,
    encode_outbound,
    parse_inbound_message,
)
from src.relay.router import ConnectionState, ProtocolRouter

logger = structlog.get_logger(__name__)

SendText = Callable[[str], Awaitable[None]]


class RelayConnection:
    """Drives one ConversationRelay WebSocket."""

    def __init__(self, router: ProtocolRouter, send_text: SendText):
        self.router = router
        self.state = ConnectionState()
        self._send_text = send_text
        self._turn: Optional[asyncio.Task] = None
        self._closed = False
        self.messages_received = 0
        self.messages_sent = 0

    @property
    def call_sid(self) -> Optional[str]:
        return self.state.call_sid

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: OutboundMessage) -> None:
        """Encode and write one outbound message. Failures are logged, not raised."""
        if self._closed:
            logger.debug(
                "Dropping outbound message on closed connection",
                call_sid=self.call_sid,
                message_type=type(message).__name__,
            )
            return
        try:
            await self._send_text(encode_outbound(message))
            self.messages_sent += 1
        except Exception as e:
            logger.error(
                "Failed to send message",
                call_sid=self.call_sid,
                message_type=type(message).__name__,
                error=str(e),
            )

    async def handle_raw(self, raw: Union[str, bytes]) -> None:
        """Decode one frame and dispatch it according to the ordering rules."""
        if self._closed:
            return

        try:
            event = parse_inbound_message(raw)
        except ProtocolError as e:
            logger.warning(
                "Dropping malformed message",
                call_sid=self.call_sid,
                error=e.detail,
            )
            return

        self.messages_received += 1

        if isinstance(event, PingEvent):
            await self.send(create_pong_message(event.sequence_number))
            return

        if isinstance(event, InterruptEvent):
            if not self._stream_running():
                self._cancel_pending_turn()
            await self.router.handle_event(event, self.state, self.send)
            return

        if isinstance(event, PromptEvent):
            self._stop_turn()
            await self._wait_for_turn()
            self._turn = asyncio.create_task(
                self.router.handle_event(event, self.state, self.send)
            )
            return

        if isinstance(event, EndEvent):
            self._stop_turn()
            await self._wait_for_turn()
            await self.router.handle_event(event, self.state, self.send)
            return

        await self._wait_for_turn()
        await self.router.handle_event(event, self.state, self.send)

    async def wait_idle(self) -> None:
        """Wait for the in-flight turn, if any, to finish."""
        await self._wait_for_turn()

    async def close(self) -> None:
        """Transport closed: stop the running turn and end the session."""
        if self._closed:
            return
        self._closed = True

        self._cancel_stream()
        turn = self._turn
        self._turn = None
        if turn is not None and not turn.done():
            turn.cancel()
            await asyncio.gather(turn, return_exceptions=True)

        if self.state.call_sid:
            self.router.registry.end(self.state.call_sid, reason="connection_closed")
            self.state.call_sid = None

        logger.info(
            "Connection closed",
            connection_id=self.state.connection_id,
            messages_received=self.messages_received,
            messages_sent=self.messages_sent,
        )

    def _cancel_stream(self) -> bool:
        session = self.router.registry.get(self.state.call_sid)
        if session is None:
            return False
        return self.router.pipeline.cancel_stream(session)

    def _stream_running(self) -> bool:
        session = self.router.registry.get(self.state.call_sid)
        return session is not None and session.current_stream is not None

    def _cancel_pending_turn(self) -> None:
        # A turn task that has not reached the pipeline yet has no stream to cancel.
        turn = self._turn
        if turn is not None and not turn.done():
            logger.info("Cancelling turn before its reply started", call_sid=self.call_sid)
            turn.cancel()

    def _stop_turn(self) -> None:
        """Cancel the running stream, or the turn itself when no stream is running."""
        if not self._cancel_stream():
            self._cancel_pending_turn()

    async def _wait_for_turn(self) -> None:
        turn = self._turn
        if turn is None:
            return
        try:
            await turn
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not turn.cancelled() or (current is not None and current.cancelling()):
                raise
        finally:
            if self._turn is turn:
                self._turn = None
