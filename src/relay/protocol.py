"""
Twilio ConversationRelay WebSocket protocol.

Twilio sends JSON messages tagged by `type`:
- setup: Call connected, carries callSid/from/to
- prompt: Transcribed caller utterance (voicePrompt)
- interrupt: Caller started speaking over our speech
- dtmf: Keypad digit pressed
- end: Session finished
- ping: Heartbeat, answered with pong
- error: Transport-side error report

Outbound messages:
- text: Token to be spoken (last/interruptible/preemptible flags)
- play: Play a media URL
- sendDigits: Send DTMF digits on the call
- language: Switch TTS/transcription language
- end: End the ConversationRelay session
- pong: Heartbeat reply

Messages are msgspec tagged structs, so decoding yields exactly one event class
and encoding writes the `type` discriminator.
"""

import re
import time
from typing import Any, Dict, Optional, Union

import msgspec
import structlog

from src.relay.errors import ProtocolError

logger = structlog.get_logger(__name__)

DTMF_DIGITS = frozenset("0123456789*#")

_WIRE_OVERRIDES = {
    "from_number": "from",
    "to_number": "to",
}


def _wire_name(name: str) -> str:
    """Map a snake_case field name to its camelCase wire name."""
    if name in _WIRE_OVERRIDES:
        return _WIRE_OVERRIDES[name]
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class _Inbound(msgspec.Struct, tag_field="type", rename=_wire_name):
    sequence_number: int


class SetupEvent(_Inbound, tag="setup"):
    """Sent once when ConversationRelay connects for a call."""
    call_sid: str
    from_number: str
    to_number: str
    direction: str
    call_status: str
    session_id: Optional[str] = None
    account_sid: Optional[str] = None
    parent_call_sid: Optional[str] = None
    forwarded_from: Optional[str] = None
    caller_name: Optional[str] = None
    call_type: Optional[str] = None
    custom_parameters: Optional[Dict[str, Any]] = None


class PromptEvent(_Inbound, tag="prompt"):
    voice_prompt: str
    lang: Optional[str] = None
    last: Optional[bool] = None


class InterruptEvent(_Inbound, tag="interrupt"):
    utterance_until_interrupt: Optional[str] = None
    duration_until_interrupt_ms: Optional[int] = None


class DtmfEvent(_Inbound, tag="dtmf"):
    digit: str


class EndEvent(_Inbound, tag="end"):
    reason: Optional[str] = None
    call_duration: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PingEvent(_Inbound, tag="ping"):
    timestamp: Optional[int] = None


class ErrorEvent(_Inbound, tag="error"):
    description: str
    code: Optional[str] = None


InboundEvent = Union[
    SetupEvent,
    PromptEvent,
    InterruptEvent,
    DtmfEvent,
    EndEvent,
    PingEvent,
    ErrorEvent,
]


class _Outbound(msgspec.Struct, tag_field="type", rename=_wire_name, omit_defaults=True):
    pass


class TextMessage(_Outbound, tag="text"):
    token: str
    last: Optional[bool] = None
    lang: Optional[str] = None
    interruptible: Optional[bool] = None
    preemptible: Optional[bool] = None


class PlayMessage(_Outbound, tag="play"):
    source: str
    loop: Optional[int] = None
    interruptible: Optional[bool] = None
    preemptible: Optional[bool] = None


class SendDigitsMessage(_Outbound, tag="sendDigits"):
    digits: str


class LanguageMessage(_Outbound, tag="language"):
    tts_language: Optional[str] = None
    transcription_language: Optional[str] = None


class EndSessionMessage(_Outbound, tag="end"):
    handoff_data: Optional[str] = None


class PongMessage(_Outbound, tag="pong"):
    sequence_number: int
    timestamp: int


OutboundMessage = Union[
    TextMessage,
    PlayMessage,
    SendDigitsMessage,
    LanguageMessage,
    EndSessionMessage,
    PongMessage,
]

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder(InboundEvent)
encoder = msgspec.json.Encoder()

_SEND_DIGITS_RE = re.compile(r"^[0-9*#wW]+$")


def parse_inbound_message(raw_message: Union[str, bytes]) -> InboundEvent:
    """
    Parse a raw ConversationRelay WebSocket message.

    Args:
        raw_message: Raw JSON text or bytes from Twilio

    Returns:
        The decoded event struct

    Raises:
        ProtocolError: If the message is not JSON, has an unknown type, or
            misses a required field
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        return decoder.decode(data)
    except msgspec.ValidationError as e:
        raise ProtocolError(f"Invalid message: {e}") from e
    except msgspec.DecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e


def encode_outbound(message: OutboundMessage) -> str:
    """Encode an outbound message as JSON text."""
    return encoder.encode(message).decode("utf-8")


def create_text_message(
    token: str,
    *,
    last: bool = True,
    interruptible: Optional[bool] = None,
    lang: Optional[str] = None,
    preemptible: Optional[bool] = None,
) -> TextMessage:
    """Build a text message for ConversationRelay to speak."""
    return TextMessage(
        token=token,
        last=last,
        lang=lang,
        interruptible=interruptible,
        preemptible=preemptible,
    )


def create_pong_message(sequence_number: int, timestamp_ms: Optional[int] = None) -> PongMessage:
    """Build the heartbeat reply carrying the ping's sequence number."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return PongMessage(sequence_number=sequence_number, timestamp=timestamp_ms)


def create_end_session_message(handoff: Optional[Dict[str, Any]] = None) -> EndSessionMessage:
    """
    Build an end message. `handoff` is serialized into `handoffData`, which Twilio
    passes on to the <Connect> action URL.
    """
    handoff_data = encoder.encode(handoff).decode("utf-8") if handoff else None
    return EndSessionMessage(handoff_data=handoff_data)


def create_send_digits_message(digits: str) -> SendDigitsMessage:
    """
    Build a sendDigits message.

    Accepts DTMF digits plus `w`/`W` wait characters as Twilio does.
    """
    if not digits or not _SEND_DIGITS_RE.match(digits):
        raise ValueError(f"Invalid DTMF digits: {digits!r}")
    return SendDigitsMessage(digits=digits)


def is_valid_dtmf_digit(digit: str) -> bool:
    """True for a single keypad character (0-9, *, #)."""
    return isinstance(digit, str) and len(digit) == 1 and digit in DTMF_DIGITS
