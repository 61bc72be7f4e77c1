"""
DTMF command matching.

Digits accumulate in the session's `dtmf_buffer` until they identify exactly one
registered sequence. Sequences may be prefixes of one another: while a longer
sequence is still reachable the matcher waits for more digits, even if the
buffer already equals a shorter command.

Reserved keys are checked before the table:
- `#` ends the call, whatever is buffered
- `*` pressed while the buffer holds `*` clears the buffer

There is no inter-digit timeout; the buffer only changes on a match, a
mismatch or a clear.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from src.relay import prompts
from src.relay.protocol import is_valid_dtmf_digit
from src.relay.session import Session

logger = structlog.get_logger(__name__)

END_CALL_KEY = "#"
MENU_KEY = "*"
CLEAR_SEQUENCE = "**"


class DtmfAction(str, Enum):
    END_CALL = "end_call"
    TRANSFER = "transfer"
    MENU = "menu"
    REPEAT = "repeat"
    INFO = "info"
    CUSTOM = "custom"


class DtmfOutcome(str, Enum):
    MATCH = "match"
    PENDING = "pending"
    NO_MATCH = "no_match"
    END_CALL = "end_call"
    CLEARED = "cleared"
    REJECTED = "rejected"


@dataclass
class DtmfCommand:
    """
    A keypad sequence and what it does.

    `response` is spoken on match (defaults to `description`). A custom
    `handler` runs on match and may return replacement text.
    """
    sequence: str
    action: DtmfAction
    description: str
    response: Optional[str] = None
    transfer: Optional[str] = None
    handler: Optional[Callable[[Session], Optional[str]]] = None

    @property
    def spoken_text(self) -> str:
        return self.response or self.description


@dataclass
class DtmfResult:
    outcome: DtmfOutcome
    message: str = ""
    end_call: bool = False
    transfer: Optional[str] = None
    command: Optional[DtmfCommand] = None


def default_commands() -> List[DtmfCommand]:
    return [
        DtmfCommand(END_CALL_KEY, DtmfAction.END_CALL, "End call", response=prompts.DTMF_GOODBYE),
        DtmfCommand(MENU_KEY, DtmfAction.MENU, "Main menu", response=prompts.DTMF_MENU),
        DtmfCommand(
            "0",
            DtmfAction.TRANSFER,
            "Transfer to operator",
            response=prompts.DTMF_TRANSFER,
            transfer="operator",
        ),
        DtmfCommand("1", DtmfAction.INFO, "Account information", response=prompts.DTMF_ACCOUNT_INFO),
        DtmfCommand("2", DtmfAction.INFO, "Support", response=prompts.DTMF_SUPPORT),
        DtmfCommand("9", DtmfAction.REPEAT, "Repeat last message"),
    ]


class DtmfMatcher:
    """Multi-digit command recognizer over a per-session digit buffer."""

    def __init__(self, commands: Optional[List[DtmfCommand]] = None):
        self._commands: Dict[str, DtmfCommand] = {}
        for command in default_commands() if commands is None else commands:
            self._commands[command.sequence] = command

    @property
    def commands(self) -> List[DtmfCommand]:
        return list(self._commands.values())

    def register_command(self, command: DtmfCommand) -> None:
        """
        Register (or replace) a command sequence.

        Raises:
            ValueError: For sequences that contain non-keypad characters or
                collide with the reserved `#` and `**` keys
        """
        sequence = command.sequence
        if not sequence or not all(is_valid_dtmf_digit(d) for d in sequence):
            raise ValueError(f"Invalid DTMF sequence: {sequence!r}")
        if END_CALL_KEY in sequence:
            raise ValueError("'#' is reserved for ending the call")
        if sequence.startswith(CLEAR_SEQUENCE):
            raise ValueError("'**' is reserved for clearing the digit buffer")

        replaced = sequence in self._commands
        self._commands[sequence] = command
        logger.info(
            "DTMF command registered",
            sequence=sequence,
            action=command.action.value,
            replaced=replaced,
        )

    def unregister_command(self, sequence: str) -> bool:
        if sequence == END_CALL_KEY:
            raise ValueError("'#' is reserved for ending the call")
        return self._commands.pop(sequence, None) is not None

    def process_digit(self, digit: str, session: Session) -> DtmfResult:
        """Feed one digit for a session and report what it resolved to."""
        if not is_valid_dtmf_digit(digit):
            logger.warning("Rejected DTMF digit", call_sid=session.call_sid, digit=digit)
            return DtmfResult(outcome=DtmfOutcome.REJECTED)

        if digit == END_CALL_KEY:
            session.dtmf_buffer = ""
            return DtmfResult(
                outcome=DtmfOutcome.END_CALL,
                message=prompts.DTMF_GOODBYE,
                end_call=True,
                command=self._commands.get(END_CALL_KEY),
            )

        if digit == MENU_KEY and session.dtmf_buffer == MENU_KEY:
            session.dtmf_buffer = ""
            return DtmfResult(outcome=DtmfOutcome.CLEARED, message=prompts.DTMF_BUFFER_CLEARED)

        buffer = session.dtmf_buffer + digit
        candidates = [seq for seq in self._commands if seq.startswith(buffer)]
        exact = self._commands.get(buffer)
        has_longer = any(len(seq) > len(buffer) for seq in candidates)

        if exact is not None and not has_longer:
            session.dtmf_buffer = ""
            return self._execute(exact, session)

        if has_longer:
            session.dtmf_buffer = buffer
            logger.debug("DTMF sequence pending", call_sid=session.call_sid, buffer=buffer)
            return DtmfResult(outcome=DtmfOutcome.PENDING, message=prompts.DTMF_CONTINUE)

        session.dtmf_buffer = ""
        logger.info(
            "DTMF sequence not recognized",
            call_sid=session.call_sid,
            sequence=buffer,
            single_digit=len(buffer) == 1,
        )
        return DtmfResult(outcome=DtmfOutcome.NO_MATCH, message=prompts.DTMF_INVALID)

    def _execute(self, command: DtmfCommand, session: Session) -> DtmfResult:
        logger.info(
            "DTMF command matched",
            call_sid=session.call_sid,
            sequence=command.sequence,
            action=command.action.value,
        )

        if command.action == DtmfAction.REPEAT:
            message = session.last_assistant_message() or prompts.DTMF_NOTHING_TO_REPEAT
            return DtmfResult(outcome=DtmfOutcome.MATCH, message=message, command=command)

        if command.action == DtmfAction.TRANSFER:
            return DtmfResult(
                outcome=DtmfOutcome.MATCH,
                message=command.spoken_text,
                transfer=command.transfer or "operator",
                command=command,
            )

        message = command.spoken_text
        if command.handler is not None:
            replacement = command.handler(session)
            if replacement:
                message = replacement

        return DtmfResult(
            outcome=DtmfOutcome.MATCH,
            message=message,
            end_call=command.action == DtmfAction.END_CALL,
            command=command,
        )
