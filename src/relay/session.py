"""
Call session state and the session registry.

One `Session` exists per live call. The registry is an ordinary object built at
startup and handed to the router and pipeline; every operation is synchronous
and runs inside the event loop, so no locking is needed.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional

import structlog

from src.relay.errors import SessionEndedError, SessionExistsError, SessionNotFoundError

if TYPE_CHECKING:
    from src.relay.pipeline import StreamHandle

logger = structlog.get_logger(__name__)

MAX_HISTORY_ENTRIES = 20

# Ended call SIDs remembered so a late setup cannot bring a call back.
MAX_ENDED_CALL_SIDS = 1000

Role = Literal["user", "assistant", "system"]


@dataclass
class ConversationEntry:
    """A single turn in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)
    confidence: Optional[float] = None
    duration: Optional[float] = None
    interrupted: bool = False
    lang: Optional[str] = None
    last: Optional[bool] = None

    def to_message(self) -> Dict[str, str]:
        """Message in chat-completions format."""
        return {"role": self.role, "content": self.content}


@dataclass
class Session:
    """State for one active call."""
    call_sid: str
    from_number: str = ""
    to_number: str = ""
    session_id: Optional[str] = None
    direction: str = ""
    call_status: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    history: List[ConversationEntry] = field(default_factory=list)
    dtmf_buffer: str = ""
    sequence_number: int = 0
    active: bool = True
    current_stream: Optional["StreamHandle"] = None
    last_interrupt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        self.last_activity = max(self.last_activity, time.time())

    def observe_sequence(self, sequence_number: int) -> bool:
        """
        Record an inbound sequence number.

        Returns False (and keeps the current value) if the number does not
        advance the counter.
        """
        if sequence_number <= self.sequence_number:
            return False
        self.sequence_number = sequence_number
        return True

    def last_assistant_message(self) -> Optional[str]:
        for entry in reversed(self.history):
            if entry.role == "assistant":
                return entry.content
        return None

    @property
    def duration_seconds(self) -> float:
        return time.time() - self.start_time


@dataclass
class SessionSummary:
    """Emitted when a session ends."""
    call_sid: str
    duration_seconds: float
    message_count: int
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "message_count": self.message_count,
            "reason": self.reason,
        }


@dataclass
class SessionMetrics:
    """Aggregate counters across all sessions seen by a registry."""
    total_sessions: int = 0
    active_sessions: int = 0
    average_session_duration: float = 0.0
    total_messages: int = 0
    llm_calls: int = 0
    errors: int = 0
    dtmf_commands: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "average_session_duration": round(self.average_session_duration, 2),
            "total_messages": self.total_messages,
            "llm_calls": self.llm_calls,
            "errors": self.errors,
            "dtmf_commands": self.dtmf_commands,
        }


class SessionRegistry:
    """Keyed store of live call sessions."""

    def __init__(self, max_history: int = MAX_HISTORY_ENTRIES):
        self.max_history = max_history
        self._sessions: Dict[str, Session] = {}
        self._ended_call_sids: OrderedDict[str, None] = OrderedDict()
        self._total_sessions = 0
        self._ended_sessions = 0
        self._ended_duration_total = 0.0
        self._total_messages = 0
        self._llm_calls = 0
        self._errors = 0
        self._dtmf_commands = 0

    def create(
        self,
        call_sid: str,
        from_number: str,
        to_number: str,
        **metadata: Any,
    ) -> Session:
        """
        Create a session for a call.

        Raises:
            SessionExistsError: If a live session already uses this call SID
            SessionEndedError: If the call already ended
        """
        if call_sid in self._sessions:
            raise SessionExistsError(f"Session already exists for call {call_sid}")
        if call_sid in self._ended_call_sids:
            raise SessionEndedError(f"Call {call_sid} has already ended")

        session = Session(
            call_sid=call_sid,
            from_number=from_number,
            to_number=to_number,
            session_id=metadata.pop("session_id", None),
            direction=metadata.pop("direction", "") or "",
            call_status=metadata.pop("call_status", "") or "",
            custom_parameters=metadata.pop("custom_parameters", None) or {},
            metadata=metadata,
        )
        self._sessions[call_sid] = session
        self._total_sessions += 1

        logger.info(
            "Call started",
            call_sid=call_sid,
            from_number=from_number,
            to_number=to_number,
            active_sessions=len(self._sessions),
        )
        return session

    def get(self, call_sid: Optional[str]) -> Optional[Session]:
        if not call_sid:
            return None
        return self._sessions.get(call_sid)

    def require(self, call_sid: Optional[str]) -> Session:
        """
        Get a live session.

        Raises:
            SessionNotFoundError: If there is no active session for the call
        """
        session = self.get(call_sid)
        if session is None or not session.active:
            raise SessionNotFoundError(f"No active session for call {call_sid}")
        return session

    def append_history(
        self,
        call_sid: str,
        role: Role,
        content: str,
        **entry_metadata: Any,
    ) -> Optional[ConversationEntry]:
        """
        Append a conversation entry, trimming the oldest past the cap.

        No-op for absent or inactive sessions.
        """
        session = self._sessions.get(call_sid)
        if session is None or not session.active:
            logger.debug("History append ignored", call_sid=call_sid, role=role)
            return None

        entry = ConversationEntry(role=role, content=content, **entry_metadata)
        session.history.append(entry)
        if len(session.history) > self.max_history:
            session.history = session.history[-self.max_history:]
        session.touch()
        self._total_messages += 1
        return entry

    def end(self, call_sid: Optional[str], reason: Optional[str] = None) -> Optional[SessionSummary]:
        """Deactivate and remove a session. No-op for unknown call SIDs."""
        session = self._sessions.pop(call_sid, None) if call_sid else None
        if session is None:
            return None

        session.active = False
        if session.current_stream is not None:
            session.current_stream.cancel()
            session.current_stream = None
        self._remember_ended(session.call_sid)

        summary = SessionSummary(
            call_sid=session.call_sid,
            duration_seconds=session.duration_seconds,
            message_count=len(session.history),
            reason=reason,
        )
        self._ended_sessions += 1
        self._ended_duration_total += summary.duration_seconds

        logger.info(
            "Call ended",
            call_sid=call_sid,
            duration=f"{round(summary.duration_seconds)}s",
            messages=summary.message_count,
            reason=reason,
        )
        return summary

    def count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    def reset(self) -> None:
        """Drop every session. Used on shutdown."""
        logger.info("Shutting down session registry", active_sessions=len(self._sessions))
        for session in self._sessions.values():
            session.active = False
            if session.current_stream is not None:
                session.current_stream.cancel()
                session.current_stream = None
            self._remember_ended(session.call_sid)
        self._sessions.clear()

    def _remember_ended(self, call_sid: str) -> None:
        self._ended_call_sids[call_sid] = None
        self._ended_call_sids.move_to_end(call_sid)
        while len(self._ended_call_sids) > MAX_ENDED_CALL_SIDS:
            self._ended_call_sids.popitem(last=False)

    def record_llm_call(self) -> None:
        self._llm_calls += 1

    def record_error(self) -> None:
        self._errors += 1

    def record_dtmf_command(self) -> None:
        self._dtmf_commands += 1

    def metrics(self) -> SessionMetrics:
        average = (
            self._ended_duration_total / self._ended_sessions
            if self._ended_sessions
            else 0.0
        )
        return SessionMetrics(
            total_sessions=self._total_sessions,
            active_sessions=len(self._sessions),
            average_session_duration=average,
            total_messages=self._total_messages,
            llm_calls=self._llm_calls,
            errors=self._errors,
            dtmf_commands=self._dtmf_commands,
        )
