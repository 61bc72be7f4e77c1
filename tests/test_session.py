"""
Tests for the session registry.
"""

import pytest

from src.relay.errors import SessionEndedError, SessionExistsError, SessionNotFoundError
from src.relay.pipeline import StreamHandle
from src.relay.session import MAX_HISTORY_ENTRIES, SessionRegistry


class TestSessionLifecycle:

    def test_create_and_get(self, registry):
        session = registry.create(
            "CA1",
            "+15551230000",
            "+15559870000",
            session_id="VX1",
            direction="inbound",
            custom_parameters={"k": "v"},
            account_sid="AC1",
        )

        assert registry.get("CA1") is session
        assert session.active
        assert session.session_id == "VX1"
        assert session.direction == "inbound"
        assert session.custom_parameters == {"k": "v"}
        assert session.metadata == {"account_sid": "AC1"}
        assert registry.count() == 1

    def test_duplicate_create_raises(self, registry):
        registry.create("CA1", "+1", "+2")

        with pytest.raises(SessionExistsError):
            registry.create("CA1", "+1", "+2")
        assert registry.count() == 1

    def test_end_returns_summary_and_removes(self, registry):
        session = registry.create("CA1", "+1", "+2")
        registry.append_history("CA1", "user", "hello")

        summary = registry.end("CA1", reason="hangup")

        assert summary.call_sid == "CA1"
        assert summary.message_count == 1
        assert summary.reason == "hangup"
        assert summary.duration_seconds >= 0
        assert registry.get("CA1") is None
        assert not session.active
        assert registry.count() == 0

    def test_require_missing_or_ended(self, registry):
        registry.create("CA1", "+1", "+2")
        assert registry.require("CA1").call_sid == "CA1"

        registry.end("CA1")

        with pytest.raises(SessionNotFoundError):
            registry.require("CA1")
        with pytest.raises(SessionNotFoundError):
            registry.require(None)

    def test_end_unknown_is_noop(self, registry):
        assert registry.end("CA404") is None
        assert registry.end(None) is None

    def test_end_cancels_outstanding_stream(self, registry):
        session = registry.create("CA1", "+1", "+2")
        handle = StreamHandle("CA1")
        session.current_stream = handle

        registry.end("CA1")

        assert handle.cancelled
        assert session.current_stream is None

    def test_ended_call_cannot_be_recreated(self, registry):
        registry.create("CA1", "+1", "+2")
        registry.end("CA1")

        with pytest.raises(SessionEndedError):
            registry.create("CA1", "+1", "+2")
        assert registry.get("CA1") is None
        assert registry.count() == 0

    def test_ended_call_record_is_bounded(self, registry, monkeypatch):
        monkeypatch.setattr("src.relay.session.MAX_ENDED_CALL_SIDS", 2)
        for call_sid in ("CA1", "CA2", "CA3"):
            registry.create(call_sid, "+1", "+2")
            registry.end(call_sid)

        assert registry.create("CA1", "+1", "+2").active
        with pytest.raises(SessionEndedError):
            registry.create("CA3", "+1", "+2")

    def test_reset_clears_everything(self, registry):
        registry.create("CA1", "+1", "+2")
        registry.create("CA2", "+1", "+2")

        registry.reset()

        assert registry.count() == 0


class TestHistory:

    def test_history_is_capped_fifo(self, registry):
        registry.create("CA1", "+1", "+2")

        for i in range(MAX_HISTORY_ENTRIES + 5):
            registry.append_history("CA1", "user", f"message {i}")

        history = registry.get("CA1").history
        assert len(history) == MAX_HISTORY_ENTRIES
        assert history[0].content == "message 5"
        assert history[-1].content == f"message {MAX_HISTORY_ENTRIES + 4}"

    def test_append_to_missing_session_is_noop(self, registry):
        assert registry.append_history("CA404", "user", "hello") is None

    def test_append_to_inactive_session_is_noop(self, registry):
        session = registry.create("CA1", "+1", "+2")
        session.active = False

        assert registry.append_history("CA1", "user", "hello") is None
        assert session.history == []

    def test_entry_metadata_and_activity(self, registry):
        session = registry.create("CA1", "+1", "+2")
        before = session.last_activity

        entry = registry.append_history("CA1", "assistant", "Hi", interrupted=True, lang="en-US")

        assert entry.interrupted
        assert entry.lang == "en-US"
        assert entry.to_message() == {"role": "assistant", "content": "Hi"}
        assert session.last_activity >= before
        assert session.last_assistant_message() == "Hi"


class TestSequenceNumbers:

    def test_observe_sequence_advances(self, registry):
        session = registry.create("CA1", "+1", "+2")

        assert session.observe_sequence(1)
        assert session.observe_sequence(3)
        assert not session.observe_sequence(2)
        assert session.sequence_number == 3


def test_metrics_aggregate(registry):
    registry.create("CA1", "+1", "+2")
    registry.append_history("CA1", "user", "hi")
    registry.record_llm_call()
    registry.record_error()
    registry.record_dtmf_command()
    registry.end("CA1")
    registry.create("CA2", "+1", "+2")

    metrics = registry.metrics().to_dict()

    assert metrics["total_sessions"] == 2
    assert metrics["active_sessions"] == 1
    assert metrics["total_messages"] == 1
    assert metrics["llm_calls"] == 1
    assert metrics["errors"] == 1
    assert metrics["dtmf_commands"] == 1


def test_custom_history_cap():
    registry = SessionRegistry(max_history=2)
    registry.create("CA1", "+1", "+2")
    for text in ("a", "b", "c"):
        registry.append_history("CA1", "user", text)

    assert [e.content for e in registry.get("CA1").history] == ["b", "c"]
