"""
Tests for the completion pipeline and backend error mapping.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from src.relay import prompts
from src.relay.errors import BackendError, BackendFailure
from src.relay.llm import CompletionClient, CompletionRequest, classify_backend_error
from src.relay.pipeline import REQUEST_HISTORY_LIMIT, CompletionPipeline, StreamHandle
from tests.fakes import FakeCompletionClient


def make_pipeline(registry, config, client):
    return CompletionPipeline(registry, client, config, system_prompt="Be brief.")


class TestBuildRequest:

    def test_system_history_and_utterance(self, registry, config, fake_client):
        pipeline = make_pipeline(registry, config, fake_client)
        session = registry.create("CA1", "+1", "+2")
        registry.append_history("CA1", "system", "internal note")
        registry.append_history("CA1", "user", "Hi")
        registry.append_history("CA1", "assistant", "Hello!")

        request = pipeline.build_request(session, "What's the weather?")

        assert request.system == "Be brief."
        assert request.messages == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "What's the weather?"},
        ]
        assert request.to_messages()[0] == {"role": "system", "content": "Be brief."}
        assert request.model == config.llama_model
        assert request.max_tokens == config.llama_max_tokens

    def test_only_recent_history_is_sent(self, registry, config, fake_client):
        pipeline = make_pipeline(registry, config, fake_client)
        session = registry.create("CA1", "+1", "+2")
        for i in range(15):
            registry.append_history("CA1", "user", f"turn {i}")

        request = pipeline.build_request(session, "latest")

        assert len(request.messages) == REQUEST_HISTORY_LIMIT + 1
        assert request.messages[0]["content"] == "turn 5"


class TestComplete:

    @pytest.mark.asyncio
    async def test_success_records_both_turns(self, registry, config):
        client = FakeCompletionClient(tokens=["It is ", "sunny."])
        pipeline = make_pipeline(registry, config, client)
        session = registry.create("CA1", "+1", "+2")

        result = await pipeline.complete(session, "Weather?", lang="en-US")

        assert result.ok
        assert result.text == "It is sunny."
        assert [(e.role, e.content) for e in session.history] == [
            ("user", "Weather?"),
            ("assistant", "It is sunny."),
        ]
        assert session.history[0].lang == "en-US"
        assert registry.metrics().llm_calls == 1

    @pytest.mark.asyncio
    async def test_backend_error_returns_apology(self, registry, config):
        client = FakeCompletionClient(error=BackendError(BackendFailure.RATE_LIMIT))
        pipeline = make_pipeline(registry, config, client)
        session = registry.create("CA1", "+1", "+2")

        result = await pipeline.complete(session, "Weather?")

        assert result.failure == BackendFailure.RATE_LIMIT
        assert result.text == prompts.apology_for(BackendFailure.RATE_LIMIT)
        assert [e.role for e in session.history] == ["user"]

    @pytest.mark.asyncio
    async def test_empty_completion(self, registry, config):
        pipeline = make_pipeline(registry, config, FakeCompletionClient(tokens=["  "]))
        session = registry.create("CA1", "+1", "+2")

        result = await pipeline.complete(session, "Weather?")

        assert result.failure == BackendFailure.GENERIC
        assert result.text == prompts.EMPTY_COMPLETION_APOLOGY


class TestCompleteStreaming:

    @pytest.mark.asyncio
    async def test_chunks_delivered_in_order(self, registry, config):
        client = FakeCompletionClient(tokens=["It is ", "sunny. ", "Bring ", "**sunglasses**."])
        pipeline = make_pipeline(registry, config, client)
        session = registry.create("CA1", "+1", "+2")
        chunks = []

        async def on_chunk(chunk):
            chunks.append(chunk)

        result = await pipeline.complete_streaming(session, "Weather?", on_chunk)

        assert result.ok
        assert chunks == ["It is sunny.", "Bring sunglasses."]
        assert result.chunks_sent == 2
        assert session.history[-1].content == "It is sunny. Bring **sunglasses**."
        assert session.current_stream is None

    @pytest.mark.asyncio
    async def test_stream_failure_speaks_apology(self, registry, config):
        client = FakeCompletionClient(tokens=[], error=BackendError(BackendFailure.TIMEOUT))
        pipeline = make_pipeline(registry, config, client)
        session = registry.create("CA1", "+1", "+2")
        on_chunk = AsyncMock()

        result = await pipeline.complete_streaming(session, "Weather?", on_chunk)

        assert result.failure == BackendFailure.TIMEOUT
        on_chunk.assert_awaited_once_with(prompts.apology_for(BackendFailure.TIMEOUT))
        assert [e.role for e in session.history] == ["user"]

    @pytest.mark.asyncio
    async def test_cancel_stops_further_chunks(self, registry, config):
        client = FakeCompletionClient(
            tokens=["One. ", "Two. ", "Three. ", "Four. "], delay=0.01
        )
        pipeline = make_pipeline(registry, config, client)
        session = registry.create("CA1", "+1", "+2")
        chunks = []

        async def on_chunk(chunk):
            chunks.append(chunk)
            if len(chunks) == 1:
                pipeline.cancel_stream(session)

        result = await pipeline.complete_streaming(session, "Count", on_chunk)

        assert result.cancelled
        assert chunks == ["One."]
        assert session.history[-1].content == "One."
        assert session.history[-1].interrupted

    @pytest.mark.asyncio
    async def test_cancel_closes_backend_stream(self, registry, config):
        client = FakeCompletionClient(tokens=["One. ", "Two. ", "Three. "])
        pipeline = make_pipeline(registry, config, client)
        session = registry.create("CA1", "+1", "+2")

        async def on_chunk(chunk):
            pipeline.cancel_stream(session)

        result = await pipeline.complete_streaming(session, "Count", on_chunk)

        assert result.cancelled
        assert client.streams_closed == 1

    @pytest.mark.asyncio
    async def test_external_cancel_while_waiting(self, registry, config):
        gate = asyncio.Event()
        pipeline = make_pipeline(registry, config, FakeCompletionClient(gate=gate))
        session = registry.create("CA1", "+1", "+2")
        on_chunk = AsyncMock()

        task = asyncio.create_task(pipeline.complete_streaming(session, "Hi", on_chunk))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert pipeline.cancel_stream(session)
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.cancelled
        on_chunk.assert_not_awaited()
        assert [e.role for e in session.history] == ["user"]

    @pytest.mark.asyncio
    async def test_new_stream_cancels_previous(self, registry, config):
        gate = asyncio.Event()
        pipeline = make_pipeline(registry, config, FakeCompletionClient(gate=gate))
        session = registry.create("CA1", "+1", "+2")
        first_chunks = AsyncMock()

        first = asyncio.create_task(pipeline.complete_streaming(session, "first", first_chunks))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        first_handle = session.current_stream

        gate.set()
        second_chunks = AsyncMock()
        second = await pipeline.complete_streaming(session, "second", second_chunks)
        first_result = await asyncio.wait_for(first, timeout=1.0)

        assert first_handle.cancelled
        assert first_result.cancelled
        first_chunks.assert_not_awaited()
        assert second.ok
        assert second_chunks.await_count >= 1

    def test_cancel_without_stream(self, registry, config, fake_client):
        pipeline = make_pipeline(registry, config, fake_client)
        session = registry.create("CA1", "+1", "+2")

        assert not pipeline.cancel_stream(session)

    def test_handle_cancel_is_idempotent(self):
        handle = StreamHandle("CA1")

        assert handle.cancel()
        assert not handle.cancel()
        assert handle.cancelled


def _status_error(cls, status):
    request = httpx.Request("POST", "https://api.llama.com/compat/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return cls("error", response=response, body=None)


class TestBackendErrorMapping:

    @pytest.mark.parametrize("error, failure", [
        (_status_error(openai.AuthenticationError, 401), BackendFailure.AUTHENTICATION),
        (_status_error(openai.PermissionDeniedError, 403), BackendFailure.AUTHENTICATION),
        (_status_error(openai.RateLimitError, 429), BackendFailure.RATE_LIMIT),
        (_status_error(openai.InternalServerError, 500), BackendFailure.SERVER_ERROR),
        (_status_error(openai.APIStatusError, 503), BackendFailure.SERVER_ERROR),
        (_status_error(openai.BadRequestError, 400), BackendFailure.GENERIC),
        (httpx.ReadTimeout("slow"), BackendFailure.TIMEOUT),
        (ValueError("boom"), BackendFailure.GENERIC),
    ])
    def test_classify(self, error, failure):
        assert classify_backend_error(error) == failure

    def test_classify_sdk_timeout(self):
        request = httpx.Request("POST", "https://api.llama.com/compat/v1/chat/completions")
        assert classify_backend_error(openai.APITimeoutError(request=request)) == BackendFailure.TIMEOUT

    @pytest.mark.asyncio
    async def test_client_wraps_sdk_errors(self, config):
        sdk = MagicMock()
        sdk.chat.completions.create = AsyncMock(
            side_effect=_status_error(openai.RateLimitError, 429)
        )
        client = CompletionClient(config, client=sdk)

        with pytest.raises(BackendError) as exc_info:
            await client.complete(CompletionRequest(system="s", messages=[]))

        assert exc_info.value.failure == BackendFailure.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_client_returns_message_content(self, config):
        response = MagicMock()
        response.choices = [MagicMock()]
        response.choices[0].message.content = "Hello!"
        sdk = MagicMock()
        sdk.chat.completions.create = AsyncMock(return_value=response)
        client = CompletionClient(config, client=sdk)

        text = await client.complete(CompletionRequest(system="s", messages=[]))

        assert text == "Hello!"
        kwargs = sdk.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "s"}
        assert kwargs["stream"] is False
