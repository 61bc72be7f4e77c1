"""
Pytest configuration and fixtures.
"""

import json
import os
from unittest.mock import patch

import pytest

from tests.fakes import FakeCompletionClient


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "console",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "LLAMA_API_KEY": "test_llama_key",
        "LLAMA_MODEL": "test-model",
        "ENABLE_DTMF": "true",
        "ENABLE_INTERRUPTIONS": "true",
        "ENABLE_STREAMING": "true",
        "VALIDATE_MODEL": "false",
        "VALIDATE_TWILIO_SIGNATURE": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.relay.config import get_config
    return get_config()


@pytest.fixture
def fake_client():
    return FakeCompletionClient()


@pytest.fixture
def registry():
    from src.relay.session import SessionRegistry
    return SessionRegistry()


@pytest.fixture
def setup_message():
    """Sample ConversationRelay setup message."""
    return json.dumps({
        "type": "setup",
        "sequenceNumber": 1,
        "sessionId": "VX123",
        "callSid": "CA1",
        "from": "+15551230000",
        "to": "+15559870000",
        "direction": "inbound",
        "callStatus": "RINGING",
        "accountSid": "AC345678",
        "customParameters": {"campaign": "spring"},
    })


def prompt_message(text: str, sequence_number: int = 2, **extra) -> str:
    return json.dumps({
        "type": "prompt",
        "sequenceNumber": sequence_number,
        "voicePrompt": text,
        "lang": "en-US",
        "last": True,
        **extra,
    })


@pytest.fixture
def prompt_factory():
    return prompt_message
