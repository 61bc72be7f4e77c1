"""
Configuration management for the Conversation Relay agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_LLAMA_BASE_URL = "https://api.llama.com/compat/v1/"
DEFAULT_LLAMA_MODEL = "Llama-4-Maverick-17B-128E-Instruct-FP8"
DEFAULT_WELCOME_GREETING = "Hello! How can I assist you today?"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"
    log_format: str = "json"  # "json" | "console"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    welcome_greeting: str = DEFAULT_WELCOME_GREETING
    validate_twilio_signature: bool = False

    # Llama API (OpenAI-compatible endpoint)
    llama_api_key: str = ""
    llama_base_url: str = DEFAULT_LLAMA_BASE_URL
    llama_model: str = DEFAULT_LLAMA_MODEL
    llama_max_tokens: int = 150
    llama_temperature: float = 0.7
    llama_system_prompt: str = ""
    llama_system_prompt_file: str = ""
    llama_timeout_seconds: float = 30.0
    llama_max_retries: int = 3
    validate_model: bool = False

    # WebSocket
    ws_path: str = "/ws"
    ws_max_payload: int = 1_048_576

    # Feature flags
    enable_dtmf: bool = False
    enable_interruptions: bool = False
    enable_streaming: bool = True

    # Speech chunking
    stream_word_buffer: int = 5
    max_chunk_chars: int = 200

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL handed to ConversationRelay."""
        path = self.ws_path if self.ws_path.startswith("/") else f"/{self.ws_path}"
        return f"wss://{self.public_host}{path}"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    def validate(self) -> None:
        """Validate that all required configuration is present and in range."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.llama_api_key:
            missing.append("LLAMA_API_KEY")
        if not self.llama_model:
            missing.append("LLAMA_MODEL")

        if self.validate_twilio_signature:
            if not self.twilio_account_sid:
                missing.append("TWILIO_ACCOUNT_SID")
            if not self.twilio_auth_token:
                missing.append("TWILIO_AUTH_TOKEN")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if not 1 <= self.port <= 65535:
            raise ConfigError(f"Invalid PORT {self.port}. Expected 1-65535.")
        if not 1 <= self.llama_max_tokens <= 4096:
            raise ConfigError(
                f"Invalid LLAMA_MAX_TOKENS {self.llama_max_tokens}. Expected 1-4096."
            )
        if not 0.0 <= self.llama_temperature <= 2.0:
            raise ConfigError(
                f"Invalid LLAMA_TEMPERATURE {self.llama_temperature}. Expected 0-2."
            )
        if self.log_format not in ("json", "console"):
            raise ConfigError(
                f"Invalid LOG_FORMAT '{self.log_format}'. Expected 'json' or 'console'."
            )
        if not 1 <= len(self.welcome_greeting) <= 500:
            raise ConfigError("TWILIO_WELCOME_GREETING must be 1-500 characters.")
        if self.stream_word_buffer < 1:
            raise ConfigError("STREAM_WORD_BUFFER must be at least 1.")
        if self.max_chunk_chars < 20:
            raise ConfigError("MAX_CHUNK_CHARS must be at least 20.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            log_format=self.log_format,
            ws_url=self.ws_url,
            llama_base_url=self.llama_base_url,
            llama_model=self.llama_model,
            llama_max_tokens=self.llama_max_tokens,
            llama_temperature=self.llama_temperature,
            enable_dtmf=self.enable_dtmf,
            enable_interruptions=self.enable_interruptions,
            enable_streaming=self.enable_streaming,
            validate_twilio_signature=self.validate_twilio_signature,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            llama_key_set=bool(self.llama_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("LOG_FORMAT", "json").strip().lower(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        welcome_greeting=os.getenv("TWILIO_WELCOME_GREETING", DEFAULT_WELCOME_GREETING),
        validate_twilio_signature=_get_bool("VALIDATE_TWILIO_SIGNATURE", False),

        # Llama
        llama_api_key=os.getenv("LLAMA_API_KEY", ""),
        llama_base_url=os.getenv("LLAMA_BASE_URL", DEFAULT_LLAMA_BASE_URL),
        llama_model=os.getenv("LLAMA_MODEL", DEFAULT_LLAMA_MODEL),
        llama_max_tokens=_get_int("LLAMA_MAX_TOKENS", 150),
        llama_temperature=_get_float("LLAMA_TEMPERATURE", 0.7),
        llama_system_prompt=os.getenv("LLAMA_SYSTEM_PROMPT", ""),
        llama_system_prompt_file=os.getenv("LLAMA_SYSTEM_PROMPT_FILE", ""),
        llama_timeout_seconds=_get_float("LLAMA_TIMEOUT_SECONDS", 30.0),
        llama_max_retries=_get_int("LLAMA_MAX_RETRIES", 3),
        validate_model=_get_bool("VALIDATE_MODEL", False),

        # WebSocket
        ws_path=os.getenv("WS_PATH", "/ws"),
        ws_max_payload=_get_int("WS_MAX_PAYLOAD", 1_048_576),

        # Feature flags
        enable_dtmf=_get_bool("ENABLE_DTMF", False),
        enable_interruptions=_get_bool("ENABLE_INTERRUPTIONS", False),
        enable_streaming=_get_bool("ENABLE_STREAMING", True),

        # Speech chunking
        stream_word_buffer=_get_int("STREAM_WORD_BUFFER", 5),
        max_chunk_chars=_get_int("MAX_CHUNK_CHARS", 200),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
