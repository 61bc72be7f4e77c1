"""
Llama API completion client (OpenAI-compatible endpoint).

Provides:
- Startup model validation
- Non-streaming and streaming chat completions
- Translation of SDK errors into backend failure classes

Network retries for connection errors and 5xx responses are handled by the
SDK (`max_retries`); callers only see failures that survived them.
"""

from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from src.relay.config import Config
from src.relay.errors import BackendError, BackendFailure

logger = structlog.get_logger(__name__)


@dataclass
class CompletionRequest:
    """Everything the backend needs for one completion."""
    system: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    model: str = ""
    max_tokens: int = 150
    temperature: float = 0.7

    def to_messages(self) -> List[Dict[str, str]]:
        """Messages in OpenAI format, system instruction first."""
        return [{"role": "system", "content": self.system}, *self.messages]


def classify_backend_error(error: BaseException) -> BackendFailure:
    """Map an SDK exception to its failure class."""
    if isinstance(error, BackendError):
        return error.failure
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return BackendFailure.AUTHENTICATION
    if isinstance(error, openai.RateLimitError):
        return BackendFailure.RATE_LIMIT
    if isinstance(error, (openai.APITimeoutError, httpx.TimeoutException)):
        return BackendFailure.TIMEOUT
    if isinstance(error, openai.InternalServerError):
        return BackendFailure.SERVER_ERROR
    if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
        return BackendFailure.SERVER_ERROR
    return BackendFailure.GENERIC


def _as_backend_error(error: Exception) -> BackendError:
    failure = classify_backend_error(error)
    return BackendError(failure, str(error) or failure.value)


async def validate_model(config: Config) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {LLAMA_BASE_URL}/models to check.

    Raises:
        SystemExit: If the API rejects the key or the model is missing (fail fast)
    """
    base_url = config.llama_base_url.rstrip("/")
    logger.info("Validating Llama model", model=config.llama_model)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {config.llama_api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Llama API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Llama API: {e}\n"
                "Check your network connection and LLAMA_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Llama models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate Llama model. API returned status {response.status_code}. "
            "Check your LLAMA_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if config.llama_model not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error(
            "Llama model not found",
            requested_model=config.llama_model,
            available_models=available,
        )
        raise SystemExit(
            f"LLAMA_MODEL '{config.llama_model}' not found in available models.\n"
            f"Available models include: {available}"
        )

    logger.info("Llama model validated successfully", model=config.llama_model)
    return True


class CompletionClient:
    """
    Chat completion client with streaming support.

    Uses the OpenAI SDK against the Llama API compatibility endpoint.
    Streams are cancelled by cancelling the task that iterates them.
    """

    def __init__(self, config: Config, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.model = config.llama_model
        self._client = client or AsyncOpenAI(
            api_key=config.llama_api_key,
            base_url=config.llama_base_url,
            timeout=config.llama_timeout_seconds,
            max_retries=config.llama_max_retries,
        )

    async def validate_model(self) -> bool:
        return await validate_model(self.config)

    async def complete(self, request: CompletionRequest) -> str:
        """
        Run a single non-streaming completion.

        Raises:
            BackendError: With the failure class of the SDK error
        """
        logger.debug(
            "Completion request",
            model=request.model or self.model,
            message_count=len(request.messages) + 1,
            max_tokens=request.max_tokens,
        )
        try:
            response = await self._client.chat.completions.create(
                model=request.model or self.model,
                messages=request.to_messages(),
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                stream=False,
            )
        except openai.OpenAIError as e:
            raise _as_backend_error(e) from e
        except httpx.HTTPError as e:
            raise _as_backend_error(e) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """
        Stream completion text fragments.

        Raises:
            BackendError: With the failure class of the SDK error
        """
        logger.debug(
            "Streaming completion request",
            model=request.model or self.model,
            message_count=len(request.messages) + 1,
        )
        try:
            stream = await self._client.chat.completions.create(
                model=request.model or self.model,
                messages=request.to_messages(),
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                stream=True,
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.OpenAIError as e:
            raise _as_backend_error(e) from e
        except httpx.HTTPError as e:
            raise _as_backend_error(e) from e
