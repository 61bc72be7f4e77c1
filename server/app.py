"""
FastAPI server for the Conversation Relay voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Generate ConversationRelay TwiML for the Twilio webhook
- WS /ws: ConversationRelay WebSocket
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from xml.sax.saxutils import quoteattr

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from twilio.request_validator import RequestValidator

from src.relay.config import Config, ConfigError, get_config, init_config
from src.relay.connection import RelayConnection
from src.relay.dtmf import DtmfMatcher
from src.relay.llm import CompletionClient, validate_model
from src.relay.pipeline import CompletionPipeline
from src.relay.router import ProtocolRouter
from src.relay.session import SessionRegistry


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    rejected_messages: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "rejected_messages": self.rejected_messages,
            "errors": self.errors,
        }


@dataclass
class RelayRuntime:
    """Long-lived objects shared by every connection."""
    config: Config
    registry: SessionRegistry
    pipeline: CompletionPipeline
    router: ProtocolRouter
    metrics: ServerMetrics = field(default_factory=ServerMetrics)


def build_runtime(
    config: Config,
    client: Optional[CompletionClient] = None,
    dtmf_matcher: Optional[DtmfMatcher] = None,
) -> RelayRuntime:
    """Wire registry, pipeline and router together."""
    registry = SessionRegistry()
    pipeline = CompletionPipeline(registry, client or CompletionClient(config), config)
    router = ProtocolRouter(registry, pipeline, config, dtmf_matcher=dtmf_matcher)
    return RelayRuntime(config=config, registry=registry, pipeline=pipeline, router=router)


def build_twiml(config: Config) -> str:
    """TwiML that hands the call to ConversationRelay on our WebSocket."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <ConversationRelay url={quoteattr(config.ws_url)} welcomeGreeting={quoteattr(config.welcome_greeting)} />
    </Connect>
</Response>"""


async def is_valid_twilio_request(request: Request, config: Config) -> bool:
    """Check the X-Twilio-Signature header against the public URL and form body."""
    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        return False

    url = f"{config.base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"

    params: Dict[str, Any] = {}
    if request.method == "POST":
        form = await request.form()
        params = dict(form)

    validator = RequestValidator(config.twilio_auth_token)
    return validator.validate(url, params, signature)


def create_app(runtime: Optional[RelayRuntime] = None) -> FastAPI:
    """
    Create the FastAPI app.

    When `runtime` is given (tests), startup skips config validation and
    uses it as-is.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Conversation Relay server...")

        if app.state.runtime is None:
            try:
                config = init_config()
                configure_logging(config.log_level, config.log_format)

                if config.validate_model:
                    await validate_model(config)

                app.state.runtime = build_runtime(config)
                logger.info(
                    "Server ready",
                    port=config.port,
                    public_host=config.public_host,
                    ws_url=config.ws_url,
                )
            except ConfigError as e:
                logger.error("Configuration error", error=str(e))
                sys.exit(1)
            except SystemExit:
                raise
            except Exception as e:
                logger.error("Startup failed", error=str(e))
                sys.exit(1)

        yield

        logger.info("Shutting down server...")
        if app.state.runtime is not None:
            app.state.runtime.registry.reset()

    app = FastAPI(
        title="Conversation Relay Agent",
        description="Voice agent bridging Twilio ConversationRelay and the Llama API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    def current_runtime() -> RelayRuntime:
        if app.state.runtime is None:
            app.state.runtime = build_runtime(get_config())
        return app.state.runtime

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            content={
                "status": "healthy",
                "timestamp": time.time(),
                "active_sessions": current_runtime().registry.count(),
            }
        )

    @app.get("/metrics")
    async def get_metrics() -> JSONResponse:
        """Metrics endpoint."""
        rt = current_runtime()
        return JSONResponse(content={**rt.metrics.to_dict(), **rt.registry.metrics().to_dict()})

    @app.post("/twiml")
    @app.get("/twiml")
    @app.post("/incoming-call")
    @app.get("/incoming-call")
    async def generate_twiml(request: Request) -> Response:
        """
        Generate TwiML for the Twilio voice webhook.

        Returns TwiML that connects the call to our ConversationRelay endpoint.
        """
        config = current_runtime().config

        if config.validate_twilio_signature and not await is_valid_twilio_request(request, config):
            logger.warning("Rejected webhook with invalid Twilio signature", path=request.url.path)
            return Response(content="Forbidden", status_code=403)

        logger.info("Generated TwiML", ws_url=config.ws_url)
        return Response(content=build_twiml(config), media_type="application/xml")

    async def websocket_endpoint(websocket: WebSocket) -> None:
        """
        ConversationRelay WebSocket endpoint.

        Receives JSON events for one call and sends text tokens back.
        """
        rt = current_runtime()
        await websocket.accept()

        rt.metrics.total_connections += 1
        rt.metrics.active_connections += 1

        async def send_message(message: str) -> None:
            """Send a message to the WebSocket."""
            await websocket.send_text(message)

        connection = RelayConnection(rt.router, send_message)
        logger.info(
            "WebSocket connected",
            connection_id=connection.state.connection_id,
            active_connections=rt.metrics.active_connections,
        )

        try:
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(
                        "WebSocket disconnected",
                        connection_id=connection.state.connection_id,
                        call_sid=connection.call_sid,
                    )
                    break

                if len(message) > rt.config.ws_max_payload:
                    logger.warning(
                        "Dropping oversized message",
                        call_sid=connection.call_sid,
                        size=len(message),
                    )
                    rt.metrics.rejected_messages += 1
                    continue

                await connection.handle_raw(message)

        except Exception as e:
            logger.error(
                "WebSocket handler error",
                connection_id=connection.state.connection_id,
                call_sid=connection.call_sid,
                error=str(e),
            )
            rt.metrics.errors += 1

        finally:
            await connection.close()
            rt.metrics.active_connections -= 1
            logger.info(
                "WebSocket closed",
                connection_id=connection.state.connection_id,
                active_connections=rt.metrics.active_connections,
                active_sessions=rt.registry.count(),
            )

    ws_path = runtime.config.ws_path if runtime is not None else get_config().ws_path
    app.add_api_websocket_route(ws_path if ws_path.startswith("/") else f"/{ws_path}", websocket_endpoint)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error=str(exc),
        )
        if app.state.runtime is not None:
            app.state.runtime.metrics.errors += 1

        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    return app


app = create_app()


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
