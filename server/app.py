"""
FastAPI server for the call relay.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /start-call: Place an outbound call through Twilio
- POST|GET /twilio/voice: TwiML webhook that attaches a media stream
- WS /stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from urllib.parse import urlencode
from xml.sax.saxutils import quoteattr
import logging

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
from pydantic import BaseModel
import structlog
import uvicorn

from src.callrelay.config import get_config, init_config, ConfigError
from src.callrelay.registry import CallMetadata, get_call_registry


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
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
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
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
    total_calls: int = 0
    active_calls: int = 0
    calls_placed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "calls_placed": self.calls_placed,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call relay server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Validate the LLM model at startup
        from src.callrelay.llm import initialize_llm
        await initialize_llm(config)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            stream_url=config.stream_url,
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


app = FastAPI(
    title="Call Relay",
    description="Relays Twilio phone calls between speech-to-text, an LLM and text-to-speech",
    version="1.0.0",
    lifespan=lifespan,
)


class StartCallRequest(BaseModel):
    phone: Optional[str] = None
    leadId: Optional[str] = None


def get_twilio_client():
    from twilio.rest import Client

    config = get_config()
    return Client(config.twilio_account_sid, config.twilio_auth_token)


def build_stream_twiml(stream_url: str, lead_id: str = "") -> str:
    """TwiML that hands the call's audio to our media-stream WebSocket."""
    parameter = (
        f"\n            <Parameter name=\"leadId\" value={quoteattr(lead_id)} />"
        if lead_id
        else ""
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(stream_url)}>{parameter}
        </Stream>
    </Connect>
</Response>"""


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/start-call")
async def start_call(
    payload: StartCallRequest,
    twilio_client=Depends(get_twilio_client),
) -> JSONResponse:
    """Place an outbound call whose audio is relayed through /stream."""
    if not payload.phone:
        return JSONResponse(status_code=400, content={"error": "phone required"})

    config = get_config()
    lead_id = payload.leadId or ""
    voice_url = config.voice_webhook_url
    if lead_id:
        voice_url = f"{voice_url}?{urlencode({'leadId': lead_id})}"

    try:
        call = await asyncio.to_thread(
            twilio_client.calls.create,
            to=payload.phone,
            from_=config.twilio_from_number,
            url=voice_url,
            method="POST",
        )
    except Exception as e:
        logger.error("start-call error", error_type=type(e).__name__, error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"error": str(e)})

    call_sid = str(call.sid)
    try:
        get_call_registry().register(CallMetadata(call_sid=call_sid, phone=payload.phone, lead_id=lead_id))
    except ValueError as e:
        logger.warning("Call registry rejected call", call_sid=call_sid, error=str(e))

    metrics.calls_placed += 1
    logger.info("Outbound call placed", call_sid=call_sid, lead_id=lead_id)
    return JSONResponse(content={"success": True, "callSid": call_sid})


@app.post("/twilio/voice")
@app.get("/twilio/voice")
async def twilio_voice(request: Request) -> Response:
    """
    Twilio voice webhook.

    Returns TwiML that connects the call to our WebSocket endpoint.
    """
    config = get_config()
    lead_id = request.query_params.get("leadId", "")

    twiml = build_stream_twiml(config.stream_url, lead_id)
    logger.info("Generated TwiML", stream_url=config.stream_url, lead_id=lead_id)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/stream")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Each connection gets its own CallSession; sessions run independently.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    # Import here to avoid circular imports and speed up startup
    from src.callrelay.session import create_session

    session = None
    closed_waiter: Optional[asyncio.Task] = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    try:
        session = create_session(send_message)
        if not await session.start():
            await websocket.close()
            return

        closed_waiter = asyncio.create_task(session.wait_closed())
        while not session.is_closed:
            receiver = asyncio.create_task(websocket.receive_text())
            done, _ = await asyncio.wait(
                {receiver, closed_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if receiver not in done:
                # Session closed itself (e.g. transcription lost)
                receiver.cancel()
                await asyncio.gather(receiver, return_exceptions=True)
                break

            try:
                message = receiver.result()
                await session.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Keep the call alive on a single bad message
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if closed_waiter is not None and not closed_waiter.done():
            closed_waiter.cancel()

        if session:
            try:
                await session.close()
            except Exception as e:
                logger.error("Error closing session", error=str(e))

        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            try:
                await websocket.close()
            except Exception as e:
                logger.debug("WebSocket already closed", error=str(e))

        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

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
