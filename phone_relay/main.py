import asyncio
import logging
import signal
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse, Response

from phone_relay.config import settings
from phone_relay.scheduling import create_scheduling_backend
from phone_relay.session import (
    CompositeObserver,
    LoggingObserver,
    SessionObserver,
    SessionRegistry,
    SessionRelay,
)
from phone_relay.telephony import generate_twiml
from phone_relay.tools import ToolDispatcher

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Call metrics for /metrics endpoint
class CallMetrics:
    """Process-wide counters behind /metrics."""

    def __init__(self):
        self.total_calls = 0
        self.total_errors = 0
        self.total_tool_calls = 0
        self.total_tool_errors = 0
        self.total_bookings = 0
        self.total_duration_ms = 0.0
        self._open_calls: Dict[int, float] = {}

    def on_call_start(self, key: int):
        self.total_calls += 1
        self._open_calls[key] = time.monotonic()

    def on_call_end(self, key: int):
        started = self._open_calls.pop(key, None)
        if started is not None:
            self.total_duration_ms += (time.monotonic() - started) * 1000

    def on_error(self):
        self.total_errors += 1

    @property
    def avg_call_duration_ms(self) -> float:
        finished = self.total_calls - len(self._open_calls)
        return self.total_duration_ms / finished if finished > 0 else 0.0

    def render(self, active_calls: int) -> str:
        """Prometheus text exposition of every counter."""
        series = [
            ("calls_total", "counter", "Total calls handled", self.total_calls),
            ("calls_active", "gauge", "Currently active calls", active_calls),
            ("errors_total", "counter", "Total errors", self.total_errors),
            ("tool_calls_total", "counter", "Tool calls answered", self.total_tool_calls),
            ("tool_errors_total", "counter", "Tool calls answered with an error", self.total_tool_errors),
            ("bookings_total", "counter", "Bookings created", self.total_bookings),
            ("avg_call_duration_ms", "gauge", "Average call duration", f"{self.avg_call_duration_ms:.1f}"),
        ]
        lines = []
        for name, kind, help_text, value in series:
            metric = f"phone_relay_{name}"
            lines += [f"# HELP {metric} {help_text}", f"# TYPE {metric} {kind}", f"{metric} {value}"]
        return "\n".join(lines) + "\n"


class MetricsObserver(SessionObserver):
    """Counts tool activity and bookings across all sessions."""

    def __init__(self, call_metrics: CallMetrics):
        self.metrics = call_metrics

    def on_tool_result(self, stream_sid, response):
        self.metrics.total_tool_calls += 1
        if response.is_error:
            self.metrics.total_tool_errors += 1

    def on_booking(self, stream_sid, booking):
        self.metrics.total_bookings += 1


metrics = CallMetrics()
registry = SessionRegistry()

_dispatcher: Optional[ToolDispatcher] = None


def get_dispatcher() -> ToolDispatcher:
    """Shared tool dispatcher; the scheduling backend is built on first use."""
    global _dispatcher
    if _dispatcher is None:
        backend = create_scheduling_backend(settings)
        _dispatcher = ToolDispatcher(backend, timeout_seconds=settings.tool_timeout_seconds)
    return _dispatcher


# Set on SIGTERM or app shutdown; new calls are refused from then on
_shutdown_event = asyncio.Event()
SHUTDOWN_GRACE_SECONDS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        f"Phone relay starting: model={settings.gemini_model}, "
        f"scheduling={settings.scheduling_backend}, max_calls={settings.max_concurrent_calls}"
    )
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; calls will fail to open an AI session")

    get_dispatcher()
    _shutdown_event.clear()

    # Register SIGTERM handler for graceful shutdown
    loop = asyncio.get_event_loop()

    def _signal_handler():
        logger.info("SIGTERM received, initiating graceful shutdown")
        _shutdown_event.set()

    try:
        loop.add_signal_handler(signal.SIGTERM, _signal_handler)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers not supported in this event loop")

    yield

    _shutdown_event.set()
    await _drain_sessions(SHUTDOWN_GRACE_SECONDS)
    logger.info("Phone relay shut down")


async def _drain_sessions(grace_seconds: float) -> None:
    """Give calls in progress time to end on their own."""
    remaining = registry.get_session_count()
    if not remaining:
        return
    logger.info(f"Graceful shutdown: waiting up to {grace_seconds:.0f}s for {remaining} call(s)")
    loop = asyncio.get_running_loop()
    deadline = loop.time() + grace_seconds
    while registry.get_session_count() and loop.time() < deadline:
        await asyncio.sleep(0.5)
    if registry.get_session_count():
        logger.warning(f"Shutting down with {registry.get_session_count()} call(s) still open")


app = FastAPI(title="Phone Relay - Twilio to Gemini Live", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check with session counts and configuration status."""
    return {
        "status": "healthy",
        "active_calls": registry.get_session_count(),
        "relaying_calls": len(registry.get_active_sessions()),
        "max_concurrent_calls": settings.max_concurrent_calls,
        "gemini_model": settings.gemini_model,
        "gemini_configured": bool(settings.gemini_api_key),
        "scheduling_backend": settings.scheduling_backend,
    }


@app.get("/metrics")
async def metrics_endpoint():
    """Prometheus-compatible metrics."""
    body = metrics.render(active_calls=registry.get_session_count())
    return PlainTextResponse(body, media_type="text/plain")


@app.api_route("/incoming-call", methods=["GET", "POST"])
async def incoming_call(request: Request):
    """Answer a Twilio voice webhook with TwiML that opens a Media Stream."""
    host = request.headers.get("host", settings.server_host)
    websocket_url = f"wss://{host}/connection"

    # Twilio puts call details in the query string for GET webhooks
    parameters = {}
    caller = request.query_params.get("From")
    if caller:
        parameters["caller"] = caller

    logger.info(f"Incoming call from {caller or 'unknown caller'}, streaming to {websocket_url}")
    return Response(
        content=generate_twiml(websocket_url, parameters),
        media_type="application/xml",
    )


@app.websocket("/connection")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for Twilio Media Streams."""
    if _shutdown_event.is_set():
        logger.warning("Connection rejected: shutting down")
        await websocket.close(code=1013)  # Try Again Later
        return
    if registry.get_session_count() >= settings.max_concurrent_calls:
        logger.warning(f"Connection rejected: {settings.max_concurrent_calls} calls already in progress")
        await websocket.close(code=1013)
        return

    await websocket.accept()

    relay = SessionRelay(
        websocket,
        get_dispatcher(),
        observer=CompositeObserver([LoggingObserver(), MetricsObserver(metrics)]),
    )
    key = registry.register(relay.ctx)
    metrics.on_call_start(key)

    try:
        await relay.run(websocket.iter_text())
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {relay.stream_sid}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        metrics.on_error()
    finally:
        await relay.close("telephony disconnected")
        metrics.on_call_end(key)
        registry.unregister(key)


def main():
    import os
    import uvicorn
    port = int(os.environ.get("PORT", settings.server_port))
    uvicorn.run(
        "phone_relay.main:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
