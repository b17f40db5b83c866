import asyncio
import logging
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi_limiter import FastAPILimiter
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from .api import (
    ApiRuntime,
    create_admin_router,
    create_api_keys_router,
    create_auth_router,
    create_chatbot_router,
    create_connections_router,
    create_contacts_router,
    create_messages_router,
    create_notifications_router,
    create_public_router,
    create_quick_replies_router,
    create_scheduled_router,
    create_stats_router,
    create_templates_router,
)
from .auth import hash_password, user_from_request
from .cache import RedisManager
from .chatbot import ChatbotEngine
from .config import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    HEALTH_DB_TIMEOUT_SECONDS,
    LOG_LEVEL,
    LOG_VERBOSE,
    META_APP_SECRET,
    REDIS_URL,
    SCHEDULER_ENABLED,
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
    WEBHOOK_QUEUE_MAXSIZE,
    WEBHOOK_WORKERS,
    WHATSAPP_VERIFY_TOKEN,
)
from .db import DatabaseManager, DatabaseUnavailable
from .llm import LLMClient
from .mailer import Mailer
from .observability.context import (
    get_request_id as _get_request_id,
    get_user_id as _get_user_id,
    reset_request_id as _reset_request_id,
    reset_user_id as _reset_user_id,
    set_request_id as _set_request_id,
    set_user_id as _set_user_id,
)
from .observability.logging import configure_logging as _configure_logging
from .processor import MessageProcessor
from .scheduler import ScheduledMessageDispatcher
from .webhook import WebhookRuntime, WebhookState, create_webhook_router, start_webhook_workers, stop_webhook_workers
from .whatsapp import WhatsAppMessenger

try:
    import orjson  # type: ignore  # noqa: F401
    from fastapi.responses import ORJSONResponse  # type: ignore
    _ORJSON_AVAILABLE = True
except Exception:
    _ORJSON_AVAILABLE = False

# Inject request id + authenticated user into every log record.
try:
    _configure_logging(level=LOG_LEVEL, request_id_getter=_get_request_id, user_getter=_get_user_id)
except Exception:
    # Fallback to minimal logging if something goes wrong during import.
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

log = logging.getLogger(__name__)


def _vlog(*args):
    """Verbose-only debug log; first arg is a %-format string."""
    if LOG_VERBOSE and args:
        log.info(*args)


def _is_public_path(path: str) -> bool:
    # Landing page, health, metrics and API docs
    if path in ("/", "/health", "/metrics", "/docs", "/openapi.json"):
        return True
    # Session endpoints that must work without a session (/api/auth/me is protected)
    if path in (
        "/api/auth/login",
        "/api/auth/register",
        "/api/auth/logout",
        "/api/auth/forgot-password",
        "/api/auth/reset-password",
    ):
        return True
    # Meta calls the webhook server-to-server
    if path.startswith("/api/webhooks/"):
        return True
    # Public API authenticates with API keys inside its own routes
    if path.startswith("/api/v1/"):
        return True
    return False


# Core services
db_manager = DatabaseManager()
redis_manager = RedisManager()
whatsapp_messenger = WhatsAppMessenger()
llm_client = LLMClient()
mailer = Mailer()
chatbot_engine = ChatbotEngine(db_manager, llm_client)
message_processor = MessageProcessor(db_manager, redis_manager, whatsapp_messenger, chatbot_engine)
dispatcher = ScheduledMessageDispatcher(db_manager, message_processor)

api_runtime = ApiRuntime(
    db_manager=db_manager,
    message_processor=message_processor,
    llm=llm_client,
    mailer=mailer,
)

WEBHOOK_QUEUE: "asyncio.Queue[dict]" = asyncio.Queue(maxsize=WEBHOOK_QUEUE_MAXSIZE)
WEBHOOK_STATE = WebhookState()
webhook_runtime = WebhookRuntime(
    message_processor=message_processor,
    webhook_queue=WEBHOOK_QUEUE,
    vlog=_vlog,
    verify_token=WHATSAPP_VERIFY_TOKEN,
    meta_app_secret=META_APP_SECRET,
    workers=int(WEBHOOK_WORKERS),
    processing_timeout_seconds=float(WEBHOOK_PROCESSING_TIMEOUT_SECONDS),
    state=WEBHOOK_STATE,
)

_background_tasks: list = []

# FastAPI app
app = FastAPI(
    title="HeyHey",
    default_response_class=(ORJSONResponse if _ORJSON_AVAILABLE else JSONResponse),
)
app.include_router(create_webhook_router(webhook_runtime))
app.include_router(create_auth_router(api_runtime))
app.include_router(create_connections_router(api_runtime))
app.include_router(create_messages_router(api_runtime))
app.include_router(create_chatbot_router(api_runtime))
app.include_router(create_contacts_router(api_runtime))
app.include_router(create_quick_replies_router(api_runtime))
app.include_router(create_templates_router(api_runtime))
app.include_router(create_scheduled_router(api_runtime))
app.include_router(create_notifications_router(api_runtime))
app.include_router(create_api_keys_router(api_runtime))
app.include_router(create_public_router(api_runtime))
app.include_router(create_stats_router(api_runtime))
app.include_router(create_admin_router(api_runtime))


@app.exception_handler(DatabaseUnavailable)
async def _db_unavailable_handler(request: StarletteRequest, exc: DatabaseUnavailable):
    log.error("Database unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


# ── Request context: request_id (for tracing) ──────────────────────
@app.middleware("http")
async def request_id_middleware(request: StarletteRequest, call_next):
    incoming = (request.headers.get("x-request-id") or "").strip()
    rid, tok = _set_request_id(incoming or None)
    try:
        resp: StarletteResponse = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp
    finally:
        _reset_request_id(tok)


# ── Auth middleware: protect API routes by default ─────────────────
@app.middleware("http")
async def _auth_middleware(request: StarletteRequest, call_next):
    if request.method == "OPTIONS" or _is_public_path(request.url.path):
        return await call_next(request)
    user = user_from_request(request)
    if not user:
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
    request.state.user = user
    tok = _set_user_id(user["id"])
    try:
        return await call_next(request)
    finally:
        _reset_user_id(tok)


# Expose Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")


async def ensure_admin_user() -> None:
    """Create (or promote) the configured admin account."""
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return
    existing = await db_manager.get_user_by_email(ADMIN_EMAIL)
    if existing:
        if existing.get("role") != "admin":
            await db_manager.set_user_role(existing["id"], "admin")
            log.info("Promoted %s to admin", ADMIN_EMAIL)
        return
    await db_manager.create_user(ADMIN_EMAIL, hash_password(ADMIN_PASSWORD), "Admin", role="admin")
    log.info("Created admin user %s", ADMIN_EMAIL)


@app.on_event("startup")
async def startup():
    logging.getLogger("httpx").setLevel(logging.WARNING)
    # Postgres-required deployments fail startup; SQLite/dev keeps going and requests surface 503s.
    try:
        await asyncio.wait_for(db_manager.init_db(), timeout=30.0)
        await ensure_admin_user()
    except DatabaseUnavailable:
        raise
    except Exception as exc:
        log.exception("Database init failed: %s", exc)
    # Connect to Redis only if configured
    if REDIS_URL:
        await redis_manager.connect()
    # Initialize rate limiter
    if redis_manager.redis_client:
        try:
            await FastAPILimiter.init(redis_manager.redis_client)
        except Exception as exc:
            log.error("Rate limiter init failed: %s", exc)
    # Start webhook background workers so the webhook route can ACK quickly.
    await start_webhook_workers(webhook_runtime)
    if SCHEDULER_ENABLED:
        _background_tasks.append(asyncio.create_task(dispatcher.run_forever()))
        log.info("Scheduled message dispatcher started")


@app.on_event("shutdown")
async def shutdown():
    for task in _background_tasks:
        task.cancel()
    _background_tasks.clear()
    await stop_webhook_workers(webhook_runtime)
    if FastAPILimiter.redis:
        await FastAPILimiter.close()
    await redis_manager.close()
    await db_manager.close()


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    redis_status = "connected" if redis_manager.redis_client else "disconnected"
    db_backend = "postgres" if db_manager.use_postgres else "sqlite"
    try:
        db_ok = await asyncio.wait_for(db_manager.ping(), timeout=HEALTH_DB_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "redis": redis_status,
        "db": {"backend": db_backend, "ok": bool(db_ok)},
        "webhook": {
            "backend": webhook_runtime.backend_name(),
            "queue_size": WEBHOOK_QUEUE.qsize(),
            "queue_maxsize": int(WEBHOOK_QUEUE_MAXSIZE),
            "workers": webhook_runtime.state.workers_started,
            "processed": webhook_runtime.state.processed,
            "failed": webhook_runtime.state.failed,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


_LANDING_HTML = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>HeyHey</title></head>
<body style="font-family: sans-serif; max-width: 40rem; margin: 4rem auto;">
<h1>HeyHey</h1>
<p>WhatsApp Business dashboard API. Connect a number, chat with customers, automate replies.</p>
<p>API documentation: <a href="/docs">/docs</a></p>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def landing():
    return HTMLResponse(_LANDING_HTML)
