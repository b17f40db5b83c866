import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Absolute paths
ROOT_DIR = Path(__file__).resolve().parent.parent

PORT = int(os.getenv("PORT", "8080"))
BASE_URL = os.getenv("BASE_URL", f"http://localhost:{PORT}")
# Public URL of the dashboard (used in password reset links)
APP_URL = (os.getenv("APP_URL", "") or BASE_URL).rstrip("/")

# ── Storage ────────────────────────────────────────────────────────
DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "heyhey.db")
DATABASE_URL = os.getenv("DATABASE_URL")  # optional PostgreSQL URL
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
PG_POOL_RETRY_BACKOFF_SECONDS = float(os.getenv("PG_POOL_RETRY_BACKOFF_SECONDS", "15"))
REQUIRE_POSTGRES = int(os.getenv("REQUIRE_POSTGRES", "1"))  # when 1 and DATABASE_URL is set, never fallback to SQLite
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))
HEALTH_DB_TIMEOUT_SECONDS = float(os.getenv("HEALTH_DB_TIMEOUT_SECONDS", "2"))
REDIS_URL = os.getenv("REDIS_URL", "")

# ── Logging ────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_VERBOSE = os.getenv("LOG_VERBOSE", "0") == "1"

# ── Auth ───────────────────────────────────────────────────────────
AUTH_SECRET = os.getenv("AUTH_SECRET", "") or os.getenv("SECRET_KEY", "")
ACCESS_TOKEN_TTL_SECONDS = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(24 * 3600)))
AUTH_COOKIE_SECURE = os.getenv("AUTH_COOKIE_SECURE", "").strip()  # "", "0", "1" (auto if empty)
AUTH_COOKIE_SAMESITE = (os.getenv("AUTH_COOKIE_SAMESITE", "") or "").strip().lower() or "lax"  # none|lax|strict
ACCESS_COOKIE_NAME = "heyhey_access"
JWT_ISSUER = os.getenv("JWT_ISSUER", "heyhey")
PASSWORD_RESET_TTL_SECONDS = int(os.getenv("PASSWORD_RESET_TTL_SECONDS", "3600"))
MIN_PASSWORD_LENGTH = 6
# Optional bootstrap admin account, created on startup when both are set
ADMIN_EMAIL = (os.getenv("ADMIN_EMAIL", "") or "").strip().lower()
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "") or ""

# ── WhatsApp Cloud API ─────────────────────────────────────────────
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v18.0")
GRAPH_API_BASE = os.getenv("GRAPH_API_BASE", "https://graph.facebook.com").rstrip("/")
WHATSAPP_VERIFY_TOKEN = os.getenv("WHATSAPP_VERIFY_TOKEN", "heyhey_webhook_token")
META_APP_SECRET = os.getenv("META_APP_SECRET", "") or os.getenv("FB_APP_SECRET", "")
WHATSAPP_HTTP_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_HTTP_TIMEOUT_SECONDS", "12"))
WHATSAPP_HTTP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_HTTP_CONNECT_TIMEOUT_SECONDS", "5"))

# ── Webhook ingress ────────────────────────────────────────────────
WEBHOOK_QUEUE_MAXSIZE = int(os.getenv("WEBHOOK_QUEUE_MAXSIZE", "1000"))
# 0 processes webhook payloads inline in the request (useful for tests/dev)
WEBHOOK_WORKERS = int(os.getenv("WEBHOOK_WORKERS", "2"))
WEBHOOK_PROCESSING_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", "120"))
WEBHOOK_DEDUPE_TTL_SECONDS = int(os.getenv("WEBHOOK_DEDUPE_TTL_SECONDS", str(24 * 3600)))

# ── Chatbot / LLM ──────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "500"))
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "30"))
CHATBOT_DEFAULT_PROMPT = os.getenv(
    "CHATBOT_DEFAULT_PROMPT",
    "Eres un asistente virtual amable y profesional.",
)
# Used by the dashboard AI playground
AI_ASSISTANT_PROMPT = os.getenv(
    "AI_ASSISTANT_PROMPT",
    "Eres un asistente virtual amable y profesional para un negocio que atiende a sus clientes por "
    "WhatsApp. Responde de forma breve, clara y cordial, en el idioma del cliente.",
)
AI_FALLBACK_REPLY = "Lo siento, no pude generar una respuesta."

# ── Email (password reset) ─────────────────────────────────────────
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_FROM = os.getenv("SMTP_FROM", "") or SMTP_USER
SMTP_USE_SSL = os.getenv("SMTP_USE_SSL", "0") == "1"
SMTP_TIMEOUT_SECONDS = float(os.getenv("SMTP_TIMEOUT_SECONDS", "15"))

# ── Scheduled messages ─────────────────────────────────────────────
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "1") == "1"
SCHEDULER_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "30"))
SCHEDULER_BATCH_SIZE = int(os.getenv("SCHEDULER_BATCH_SIZE", "20"))
# Rows left in 'sending' longer than this by a crashed pass are marked failed.
SCHEDULER_STALE_SENDING_SECONDS = float(os.getenv("SCHEDULER_STALE_SENDING_SECONDS", "600"))

# ── Rate limits (requires Redis) ───────────────────────────────────
SEND_TEXT_PER_MIN = int(os.getenv("SEND_TEXT_PER_MIN", "30"))
API_SEND_PER_MIN = int(os.getenv("API_SEND_PER_MIN", "60"))

# ── Misc ───────────────────────────────────────────────────────────
EXPORT_MAX_ROWS = int(os.getenv("EXPORT_MAX_ROWS", "10000"))
NOTIFICATIONS_PAGE_SIZE = 50
API_KEY_PREFIX = "hh_"
DEFAULT_API_KEY_PERMISSIONS = ["read_messages", "send_messages"]
