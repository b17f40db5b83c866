import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

import aiosqlite
import asyncpg

from .config import (
    DATABASE_URL,
    DB_PATH,
    PG_CONNECT_TIMEOUT_SECONDS,
    PG_POOL_MAX,
    PG_POOL_MIN,
    PG_POOL_RETRY_BACKOFF_SECONDS,
    REQUIRE_POSTGRES,
    SQLITE_BUSY_TIMEOUT_MS,
)

log = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id             TEXT PRIMARY KEY,
        email          TEXT NOT NULL UNIQUE,
        password_hash  TEXT NOT NULL,
        name           TEXT,
        role           TEXT NOT NULL DEFAULT 'client',
        created_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS password_reset_tokens (
        id          TEXT PRIMARY KEY,
        email       TEXT NOT NULL,
        token       TEXT NOT NULL UNIQUE,
        expires_at  TEXT NOT NULL,
        created_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS whatsapp_connections (
        id               TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        phone_number     TEXT,
        phone_number_id  TEXT NOT NULL UNIQUE,
        waba_id          TEXT NOT NULL,
        business_name    TEXT,
        access_token     TEXT,
        status           TEXT NOT NULL DEFAULT 'connected',
        connected_at     TEXT,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_conn_user ON whatsapp_connections (user_id);
    CREATE INDEX IF NOT EXISTS idx_conn_waba ON whatsapp_connections (waba_id);

    CREATE TABLE IF NOT EXISTS messages (
        id                   TEXT PRIMARY KEY,
        connection_id        TEXT NOT NULL,
        direction            TEXT NOT NULL,
        from_number          TEXT,
        to_number            TEXT,
        message_type         TEXT NOT NULL DEFAULT 'text',
        content              TEXT,
        status               TEXT NOT NULL DEFAULT 'sent',
        whatsapp_message_id  TEXT,
        created_at           TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_msg_conn_time ON messages (connection_id, created_at);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_msg_wa_id ON messages (whatsapp_message_id)
        WHERE whatsapp_message_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS webhook_logs (
        id             TEXT PRIMARY KEY,
        connection_id  TEXT,
        user_id        TEXT,
        event_type     TEXT NOT NULL,
        payload        TEXT,
        processed      INTEGER NOT NULL DEFAULT 0,
        created_at     TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_webhook_logs_time ON webhook_logs (created_at);

    CREATE TABLE IF NOT EXISTS chatbot_flows (
        id             TEXT PRIMARY KEY,
        user_id        TEXT NOT NULL,
        name           TEXT NOT NULL,
        description    TEXT,
        trigger_type   TEXT NOT NULL DEFAULT 'keyword',
        trigger_value  TEXT,
        is_active      INTEGER NOT NULL DEFAULT 1,
        created_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_flows_user ON chatbot_flows (user_id, created_at);

    CREATE TABLE IF NOT EXISTS chatbot_nodes (
        id            TEXT PRIMARY KEY,
        flow_id       TEXT NOT NULL,
        node_type     TEXT NOT NULL DEFAULT 'message',
        content       TEXT,
        options       TEXT,
        next_node_id  TEXT,
        position      INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_nodes_flow ON chatbot_nodes (flow_id, position);

    CREATE TABLE IF NOT EXISTS chatbot_conversations (
        id               TEXT PRIMARY KEY,
        connection_id    TEXT NOT NULL,
        phone_number     TEXT NOT NULL,
        current_flow_id  TEXT,
        current_node_id  TEXT,
        context          TEXT,
        is_active        INTEGER NOT NULL DEFAULT 1,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_conv_lookup ON chatbot_conversations (connection_id, phone_number, is_active);

    CREATE TABLE IF NOT EXISTS contacts (
        id               TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        phone_number     TEXT NOT NULL,
        name             TEXT,
        email            TEXT,
        company          TEXT,
        is_blocked       INTEGER NOT NULL DEFAULT 0,
        last_message_at  TEXT,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL,
        UNIQUE (user_id, phone_number)
    );

    CREATE TABLE IF NOT EXISTS contact_tags (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        name        TEXT NOT NULL,
        color       TEXT NOT NULL DEFAULT '#6b7280',
        created_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS contact_tag_links (
        contact_id  TEXT NOT NULL,
        tag_id      TEXT NOT NULL,
        PRIMARY KEY (contact_id, tag_id)
    );

    CREATE TABLE IF NOT EXISTS contact_groups (
        id           TEXT PRIMARY KEY,
        user_id      TEXT NOT NULL,
        name         TEXT NOT NULL,
        description  TEXT,
        color        TEXT NOT NULL DEFAULT '#3b82f6',
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS contact_group_members (
        contact_id  TEXT NOT NULL,
        group_id    TEXT NOT NULL,
        PRIMARY KEY (contact_id, group_id)
    );

    CREATE TABLE IF NOT EXISTS contact_notes (
        id          TEXT PRIMARY KEY,
        contact_id  TEXT NOT NULL,
        content     TEXT NOT NULL,
        is_pinned   INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_notes_contact ON contact_notes (contact_id);

    CREATE TABLE IF NOT EXISTS quick_replies (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        shortcut    TEXT NOT NULL,
        title       TEXT NOT NULL,
        content     TEXT NOT NULL,
        category    TEXT NOT NULL DEFAULT 'general',
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        UNIQUE (user_id, shortcut)
    );

    CREATE TABLE IF NOT EXISTS message_templates (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        name        TEXT NOT NULL,
        content     TEXT NOT NULL,
        category    TEXT NOT NULL DEFAULT 'general',
        variables   TEXT,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS scheduled_messages (
        id                   TEXT PRIMARY KEY,
        user_id              TEXT NOT NULL,
        connection_id        TEXT NOT NULL,
        recipient_phone      TEXT NOT NULL,
        content              TEXT NOT NULL,
        message_type         TEXT NOT NULL DEFAULT 'text',
        media_url            TEXT,
        scheduled_at         TEXT NOT NULL,
        status               TEXT NOT NULL DEFAULT 'pending',
        sent_at              TEXT,
        error                TEXT,
        whatsapp_message_id  TEXT,
        created_at           TEXT NOT NULL,
        updated_at           TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_scheduled_due ON scheduled_messages (status, scheduled_at);

    CREATE TABLE IF NOT EXISTS notifications (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        type        TEXT NOT NULL,
        title       TEXT NOT NULL,
        content     TEXT NOT NULL,
        link        TEXT,
        is_read     INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, created_at);

    CREATE TABLE IF NOT EXISTS api_keys (
        id            TEXT PRIMARY KEY,
        user_id       TEXT NOT NULL,
        name          TEXT NOT NULL,
        api_key       TEXT NOT NULL UNIQUE,
        permissions   TEXT NOT NULL,
        is_active     INTEGER NOT NULL DEFAULT 1,
        last_used_at  TEXT,
        created_at    TEXT NOT NULL
    )
"""

EXPORT_QUERIES = {
    "users": (
        "SELECT u.id, u.email, u.name, u.role, "
        "(SELECT COUNT(*) FROM whatsapp_connections c WHERE c.user_id = u.id) AS connection_count, "
        "(SELECT COUNT(*) FROM webhook_logs w WHERE w.user_id = u.id) AS webhook_count, u.created_at "
        "FROM users u ORDER BY u.created_at DESC LIMIT ?"
    ),
    "connections": (
        "SELECT c.id, u.email AS user_email, c.phone_number, c.phone_number_id, c.waba_id, "
        "c.business_name, c.status, c.connected_at, c.created_at "
        "FROM whatsapp_connections c LEFT JOIN users u ON u.id = c.user_id "
        "ORDER BY c.created_at DESC LIMIT ?"
    ),
    "messages": (
        "SELECT m.id, c.phone_number AS connection_phone, m.direction, m.from_number, m.to_number, "
        "m.message_type, m.content, m.status, m.whatsapp_message_id, m.created_at "
        "FROM messages m LEFT JOIN whatsapp_connections c ON c.id = m.connection_id "
        "ORDER BY m.created_at DESC LIMIT ?"
    ),
    "webhooks": (
        "SELECT w.id, u.email AS user_email, c.phone_number AS connection_phone, w.event_type, "
        "w.processed, w.payload, w.created_at "
        "FROM webhook_logs w LEFT JOIN users u ON u.id = w.user_id "
        "LEFT JOIN whatsapp_connections c ON c.id = w.connection_id "
        "ORDER BY w.created_at DESC LIMIT ?"
    ),
}


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(dt: datetime) -> str:
    """Normalize a datetime to the fixed-width UTC ISO string stored in the DB."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def utcnow_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (including a trailing 'Z'); naive values are treated as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


def _rowcount(status: Any) -> int:
    # asyncpg returns command tags such as "UPDATE 1" / "DELETE 0" / "INSERT 0 1"
    try:
        return int(str(status or "").split()[-1])
    except (ValueError, IndexError):
        return 0


def _json_load(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class DatabaseUnavailable(RuntimeError):
    """The configured Postgres backend cannot be reached (surfaced to clients as 503)."""


class DatabaseManager:
    """Database helper supporting SQLite and optional PostgreSQL."""

    def __init__(self, db_path: str | None = None, db_url: str | None = None):
        # Some platforms provide SQLAlchemy-style URLs like "postgresql+asyncpg://..."
        # which asyncpg does NOT accept.
        raw_url = (db_url if db_url is not None else (DATABASE_URL or "")).strip() or None
        if raw_url:
            for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
                if raw_url.startswith(prefix):
                    raw_url = "postgresql://" + raw_url[len(prefix):]
            scheme = (urlparse(raw_url).scheme or "").lower()
            if scheme not in ("postgresql", "postgres"):
                raw_url = None

        self.db_url = raw_url
        self.db_path = db_path or DB_PATH
        self.use_postgres = bool(self.db_url)
        if not self.use_postgres:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pool: Optional[asyncpg.pool.Pool] = None
        # Pool creation can be slow or fail on cold start; a lock plus backoff keeps
        # every request from stampeding the DB.
        self._pool_lock = asyncio.Lock()
        self._pool_failed_until: float = 0.0
        self._pool_last_error: Optional[BaseException] = None

    # ── connection plumbing ──
    async def _get_pool(self):
        if self._pool:
            return self._pool
        if not self.db_url:
            return None

        now = time.time()
        if self._pool_failed_until and now < self._pool_failed_until:
            remaining = max(0.0, self._pool_failed_until - now)
            last = type(self._pool_last_error).__name__ if self._pool_last_error else "unknown"
            raise DatabaseUnavailable(f"Postgres pool unavailable (retry in ~{remaining:.0f}s; last_error={last})")

        async with self._pool_lock:
            if self._pool:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    self.db_url,
                    min_size=PG_POOL_MIN,
                    max_size=PG_POOL_MAX,
                    timeout=float(PG_CONNECT_TIMEOUT_SECONDS),
                    # PgBouncer in transaction pooling mode does not mix with prepared statements
                    statement_cache_size=0,
                    max_inactive_connection_lifetime=60.0,
                )
                self._pool_last_error = None
                self._pool_failed_until = 0.0
            except Exception as exc:
                self._pool_last_error = exc
                self._pool_failed_until = time.time() + float(PG_POOL_RETRY_BACKOFF_SECONDS)
                parsed = urlparse(self.db_url or "")
                log.error(
                    "Postgres pool creation failed (will back off %ss). host=%s db=%s err=%s",
                    float(PG_POOL_RETRY_BACKOFF_SECONDS),
                    parsed.hostname,
                    (parsed.path or "").lstrip("/"),
                    exc,
                )
                if REQUIRE_POSTGRES:
                    raise DatabaseUnavailable("Postgres connection pool could not be created") from exc
                log.warning("Falling back to SQLite at %s", self.db_path)
                self.use_postgres = False
                self._pool = None
        return self._pool

    def _convert(self, query: str) -> str:
        """Convert SQLite style "?" placeholders to asyncpg numbered ones."""
        if not self.use_postgres:
            return query
        parts = query.split("?")
        out = [parts[0]]
        for idx, part in enumerate(parts[1:], start=1):
            out.append(f"${idx}")
            out.append(part)
        return "".join(out)

    @asynccontextmanager
    async def _conn(self):
        if self.use_postgres:
            pool = await self._get_pool()
            if pool:
                async with pool.acquire() as conn:
                    yield conn
                return
            if self.db_url and REQUIRE_POSTGRES:
                raise DatabaseUnavailable("Postgres required but connection pool is unavailable")
            self.use_postgres = False
        # Keep SQLite lock waits bounded so requests don't hang indefinitely.
        timeout_s = max(0.1, float(SQLITE_BUSY_TIMEOUT_MS) / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {int(SQLITE_BUSY_TIMEOUT_MS)}")
            yield db

    @asynccontextmanager
    async def _transaction(self):
        async with self._conn() as db:
            if self.use_postgres:
                async with db.transaction():
                    yield db
            else:
                yield db
                await db.commit()

    async def _run(self, db, query: str, params: Sequence[Any] = ()) -> int:
        q = self._convert(query)
        if self.use_postgres:
            return _rowcount(await db.execute(q, *params))
        cur = await db.execute(q, tuple(params))
        return int(cur.rowcount or 0)

    async def _rows(self, db, query: str, params: Sequence[Any] = ()) -> List[dict]:
        q = self._convert(query)
        if self.use_postgres:
            rows = await db.fetch(q, *params)
        else:
            cur = await db.execute(q, tuple(params))
            rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def _row(self, db, query: str, params: Sequence[Any] = ()) -> Optional[dict]:
        q = self._convert(query)
        if self.use_postgres:
            row = await db.fetchrow(q, *params)
        else:
            cur = await db.execute(q, tuple(params))
            row = await cur.fetchone()
        return dict(row) if row else None

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[dict]:
        async with self._conn() as db:
            return await self._rows(db, query, params)

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[dict]:
        async with self._conn() as db:
            return await self._row(db, query, params)

    async def _count(self, query: str, params: Sequence[Any] = ()) -> int:
        row = await self._fetchone(query, params)
        if not row:
            return 0
        return int(next(iter(row.values())) or 0)

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        async with self._transaction() as db:
            return await self._run(db, query, params)

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            row = await self._fetchone("SELECT 1 AS ok")
            return bool(row and row.get("ok"))
        except Exception:
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    # ── schema ──
    async def init_db(self):
        async with self._conn() as db:
            if self.use_postgres:
                statements = [s.strip() for s in SCHEMA.split(";") if s.strip()]
                for stmt in statements:
                    await db.execute(stmt)
            else:
                await db.executescript(SCHEMA)
                await db.commit()

    # ── users ──────────────────────────────────────────────────────
    async def create_user(self, email: str, password_hash: str, name: str | None, role: str = "client") -> dict:
        now = utcnow_iso()
        user = {
            "id": new_id(),
            "email": email,
            "password_hash": password_hash,
            "name": name,
            "role": role,
            "created_at": now,
            "updated_at": now,
        }
        await self._execute(
            "INSERT INTO users (id, email, password_hash, name, role, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            tuple(user.values()),
        )
        return user

    async def get_user(self, user_id: str) -> Optional[dict]:
        return await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))

    async def get_user_by_email(self, email: str) -> Optional[dict]:
        return await self._fetchone("SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),))

    async def update_user_password(self, email: str, password_hash: str) -> int:
        return await self._execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE email = ?",
            (password_hash, utcnow_iso(), email),
        )

    async def set_user_role(self, user_id: str, role: str) -> None:
        await self._execute("UPDATE users SET role = ?, updated_at = ? WHERE id = ?", (role, utcnow_iso(), user_id))

    # ── password reset tokens ──
    async def replace_password_reset_token(self, email: str, token: str, expires_at: str) -> None:
        """Drop any previous reset tokens for the email and store a fresh one."""
        async with self._transaction() as db:
            await self._run(db, "DELETE FROM password_reset_tokens WHERE email = ?", (email,))
            await self._run(
                db,
                "INSERT INTO password_reset_tokens (id, email, token, expires_at, created_at) VALUES (?, ?, ?, ?, ?)",
                (new_id(), email, token, expires_at, utcnow_iso()),
            )

    async def get_password_reset_token(self, token: str) -> Optional[dict]:
        return await self._fetchone("SELECT * FROM password_reset_tokens WHERE token = ?", (token,))

    async def delete_password_reset_token(self, token_id: str) -> None:
        await self._execute("DELETE FROM password_reset_tokens WHERE id = ?", (token_id,))

    # ── WhatsApp connections ───────────────────────────────────────
    async def get_connection(self, connection_id: str, user_id: str | None = None) -> Optional[dict]:
        if user_id is None:
            return await self._fetchone("SELECT * FROM whatsapp_connections WHERE id = ?", (connection_id,))
        return await self._fetchone(
            "SELECT * FROM whatsapp_connections WHERE id = ? AND user_id = ?", (connection_id, user_id)
        )

    async def get_connection_by_phone_number_id(self, phone_number_id: str, user_id: str | None = None) -> Optional[dict]:
        if user_id is None:
            return await self._fetchone(
                "SELECT * FROM whatsapp_connections WHERE phone_number_id = ?", (phone_number_id,)
            )
        return await self._fetchone(
            "SELECT * FROM whatsapp_connections WHERE phone_number_id = ? AND user_id = ?",
            (phone_number_id, user_id),
        )

    async def get_connection_by_waba_id(self, waba_id: str) -> Optional[dict]:
        return await self._fetchone(
            "SELECT * FROM whatsapp_connections WHERE waba_id = ? ORDER BY created_at ASC LIMIT 1", (waba_id,)
        )

    async def list_connections(self, user_id: str) -> List[dict]:
        return await self._fetchall(
            "SELECT * FROM whatsapp_connections WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
        )

    async def upsert_connection(
        self,
        user_id: str,
        *,
        phone_number: str | None,
        phone_number_id: str,
        waba_id: str,
        business_name: str | None,
        access_token: str | None,
    ) -> dict:
        """Create or refresh a connection keyed by phone_number_id (status → connected)."""
        now = utcnow_iso()
        existing = await self.get_connection_by_phone_number_id(phone_number_id)
        if existing:
            await self._execute(
                """
                UPDATE whatsapp_connections
                   SET phone_number = ?, waba_id = ?, business_name = ?, access_token = ?,
                       status = 'connected', connected_at = ?, updated_at = ?
                 WHERE id = ?
                """,
                (phone_number, waba_id, business_name, access_token, now, now, existing["id"]),
            )
            return await self.get_connection(existing["id"])  # type: ignore[return-value]
        conn = {
            "id": new_id(),
            "user_id": user_id,
            "phone_number": phone_number,
            "phone_number_id": phone_number_id,
            "waba_id": waba_id,
            "business_name": business_name,
            "access_token": access_token,
            "status": "connected",
            "connected_at": now,
            "created_at": now,
            "updated_at": now,
        }
        await self._execute(
            f"INSERT INTO whatsapp_connections ({', '.join(conn.keys())}) VALUES ({_placeholders(len(conn))})",
            tuple(conn.values()),
        )
        return conn

    async def delete_connection(self, connection_id: str, user_id: str) -> bool:
        """Delete a connection and the rows that only make sense with it."""
        async with self._transaction() as db:
            n = await self._run(
                db, "DELETE FROM whatsapp_connections WHERE id = ? AND user_id = ?", (connection_id, user_id)
            )
            if not n:
                return False
            await self._run(db, "DELETE FROM messages WHERE connection_id = ?", (connection_id,))
            await self._run(db, "DELETE FROM chatbot_conversations WHERE connection_id = ?", (connection_id,))
            await self._run(db, "DELETE FROM scheduled_messages WHERE connection_id = ?", (connection_id,))
        return True

    # ── messages ───────────────────────────────────────────────────
    async def create_message(
        self,
        *,
        connection_id: str,
        direction: str,
        from_number: str | None,
        to_number: str | None,
        content: str | None,
        message_type: str = "text",
        status: str = "sent",
        whatsapp_message_id: str | None = None,
        created_at: str | None = None,
        skip_duplicate: bool = False,
    ) -> Optional[dict]:
        """Insert one message row.

        With ``skip_duplicate`` an already stored whatsapp_message_id is left alone and None is returned.
        """
        msg = {
            "id": new_id(),
            "connection_id": connection_id,
            "direction": direction,
            "from_number": from_number,
            "to_number": to_number,
            "message_type": message_type or "text",
            "content": content,
            "status": status,
            "whatsapp_message_id": whatsapp_message_id,
            "created_at": created_at or utcnow_iso(),
        }
        query = f"INSERT INTO messages ({', '.join(msg.keys())}) VALUES ({_placeholders(len(msg))})"
        if skip_duplicate:
            query += " ON CONFLICT DO NOTHING"
        inserted = await self._execute(query, tuple(msg.values()))
        if skip_duplicate and not inserted:
            return None
        return msg

    async def get_message_by_whatsapp_id(self, whatsapp_message_id: str) -> Optional[dict]:
        return await self._fetchone(
            "SELECT * FROM messages WHERE whatsapp_message_id = ? LIMIT 1", (whatsapp_message_id,)
        )

    async def update_message_status(self, whatsapp_message_id: str, status: str) -> int:
        return await self._execute(
            "UPDATE messages SET status = ? WHERE whatsapp_message_id = ?", (status, whatsapp_message_id)
        )

    async def list_messages(self, connection_id: str, limit: int = 50, offset: int = 0) -> List[dict]:
        return await self._fetchall(
            "SELECT * FROM messages WHERE connection_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (connection_id, int(limit), int(offset)),
        )

    async def list_user_messages(
        self, user_id: str, connection_id: str | None = None, limit: int = 50, offset: int = 0
    ) -> List[dict]:
        """Messages across the user's connections, newest first."""
        query = (
            "SELECT m.* FROM messages m JOIN whatsapp_connections c ON c.id = m.connection_id WHERE c.user_id = ?"
        )
        params: list = [user_id]
        if connection_id:
            query += " AND m.connection_id = ?"
            params.append(connection_id)
        query += " ORDER BY m.created_at DESC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        return await self._fetchall(query, params)

    async def export_messages(
        self,
        user_id: str,
        *,
        connection_id: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> List[dict]:
        query = (
            "SELECT m.*, c.phone_number AS connection_phone, c.business_name "
            "FROM messages m JOIN whatsapp_connections c ON c.id = m.connection_id WHERE c.user_id = ?"
        )
        params: list = [user_id]
        if connection_id:
            query += " AND m.connection_id = ?"
            params.append(connection_id)
        if start:
            query += " AND m.created_at >= ?"
            params.append(start)
        if end:
            query += " AND m.created_at <= ?"
            params.append(end)
        query += " ORDER BY m.created_at ASC"
        return await self._fetchall(query, params)

    # ── webhook logs ───────────────────────────────────────────────
    async def create_webhook_log(
        self, *, connection_id: str | None, user_id: str | None, event_type: str, payload: Any
    ) -> str:
        log_id = new_id()
        await self._execute(
            "INSERT INTO webhook_logs (id, connection_id, user_id, event_type, payload, processed, created_at) "
            "VALUES (?, ?, ?, ?, ?, 0, ?)",
            (log_id, connection_id, user_id, event_type, json.dumps(payload), utcnow_iso()),
        )
        return log_id

    async def mark_webhook_log_processed(self, log_id: str) -> None:
        await self._execute("UPDATE webhook_logs SET processed = 1 WHERE id = ?", (log_id,))

    async def list_webhook_logs(self, page: int = 1, limit: int = 50) -> tuple[List[dict], int]:
        page = max(1, int(page))
        limit = max(1, int(limit))
        rows = await self._fetchall(
            "SELECT w.*, u.email AS user_email, u.name AS user_name, c.phone_number AS connection_phone "
            "FROM webhook_logs w LEFT JOIN users u ON u.id = w.user_id "
            "LEFT JOIN whatsapp_connections c ON c.id = w.connection_id "
            "ORDER BY w.created_at DESC LIMIT ? OFFSET ?",
            (limit, (page - 1) * limit),
        )
        for r in rows:
            r["payload"] = _json_load(r.get("payload"), r.get("payload"))
        total = await self._count("SELECT COUNT(*) AS n FROM webhook_logs")
        return rows, total

    # ── chatbot flows ──────────────────────────────────────────────
    async def _nodes_for_flows(self, db, flow_ids: List[str]) -> Dict[str, List[dict]]:
        out: Dict[str, List[dict]] = {fid: [] for fid in flow_ids}
        if not flow_ids:
            return out
        rows = await self._rows(
            db,
            f"SELECT * FROM chatbot_nodes WHERE flow_id IN ({_placeholders(len(flow_ids))}) ORDER BY position ASC, id ASC",
            flow_ids,
        )
        for r in rows:
            r["options"] = _json_load(r.get("options"), None)
            out.setdefault(r["flow_id"], []).append(r)
        return out

    async def _insert_nodes(self, db, flow_id: str, nodes: Iterable[dict]) -> None:
        nodes = list(nodes or [])
        # Nodes may reference each other by a client-side id; map those to stored ids.
        id_map: Dict[str, str] = {}
        prepared = []
        for index, node in enumerate(nodes):
            node_id = new_id()
            client_id = str(node.get("id") or "").strip()
            if client_id:
                id_map[client_id] = node_id
            prepared.append((node_id, index, node))
        for node_id, index, node in prepared:
            raw_next = str(node.get("next_node_id") or "").strip()
            position = node.get("position")
            options = node.get("options")
            await self._run(
                db,
                "INSERT INTO chatbot_nodes (id, flow_id, node_type, content, options, next_node_id, position) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    node_id,
                    flow_id,
                    node.get("node_type") or "message",
                    node.get("content") or "",
                    json.dumps(options) if options is not None else None,
                    id_map.get(raw_next) if raw_next else None,
                    int(position) if isinstance(position, int) and not isinstance(position, bool) else index,
                ),
            )

    async def list_flows(self, user_id: str) -> List[dict]:
        async with self._conn() as db:
            flows = await self._rows(
                db, "SELECT * FROM chatbot_flows WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
            )
            nodes = await self._nodes_for_flows(db, [f["id"] for f in flows])
        for f in flows:
            f["nodes"] = nodes.get(f["id"], [])
        return flows

    async def list_active_flows(self, user_id: str) -> List[dict]:
        """Active flows in creation order, each with its nodes ordered by position."""
        async with self._conn() as db:
            flows = await self._rows(
                db,
                "SELECT * FROM chatbot_flows WHERE user_id = ? AND is_active = 1 ORDER BY created_at ASC, id ASC",
                (user_id,),
            )
            nodes = await self._nodes_for_flows(db, [f["id"] for f in flows])
        for f in flows:
            f["nodes"] = nodes.get(f["id"], [])
        return flows

    async def get_flow(self, flow_id: str, user_id: str) -> Optional[dict]:
        async with self._conn() as db:
            flow = await self._row(
                db, "SELECT * FROM chatbot_flows WHERE id = ? AND user_id = ?", (flow_id, user_id)
            )
            if not flow:
                return None
            flow["nodes"] = (await self._nodes_for_flows(db, [flow_id])).get(flow_id, [])
        return flow

    async def create_flow(
        self,
        user_id: str,
        *,
        name: str,
        description: str | None,
        trigger_type: str,
        trigger_value: str | None,
        is_active: bool,
        nodes: List[dict],
    ) -> dict:
        now = utcnow_iso()
        flow_id = new_id()
        async with self._transaction() as db:
            await self._run(
                db,
                "INSERT INTO chatbot_flows (id, user_id, name, description, trigger_type, trigger_value, is_active, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (flow_id, user_id, name, description, trigger_type, trigger_value, int(bool(is_active)), now, now),
            )
            await self._insert_nodes(db, flow_id, nodes)
        return await self.get_flow(flow_id, user_id)  # type: ignore[return-value]

    async def update_flow(
        self, flow_id: str, user_id: str, fields: Dict[str, Any], nodes: Optional[List[dict]] = None
    ) -> Optional[dict]:
        """Update flow columns; when nodes are given they replace the existing ones wholesale."""
        allowed = ("name", "description", "trigger_type", "trigger_value", "is_active")
        sets = {k: v for k, v in fields.items() if k in allowed}
        if "is_active" in sets:
            sets["is_active"] = int(bool(sets["is_active"]))
        sets["updated_at"] = utcnow_iso()
        async with self._transaction() as db:
            n = await self._run(
                db,
                f"UPDATE chatbot_flows SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ? AND user_id = ?",
                (*sets.values(), flow_id, user_id),
            )
            if not n:
                return None
            if nodes is not None:
                await self._run(db, "DELETE FROM chatbot_nodes WHERE flow_id = ?", (flow_id,))
                await self._insert_nodes(db, flow_id, nodes)
                # New node ids; conversations parked on the old ones restart from the triggers.
                await self._run(
                    db,
                    "UPDATE chatbot_conversations SET is_active = 0, updated_at = ? "
                    "WHERE current_flow_id = ? AND is_active = 1",
                    (sets["updated_at"], flow_id),
                )
        return await self.get_flow(flow_id, user_id)

    async def delete_flow(self, flow_id: str, user_id: str) -> bool:
        async with self._transaction() as db:
            n = await self._run(db, "DELETE FROM chatbot_flows WHERE id = ? AND user_id = ?", (flow_id, user_id))
            if not n:
                return False
            await self._run(db, "DELETE FROM chatbot_nodes WHERE flow_id = ?", (flow_id,))
            await self._run(
                db,
                "UPDATE chatbot_conversations SET is_active = 0, updated_at = ? WHERE current_flow_id = ?",
                (utcnow_iso(), flow_id),
            )
        return True

    # ── chatbot conversations ──
    async def get_active_conversation(self, connection_id: str, phone_number: str) -> Optional[dict]:
        row = await self._fetchone(
            "SELECT * FROM chatbot_conversations WHERE connection_id = ? AND phone_number = ? AND is_active = 1 "
            "ORDER BY updated_at DESC LIMIT 1",
            (connection_id, phone_number),
        )
        if row:
            row["context"] = _json_load(row.get("context"), {})
        return row

    async def upsert_conversation(
        self,
        conversation_id: str,
        *,
        connection_id: str,
        phone_number: str,
        flow_id: str,
        node_id: str,
        context: Dict[str, Any],
    ) -> None:
        now = utcnow_iso()
        await self._execute(
            """
            INSERT INTO chatbot_conversations
                (id, connection_id, phone_number, current_flow_id, current_node_id, context, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                current_flow_id = EXCLUDED.current_flow_id,
                current_node_id = EXCLUDED.current_node_id,
                context = EXCLUDED.context,
                is_active = 1,
                updated_at = EXCLUDED.updated_at
            """,
            (conversation_id, connection_id, phone_number, flow_id, node_id, json.dumps(context), now, now),
        )

    async def advance_conversation(self, conversation_id: str, node_id: str, context: Dict[str, Any]) -> None:
        await self._execute(
            "UPDATE chatbot_conversations SET current_node_id = ?, context = ?, updated_at = ? WHERE id = ?",
            (node_id, json.dumps(context), utcnow_iso(), conversation_id),
        )

    async def deactivate_conversation(self, conversation_id: str) -> None:
        await self._execute(
            "UPDATE chatbot_conversations SET is_active = 0, updated_at = ? WHERE id = ?",
            (utcnow_iso(), conversation_id),
        )

    # ── contacts ───────────────────────────────────────────────────
    async def _hydrate_contacts(self, db, contacts: List[dict]) -> List[dict]:
        """Attach tags, groups and notes (pinned first) to each contact."""
        ids = [c["id"] for c in contacts]
        by_id = {c["id"]: c for c in contacts}
        for c in contacts:
            c["tags"], c["groups"], c["notes"] = [], [], []
        if not ids:
            return contacts
        ph = _placeholders(len(ids))
        tags = await self._rows(
            db,
            f"SELECT l.contact_id, t.id, t.name, t.color FROM contact_tag_links l "
            f"JOIN contact_tags t ON t.id = l.tag_id WHERE l.contact_id IN ({ph}) ORDER BY t.name ASC",
            ids,
        )
        for t in tags:
            by_id[t.pop("contact_id")]["tags"].append(t)
        groups = await self._rows(
            db,
            f"SELECT m.contact_id, g.id, g.name, g.color FROM contact_group_members m "
            f"JOIN contact_groups g ON g.id = m.group_id WHERE m.contact_id IN ({ph}) ORDER BY g.name ASC",
            ids,
        )
        for g in groups:
            by_id[g.pop("contact_id")]["groups"].append(g)
        notes = await self._rows(
            db,
            f"SELECT * FROM contact_notes WHERE contact_id IN ({ph}) ORDER BY is_pinned DESC, created_at DESC",
            ids,
        )
        for n in notes:
            by_id[n["contact_id"]]["notes"].append(n)
        return contacts

    async def _owned_ids(self, db, table: str, user_id: str, ids: Iterable[str]) -> List[str]:
        wanted = [str(i) for i in dict.fromkeys(ids or []) if i]
        if not wanted:
            return []
        rows = await self._rows(
            db,
            f"SELECT id FROM {table} WHERE user_id = ? AND id IN ({_placeholders(len(wanted))})",
            [user_id, *wanted],
        )
        owned = {r["id"] for r in rows}
        return [i for i in wanted if i in owned]

    async def list_contacts(
        self, user_id: str, *, search: str | None = None, tag_id: str | None = None, group_id: str | None = None
    ) -> List[dict]:
        query = "SELECT c.* FROM contacts c WHERE c.user_id = ?"
        params: list = [user_id]
        if search:
            like = f"%{search.strip().lower()}%"
            query += (
                " AND (LOWER(COALESCE(c.name, '')) LIKE ? OR LOWER(c.phone_number) LIKE ?"
                " OR LOWER(COALESCE(c.email, '')) LIKE ?)"
            )
            params.extend([like, like, like])
        if tag_id:
            query += " AND EXISTS (SELECT 1 FROM contact_tag_links l WHERE l.contact_id = c.id AND l.tag_id = ?)"
            params.append(tag_id)
        if group_id:
            query += " AND EXISTS (SELECT 1 FROM contact_group_members m WHERE m.contact_id = c.id AND m.group_id = ?)"
            params.append(group_id)
        query += " ORDER BY c.updated_at DESC"
        async with self._conn() as db:
            contacts = await self._rows(db, query, params)
            return await self._hydrate_contacts(db, contacts)

    async def get_contact(self, contact_id: str, user_id: str) -> Optional[dict]:
        async with self._conn() as db:
            row = await self._row(db, "SELECT * FROM contacts WHERE id = ? AND user_id = ?", (contact_id, user_id))
            if not row:
                return None
            return (await self._hydrate_contacts(db, [row]))[0]

    async def get_contact_by_phone(self, user_id: str, phone_number: str) -> Optional[dict]:
        return await self._fetchone(
            "SELECT * FROM contacts WHERE user_id = ? AND phone_number = ?", (user_id, phone_number)
        )

    async def create_contact(
        self,
        user_id: str,
        *,
        phone_number: str,
        name: str | None = None,
        email: str | None = None,
        company: str | None = None,
        tag_ids: Optional[List[str]] = None,
    ) -> dict:
        now = utcnow_iso()
        contact_id = new_id()
        async with self._transaction() as db:
            await self._run(
                db,
                "INSERT INTO contacts (id, user_id, phone_number, name, email, company, is_blocked, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)",
                (contact_id, user_id, phone_number, name, email, company, now, now),
            )
            for tag_id in await self._owned_ids(db, "contact_tags", user_id, tag_ids or []):
                await self._run(
                    db, "INSERT INTO contact_tag_links (contact_id, tag_id) VALUES (?, ?)", (contact_id, tag_id)
                )
        return await self.get_contact(contact_id, user_id)  # type: ignore[return-value]

    async def update_contact(
        self, contact_id: str, user_id: str, fields: Dict[str, Any], tag_ids: Optional[List[str]] = None
    ) -> Optional[dict]:
        """Update contact columns; tag_ids (when not None) replaces the tag set."""
        allowed = ("name", "email", "company", "is_blocked")
        sets = {k: v for k, v in fields.items() if k in allowed}
        if "is_blocked" in sets:
            sets["is_blocked"] = int(bool(sets["is_blocked"]))
        sets["updated_at"] = utcnow_iso()
        async with self._transaction() as db:
            n = await self._run(
                db,
                f"UPDATE contacts SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ? AND user_id = ?",
                (*sets.values(), contact_id, user_id),
            )
            if not n:
                return None
            if tag_ids is not None:
                await self._run(db, "DELETE FROM contact_tag_links WHERE contact_id = ?", (contact_id,))
                for tag_id in await self._owned_ids(db, "contact_tags", user_id, tag_ids):
                    await self._run(
                        db, "INSERT INTO contact_tag_links (contact_id, tag_id) VALUES (?, ?)", (contact_id, tag_id)
                    )
        return await self.get_contact(contact_id, user_id)

    async def delete_contact(self, contact_id: str, user_id: str) -> bool:
        async with self._transaction() as db:
            n = await self._run(db, "DELETE FROM contacts WHERE id = ? AND user_id = ?", (contact_id, user_id))
            if not n:
                return False
            await self._run(db, "DELETE FROM contact_notes WHERE contact_id = ?", (contact_id,))
            await self._run(db, "DELETE FROM contact_tag_links WHERE contact_id = ?", (contact_id,))
            await self._run(db, "DELETE FROM contact_group_members WHERE contact_id = ?", (contact_id,))
        return True

    async def record_inbound_contact(
        self, user_id: str, phone_number: str, name: str | None, at: str
    ) -> dict:
        """Create the contact for an inbound sender or refresh its name/last_message_at."""
        existing = await self.get_contact_by_phone(user_id, phone_number)
        if existing:
            await self._execute(
                "UPDATE contacts SET name = COALESCE(name, ?), last_message_at = ?, updated_at = ? WHERE id = ?",
                (name, at, at, existing["id"]),
            )
            existing.update({"last_message_at": at, "updated_at": at})
            if not existing.get("name"):
                existing["name"] = name
            return existing
        contact = {
            "id": new_id(),
            "user_id": user_id,
            "phone_number": phone_number,
            "name": name,
            "is_blocked": 0,
            "last_message_at": at,
            "created_at": at,
            "updated_at": at,
        }
        await self._execute(
            f"INSERT INTO contacts ({', '.join(contact.keys())}) VALUES ({_placeholders(len(contact))}) "
            "ON CONFLICT (user_id, phone_number) DO NOTHING",
            tuple(contact.values()),
        )
        return contact

    # ── tags ──
    async def list_tags(self, user_id: str) -> List[dict]:
        return await self._fetchall(
            "SELECT t.*, (SELECT COUNT(*) FROM contact_tag_links l WHERE l.tag_id = t.id) AS contact_count "
            "FROM contact_tags t WHERE t.user_id = ? ORDER BY t.name ASC",
            (user_id,),
        )

    async def create_tag(self, user_id: str, name: str, color: str) -> dict:
        tag = {"id": new_id(), "user_id": user_id, "name": name, "color": color, "created_at": utcnow_iso()}
        await self._execute(
            "INSERT INTO contact_tags (id, user_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
            tuple(tag.values()),
        )
        tag["contact_count"] = 0
        return tag

    async def delete_tag(self, tag_id: str, user_id: str) -> bool:
        async with self._transaction() as db:
            n = await self._run(db, "DELETE FROM contact_tags WHERE id = ? AND user_id = ?", (tag_id, user_id))
            if n:
                await self._run(db, "DELETE FROM contact_tag_links WHERE tag_id = ?", (tag_id,))
        return bool(n)

    # ── groups ──
    async def list_groups(self, user_id: str, preview: int = 5) -> List[dict]:
        async with self._conn() as db:
            groups = await self._rows(
                db,
                "SELECT g.*, (SELECT COUNT(*) FROM contact_group_members m WHERE m.group_id = g.id) AS contact_count "
                "FROM contact_groups g WHERE g.user_id = ? ORDER BY g.name ASC",
                (user_id,),
            )
            for g in groups:
                g["contacts"] = await self._rows(
                    db,
                    "SELECT c.id, c.phone_number, c.name FROM contact_group_members m "
                    "JOIN contacts c ON c.id = m.contact_id WHERE m.group_id = ? ORDER BY c.name ASC LIMIT ?",
                    (g["id"], int(preview)),
                )
        return groups

    async def get_group(self, group_id: str, user_id: str) -> Optional[dict]:
        return await self._fetchone(
            "SELECT g.*, (SELECT COUNT(*) FROM contact_group_members m WHERE m.group_id = g.id) AS contact_count "
            "FROM contact_groups g WHERE g.id = ? AND g.user_id = ?",
            (group_id, user_id),
        )

    async def _set_group_members(self, db, group_id: str, user_id: str, contact_ids: Iterable[str]) -> None:
        await self._run(db, "DELETE FROM contact_group_members WHERE group_id = ?", (group_id,))
        for contact_id in await self._owned_ids(db, "contacts", user_id, contact_ids):
            await self._run(
                db, "INSERT INTO contact_group_members (contact_id, group_id) VALUES (?, ?)", (contact_id, group_id)
            )

    async def create_group(
        self, user_id: str, *, name: str, description: str | None, color: str, contact_ids: Optional[List[str]] = None
    ) -> dict:
        now = utcnow_iso()
        group_id = new_id()
        async with self._transaction() as db:
            await self._run(
                db,
                "INSERT INTO contact_groups (id, user_id, name, description, color, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (group_id, user_id, name, description, color, now, now),
            )
            if contact_ids:
                await self._set_group_members(db, group_id, user_id, contact_ids)
        return await self.get_group(group_id, user_id)  # type: ignore[return-value]

    async def update_group(
        self, group_id: str, user_id: str, fields: Dict[str, Any], contact_ids: Optional[List[str]] = None
    ) -> Optional[dict]:
        allowed = ("name", "description", "color")
        sets = {k: v for k, v in fields.items() if k in allowed}
        sets["updated_at"] = utcnow_iso()
        async with self._transaction() as db:
            n = await self._run(
                db,
                f"UPDATE contact_groups SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ? AND user_id = ?",
                (*sets.values(), group_id, user_id),
            )
            if not n:
                return None
            if contact_ids is not None:
                await self._set_group_members(db, group_id, user_id, contact_ids)
        return await self.get_group(group_id, user_id)

    async def delete_group(self, group_id: str, user_id: str) -> bool:
        async with self._transaction() as db:
            n = await self._run(db, "DELETE FROM contact_groups WHERE id = ? AND user_id = ?", (group_id, user_id))
            if n:
                await self._run(db, "DELETE FROM contact_group_members WHERE group_id = ?", (group_id,))
        return bool(n)

    # ── notes ──
    async def create_note(self, contact_id: str, content: str, is_pinned: bool = False) -> dict:
        now = utcnow_iso()
        note = {
            "id": new_id(),
            "contact_id": contact_id,
            "content": content,
            "is_pinned": int(bool(is_pinned)),
            "created_at": now,
            "updated_at": now,
        }
        await self._execute(
            "INSERT INTO contact_notes (id, contact_id, content, is_pinned, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            tuple(note.values()),
        )
        return note

    async def get_note(self, note_id: str, user_id: str) -> Optional[dict]:
        """A note, only when its contact belongs to the user."""
        return await self._fetchone(
            "SELECT n.* FROM contact_notes n JOIN contacts c ON c.id = n.contact_id WHERE n.id = ? AND c.user_id = ?",
            (note_id, user_id),
        )

    async def update_note(self, note_id: str, fields: Dict[str, Any]) -> Optional[dict]:
        sets = {k: v for k, v in fields.items() if k in ("content", "is_pinned")}
        if "is_pinned" in sets:
            sets["is_pinned"] = int(bool(sets["is_pinned"]))
        sets["updated_at"] = utcnow_iso()
        await self._execute(
            f"UPDATE contact_notes SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ?",
            (*sets.values(), note_id),
        )
        return await self._fetchone("SELECT * FROM contact_notes WHERE id = ?", (note_id,))

    async def delete_note(self, note_id: str) -> None:
        await self._execute("DELETE FROM contact_notes WHERE id = ?", (note_id,))

    # ── quick replies ──────────────────────────────────────────────
    async def list_quick_replies(self, user_id: str) -> List[dict]:
        return await self._fetchall("SELECT * FROM quick_replies WHERE user_id = ? ORDER BY shortcut ASC", (user_id,))

    async def get_quick_reply(self, reply_id: str, user_id: str) -> Optional[dict]:
        return await self._fetchone("SELECT * FROM quick_replies WHERE id = ? AND user_id = ?", (reply_id, user_id))

    async def get_quick_reply_by_shortcut(self, user_id: str, shortcut: str) -> Optional[dict]:
        return await self._fetchone(
            "SELECT * FROM quick_replies WHERE user_id = ? AND shortcut = ?", (user_id, shortcut)
        )

    async def create_quick_reply(self, user_id: str, *, shortcut: str, title: str, content: str, category: str) -> dict:
        now = utcnow_iso()
        reply = {
            "id": new_id(),
            "user_id": user_id,
            "shortcut": shortcut,
            "title": title,
            "content": content,
            "category": category,
            "created_at": now,
            "updated_at": now,
        }
        await self._execute(
            f"INSERT INTO quick_replies ({', '.join(reply.keys())}) VALUES ({_placeholders(len(reply))})",
            tuple(reply.values()),
        )
        return reply

    async def update_quick_reply(self, reply_id: str, user_id: str, fields: Dict[str, Any]) -> Optional[dict]:
        sets = {k: v for k, v in fields.items() if k in ("shortcut", "title", "content", "category")}
        sets["updated_at"] = utcnow_iso()
        n = await self._execute(
            f"UPDATE quick_replies SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ? AND user_id = ?",
            (*sets.values(), reply_id, user_id),
        )
        return await self.get_quick_reply(reply_id, user_id) if n else None

    async def delete_quick_reply(self, reply_id: str, user_id: str) -> bool:
        return bool(
            await self._execute("DELETE FROM quick_replies WHERE id = ? AND user_id = ?", (reply_id, user_id))
        )

    # ── message templates ──────────────────────────────────────────
    async def list_templates(self, user_id: str) -> List[dict]:
        rows = await self._fetchall(
            "SELECT * FROM message_templates WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
        )
        for r in rows:
            r["variables"] = _json_load(r.get("variables"), [])
        return rows

    async def create_template(
        self, user_id: str, *, name: str, content: str, category: str, variables: List[Any]
    ) -> dict:
        now = utcnow_iso()
        tpl = {
            "id": new_id(),
            "user_id": user_id,
            "name": name,
            "content": content,
            "category": category,
            "variables": json.dumps(variables or []),
            "created_at": now,
            "updated_at": now,
        }
        await self._execute(
            f"INSERT INTO message_templates ({', '.join(tpl.keys())}) VALUES ({_placeholders(len(tpl))})",
            tuple(tpl.values()),
        )
        tpl["variables"] = list(variables or [])
        return tpl

    async def delete_template(self, template_id: str, user_id: str) -> bool:
        return bool(
            await self._execute("DELETE FROM message_templates WHERE id = ? AND user_id = ?", (template_id, user_id))
        )

    # ── scheduled messages ─────────────────────────────────────────
    async def list_scheduled_messages(self, user_id: str) -> List[dict]:
        return await self._fetchall(
            "SELECT s.*, c.phone_number AS connection_phone, c.business_name AS connection_business_name "
            "FROM scheduled_messages s LEFT JOIN whatsapp_connections c ON c.id = s.connection_id "
            "WHERE s.user_id = ? ORDER BY s.scheduled_at ASC",
            (user_id,),
        )

    async def get_scheduled_message(self, scheduled_id: str, user_id: str | None = None) -> Optional[dict]:
        if user_id is None:
            return await self._fetchone("SELECT * FROM scheduled_messages WHERE id = ?", (scheduled_id,))
        return await self._fetchone(
            "SELECT * FROM scheduled_messages WHERE id = ? AND user_id = ?", (scheduled_id, user_id)
        )

    async def create_scheduled_message(
        self,
        user_id: str,
        *,
        connection_id: str,
        recipient_phone: str,
        content: str,
        scheduled_at: str,
        message_type: str = "text",
        media_url: str | None = None,
    ) -> dict:
        now = utcnow_iso()
        row = {
            "id": new_id(),
            "user_id": user_id,
            "connection_id": connection_id,
            "recipient_phone": recipient_phone,
            "content": content,
            "message_type": message_type or "text",
            "media_url": media_url,
            "scheduled_at": scheduled_at,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        await self._execute(
            f"INSERT INTO scheduled_messages ({', '.join(row.keys())}) VALUES ({_placeholders(len(row))})",
            tuple(row.values()),
        )
        return row

    async def set_scheduled_status(
        self, scheduled_id: str, status: str, *, only_from: str | None = None, **extra: Any
    ) -> bool:
        """Write a new status; with ``only_from`` the row must still be in that status."""
        sets = {"status": status, "updated_at": utcnow_iso()}
        sets.update({k: v for k, v in extra.items() if k in ("sent_at", "error", "whatsapp_message_id")})
        query = f"UPDATE scheduled_messages SET {', '.join(f'{k} = ?' for k in sets)} WHERE id = ?"
        params = [*sets.values(), scheduled_id]
        if only_from is not None:
            query += " AND status = ?"
            params.append(only_from)
        return bool(await self._execute(query, params))

    async def cancel_scheduled_message(self, scheduled_id: str, user_id: str) -> bool:
        """Cancel unless the dispatcher already claimed or sent it."""
        n = await self._execute(
            "UPDATE scheduled_messages SET status = 'cancelled', updated_at = ? "
            "WHERE id = ? AND user_id = ? AND status IN ('pending', 'failed', 'cancelled')",
            (utcnow_iso(), scheduled_id, user_id),
        )
        return bool(n)

    async def fail_stale_scheduled_messages(self, claimed_before_iso: str, error: str) -> List[dict]:
        """Rows stuck in 'sending' since before the cutoff (a crashed pass) are marked failed."""
        stale = await self._fetchall(
            "SELECT * FROM scheduled_messages WHERE status = 'sending' AND updated_at < ?",
            (claimed_before_iso,),
        )
        failed = []
        for row in stale:
            if await self.set_scheduled_status(row["id"], "failed", only_from="sending", error=error):
                failed.append(row)
        return failed

    async def claim_due_scheduled_messages(self, now_iso: str, limit: int) -> List[dict]:
        """Claim due pending messages by flipping them to 'sending'; only rows this call flipped are returned."""
        candidates = await self._fetchall(
            "SELECT * FROM scheduled_messages WHERE status = 'pending' AND scheduled_at <= ? "
            "ORDER BY scheduled_at ASC LIMIT ?",
            (now_iso, int(limit)),
        )
        claimed = []
        for row in candidates:
            n = await self._execute(
                "UPDATE scheduled_messages SET status = 'sending', updated_at = ? WHERE id = ? AND status = 'pending'",
                (utcnow_iso(), row["id"]),
            )
            if n:
                row["status"] = "sending"
                claimed.append(row)
        return claimed

    # ── notifications ──────────────────────────────────────────────
    async def list_notifications(self, user_id: str, limit: int = 50) -> tuple[List[dict], int]:
        rows = await self._fetchall(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?", (user_id, int(limit))
        )
        unread = await self._count(
            "SELECT COUNT(*) AS n FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
        )
        return rows, unread

    async def create_notification(
        self, user_id: str, *, type: str, title: str, content: str, link: str | None = None
    ) -> dict:
        row = {
            "id": new_id(),
            "user_id": user_id,
            "type": type,
            "title": title,
            "content": content,
            "link": link,
            "is_read": 0,
            "created_at": utcnow_iso(),
        }
        await self._execute(
            f"INSERT INTO notifications ({', '.join(row.keys())}) VALUES ({_placeholders(len(row))})",
            tuple(row.values()),
        )
        return row

    async def mark_notifications_read(self, user_id: str, notification_id: str | None = None) -> int:
        if notification_id:
            return await self._execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?", (notification_id, user_id)
            )
        return await self._execute("UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,))

    async def delete_notifications(self, user_id: str, notification_id: str | None = None) -> int:
        if notification_id:
            return await self._execute(
                "DELETE FROM notifications WHERE id = ? AND user_id = ?", (notification_id, user_id)
            )
        return await self._execute("DELETE FROM notifications WHERE user_id = ?", (user_id,))

    # ── API keys ───────────────────────────────────────────────────
    async def list_api_keys(self, user_id: str) -> List[dict]:
        rows = await self._fetchall("SELECT * FROM api_keys WHERE user_id = ? ORDER BY created_at DESC", (user_id,))
        for r in rows:
            r["permissions"] = _json_load(r.get("permissions"), [])
        return rows

    async def create_api_key(self, user_id: str, *, name: str, api_key: str, permissions: List[str]) -> dict:
        row = {
            "id": new_id(),
            "user_id": user_id,
            "name": name,
            "api_key": api_key,
            "permissions": json.dumps(list(permissions)),
            "is_active": 1,
            "created_at": utcnow_iso(),
        }
        await self._execute(
            f"INSERT INTO api_keys ({', '.join(row.keys())}) VALUES ({_placeholders(len(row))})",
            tuple(row.values()),
        )
        row["permissions"] = list(permissions)
        row["last_used_at"] = None
        return row

    async def delete_api_key(self, key_id: str, user_id: str) -> bool:
        return bool(await self._execute("DELETE FROM api_keys WHERE id = ? AND user_id = ?", (key_id, user_id)))

    async def get_api_key(self, api_key: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM api_keys WHERE api_key = ?", (api_key,))
        if row:
            row["permissions"] = _json_load(row.get("permissions"), [])
        return row

    async def touch_api_key(self, key_id: str) -> None:
        await self._execute("UPDATE api_keys SET last_used_at = ? WHERE id = ?", (utcnow_iso(), key_id))

    # ── stats ──────────────────────────────────────────────────────
    async def dashboard_stats(self, user_id: str, *, days: int = 7, now: datetime | None = None) -> dict:
        """Per-user dashboard aggregates; day buckets are UTC dates."""
        now = now or datetime.now(timezone.utc)
        first_day = (now - timedelta(days=days - 1)).date()
        since = to_iso(datetime(first_day.year, first_day.month, first_day.day, tzinfo=timezone.utc))
        owned = "FROM messages m JOIN whatsapp_connections c ON c.id = m.connection_id WHERE c.user_id = ?"
        async with self._conn() as db:
            by_direction = await self._rows(
                db, f"SELECT m.direction AS direction, COUNT(*) AS n {owned} GROUP BY m.direction", (user_id,)
            )
            by_status = await self._rows(
                db, f"SELECT m.status AS status, COUNT(*) AS n {owned} GROUP BY m.status", (user_id,)
            )
            daily = await self._rows(
                db,
                f"SELECT substr(m.created_at, 1, 10) AS day, m.direction AS direction, COUNT(*) AS n {owned} "
                "AND m.created_at >= ? GROUP BY substr(m.created_at, 1, 10), m.direction",
                (user_id, since),
            )
            top = await self._rows(
                db,
                f"SELECT m.from_number AS phone_number, COUNT(*) AS n {owned} AND m.direction = 'inbound' "
                "GROUP BY m.from_number ORDER BY COUNT(*) DESC LIMIT 5",
                (user_id,),
            )
            recent = await self._rows(
                db,
                f"SELECT m.* {owned} ORDER BY m.created_at DESC LIMIT 10",
                (user_id,),
            )
            contacts = await self._row(db, "SELECT COUNT(*) AS n FROM contacts WHERE user_id = ?", (user_id,))
            pending = await self._row(
                db,
                "SELECT COUNT(*) AS n FROM scheduled_messages WHERE user_id = ? AND status = 'pending'",
                (user_id,),
            )
            connections = await self._row(
                db, "SELECT COUNT(*) AS n FROM whatsapp_connections WHERE user_id = ?", (user_id,)
            )
            names: Dict[str, Optional[str]] = {}
            phones = [t["phone_number"] for t in top if t.get("phone_number")]
            if phones:
                for r in await self._rows(
                    db,
                    f"SELECT phone_number, name FROM contacts WHERE user_id = ? AND phone_number IN ({_placeholders(len(phones))})",
                    [user_id, *phones],
                ):
                    names[r["phone_number"]] = r.get("name")
        return {
            "by_direction": {r["direction"]: int(r["n"]) for r in by_direction},
            "by_status": {r["status"]: int(r["n"]) for r in by_status},
            "daily": daily,
            "first_day": first_day,
            "top_contacts": [
                {"phone_number": t["phone_number"], "name": names.get(t["phone_number"]), "count": int(t["n"])}
                for t in top
            ],
            "recent": recent,
            "total_contacts": int((contacts or {}).get("n") or 0),
            "pending_scheduled": int((pending or {}).get("n") or 0),
            "connections": int((connections or {}).get("n") or 0),
        }

    # ── admin ──────────────────────────────────────────────────────
    async def list_users_overview(self) -> List[dict]:
        """All users (no password hashes) with their connections and webhook log counts."""
        async with self._conn() as db:
            users = await self._rows(
                db, "SELECT id, email, name, role, created_at, updated_at FROM users ORDER BY created_at DESC"
            )
            conns = await self._rows(
                db,
                "SELECT id, user_id, phone_number, phone_number_id, waba_id, business_name, status, connected_at, created_at "
                "FROM whatsapp_connections ORDER BY created_at DESC",
            )
            counts = await self._rows(
                db, "SELECT user_id, COUNT(*) AS n FROM webhook_logs WHERE user_id IS NOT NULL GROUP BY user_id"
            )
        by_user: Dict[str, List[dict]] = {}
        for c in conns:
            by_user.setdefault(c["user_id"], []).append(c)
        webhook_counts = {r["user_id"]: int(r["n"]) for r in counts}
        for u in users:
            u["connections"] = by_user.get(u["id"], [])
            u["webhook_log_count"] = webhook_counts.get(u["id"], 0)
        return users

    async def admin_stats(self, *, days: int = 30, now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        first_day = (now - timedelta(days=days - 1)).date()
        since = to_iso(datetime(first_day.year, first_day.month, first_day.day, tzinfo=timezone.utc))
        week_ago = to_iso(now - timedelta(days=7))

        async def _n(db, query: str, params: Sequence[Any] = ()) -> int:
            row = await self._row(db, query, params)
            return int((row or {}).get("n") or 0)

        async with self._conn() as db:
            totals = {
                "total_users": await _n(db, "SELECT COUNT(*) AS n FROM users"),
                "new_users_week": await _n(db, "SELECT COUNT(*) AS n FROM users WHERE created_at >= ?", (week_ago,)),
                "total_connections": await _n(db, "SELECT COUNT(*) AS n FROM whatsapp_connections"),
                "active_connections": await _n(
                    db, "SELECT COUNT(*) AS n FROM whatsapp_connections WHERE status = 'connected'"
                ),
                "total_messages": await _n(db, "SELECT COUNT(*) AS n FROM messages"),
                "messages_in": await _n(db, "SELECT COUNT(*) AS n FROM messages WHERE direction = 'inbound'"),
                "messages_out": await _n(db, "SELECT COUNT(*) AS n FROM messages WHERE direction = 'outbound'"),
                "total_webhooks": await _n(db, "SELECT COUNT(*) AS n FROM webhook_logs"),
            }
            daily = {}
            for key, table in (("users", "users"), ("messages", "messages"), ("webhooks", "webhook_logs")):
                rows = await self._rows(
                    db,
                    f"SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS n FROM {table} "
                    "WHERE created_at >= ? GROUP BY substr(created_at, 1, 10)",
                    (since,),
                )
                daily[key] = {r["day"]: int(r["n"]) for r in rows}
            recent_users = await self._rows(
                db, "SELECT id, email, name, role, created_at FROM users ORDER BY created_at DESC LIMIT 5"
            )
            recent_connections = await self._rows(
                db,
                "SELECT c.id, c.phone_number, c.business_name, c.status, c.created_at, u.email AS user_email, u.name AS user_name "
                "FROM whatsapp_connections c LEFT JOIN users u ON u.id = c.user_id ORDER BY c.created_at DESC LIMIT 5",
            )
        return {
            "totals": totals,
            "daily": daily,
            "first_day": first_day,
            "recent_users": recent_users,
            "recent_connections": recent_connections,
        }

    async def export_rows(self, kind: str, limit: int) -> List[dict]:
        query = EXPORT_QUERIES.get(kind)
        if not query:
            raise ValueError(f"unknown export type: {kind}")
        return await self._fetchall(query, (int(limit),))
