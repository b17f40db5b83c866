"""Request-scoped values stamped on every log record.

HTTP requests get theirs from the middlewares in heyhey.main. Background work
(webhook payloads, scheduled sends) opens a ``job_context`` so its log lines can
be grepped the same way.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator, Optional

_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("heyhey_request_id", default=None)
_USER_ID: ContextVar[Optional[str]] = ContextVar("heyhey_user_id", default=None)


def new_request_id(prefix: str = "") -> str:
    rid = uuid.uuid4().hex
    return f"{prefix}-{rid[:16]}" if prefix else rid


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    rid = (value or "").strip() or new_request_id()
    return rid, _REQUEST_ID.set(rid)


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_user_id() -> Optional[str]:
    return _USER_ID.get()


def set_user_id(value: Optional[str]) -> Token[Optional[str]]:
    return _USER_ID.set((value or "").strip() or None)


def reset_user_id(token: Token[Optional[str]]) -> None:
    _USER_ID.reset(token)


@contextmanager
def job_context(kind: str, user_id: Optional[str] = None) -> Iterator[str]:
    """Bind a fresh ``<kind>-<hex>`` request id (and optionally the owning user) for one job."""
    rid, rid_token = set_request_id(new_request_id(kind))
    uid_token = set_user_id(user_id)
    try:
        yield rid
    finally:
        reset_user_id(uid_token)
        reset_request_id(rid_token)
