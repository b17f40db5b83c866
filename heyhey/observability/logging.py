from __future__ import annotations

import logging
from typing import Callable, Optional


class _ContextFilter(logging.Filter):
    def __init__(
        self,
        *,
        request_id_getter: Optional[Callable[[], Optional[str]]] = None,
        user_getter: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        super().__init__()
        self._request_id_getter = request_id_getter
        self._user_getter = user_getter

    def filter(self, record: logging.LogRecord) -> bool:
        # Formatters always reference these fields, so they must exist on every record.
        record.request_id = None
        record.user_id = None
        try:
            if self._request_id_getter:
                record.request_id = self._request_id_getter()
        except Exception:
            record.request_id = None
        try:
            if self._user_getter:
                record.user_id = self._user_getter()
        except Exception:
            record.user_id = None
        return True


def configure_logging(
    *,
    level: str = "INFO",
    request_id_getter: Optional[Callable[[], Optional[str]]] = None,
    user_getter: Optional[Callable[[], Optional[str]]] = None,
) -> None:
    """Configure root logging with the request id and authenticated user on every line.

    Plain stdlib logging; uvicorn handlers are reused when already installed.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        root.addHandler(handler)

    ctx_filter = _ContextFilter(
        request_id_getter=request_id_getter,
        user_getter=user_getter,
    )
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s "
        "request_id=%(request_id)s user=%(user_id)s "
        "%(message)s"
    )
    for handler in root.handlers:
        # Filters on handlers also see records propagated from child loggers.
        if not any(isinstance(f, _ContextFilter) for f in handler.filters):
            handler.addFilter(ctx_filter)
        handler.setFormatter(formatter)
