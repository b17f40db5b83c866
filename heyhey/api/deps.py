import logging

from fastapi import HTTPException
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from starlette.requests import Request as _LimiterRequest
from starlette.responses import Response as _LimiterResponse

from ..config import API_SEND_PER_MIN, SEND_TEXT_PER_MIN
from ..whatsapp import WhatsAppAPIError

log = logging.getLogger(__name__)


# Optional rate limit dependencies that no-op when the limiter is not initialized (no Redis)
async def _apply_limit(times: int, request: _LimiterRequest, response: _LimiterResponse):
    if not FastAPILimiter.redis:
        return
    limiter = RateLimiter(times=times, seconds=60)
    try:
        return await limiter(request, response)
    except HTTPException:
        raise
    except Exception as exc:
        log.warning("Rate limiter unavailable: %s", exc)


async def optional_rate_limit_send(request: _LimiterRequest, response: _LimiterResponse):
    return await _apply_limit(SEND_TEXT_PER_MIN, request, response)


async def optional_rate_limit_api(request: _LimiterRequest, response: _LimiterResponse):
    return await _apply_limit(API_SEND_PER_MIN, request, response)


def whatsapp_http_error(exc: WhatsAppAPIError) -> HTTPException:
    """Relay a Graph API failure.

    400/404/429 are mirrored. Upstream 401/403 mean a bad connection token, not a bad
    dashboard session, so they become 502 like any other upstream failure.
    """
    status = int(exc.status_code) if int(exc.status_code) in (400, 404, 429) else 502
    return HTTPException(status_code=status, detail=exc.message or "Error sending message")


def require_fields(payload: dict, *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
