import asyncio
import logging
import math
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from ..auth import require_admin
from ..config import EXPORT_MAX_ROWS
from ..exports import (
    ADMIN_EXPORT_COLUMNS,
    CSV_MEDIA_TYPE,
    XLSX_MEDIA_TYPE,
    admin_table,
    export_filename,
    to_csv,
    to_xlsx,
)
from ..serializers import camelize_all
from .runtime import ApiRuntime

log = logging.getLogger(__name__)

ADMIN_STATS_DAYS = 30


def create_admin_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])

    @router.get("/users")
    async def list_users():
        return {"users": camelize_all(await rt.db_manager.list_users_overview())}

    @router.get("/stats")
    async def stats():
        s = await rt.db_manager.admin_stats(days=ADMIN_STATS_DAYS)
        t = s["totals"]
        daily = []
        for i in range(ADMIN_STATS_DAYS):
            day = s["first_day"] + timedelta(days=i)
            key = day.isoformat()
            daily.append(
                {
                    "date": day.strftime("%m/%d"),
                    "users": s["daily"]["users"].get(key, 0),
                    "messages": s["daily"]["messages"].get(key, 0),
                    "webhooks": s["daily"]["webhooks"].get(key, 0),
                }
            )
        return {
            "overview": {
                "totalUsers": t["total_users"],
                "newUsersLast7Days": t["new_users_week"],
                "totalConnections": t["total_connections"],
                "activeConnections": t["active_connections"],
                "totalMessages": t["total_messages"],
                "inboundMessages": t["messages_in"],
                "outboundMessages": t["messages_out"],
                "totalWebhooks": t["total_webhooks"],
            },
            "dailyData": daily,
            "recentUsers": camelize_all(s["recent_users"]),
            "recentConnections": camelize_all(s["recent_connections"]),
        }

    @router.get("/webhooks")
    async def webhooks(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=500)):
        rows, total = await rt.db_manager.list_webhook_logs(page=page, limit=limit)
        return {
            "webhookLogs": camelize_all(rows),
            "pagination": {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)},
        }

    @router.get("/export")
    async def export(type: str = Query("users"), format: str = Query("xlsx")):
        kind = (type or "").lower()
        fmt = (format or "xlsx").lower()
        if kind not in ADMIN_EXPORT_COLUMNS:
            raise HTTPException(status_code=400, detail="Invalid export type")
        if fmt not in ("xlsx", "csv"):
            raise HTTPException(status_code=400, detail="Invalid export format")
        rows = await rt.db_manager.export_rows(kind, EXPORT_MAX_ROWS)
        headers, body = admin_table(kind, rows)
        filename = export_filename(kind, fmt)
        log.info("Admin export type=%s format=%s rows=%d", kind, fmt, len(body))
        if fmt == "csv":
            content = to_csv(headers, body)
            media_type = CSV_MEDIA_TYPE
        else:
            # openpyxl is blocking; keep it off the event loop
            loop = asyncio.get_running_loop()
            content = await loop.run_in_executor(None, to_xlsx, headers, body, kind.capitalize())
            media_type = XLSX_MEDIA_TYPE
        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return router
