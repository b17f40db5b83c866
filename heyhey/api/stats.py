from datetime import timedelta

from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..serializers import camelize_all
from .runtime import ApiRuntime

DASHBOARD_DAYS = 7


def daily_series(daily_rows, first_day, days: int):
    """Fill one entry per day (oldest first) from rows of {day, direction, n}."""
    counts = {}
    for r in daily_rows:
        counts[(r["day"], r["direction"])] = int(r["n"])
    series = []
    for i in range(days):
        day = first_day + timedelta(days=i)
        key = day.isoformat()
        inbound = counts.get((key, "inbound"), 0)
        outbound = counts.get((key, "outbound"), 0)
        series.append(
            {
                "date": day.strftime("%d/%m"),
                "name": day.strftime("%a"),
                "inbound": inbound,
                "outbound": outbound,
                "total": inbound + outbound,
            }
        )
    return series


def create_stats_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/stats")

    @router.get("/dashboard")
    async def dashboard(user: dict = Depends(get_current_user)):
        s = await rt.db_manager.dashboard_stats(user["id"], days=DASHBOARD_DAYS)
        inbound = s["by_direction"].get("inbound", 0)
        outbound = s["by_direction"].get("outbound", 0)
        return {
            "summary": {
                "totalContacts": s["total_contacts"],
                "totalMessages": sum(s["by_direction"].values()),
                "messagesIn": inbound,
                "messagesOut": outbound,
                "pendingScheduled": s["pending_scheduled"],
                "connections": s["connections"],
            },
            "charts": {
                "last7Days": daily_series(s["daily"], s["first_day"], DASHBOARD_DAYS),
                "statusData": [{"name": k, "value": v} for k, v in s["by_status"].items()],
                "topContacts": [
                    {"phone": t["phone_number"], "name": t["name"], "messages": t["count"]}
                    for t in s["top_contacts"]
                ],
            },
            "recentActivity": camelize_all(s["recent"]),
        }

    return router
