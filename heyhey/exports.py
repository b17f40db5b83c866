import csv
import io
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from .db import parse_iso

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

CONVERSATION_HEADERS = ["Date", "Time", "From", "To", "Type", "Content", "Status"]


def _truncate(limit: int) -> Callable[[Any], str]:
    def _inner(value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            value = json.dumps(value)
        return value[:limit]

    return _inner


def _text(value: Any) -> Any:
    return "" if value is None else value


def _count(value: Any) -> int:
    return int(value or 0)


def _yes_no(value: Any) -> str:
    return "Yes" if value else "No"


# (header, column, formatter) per admin export type
ADMIN_EXPORT_COLUMNS: Dict[str, List[Tuple[str, str, Callable[[Any], Any]]]] = {
    "users": [
        ("ID", "id", _text),
        ("Email", "email", _text),
        ("Name", "name", _text),
        ("Role", "role", _text),
        ("Connections", "connection_count", _count),
        ("Webhooks", "webhook_count", _count),
        ("Registered At", "created_at", _text),
    ],
    "connections": [
        ("ID", "id", _text),
        ("User", "user_email", _text),
        ("Phone", "phone_number", _text),
        ("Phone Number ID", "phone_number_id", _text),
        ("WABA ID", "waba_id", _text),
        ("Business", "business_name", _text),
        ("Status", "status", _text),
        ("Connected At", "connected_at", _text),
        ("Created At", "created_at", _text),
    ],
    "messages": [
        ("ID", "id", _text),
        ("Connection", "connection_phone", _text),
        ("Direction", "direction", _text),
        ("From", "from_number", _text),
        ("To", "to_number", _text),
        ("Type", "message_type", _text),
        ("Content", "content", _truncate(500)),
        ("Status", "status", _text),
        ("WhatsApp ID", "whatsapp_message_id", _text),
        ("Date", "created_at", _text),
    ],
    "webhooks": [
        ("ID", "id", _text),
        ("Event", "event_type", _text),
        ("User", "user_email", _text),
        ("Phone", "connection_phone", _text),
        ("Processed", "processed", _yes_no),
        ("Payload", "payload", _truncate(500)),
        ("Date", "created_at", _text),
    ],
}


def admin_table(kind: str, rows: Sequence[dict]) -> Tuple[List[str], List[List[Any]]]:
    columns = ADMIN_EXPORT_COLUMNS[kind]
    headers = [c[0] for c in columns]
    body = [[fmt(row.get(key)) for _, key, fmt in columns] for row in rows]
    return headers, body


def to_csv(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buf.getvalue()


def to_xlsx(headers: Sequence[str], rows: Sequence[Sequence[Any]], sheet_title: str = "Data") -> bytes:
    """Build an .xlsx workbook in memory (blocking; run it in an executor)."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title
    ws.append(list(headers))
    for row in rows:
        ws.append(list(row))
    for idx, header in enumerate(headers, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = max(12, min(50, len(str(header)) + 4))
    ws.freeze_panes = "A2"
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def export_filename(prefix: str, ext: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{prefix}_{now.strftime('%Y-%m-%d')}.{ext}"


def _split_datetime(value: Any) -> Tuple[str, str]:
    dt = parse_iso(value)
    if dt is None:
        return "", ""
    return dt.strftime("%d/%m/%Y"), dt.strftime("%H:%M:%S")


def _quoted(value: Any) -> str:
    return '"' + str(value or "").replace('"', '""') + '"'


def conversations_csv(messages: Sequence[dict]) -> str:
    """CSV with Date, Time, From, To, Type, Content, Status; content is always quoted."""
    lines = [",".join(CONVERSATION_HEADERS)]
    for m in messages:
        day, time_ = _split_datetime(m.get("created_at"))
        lines.append(
            ",".join(
                [
                    day,
                    time_,
                    str(m.get("from_number") or ""),
                    str(m.get("to_number") or ""),
                    str(m.get("message_type") or ""),
                    _quoted(m.get("content")),
                    str(m.get("status") or ""),
                ]
            )
        )
    return "\n".join(lines)


def conversations_json(messages: Sequence[dict], now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    out = []
    for m in messages:
        day, time_ = _split_datetime(m.get("created_at"))
        out.append(
            {
                "date": f"{day} {time_}".strip(),
                "from": m.get("from_number"),
                "to": m.get("to_number"),
                "type": m.get("message_type"),
                "content": m.get("content"),
                "status": m.get("status"),
            }
        )
    return {
        "exportedAt": now.isoformat(),
        "totalMessages": len(out),
        "messages": out,
    }
