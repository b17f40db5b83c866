from typing import Any, Iterable, List, Optional

# Integer 0/1 columns that the API exposes as booleans
BOOL_FIELDS = {"is_active", "is_blocked", "is_pinned", "is_read", "processed"}

# Never leave the server
SECRET_FIELDS = {"password_hash", "access_token"}


def camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def camelize(row: Optional[dict], drop: Iterable[str] = ()) -> Optional[dict]:
    """DB row → API dict: camelCase keys, booleans, nested lists/dicts, secrets removed."""
    if row is None:
        return None
    hidden = SECRET_FIELDS | set(drop)
    out = {}
    for key, value in row.items():
        if key in hidden:
            continue
        if key in BOOL_FIELDS and value is not None:
            value = bool(value)
        elif isinstance(value, dict) and key not in ("context", "options", "payload", "usage"):
            value = camelize(value, drop)
        elif isinstance(value, list):
            value = [camelize(v, drop) if isinstance(v, dict) else v for v in value]
        out[camel(key)] = value
    return out


def camelize_all(rows: Iterable[dict], drop: Iterable[str] = ()) -> List[dict]:
    return [camelize(r, drop) for r in rows]  # type: ignore[misc]


def pick(payload: dict, *names: str) -> dict:
    """Return the camelCase request fields present in payload, keyed by snake_case column name."""
    return {snake(n): payload[n] for n in names if n in payload}


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
