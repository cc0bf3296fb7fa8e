from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_day_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d")


def serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    return dump_json(value)


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def load_json_object(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    candidate = json.loads(raw)
    if not isinstance(candidate, dict):
        raise ValueError(f"Expected a JSON object, got {type(candidate).__name__}")
    return candidate


def metric_field(name: str, labels: dict[str, Any]) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}|{rendered}"
