from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from marketing.connectors.base import RawEventInput
from marketing.util import iso_utc, parse_ts


def fixture_dir(platform: str, config: dict[str, Any]) -> Path:
    raw = (config or {}).get("fixture_dir")
    if raw:
        return Path(str(raw))
    return Path("./fixtures") / platform / "sample"


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def load_raw_events(path: Path, start: datetime | None = None, end: datetime | None = None) -> list[RawEventInput]:
    """Read raw_events.json (a list of {event_type, event_data, timestamp}) within [start, end]."""
    p = path / "raw_events.json"
    if not p.exists():
        return []
    data = _read_json(p)
    if not isinstance(data, list):
        raise ValueError("raw_events.json must be a JSON list")

    out: list[RawEventInput] = []
    for item in data:
        if not isinstance(item, dict) or not item.get("event_type") or not item.get("timestamp"):
            continue
        ts = parse_ts(item["timestamp"])
        if start is not None and ts < start:
            continue
        if end is not None and ts > end:
            continue
        out.append(
            RawEventInput(
                event_type=str(item["event_type"]),
                event_data=dict(item.get("event_data") or {}),
                timestamp=iso_utc(ts),
            )
        )
    return out
