"""SSE utilities."""
from __future__ import annotations

import json
from typing import Any


def format_event(event: str | None, data: str) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    # data may contain newlines; split per SSE framing
    for line in data.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def json_event(event: str, payload: dict[str, Any]) -> str:
    return format_event(event, json.dumps(payload, ensure_ascii=False))
