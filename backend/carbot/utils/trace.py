# carbot/utils/trace.py

from __future__ import annotations

import json
import uuid


def new_trace_id() -> str:
    return uuid.uuid4().hex[:10]


def log_event(scope: str, trace_id: str, event: str, **kv) -> None:
    """
    Una línea JSON por evento: [INGEST] {"trace": "...", "event": "...", ...}
    """
    try:
        payload = {"trace": trace_id, "event": event, **kv}
        print(f"[{scope}]", json.dumps(payload, ensure_ascii=False, default=str))
    except Exception:
        print(f"[{scope}]", trace_id, event, kv)
