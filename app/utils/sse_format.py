"""
Server-Sent Events wire format helpers.

A frame is the serialized unit written to a sink:

    event: <name>\\n
    data: <compact JSON>\\n
    \\n
"""

import json
import time
from typing import Any

CONNECTED_EVENT = "__connected"
HEARTBEAT_EVENT = "__heartbeat"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def is_valid_event_name(event: str) -> bool:
    return bool(event) and "\n" not in event and "\r" not in event


def serialize_payload(payload: Any) -> str:
    """Serialize a payload to compact JSON; unknown types fall back to ``str``.

    Raises ``ValueError`` for NaN or infinite floats, which JSON cannot hold.
    """
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False, default=str)


def format_event(event: str, payload: Any) -> bytes:
    """Build one named event frame.

    Raises ``ValueError`` if the event name is empty or contains a line break.
    """
    if not is_valid_event_name(event):
        raise ValueError(f"invalid SSE event name: {event!r}")
    return f"event: {event}\ndata: {serialize_payload(payload)}\n\n".encode()


def format_comment(text: str) -> bytes:
    """Build a comment frame (ignored by EventSource, keeps proxies happy)."""
    return f":{text}\n\n".encode()
