"""Thread-safe event collector for the chat proxy."""

from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from datetime import datetime, timezone


class ProxyMetrics:
    """Collects structured ``chat`` events from the request pipeline.

    Only the most recent ``max_events`` events are retained; totals are
    kept as running counters so they survive trimming.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0
        self._totals = {
            "requests": 0,
            "errors": 0,
            "sessions_created": 0,
            "incomplete_streams": 0,
        }

    def record(self, event: dict) -> None:
        """Append an event (thread-safe). Adds ``_seq`` and ``ts``."""
        with self._lock:
            event = dict(event)
            event["_seq"] = self._seq
            if "ts" not in event:
                event["ts"] = datetime.now(timezone.utc).isoformat()
            self._seq += 1
            self._events.append(event)

            if event.get("type") == "chat":
                self._totals["requests"] += 1
                if event.get("error"):
                    self._totals["errors"] += 1
                if event.get("session_created"):
                    self._totals["sessions_created"] += 1
                if not event.get("error") and not event.get("complete", True):
                    self._totals["incomplete_streams"] += 1

    def events_since(self, seq: int) -> list[dict]:
        """Return events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        """Aggregate stats for the /metrics endpoint."""
        with self._lock:
            chats = [e for e in self._events if e.get("type") == "chat"]
            ok = [e for e in chats if not e.get("error")]
            latency = [e["total_ms"] for e in ok if "total_ms" in e]
            upstream = [e["upstream_ms"] for e in ok if "upstream_ms" in e]

            return {
                "type": "snapshot",
                "uptime_s": round(time.time() - self.start_time, 1),
                "total_requests": self._totals["requests"],
                "total_errors": self._totals["errors"],
                "sessions_created": self._totals["sessions_created"],
                "incomplete_streams": self._totals["incomplete_streams"],
                "avg_total_ms": round(statistics.mean(latency), 1) if latency else 0,
                "avg_upstream_ms": round(statistics.mean(upstream), 1) if upstream else 0,
                "recent": list(chats[-50:]),
            }
