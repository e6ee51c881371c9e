from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

DROPPED_EVENT = "event_log_dropped_records"


@dataclass(slots=True, frozen=True)
class GatewayEvent:
    """One routing, health or admin event as written to the JSONL log."""

    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=lambda: round(time.time(), 3))

    def to_json(self) -> str:
        record = {"ts": self.ts, "event": self.name, **self.fields}
        return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlEventLog:
    """Writes gateway events to a JSONL file from a background thread.

    Per-event counts are kept whether or not the file is enabled, so the
    metrics endpoint can report them.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._counts: Counter[str] = Counter()
        self._pending: Queue[GatewayEvent | None] | None = None
        self._writer: Thread | None = None
        self._dropped = 0
        self._closed = False
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._pending = Queue(maxsize=max_queue_size)
            self._writer = Thread(
                target=self._write_events, name="gateway-event-writer", daemon=True
            )
            self._writer.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped

    def counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def emit(self, event: str, **fields: Any) -> None:
        self.record(GatewayEvent(name=event, fields=fields))

    def record(self, event: GatewayEvent) -> None:
        if self._closed:
            return
        with self._lock:
            self._counts[event.name] += 1
        pending = self._pending
        if pending is None:
            return
        try:
            pending.put_nowait(event)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self) -> None:
        pending = self._pending
        writer = self._writer
        if self._closed:
            return
        self._closed = True
        if pending is None or writer is None:
            return
        pending.put(None)
        writer.join(timeout=2.0)

    def _write_events(self) -> None:
        pending = self._pending
        if pending is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                event = pending.get()
                if event is None:
                    break
                handle.write(event.to_json() + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                summary = GatewayEvent(name=DROPPED_EVENT, fields={"dropped_count": dropped})
                handle.write(summary.to_json() + "\n")
                handle.flush()
