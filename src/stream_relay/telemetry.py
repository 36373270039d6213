"""Telemetry sink: append relay events to a JSONL file."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from stream_relay.events.bus import WILDCARD, EventBus
from stream_relay.types import RelayEvent


class TelemetryRecorder:
    """Write every ``RelayEvent`` as one JSON line.

    Default file: ~/.stream_relay/telemetry/telemetry_YYYYMMDD_HHMMSS.jsonl
    Each line: {"_seq": 0, "_elapsed_ms": 12.3, "_ts": "...", "type": ..., "data": {...}}
    """

    def __init__(self, path: Path | str | None = None):
        if path is None:
            telemetry_dir = Path.home() / ".stream_relay" / "telemetry"
            telemetry_dir.mkdir(parents=True, exist_ok=True)
            ts = time.strftime("%Y%m%d_%H%M%S")
            path = telemetry_dir / f"telemetry_{ts}.jsonl"
        else:
            path = Path(path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)

        self.path = path
        self._file = open(path, "a", encoding="utf-8")
        self._seq = 0
        self._start = time.monotonic()
        self._bus: EventBus | None = None

    def _write(self, record: dict[str, Any]) -> None:
        record["_seq"] = self._seq
        record["_elapsed_ms"] = round((time.monotonic() - self._start) * 1000, 1)
        record["_ts"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        self._seq += 1
        self._file.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        self._file.flush()

    def record(self, event: RelayEvent) -> None:
        """Append one event; ignored once the recorder is closed."""
        if self._file.closed:
            return
        self._write({
            "type": event.type.value,
            "data": event.data,
            "timestamp": event.timestamp,
        })

    def attach(self, bus: EventBus) -> None:
        """Record every event published on *bus* until ``close()``."""
        bus.subscribe(WILDCARD, self.record)
        self._bus = bus

    def close(self) -> None:
        """Detach from the bus, flush and close the file."""
        if self._bus is not None:
            self._bus.unsubscribe(WILDCARD, self.record)
            self._bus = None
        if not self._file.closed:
            self._file.flush()
            self._file.close()
