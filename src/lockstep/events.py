"""Append-only JSONL journal of store mutations."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from lockstep.models import utcnow

log = logging.getLogger(__name__)

EVENT_LOG_FILENAME = "events.jsonl"


class EventLog:
    """One ``{"ts", "event", ...payload}`` JSON object per line, never rewritten."""

    def __init__(self, log_dir: Path) -> None:
        self.path = Path(log_dir) / EVENT_LOG_FILENAME

    def ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    def append(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        record: dict[str, Any] = {"ts": utcnow(), "event": event}
        if payload:
            record.update(payload)
        line = json.dumps(record, default=str)
        self.ensure_dir()
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        log.debug("event %s", event)

    def read(self) -> Iterator[dict[str, Any]]:
        """Yield recorded events in order, skipping unparseable lines."""
        try:
            handle = self.path.open(encoding="utf-8")
        except FileNotFoundError:
            return
        with handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    log.warning("Skipping malformed event log line in %s", self.path)
