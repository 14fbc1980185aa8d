"""JSONL file sink."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from ..events import TelemetryEvent
from .base import TelemetrySink


@dataclass
class FileSink(TelemetrySink):
    """
    Appends events as JSON lines.

    `path` may contain strftime codes (e.g. ``sync-%Y%m%d.jsonl``); the sink
    switches files when the rendered path changes, giving time-based rotation.
    """
    path: str = "telemetry/syncbridge-%Y%m%d.jsonl"
    encoding: str = "utf-8"

    _current_path: str = field(default="", init=False)
    _file: IO[str] | None = field(default=None, init=False)

    async def stop(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    async def send(self, events: list[TelemetryEvent]) -> None:
        self._ensure_file(datetime.now(timezone.utc).strftime(self.path))
        for event in events:
            self._file.write(json.dumps(event.to_dict(), default=str) + "\n")
        self._file.flush()

    def _ensure_file(self, rendered: str) -> None:
        if self._file is not None and rendered == self._current_path:
            return
        if self._file is not None:
            self._file.close()
        Path(rendered).parent.mkdir(parents=True, exist_ok=True)
        self._file = open(rendered, "a", encoding=self.encoding)
        self._current_path = rendered
