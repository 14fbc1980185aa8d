"""Console sink for development."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass

from ..events import Channel, TelemetryEvent
from .base import TelemetrySink


@dataclass
class ConsoleSink(TelemetrySink):
    """Writes events to stdout or stderr, one per line."""
    stream: str = "stdout"  # stdout | stderr
    format: str = "compact"  # json | compact
    prefix: str = "[SYNCBRIDGE] "

    async def send(self, events: list[TelemetryEvent]) -> None:
        out = sys.stdout if self.stream == "stdout" else sys.stderr
        for event in events:
            print(f"{self.prefix}{self._format_event(event)}", file=out)

    def _format_event(self, event: TelemetryEvent) -> str:
        if self.format == "json":
            return json.dumps(event.to_dict(), default=str)

        if event.channel == Channel.SYNC:
            subject = f"{event.entity_type}/{event.entity_id} {event.operation} event={event.event_id} attempts={event.attempts}"
        else:
            subject = f"{event.method} {event.path} op={event.operation}"
        line = f"{event.timestamp.isoformat()} {event.channel.value} {event.outcome.value} {subject} {event.latency_ms:.1f}ms"
        if event.error_class:
            line += f" error={event.error_class}: {event.error_message}"
        return line
