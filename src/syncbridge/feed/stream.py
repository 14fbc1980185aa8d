"""Long-lived HTTP stream (server-sent events) from the source engine."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

import httpx

from ..auth import StaticTokenProvider, TokenError, TokenProvider
from ..events.notifications import translate_message
from ..events.types import ChangeEvent, EntityType, InvalidEventError
from .base import DeliveryCounter


logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Raised when the stream cannot be opened or breaks mid-read."""
    pass


@dataclass
class ServerSentEvent:
    data: str = ""
    event: str = "message"
    id: str | None = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Assemble SSE frames from a line iterator."""
    data: list[str] = []
    event = "message"
    event_id: str | None = None

    async for line in lines:
        if line == "":
            if data:
                yield ServerSentEvent(data="\n".join(data), event=event, id=event_id)
            data, event, event_id = [], "message", None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
        elif name == "event":
            event = value
        elif name == "id":
            event_id = value

    if data:
        yield ServerSentEvent(data="\n".join(data), event=event, id=event_id)


@dataclass
class HttpStreamSource:
    """
    Subscribes to `GET <engine>/api/streams` and yields change events for the
    configured entity types.

    On (re)connect the last acknowledged position is sent as `Last-Event-ID`
    so the engine resumes after it; anything read but not acknowledged is
    delivered again. Reconnects back off exponentially with full jitter and
    reset after a successful connect.
    """
    client: httpx.AsyncClient
    url: str
    entity_types: frozenset[EntityType]
    tokens: TokenProvider = field(default_factory=StaticTokenProvider)
    last_event_id: str | None = None
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0
    rng: Callable[[], float] = random.random
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    _redeliver: deque = field(default_factory=deque, init=False)
    _counter: DeliveryCounter = field(default_factory=DeliveryCounter, init=False)
    _closed: bool = field(default=False, init=False)
    _failures: int = field(default=0, init=False)
    _stats: dict = field(default_factory=dict, init=False)

    def __post_init__(self):
        self._stats = {
            "connects": 0,
            "disconnects": 0,
            "delivered": 0,
            "skipped": 0,
            "invalid": 0,
        }

    async def events(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed:
            try:
                async for event in self._read_stream():
                    # nacked events go out again before anything newer
                    yield event
                    while self._redeliver:
                        yield self._counter.stamp(self._redeliver.popleft())
            except (httpx.TransportError, StreamError, TokenError) as e:
                self._stats["disconnects"] += 1
                if self._closed:
                    return
                self._failures += 1
                delay = self._reconnect_delay()
                logger.warning(f"Notification stream dropped ({e}); reconnecting in {delay:.1f}s")
                await self.sleep(delay)
            else:
                if self._closed:
                    return
                # Server closed cleanly; reconnect right away
                self._stats["disconnects"] += 1
                logger.info("Notification stream closed by server; reconnecting")

    async def _read_stream(self) -> AsyncIterator[ChangeEvent]:
        headers = {"Accept": "text/event-stream"}
        token = await self.tokens.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id

        async with self.client.stream("GET", self.url, headers=headers, timeout=httpx.Timeout(30.0, read=None)) as response:
            if response.status_code == 401:
                self.tokens.invalidate()
                raise StreamError("Stream rejected token (401)")
            if response.status_code != 200:
                raise StreamError(f"Stream returned {response.status_code}")

            self._failures = 0
            self._stats["connects"] += 1
            logger.info(f"Connected to notification stream {self.url} (resume from {self.last_event_id})")

            async for frame in iter_sse(response.aiter_lines()):
                event = self._to_event(frame)
                if event is not None:
                    self._stats["delivered"] += 1
                    yield self._counter.stamp(event)
                if self._closed:
                    return

    def _to_event(self, frame: ServerSentEvent) -> ChangeEvent | None:
        try:
            message = json.loads(frame.data)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring non-JSON stream frame {frame.id}")
            self._stats["skipped"] += 1
            return None
        if not isinstance(message, dict):
            self._stats["skipped"] += 1
            return None

        try:
            event = translate_message(message, position=frame.id)
        except InvalidEventError as e:
            # No entity identity to park it under
            logger.error(f"Unreadable business event at position {frame.id}: {e}; message={message}")
            self._stats["invalid"] += 1
            return None

        if event is None or event.entity_type not in self.entity_types:
            self._stats["skipped"] += 1
            return None
        return event

    def _reconnect_delay(self) -> float:
        ceiling = min(self.reconnect_max_seconds, self.reconnect_base_seconds * (2 ** min(self._failures - 1, 30)))
        return self.rng() * ceiling

    async def ack(self, event: ChangeEvent) -> None:
        if event.position:
            self.last_event_id = event.position
        self._counter.forget(event.event_id)

    async def nack(self, event: ChangeEvent) -> None:
        self._redeliver.append(event)

    async def close(self) -> None:
        self._closed = True

    @property
    def stats(self) -> dict:
        return {**self._stats, "last_event_id": self.last_event_id}
