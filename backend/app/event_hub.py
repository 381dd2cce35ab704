"""
Event hub: long-lived push subscribers keyed by namespace.

Every subscriber owns a bounded queue and a heartbeat task. Broadcasts only
enqueue, so they never wait on a slow client; the subscriber's stream drains
its queue and writes `data: <json>\\n\\n` frames. Registry mutations happen in
synchronous sections with no await, which makes them atomic on the event loop.
"""

import json
import time
import uuid
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)

DROP_WARNING = "events dropped"


class EventType(str, Enum):
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    NAMESPACE_UPDATED = "namespace-updated"
    NAMESPACE_INVALIDATED = "namespace-invalidated"
    SYSTEM_MESSAGE = "system-message"
    ERROR = "error"


@dataclass
class Event:
    type: EventType
    seq: int
    timestamp: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "seq": self.seq, "timestamp": self.timestamp, **self.data}

    def frame(self) -> str:
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"


def _is_pinned(event: Event) -> bool:
    """The connection notice and the drop warning survive backpressure."""
    if event.type == EventType.CONNECTED:
        return True
    return event.type == EventType.SYSTEM_MESSAGE and event.data.get("text") == DROP_WARNING


@dataclass
class Subscriber:
    id: str
    namespaces: FrozenSet[str]
    connected_at: float
    last_heartbeat_at: float
    queue: Deque[Event] = field(default_factory=deque)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    closed: bool = False
    draining: bool = False
    drop_warned: bool = False
    dropped: int = 0
    heartbeat_task: Optional[asyncio.Task] = None


class EventHub:
    """Registry of push subscribers with per-subscriber ordered delivery."""

    def __init__(
        self,
        heartbeat_seconds: float = 30.0,
        queue_max: int = 100,
        default_namespaces: Iterable[str] = ("dashboard-insights", "orders-insights"),
        clock: Callable[[], float] = time.time,
    ):
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_max = max(1, queue_max)
        self.default_namespaces = frozenset(default_namespaces)
        self.clock = clock
        self._subscribers: Dict[str, Subscriber] = {}
        self._seq = 0

    # -- events ----------------------------------------------------------------

    def _event(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> Event:
        self._seq += 1
        ts = datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()
        return Event(type=event_type, seq=self._seq, timestamp=ts, data=data or {})

    def _enqueue(self, sub: Subscriber, event: Event) -> None:
        if sub.closed:
            return
        if len(sub.queue) >= self.queue_max:
            self._overflow(sub, event)
        else:
            sub.queue.append(event)
        sub.wakeup.set()

    def _overflow(self, sub: Subscriber, event: Event) -> None:
        incoming = [event]
        if not sub.drop_warned:
            sub.drop_warned = True
            incoming.append(self._event(EventType.SYSTEM_MESSAGE, {"level": "warning", "text": DROP_WARNING}))
            logger.warning(f"Subscriber {sub.id} queue over {self.queue_max}; dropping oldest events")
        while len(sub.queue) + len(incoming) > self.queue_max and self._drop_oldest(sub):
            pass
        for queued in incoming:
            if len(sub.queue) < self.queue_max:
                sub.queue.append(queued)
            else:
                sub.dropped += 1

    def _drop_oldest(self, sub: Subscriber) -> bool:
        """Remove the oldest droppable event; heartbeats go only when nothing else can."""
        droppable = [i for i, queued in enumerate(sub.queue) if not _is_pinned(queued)]
        if not droppable:
            return False
        index = next((i for i in droppable if sub.queue[i].type != EventType.HEARTBEAT), droppable[0])
        del sub.queue[index]
        sub.dropped += 1
        return True

    # -- subscription ----------------------------------------------------------

    def parse_namespaces(self, raw: Optional[str]) -> FrozenSet[str]:
        """Comma-separated namespaces, trimmed and deduplicated; empty means the default set."""
        parts = {p.strip() for p in (raw or "").split(",") if p.strip()}
        return frozenset(parts) if parts else self.default_namespaces

    def subscribe(self, namespaces: Iterable[str]) -> Subscriber:
        now = self.clock()
        sub = Subscriber(
            id=f"client_{uuid.uuid4().hex[:12]}",
            namespaces=frozenset(namespaces),
            connected_at=now,
            last_heartbeat_at=now,
        )
        self._subscribers[sub.id] = sub
        self._enqueue(sub, self._event(EventType.CONNECTED, {
            "clientId": sub.id,
            "namespaces": sorted(sub.namespaces),
        }))
        sub.heartbeat_task = asyncio.create_task(self._heartbeat_loop(sub))
        logger.info(f"Subscriber {sub.id} connected to {sorted(sub.namespaces)}; total={len(self._subscribers)}")
        return sub

    def unsubscribe(self, sub_id: str) -> bool:
        sub = self._subscribers.pop(sub_id, None)
        if sub is None:
            return False
        sub.closed = True
        sub.queue.clear()
        sub.wakeup.set()
        if sub.heartbeat_task is not None and not sub.heartbeat_task.done():
            sub.heartbeat_task.cancel()
        logger.info(f"Subscriber {sub_id} removed; total={len(self._subscribers)}")
        return True

    async def _heartbeat_loop(self, sub: Subscriber) -> None:
        while not sub.closed:
            await asyncio.sleep(self.heartbeat_seconds)
            if sub.closed:
                break
            sub.last_heartbeat_at = self.clock()
            self._enqueue(sub, self._event(EventType.HEARTBEAT))

    async def stream(
        self,
        sub: Subscriber,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Yield framed events for one subscriber until it is closed or the peer goes away."""
        try:
            while not sub.closed:
                while sub.queue:
                    event = sub.queue.popleft()
                    yield event.frame()
                    if sub.closed:
                        return
                sub.drop_warned = False
                if sub.draining:
                    return
                sub.wakeup.clear()
                try:
                    await asyncio.wait_for(sub.wakeup.wait(), timeout=self.heartbeat_seconds)
                except asyncio.TimeoutError:
                    pass
                if is_disconnected is not None and await is_disconnected():
                    logger.info(f"Subscriber {sub.id} peer closed")
                    return
        finally:
            self.unsubscribe(sub.id)

    async def connect(
        self,
        namespaces: Iterable[str],
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Subscribe on first iteration and stream; a body that never starts registers nothing."""
        sub = self.subscribe(namespaces)
        frames = self.stream(sub, is_disconnected)
        try:
            async for frame in frames:
                yield frame
        finally:
            await frames.aclose()
            self.unsubscribe(sub.id)

    # -- fan-out ---------------------------------------------------------------

    def broadcast_to_namespace(self, namespace: str, event_type: EventType,
                               data: Optional[Dict[str, Any]] = None) -> int:
        """Deliver one event to every subscriber of `namespace`. Returns the recipient count."""
        event = self._event(event_type, {"namespace": namespace, **(data or {})})
        recipients = [s for s in self._subscribers.values() if namespace in s.namespaces]
        for sub in recipients:
            self._enqueue(sub, event)
        logger.info(f"Broadcast {event_type.value} for {namespace} to {len(recipients)} subscribers")
        return len(recipients)

    def broadcast_system(self, level: str, text: str) -> int:
        event = self._event(EventType.SYSTEM_MESSAGE, {"level": level, "text": text})
        for sub in list(self._subscribers.values()):
            self._enqueue(sub, event)
        logger.info(f"System message ({level}) to {len(self._subscribers)} subscribers: {text}")
        return len(self._subscribers)

    def send_error(self, sub_id: str, kind: str, text: str) -> bool:
        sub = self._subscribers.get(sub_id)
        if sub is None:
            return False
        self._enqueue(sub, self._event(EventType.ERROR, {"kind": kind, "text": text}))
        return True

    # -- introspection / lifecycle ----------------------------------------------

    def subscribers(self) -> List[Subscriber]:
        return list(self._subscribers.values())

    def stats(self) -> Dict[str, Any]:
        namespaces: Dict[str, int] = {}
        for sub in self._subscribers.values():
            for ns in sub.namespaces:
                namespaces[ns] = namespaces.get(ns, 0) + 1
        return {"subscriberCount": len(self._subscribers), "namespaces": dict(sorted(namespaces.items()))}

    async def close(self) -> None:
        """Send every subscriber a final shutdown notice, then stop their heartbeats."""
        self.broadcast_system("info", "shutting down")
        tasks = []
        for sub in list(self._subscribers.values()):
            sub.draining = True
            sub.wakeup.set()
            if sub.heartbeat_task is not None and not sub.heartbeat_task.done():
                sub.heartbeat_task.cancel()
                tasks.append(sub.heartbeat_task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Event hub closed with {len(self._subscribers)} subscribers draining")
