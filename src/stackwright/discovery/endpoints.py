from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, Iterable, List, Protocol

from stackwright.core.errors import BackendError
from stackwright.discovery.models import EndpointChange
from stackwright.resources.models import Endpoint

_INTERRUPT = object()


class EndpointSource(Protocol):
    """Lazy, unbounded, restartable stream of endpoint changes per task."""

    def subscribe(self, task_id: str) -> AsyncIterator[EndpointChange]:
        ...


class InMemoryEndpointSource:
    """Simple asyncio-backed endpoint feed for local runs and tests.

    A new subscription first yields the latest known snapshot for the
    task, then every later change in publication order.
    """

    def __init__(self) -> None:
        self._latest: Dict[str, EndpointChange] = {}
        self._subscribers: Dict[str, List[asyncio.Queue[object]]] = {}
        self._sequence = 0

    def publish(self, task_id: str, endpoints: Iterable[Endpoint]) -> EndpointChange:
        self._sequence += 1
        change = EndpointChange(task_id, frozenset(endpoints), self._sequence)
        self._latest[task_id] = change
        for queue in self._subscribers.get(task_id, []):
            queue.put_nowait(change)
        return change

    def interrupt(self, task_id: str) -> None:
        """Break every open subscription for the task."""
        for queue in self._subscribers.get(task_id, []):
            queue.put_nowait(_INTERRUPT)

    def latest(self, task_id: str) -> EndpointChange | None:
        return self._latest.get(task_id)

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, []))

    async def subscribe(self, task_id: str) -> AsyncIterator[EndpointChange]:
        queue: asyncio.Queue[object] = asyncio.Queue()
        self._subscribers.setdefault(task_id, []).append(queue)
        last_seen = 0
        try:
            snapshot = self._latest.get(task_id)
            if snapshot is not None:
                last_seen = snapshot.sequence
                yield snapshot
            while True:
                item = await queue.get()
                if item is _INTERRUPT:
                    raise BackendError(
                        f"Endpoint stream for task '{task_id}' interrupted",
                        transient=True,
                    )
                if not isinstance(item, EndpointChange) or item.sequence <= last_seen:
                    continue
                last_seen = item.sequence
                yield item
        finally:
            self._subscribers[task_id].remove(queue)
