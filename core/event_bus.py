"""Fan-out of run results to in-process listeners (API streams, tests)."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scheduler.models import RunResult

# Subscribers on this key receive events for every schedule
ALL = "*"


class EventBus:
    """Per-schedule queues of JSON-ready run results.

    Subscribe with a schedule ID to follow one schedule, or with ``ALL`` to
    follow every firing. Each subscriber gets its own copy of an event.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, schedule_id: str = ALL) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._queues[schedule_id].append(q)
        return q

    def unsubscribe(self, schedule_id: str, q: asyncio.Queue) -> None:
        queues = self._queues.get(schedule_id, [])
        if q in queues:
            queues.remove(q)

    async def publish(self, schedule_id: str, event: dict) -> None:
        """Deliver *event* to listeners of *schedule_id* and of ``ALL``."""
        targets = list(self._queues.get(schedule_id, []))
        if schedule_id != ALL:
            targets += self._queues.get(ALL, [])
        for q in targets:
            await q.put(event)

    async def publish_result(self, result: RunResult) -> None:
        await self.publish(result.schedule_id, result.model_dump(mode="json"))
