"""Simple in-process event broadcaster for job and connection updates.

Usage:
  bus = EventBus()
  q = bus.register_listener()
  bus.broadcast({"type": EventType.JOB_UPDATE, "job": job.to_dict()})

Observers (UI glue, the command line) either poll their queue or iterate
``bus.listen()``. No persistence: if no listeners -> event is dropped, and a
bounded listener whose queue is full is dropped too. Listeners that must see
every update (a waiter blocked on one job) register with ``maxsize=0``.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, AsyncIterator, Dict, List


class EventType(str, Enum):
    JOB_UPDATE = "job_update"
    JOB_REMOVED = "job_removed"
    SELECTION = "selection"
    CONNECTION = "connection"


class EventBus:
    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._listeners: List[asyncio.Queue[Dict[str, Any]]] = []

    def register_listener(self, maxsize: int | None = None) -> asyncio.Queue[Dict[str, Any]]:
        """Add a listener queue. ``maxsize=0`` makes it unbounded, so it is never dropped."""
        q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=self.maxsize if maxsize is None else maxsize)
        self._listeners.append(q)
        return q

    def unregister_listener(self, q: asyncio.Queue[Dict[str, Any]]) -> None:
        try:
            self._listeners.remove(q)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def broadcast(self, payload: Dict[str, Any]) -> None:
        # Fire-and-forget: push to all queues (drop listener on full to avoid blocking the loop)
        dead: List[asyncio.Queue[Dict[str, Any]]] = []
        for q in list(self._listeners):
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.append(q)
        for dq in dead:
            self.unregister_listener(dq)

    async def listen(self) -> AsyncIterator[Dict[str, Any]]:
        q = self.register_listener()
        try:
            while True:
                yield await q.get()
        finally:
            self.unregister_listener(q)
