"""In-process relay of job progress to pollers and streaming clients.

The job runner calls ``ProgressHub.publish`` after every unit. Polling
clients read ``latest``; the server-sent events endpoint holds a queue
from ``subscribe`` and forwards whatever arrives. Publishing never
blocks: queues are unbounded and a job nobody watches only updates its
latest snapshot.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional


class ProgressHub:
    def __init__(self) -> None:
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def publish(self, job_id: str, event: Dict[str, Any]) -> None:
        self._latest[job_id] = event
        for queue in self._subscribers.get(job_id, []):
            queue.put_nowait(event)

    def on_progress(self, job_id: str, completed: int, total: int) -> None:
        percent = round(completed / total * 100) if total else 100
        self.publish(job_id, {"type": "progress", "completed": completed, "total": total,
                              "percent": percent})

    def latest(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._latest.get(job_id)

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    def forget(self, job_id: str) -> None:
        """Drop the snapshot of a job that is finished with or deleted."""
        self._latest.pop(job_id, None)
