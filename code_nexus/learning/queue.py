"""
Learning Queue - bounded priority queue of pending learning tasks.

Owned by exactly one IncrementalLearner and drained by its single consumer
task. Higher priority pops first; equal priorities pop in arrival order.
Producers wait when the queue is at capacity.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..core.models import CommitInfo, TriggerType, new_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class LearningTask:
    """A request to (re)learn a list of files."""
    files: List[str]
    trigger: TriggerType = TriggerType.MANUAL
    commit_info: Optional[CommitInfo] = None
    priority: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "files": list(self.files),
            "trigger": self.trigger.value,
            "commit_id": self.commit_info.id if self.commit_info else None,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
        }


class LearningQueue:
    """
    Priority queue with backpressure.

    Tasks are kept in pop order: descending priority, FIFO within a
    priority. `push_front` puts a task ahead of its priority class, which
    is how the drain loop re-queues the unprocessed remainder of a batch.
    """

    def __init__(self, max_pending: int = 1000):
        self.max_pending = max_pending
        self._tasks: List[LearningTask] = []
        self._space = asyncio.Event()
        self._space.set()

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def is_full(self) -> bool:
        return len(self._tasks) >= self.max_pending

    @property
    def pending_files(self) -> int:
        return sum(len(t.files) for t in self._tasks)

    async def put(self, task: LearningTask) -> None:
        """Append a task behind every task of equal or higher priority."""
        while self.is_full:
            logger.debug(f"Learning queue full ({self.max_pending}), waiting for room")
            self._space.clear()
            await self._space.wait()

        index = len(self._tasks)
        for i, queued in enumerate(self._tasks):
            if queued.priority < task.priority:
                index = i
                break
        self._tasks.insert(index, task)

    def push_front(self, task: LearningTask) -> None:
        """Insert ahead of every task of equal or lower priority. Ignores capacity."""
        index = len(self._tasks)
        for i, queued in enumerate(self._tasks):
            if queued.priority <= task.priority:
                index = i
                break
        self._tasks.insert(index, task)

    def pop(self) -> Optional[LearningTask]:
        if not self._tasks:
            return None
        task = self._tasks.pop(0)
        self._signal_space()
        return task

    def clear(self) -> int:
        """Drop every pending task; returns how many were dropped."""
        dropped = len(self._tasks)
        self._tasks.clear()
        self._signal_space()
        return dropped

    def snapshot(self) -> List[LearningTask]:
        return list(self._tasks)

    def _signal_space(self) -> None:
        if len(self._tasks) < self.max_pending:
            self._space.set()
