"""
Background task queue for offline vault passes (cross-reference discovery,
contradiction scans, re-encryption sweeps). Work is enqueued explicitly and run
by ``drain``; failures are retried and then kept for inspection.
"""

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from util.logging import logger as structured_logger

from .config import VAULT_TASK_MAX_ATTEMPTS


@dataclass
class Task:
    """A unit of queued work."""
    name: str
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:8]}")
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class TaskResult:
    task_id: str
    name: str
    status: str  # 'success', 'retry', 'failed'
    result: Any = None
    error: Optional[str] = None
    duration_sec: float = 0.0


class TaskQueue:
    """FIFO queue with bounded retries. Thread-safe for enqueue from any thread."""

    def __init__(self, max_attempts: int = VAULT_TASK_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {max_attempts}")
        self.max_attempts = max_attempts
        self._pending: Deque[Task] = deque()
        self._failed: List[Task] = []
        self._lock = threading.Lock()

    def enqueue(self, name: str, func: Callable[..., Any], *args, **kwargs) -> str:
        """Queue ``func(*args, **kwargs)`` and return its task id."""
        if not callable(func):
            raise ValueError(f"Task function must be callable: {func}")

        task = Task(name=name, func=func, args=args, kwargs=kwargs)
        with self._lock:
            self._pending.append(task)
        return task.id

    def drain(self, max_tasks: Optional[int] = None) -> List[TaskResult]:
        """
        Run queued tasks until the queue is empty or ``max_tasks`` runs were made.

        A failing task is re-queued at the back until it has been attempted
        ``max_attempts`` times, then moved to the failed list.
        """
        results = []
        while max_tasks is None or len(results) < max_tasks:
            with self._lock:
                if not self._pending:
                    break
                task = self._pending.popleft()
            results.append(self._run(task))
        return results

    def _run(self, task: Task) -> TaskResult:
        task.attempts += 1
        start_time = time.monotonic()
        try:
            value = task.func(*task.args, **task.kwargs)
        except Exception as e:
            end_time = time.monotonic()
            task.last_error = str(e)
            if task.attempts < self.max_attempts:
                status = "retry"
                with self._lock:
                    self._pending.append(task)
            else:
                status = "failed"
                with self._lock:
                    self._failed.append(task)
            structured_logger.log_task(task.name, start_time, end_time, status,
                                       {"task_id": task.id, "attempt": task.attempts, "error": str(e)})
            return TaskResult(task.id, task.name, status, error=str(e), duration_sec=end_time - start_time)

        end_time = time.monotonic()
        structured_logger.log_task(task.name, start_time, end_time, "success",
                                   {"task_id": task.id, "attempt": task.attempts})
        return TaskResult(task.id, task.name, "success", result=value, duration_sec=end_time - start_time)

    @property
    def failed(self) -> List[Task]:
        with self._lock:
            return list(self._failed)

    def retry_failed(self) -> int:
        """Move failed tasks back to the queue with a fresh attempt budget."""
        with self._lock:
            count = len(self._failed)
            for task in self._failed:
                task.attempts = 0
                self._pending.append(task)
            self._failed.clear()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "pending": len(self._pending),
                "failed": len(self._failed),
                "pending_tasks": [t.name for t in self._pending],
                "failed_tasks": {t.id: t.last_error for t in self._failed},
            }
