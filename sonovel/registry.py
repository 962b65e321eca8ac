from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .cancel import CancelToken
from .models import DownloadTask

logger = logging.getLogger(__name__)


class RWLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cv = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cv:
            while self._writer or self._writers_waiting:
                self._cv.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cv:
                self._readers -= 1
                if self._readers == 0:
                    self._cv.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cv:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cv.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cv:
                self._writer = False
                self._cv.notify_all()


class TaskRegistry:
    """Download id -> DownloadTask, one task per id."""

    def __init__(self) -> None:
        self._tasks: Dict[str, DownloadTask] = {}
        self._lock = RWLock()

    def add(self, task_id: str, client_id: str = "") -> DownloadTask:
        """Register a new task with a fresh token. Duplicate ids raise ValueError."""
        if not task_id:
            raise ValueError("task_id is required")
        with self._lock.write():
            if task_id in self._tasks:
                raise ValueError(f"task already registered: {task_id}")
            task = DownloadTask(task_id=task_id, client_id=client_id, token=CancelToken())
            self._tasks[task_id] = task
        logger.debug("registered download task %s (client %s)", task_id, client_id or "-")
        return task

    def get_or_add(self, task_id: str, client_id: str = "") -> DownloadTask:
        """Return the task registered under `task_id`, registering it first if needed."""
        if not task_id:
            raise ValueError("task_id is required")
        with self._lock.write():
            task = self._tasks.get(task_id)
            if task is None:
                task = DownloadTask(task_id=task_id, client_id=client_id, token=CancelToken())
                self._tasks[task_id] = task
                logger.debug("registered download task %s (client %s)", task_id, client_id or "-")
        return task

    def get(self, task_id: str) -> Optional[DownloadTask]:
        with self._lock.read():
            return self._tasks.get(task_id)

    def client_id(self, task_id: str) -> Optional[str]:
        task = self.get(task_id)
        return task.client_id if task is not None else None

    def remove(self, task_id: str) -> Optional[DownloadTask]:
        with self._lock.write():
            return self._tasks.pop(task_id, None)

    def cancel(self, task_id: str) -> bool:
        """Signal the task's token. False if no such task exists."""
        task = self.get(task_id)
        if task is None:
            logger.info("cancel requested for unknown download %s", task_id)
            return False
        task.token.cancel(f"download {task_id} stopped")
        logger.info("cancel signalled for download %s", task_id)
        return True

    def ids(self) -> List[str]:
        with self._lock.read():
            return list(self._tasks)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock.read():
            return task_id in self._tasks
