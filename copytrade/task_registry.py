from __future__ import annotations

import dataclasses
import json
import logging
import secrets
import string
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from copytrade.errors import NotFoundError, ValidationError
from copytrade.models import Task

LOG = logging.getLogger("copytrade.task_registry")

_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_task_id() -> str:
    """``cron_<ms since epoch, base36>_<6 random base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"cron_{_base36(int(time.time() * 1000))}_{suffix}"


class TaskStore(Protocol):
    def load(self) -> Iterable[Task]: ...

    def save(self, task: Task) -> None: ...

    def delete(self, task_id: str) -> None: ...


class InMemoryTaskStore:
    """Volatile store; tasks are lost with the process."""

    def load(self) -> Iterable[Task]:
        return ()

    def save(self, task: Task) -> None:
        return None

    def delete(self, task_id: str) -> None:
        return None


class JsonTaskStore:
    """Keeps every task in one JSON document, rewritten atomically on each change."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._rows: Dict[str, Dict[str, Any]] = {}

    def load(self) -> Iterable[Task]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"task store {self.path} is not valid JSON: {exc}") from exc
        tasks: List[Task] = []
        for row in payload.get("tasks", []) if isinstance(payload, dict) else []:
            try:
                task = Task.from_dict(row)
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("[tasks] dropping unreadable task row %r: %s", row, exc)
                continue
            tasks.append(task)
            self._rows[task.id] = task.to_dict()
        return tasks

    def save(self, task: Task) -> None:
        with self._lock:
            self._rows[task.id] = task.to_dict()
            self._flush()

    def delete(self, task_id: str) -> None:
        with self._lock:
            if self._rows.pop(task_id, None) is not None:
                self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"tasks": list(self._rows.values()), "updated_at": time.time()}
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)


class TaskRegistry:
    """The set of follow tasks. Readers always get copies."""

    def __init__(self, store: Optional[TaskStore] = None) -> None:
        self._store: TaskStore = store or InMemoryTaskStore()
        self._lock = threading.RLock()
        self._tasks: Dict[str, Task] = {task.id: task for task in self._store.load()}
        if self._tasks:
            LOG.info("[tasks] loaded %d task(s) from store", len(self._tasks))

    def add(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise ValidationError(f"task {task.id} already exists")
            stored = task.snapshot()
            self._tasks[task.id] = stored
            self._store.save(stored)
            return stored.snapshot()

    def find(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.snapshot() if task is not None else None

    def get(self, task_id: str) -> Task:
        task = self.find(task_id)
        if task is None:
            raise NotFoundError(f"task {task_id!r} not found")
        return task

    def list(self, user_id: Optional[str] = None) -> List[Task]:
        with self._lock:
            tasks = [t.snapshot() for t in self._tasks.values()]
        if user_id is not None:
            tasks = [t for t in tasks if t.user_id == user_id]
        return sorted(tasks, key=lambda t: t.created_at)

    def update(self, task_id: str, **changes: Any) -> Task:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError(f"task {task_id!r} not found")
            updated = dataclasses.replace(current, **changes)
            self._tasks[task_id] = updated
            self._store.save(updated)
            return updated.snapshot()

    def remove(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                raise NotFoundError(f"task {task_id!r} not found")
            self._store.delete(task_id)
            return task

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


class LockState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class ExecutionLocks:
    """Per-task IDLE/RUNNING flag; at most one RUNNING cycle per task id."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._states: Dict[str, LockState] = {}

    def try_acquire(self, task_id: str) -> bool:
        with self._mutex:
            if self._states.get(task_id) is LockState.RUNNING:
                return False
            self._states[task_id] = LockState.RUNNING
            return True

    def release(self, task_id: str) -> None:
        with self._mutex:
            self._states.pop(task_id, None)

    def state(self, task_id: str) -> LockState:
        with self._mutex:
            return self._states.get(task_id, LockState.IDLE)

    def running(self) -> List[str]:
        with self._mutex:
            return [k for k, v in self._states.items() if v is LockState.RUNNING]


__all__ = [
    "new_task_id",
    "TaskStore",
    "InMemoryTaskStore",
    "JsonTaskStore",
    "TaskRegistry",
    "LockState",
    "ExecutionLocks",
]
