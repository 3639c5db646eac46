from __future__ import annotations

import datetime as _dt
import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from copytrade.errors import CredentialError, NotFoundError, TransientExecutionError
from copytrade.log_utils import log_event, utc_now
from copytrade.models import FollowOptions, Task, validate_agent_id, validate_interval
from copytrade.task_registry import ExecutionLocks, TaskRegistry, new_task_id
from copytrade.timers import TimerHandle, TimerWheel

LOGGER = logging.getLogger("copytrade.scheduler")

TASK_LOG = "task_events.jsonl"

Runner = Callable[[str, FollowOptions], Any]
OptionsInput = Union[FollowOptions, Mapping[str, Any], None]


class TaskScheduler:
    """Owns the follow tasks and their periodic timers.

    Each enabled task has exactly one armed timer. A tick runs the follow
    cycle through ``runner(agent_id, options)`` unless the previous cycle of
    the same task is still running, in which case the tick is dropped.
    """

    def __init__(
        self,
        runner: Runner,
        registry: Optional[TaskRegistry] = None,
        timers: Optional[Any] = None,
        locks: Optional[ExecutionLocks] = None,
        clock: Callable[[], _dt.datetime] = utc_now,
    ) -> None:
        self._runner = runner
        self._registry = registry or TaskRegistry()
        self._timers = timers if timers is not None else TimerWheel()
        self._locks = locks or ExecutionLocks()
        self._clock = clock
        self._handles: Dict[str, TimerHandle] = {}
        self._lock = threading.RLock()
        self._closed = False

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def locks(self) -> ExecutionLocks:
        return self._locks

    # -- task lifecycle ---------------------------------------------------------
    def create_task(
        self,
        agent_id: str,
        options: OptionsInput = None,
        interval_seconds: int = 30,
        user_id: Optional[str] = None,
    ) -> Task:
        agent = validate_agent_id(agent_id)
        interval = validate_interval(interval_seconds)
        opts = options if isinstance(options, FollowOptions) else FollowOptions.from_mapping(options)
        task = self._registry.add(
            Task(
                id=new_task_id(),
                agent_id=agent,
                options=opts,
                interval_seconds=interval,
                created_at=self._clock(),
                user_id=user_id,
            )
        )
        LOGGER.info("[scheduler] created task %s agent=%s every %ss", task.id, agent, interval)
        self._emit("task_created", task)
        return task

    def start_task(self, task_id: str) -> Task:
        with self._lock:
            if self._closed:
                raise RuntimeError("scheduler is shut down")
            task = self._registry.get(task_id)
            if task.enabled and task_id in self._handles:
                return task
            self._handles[task_id] = self._timers.arm(
                task.interval_seconds, partial(self._on_tick, task_id), name=task_id
            )
            task = self._registry.update(task_id, enabled=True)
        LOGGER.info("[scheduler] started task %s (every %ss)", task_id, task.interval_seconds)
        self._emit("task_started", task)
        return task

    def stop_task(self, task_id: str) -> Task:
        with self._lock:
            task = self._registry.get(task_id)
            handle = self._handles.pop(task_id, None)
            if handle is not None:
                self._timers.cancel(handle)
            if not task.enabled:
                return task
            task = self._registry.update(task_id, enabled=False)
        LOGGER.info("[scheduler] stopped task %s", task_id)
        self._emit("task_stopped", task)
        return task

    def update_task(
        self,
        task_id: str,
        interval_seconds: Optional[int] = None,
        options: OptionsInput = None,
    ) -> Task:
        """Apply new options and/or interval.

        Options change in place. A new interval on an enabled task stops and
        re-arms its timer, so the next tick is one new interval from now.
        """
        with self._lock:
            task = self._registry.get(task_id)
            changes: Dict[str, Any] = {}
            if options is not None:
                changes["options"] = options if isinstance(options, FollowOptions) else task.options.merged(options)
            if interval_seconds is not None:
                changes["interval_seconds"] = validate_interval(interval_seconds)
            restart = task.enabled and changes.get("interval_seconds", task.interval_seconds) != task.interval_seconds
            if restart:
                self.stop_task(task_id)
            task = self._registry.update(task_id, **changes)
            if restart:
                task = self.start_task(task_id)
        self._emit("task_updated", task, restarted=restart)
        return task

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            task = self._registry.get(task_id)
            if task.enabled or task_id in self._handles:
                self.stop_task(task_id)
            self._registry.remove(task_id)
        LOGGER.info("[scheduler] deleted task %s", task_id)
        self._emit("task_deleted", task)

    def get_task(self, task_id: str) -> Task:
        return self._registry.get(task_id)

    def list_tasks(self, user_id: Optional[str] = None) -> List[Task]:
        return self._registry.list(user_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop every enabled task, then drain the timers and in-flight cycles."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            enabled = [t.id for t in self._registry.list() if t.enabled]
            for task_id in enabled:
                self.stop_task(task_id)
        LOGGER.info("[scheduler] shutting down; stopped %d task(s)", len(enabled))
        self._timers.shutdown(wait=wait)

    # -- ticks ------------------------------------------------------------------
    def _on_tick(self, task_id: str) -> None:
        task = self._registry.find(task_id)
        if task is None or not task.enabled:
            return
        if not self._locks.try_acquire(task_id):
            LOGGER.info("[scheduler] task %s still running; tick skipped", task_id)
            self._emit("tick_skipped", task)
            return
        try:
            result = self._runner(task.agent_id, task.options)
        except CredentialError as exc:
            LOGGER.error(
                "[scheduler] task %s agent=%s brokerage credentials missing or rejected: %s",
                task_id,
                task.agent_id,
                exc,
            )
            self._record_failure(task, "credential_error", exc)
        except TransientExecutionError as exc:
            LOGGER.warning("[scheduler] task %s transient failure, next tick retries: %s", task_id, exc)
            self._record_failure(task, "transient_error", exc)
        except Exception as exc:
            LOGGER.exception("[scheduler] task %s cycle failed", task_id)
            self._record_failure(task, "error", exc)
        else:
            self._record_success(task, result)
        finally:
            self._locks.release(task_id)

    def _record_success(self, task: Task, result: Any) -> None:
        status = getattr(result, "status", None)
        status_text = getattr(status, "value", status)
        try:
            current = self._registry.get(task.id)
            updated = self._registry.update(
                task.id,
                last_executed_at=self._clock(),
                execution_count=current.execution_count + 1,
                last_status=str(status_text) if status_text is not None else "ok",
                last_error=None,
            )
        except NotFoundError:
            LOGGER.debug("[scheduler] task %s deleted during its cycle", task.id)
            return
        self._emit("tick_completed", updated, status=status_text)

    def _record_failure(self, task: Task, kind: str, exc: BaseException) -> None:
        try:
            updated = self._registry.update(task.id, last_status=kind, last_error=f"{type(exc).__name__}: {exc}")
        except NotFoundError:
            return
        self._emit("tick_failed", updated, error_kind=kind, error=exc)

    def _emit(self, event: str, task: Task, **extra: Any) -> None:
        payload = {
            "task_id": task.id,
            "agent_id": task.agent_id,
            "enabled": task.enabled,
            "interval_seconds": task.interval_seconds,
            "execution_count": task.execution_count,
        }
        payload.update(extra)
        log_event(TASK_LOG, event, payload)


__all__ = ["TaskScheduler", "Runner", "TASK_LOG"]
