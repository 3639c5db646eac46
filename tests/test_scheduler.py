from __future__ import annotations

import pytest

from copytrade.errors import CredentialError, NotFoundError, TransientExecutionError, ValidationError
from copytrade.models import ExecutionResult, ExecutionStatus, FollowOptions
from copytrade.scheduler import TaskScheduler
from copytrade.task_registry import LockState
from copytrade.timers import ManualTimerWheel


class RecordingRunner:
    def __init__(self) -> None:
        self.calls: list[tuple[str, FollowOptions]] = []
        self.error: Exception | None = None

    def __call__(self, agent_id: str, options: FollowOptions) -> ExecutionResult:
        self.calls.append((agent_id, options))
        if self.error is not None:
            raise self.error
        return ExecutionResult(agent_id=agent_id, status=ExecutionStatus.NOOP)


@pytest.fixture
def wheel() -> ManualTimerWheel:
    return ManualTimerWheel()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def scheduler(runner, wheel) -> TaskScheduler:
    return TaskScheduler(runner, timers=wheel)


@pytest.mark.parametrize("interval", [-5, 0, 1, 4])
def test_create_task_rejects_interval_below_five(scheduler, interval) -> None:
    with pytest.raises(ValidationError):
        scheduler.create_task("agent-a", {}, interval)
    assert scheduler.list_tasks() == []


@pytest.mark.parametrize("interval", [4.5, "30", True])
def test_create_task_rejects_non_integer_interval(scheduler, interval) -> None:
    with pytest.raises(ValidationError):
        scheduler.create_task("agent-a", {}, interval)


def test_create_task_accepts_interval_of_five_and_starts_disabled(scheduler) -> None:
    task = scheduler.create_task("agent-a", {"totalMargin": 100}, 5)
    assert task.interval_seconds == 5
    assert task.enabled is False
    assert task.execution_count == 0
    assert task.last_executed_at is None
    assert task.id.startswith("cron_")
    assert task.options.total_margin == 100


@pytest.mark.parametrize("agent_id", ["", "   ", None])
def test_create_task_rejects_empty_agent(scheduler, agent_id) -> None:
    with pytest.raises(ValidationError):
        scheduler.create_task(agent_id, {}, 30)


def test_create_task_rejects_bad_options(scheduler) -> None:
    with pytest.raises(ValidationError):
        scheduler.create_task("agent-a", {"maxLeverage": 0}, 30)
    with pytest.raises(ValidationError):
        scheduler.create_task("agent-a", {"marginType": "PORTFOLIO"}, 30)


def test_start_unknown_task_raises_not_found(scheduler) -> None:
    with pytest.raises(NotFoundError):
        scheduler.start_task("cron_missing")
    with pytest.raises(NotFoundError):
        scheduler.stop_task("cron_missing")


def test_start_is_idempotent(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    first = scheduler.start_task(task.id)
    second = scheduler.start_task(task.id)
    assert first.enabled and second.enabled
    assert wheel.active() == 1
    wheel.advance(5)
    assert len(runner.calls) == 1


def test_ticks_fire_every_interval_and_update_counters(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)

    wheel.advance(4)
    assert runner.calls == []
    wheel.advance(11)

    assert [agent for agent, _ in runner.calls] == ["agent-a"] * 3
    current = scheduler.get_task(task.id)
    assert current.execution_count == 3
    assert current.last_executed_at is not None
    assert current.last_status == "noop"


def test_tick_is_skipped_while_execution_lock_is_held(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)

    assert scheduler.locks.try_acquire(task.id)
    wheel.advance(5)
    assert runner.calls == []
    assert scheduler.get_task(task.id).execution_count == 0

    scheduler.locks.release(task.id)
    wheel.advance(5)
    assert len(runner.calls) == 1


def test_skipped_ticks_are_not_backlogged(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)
    scheduler.locks.try_acquire(task.id)
    wheel.advance(25)
    scheduler.locks.release(task.id)
    wheel.advance(5)
    assert len(runner.calls) == 1


def test_stop_prevents_further_ticks(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)
    wheel.advance(5)
    assert len(runner.calls) == 1

    stopped = scheduler.stop_task(task.id)
    assert stopped.enabled is False
    wheel.advance(60)
    assert len(runner.calls) == 1
    assert wheel.active() == 0
    # idempotent
    assert scheduler.stop_task(task.id).enabled is False


def test_interval_update_resets_phase_and_keeps_counters(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 10)
    scheduler.start_task(task.id)
    wheel.advance(10)
    before = scheduler.get_task(task.id)
    assert before.execution_count == 1

    wheel.advance(4)  # t=14, old phase would fire at t=20
    updated = scheduler.update_task(task.id, interval_seconds=7)
    assert updated.enabled is True
    assert updated.interval_seconds == 7
    assert updated.execution_count == before.execution_count
    assert updated.last_executed_at == before.last_executed_at

    wheel.advance(6)  # t=20
    assert len(runner.calls) == 1
    wheel.advance(1)  # t=21
    assert len(runner.calls) == 2
    wheel.advance(7)  # t=28
    assert len(runner.calls) == 3


def test_options_only_update_keeps_phase(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {"totalMargin": 50}, 10)
    scheduler.start_task(task.id)
    wheel.advance(6)

    updated = scheduler.update_task(task.id, options={"totalMargin": 80, "riskOnly": False})
    assert updated.options.total_margin == 80
    assert updated.options.risk_only is False
    assert updated.options.max_leverage == task.options.max_leverage

    wheel.advance(4)  # original phase, t=10
    assert len(runner.calls) == 1
    assert runner.calls[0][1].total_margin == 80


def test_interval_update_on_disabled_task_does_not_start_it(scheduler, wheel) -> None:
    task = scheduler.create_task("agent-a", {}, 10)
    updated = scheduler.update_task(task.id, interval_seconds=20)
    assert updated.enabled is False
    assert wheel.active() == 0
    with pytest.raises(ValidationError):
        scheduler.update_task(task.id, interval_seconds=3)
    assert scheduler.get_task(task.id).interval_seconds == 20


def test_delete_stops_task_first(scheduler, wheel, runner) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)
    scheduler.delete_task(task.id)

    wheel.advance(30)
    assert runner.calls == []
    assert wheel.active() == 0
    with pytest.raises(NotFoundError):
        scheduler.get_task(task.id)
    with pytest.raises(NotFoundError):
        scheduler.delete_task(task.id)


@pytest.mark.parametrize(
    "error, status",
    [
        (TransientExecutionError("timeout"), "transient_error"),
        (CredentialError("missing api key"), "credential_error"),
        (RuntimeError("boom"), "error"),
    ],
)
def test_failed_cycle_keeps_task_enabled_and_releases_lock(scheduler, wheel, runner, error, status) -> None:
    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)
    runner.error = error

    wheel.advance(5)
    current = scheduler.get_task(task.id)
    assert current.enabled is True
    assert current.execution_count == 0
    assert current.last_status == status
    assert type(error).__name__ in current.last_error
    assert scheduler.locks.state(task.id) is LockState.IDLE

    runner.error = None
    wheel.advance(5)
    current = scheduler.get_task(task.id)
    assert len(runner.calls) == 2
    assert current.execution_count == 1
    assert current.last_error is None


def test_list_tasks_returns_snapshots(scheduler) -> None:
    task = scheduler.create_task("agent-a", {}, 5, user_id="u1")
    scheduler.create_task("agent-b", {}, 5)

    listed = scheduler.list_tasks()
    listed[0].enabled = True
    listed[0].execution_count = 99

    assert scheduler.get_task(task.id).enabled is False
    assert scheduler.get_task(task.id).execution_count == 0
    assert [t.agent_id for t in scheduler.list_tasks(user_id="u1")] == ["agent-a"]


def test_shutdown_stops_every_enabled_task(scheduler, wheel, runner) -> None:
    a = scheduler.create_task("agent-a", {}, 5)
    b = scheduler.create_task("agent-b", {}, 5)
    scheduler.start_task(a.id)
    scheduler.start_task(b.id)

    scheduler.shutdown()

    assert all(not t.enabled for t in scheduler.list_tasks())
    wheel.advance(30)
    assert runner.calls == []
    with pytest.raises(RuntimeError):
        scheduler.start_task(a.id)


def test_task_events_are_logged(scheduler, wheel, isolated_log_dir) -> None:
    from copytrade.log_utils import read_jsonl

    task = scheduler.create_task("agent-a", {}, 5)
    scheduler.start_task(task.id)
    wheel.advance(5)

    events = [row["event_type"] for row in read_jsonl(isolated_log_dir / "task_events.jsonl")]
    assert events == ["task_created", "task_started", "tick_completed"]
