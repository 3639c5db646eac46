#!/usr/bin/env python3
"""copytrade daemon and operator commands.

    copytrade run                 follow every task configured in copytrade.yaml
    copytrade once <agent>        one follow cycle for <agent>, then exit
    copytrade resolve <agent> <trust_actual|rebuild_history|abort>
                                  queue a reconciliation decision for the running daemon
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from copytrade.agent_feed import Nof1AgentFeed
from copytrade.errors import BlockedByReconciliation, CopytradeError, NotFoundError, ValidationError
from copytrade.exchange_utils import BinanceFuturesBroker
from copytrade.follow_executor import FollowExecutor
from copytrade.log_utils import append_jsonl, get_logger, log_dir, log_event, read_jsonl, safe_dump
from copytrade.models import ExecutionResult, ExecutionStatus, FollowOptions, ResolutionAction
from copytrade.order_ledger import OrderHistoryLedger
from copytrade.reconciliation import ReconciliationGate, state_name
from copytrade.risk_manager import RiskManager
from copytrade.runtime_config import CopytradeConfig, load_config
from copytrade.scheduler import TaskScheduler
from copytrade.task_registry import JsonTaskStore, TaskRegistry
from copytrade.timers import TimerWheel

LOGGER = logging.getLogger("copytrade.daemon")

HEARTBEAT_INTERVAL = 60.0
RESOLUTION_POLL = 5.0
RESOLUTION_INBOX = "resolution_requests.jsonl"
LOG_HEART = "daemon_heartbeats.jsonl"


@dataclass
class Components:
    config: CopytradeConfig
    broker: BinanceFuturesBroker
    feed: Nof1AgentFeed
    ledger: OrderHistoryLedger
    gate: ReconciliationGate
    executor: FollowExecutor
    scheduler: TaskScheduler

    def follow(self, agent_id: str, options: FollowOptions) -> ExecutionResult:
        return make_runner(self.feed, self.executor)(agent_id, options)


def make_runner(feed: Nof1AgentFeed, executor: FollowExecutor) -> Callable[[str, FollowOptions], ExecutionResult]:
    def follow(agent_id: str, options: FollowOptions) -> ExecutionResult:
        return executor.run(agent_id, feed.get_target_positions(agent_id), options)

    return follow


def build_components(config: CopytradeConfig, task_store: Optional[Path] = None) -> Components:
    broker = BinanceFuturesBroker(config.broker)
    feed = Nof1AgentFeed(config.feed)
    ledger_path = Path(config.executor.ledger_path)
    if not ledger_path.is_absolute():
        ledger_path = log_dir() / ledger_path
    ledger = OrderHistoryLedger(ledger_path)
    gate = ReconciliationGate(config.reconciliation.tolerance, ledger=ledger)
    executor = FollowExecutor(
        broker,
        gate,
        ledger,
        RiskManager(),
        quantity_tolerance=config.executor.quantity_tolerance,
    )
    registry = TaskRegistry(JsonTaskStore(task_store) if task_store else None)
    scheduler = TaskScheduler(
        make_runner(feed, executor),
        registry=registry,
        timers=TimerWheel(max_workers=config.scheduler.workers),
    )
    return Components(config, broker, feed, ledger, gate, executor, scheduler)


def register_tasks(components: Components) -> List[str]:
    """Create or refresh one task per configured agent; start those marked ``start``."""
    scheduler = components.scheduler
    started: List[str] = []
    existing = {t.agent_id: t for t in scheduler.list_tasks()}
    for spec in components.config.tasks:
        task = existing.get(spec.agent_id)
        if task is None:
            task = scheduler.create_task(spec.agent_id, spec.options, spec.interval_seconds)
        else:
            task = scheduler.update_task(task.id, interval_seconds=spec.interval_seconds, options=spec.options)
        if spec.start:
            scheduler.start_task(task.id)
            started.append(task.id)
    return started


def process_resolutions(components: Components, inbox: Path, offset: int) -> int:
    """Apply queued reconciliation decisions past ``offset``; returns the new offset.

    A row that fails for any reason other than a bad request stays queued, and
    so does everything behind it; the next poll starts again from that row.
    """
    rows = list(read_jsonl(inbox))
    for index in range(offset, len(rows)):
        row = rows[index]
        agent_id = str(row.get("agent_id") or "")
        try:
            positions = components.broker.get_positions()
            state = components.gate.resolve(agent_id, row.get("action"), positions)
        except (NotFoundError, ValidationError) as exc:
            LOGGER.warning("[daemon] resolution for %s rejected: %s", agent_id, exc)
            log_event("reconciliation.jsonl", "resolution_rejected", {"agent_id": agent_id, "error": exc})
            continue
        except CopytradeError as exc:
            LOGGER.warning("[daemon] resolution for %s deferred to next poll: %s", agent_id, exc)
            return index
        LOGGER.info("[daemon] agent=%s reconciliation -> %s", agent_id, state_name(state))
    return len(rows)


def _emit_heartbeat(components: Components) -> None:
    tasks = components.scheduler.list_tasks()
    pending = components.gate.pending()
    log_event(
        get_logger(LOG_HEART),
        "heartbeat",
        {
            "tasks": [
                {
                    "id": t.id,
                    "agent_id": t.agent_id,
                    "enabled": t.enabled,
                    "execution_count": t.execution_count,
                    "last_status": t.last_status,
                    "last_error": t.last_error,
                }
                for t in tasks
            ],
            "running": components.scheduler.locks.running(),
            "needs_confirmation": sorted(pending),
        },
    )


def run_daemon(components: Components) -> int:
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        LOGGER.info("[daemon] signal %s received, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    started = register_tasks(components)
    LOGGER.info("[daemon] %d task(s) running", len(started))
    inbox = log_dir() / RESOLUTION_INBOX
    offset = len(list(read_jsonl(inbox)))
    last_heartbeat = 0.0
    try:
        while not stop.is_set():
            offset = process_resolutions(components, inbox, offset)
            if time.monotonic() - last_heartbeat >= HEARTBEAT_INTERVAL:
                _emit_heartbeat(components)
                last_heartbeat = time.monotonic()
            stop.wait(RESOLUTION_POLL)
    finally:
        components.scheduler.shutdown(wait=True)
    return 0


def run_once(components: Components, agent_id: str, options: FollowOptions) -> ExecutionResult:
    result = components.follow(agent_id, options)
    print(json.dumps(safe_dump(result), indent=2, default=str))
    if result.status is ExecutionStatus.BLOCKED:
        raise BlockedByReconciliation(agent_id, state_name(result.gate.state))
    return result


def queue_resolution(agent_id: str, action: str) -> None:
    resolution = ResolutionAction.parse(action)
    append_jsonl(log_dir() / RESOLUTION_INBOX, {"agent_id": agent_id, "action": resolution.value})
    print(f"queued {resolution.value} for {agent_id}")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="copytrade", description="Mirror agent positions onto Binance USD-M futures.")
    parser.add_argument("--config", default=None, help="path to copytrade.yaml (default: $COPYTRADE_CONFIG)")
    parser.add_argument("--dry-run", action="store_true", help="simulate fills instead of sending orders")
    parser.add_argument("--task-store", default=None, help="persist tasks to this JSON file")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="run the follow daemon")
    once = sub.add_parser("once", help="run one follow cycle for an agent")
    once.add_argument("agent_id")
    once.add_argument("--execute", action="store_true", help="place orders (default is a risk-only report)")
    resolve = sub.add_parser("resolve", help="queue a reconciliation decision")
    resolve.add_argument("agent_id")
    resolve.add_argument("action", choices=[a.value for a in ResolutionAction])
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    command = args.command or "run"
    try:
        if command == "resolve":
            queue_resolution(args.agent_id, args.action)
            return 0
        config = load_config(args.config)
        if args.dry_run:
            config = _with_dry_run(config)
        components = build_components(config, Path(args.task_store) if args.task_store else None)
        if command == "once":
            options = config.default_options.merged({"risk_only": not args.execute})
            for spec in config.tasks:
                if spec.agent_id == args.agent_id:
                    options = spec.options.merged({"risk_only": not args.execute})
            run_once(components, args.agent_id, options)
            return 0
        return run_daemon(components)
    except CopytradeError as exc:
        LOGGER.error("[daemon] %s: %s", type(exc).__name__, exc)
        return 2


def _with_dry_run(config: CopytradeConfig) -> CopytradeConfig:
    return replace(config, broker=replace(config.broker, dry_run=True))


if __name__ == "__main__":
    sys.exit(main())
