from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from copytrade.errors import ValidationError
from copytrade.models import FollowOptions, validate_agent_id, validate_interval

LOG = logging.getLogger("copytrade.runtime_config")

_DEFAULT_PATH = Path("config/copytrade.yaml")


def _config_path(path: Path | str | None) -> Path:
    if path is not None:
        return Path(path)
    return Path(os.getenv("COPYTRADE_CONFIG") or _DEFAULT_PATH)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


@lru_cache(maxsize=4)
def load_runtime_config(path: Path | str | None = None) -> Dict[str, Any]:
    """
    Load copytrade.yaml once per process.

    A missing file yields {} so the daemon can run on env + defaults alone;
    a malformed file is a configuration error and raises.
    """
    cfg_path = _config_path(path)
    if not cfg_path.exists():
        LOG.info("[config] %s not found, using defaults", cfg_path)
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ValidationError(f"invalid YAML in {cfg_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{cfg_path} must contain a mapping at the top level")
    return data


@dataclass(frozen=True)
class BrokerConfig:
    api_key: str = ""
    api_secret: str = ""
    testnet: bool = False
    dry_run: bool = False
    recv_window: int = 10_000
    timeout: float = 8.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass(frozen=True)
class FeedConfig:
    base_url: str = "https://nof1.ai/api"
    timeout: float = 10.0
    marker: Optional[int] = None


@dataclass(frozen=True)
class ReconciliationConfig:
    # relative deviation of quantity / entry price tolerated before blocking
    tolerance: float = 0.05


@dataclass(frozen=True)
class ExecutorConfig:
    quantity_tolerance: float = 0.01
    ledger_path: str = "order_history.jsonl"


@dataclass(frozen=True)
class SchedulerConfig:
    workers: int = 4


@dataclass(frozen=True)
class TaskSpec:
    agent_id: str
    interval_seconds: int = 30
    options: FollowOptions = field(default_factory=FollowOptions)
    start: bool = True


@dataclass(frozen=True)
class CopytradeConfig:
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    default_options: FollowOptions = field(default_factory=FollowOptions)
    tasks: List[TaskSpec] = field(default_factory=list)


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name) or {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"config section {name!r} must be a mapping")
    return value


def _positive_float(section: str, key: str, value: Any) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{section}.{key} must be a number, got {value!r}") from None
    if num <= 0:
        raise ValidationError(f"{section}.{key} must be > 0, got {num}")
    return num


def get_broker_config(cfg: Mapping[str, Any] | None = None) -> BrokerConfig:
    """Credentials always come from the environment, never from YAML."""
    broker_cfg = _section(cfg or {}, "broker")
    return BrokerConfig(
        api_key=os.getenv("BINANCE_API_KEY", "").strip(),
        api_secret=os.getenv("BINANCE_API_SECRET", "").strip(),
        testnet=_env_flag("BINANCE_TESTNET", bool(broker_cfg.get("testnet", False))),
        dry_run=_env_flag("DRY_RUN", bool(broker_cfg.get("dry_run", False))),
        recv_window=int(broker_cfg.get("recv_window", 10_000)),
        timeout=_positive_float("broker", "timeout", broker_cfg.get("timeout", 8.0)),
    )


def get_feed_config(cfg: Mapping[str, Any] | None = None) -> FeedConfig:
    feed_cfg = _section(cfg or {}, "feed")
    marker = feed_cfg.get("marker")
    return FeedConfig(
        base_url=str(os.getenv("NOF1_API_BASE") or feed_cfg.get("base_url") or FeedConfig.base_url).rstrip("/"),
        timeout=_positive_float("feed", "timeout", feed_cfg.get("timeout", 10.0)),
        marker=int(marker) if marker is not None else None,
    )


def get_reconciliation_config(cfg: Mapping[str, Any] | None = None) -> ReconciliationConfig:
    rec_cfg = _section(cfg or {}, "reconciliation")
    return ReconciliationConfig(
        tolerance=_positive_float("reconciliation", "tolerance", rec_cfg.get("tolerance", 0.05)),
    )


def get_executor_config(cfg: Mapping[str, Any] | None = None) -> ExecutorConfig:
    exe_cfg = _section(cfg or {}, "executor")
    return ExecutorConfig(
        quantity_tolerance=_positive_float("executor", "quantity_tolerance", exe_cfg.get("quantity_tolerance", 0.01)),
        ledger_path=str(exe_cfg.get("ledger_path") or ExecutorConfig.ledger_path),
    )


def get_scheduler_config(cfg: Mapping[str, Any] | None = None) -> SchedulerConfig:
    sched_cfg = _section(cfg or {}, "scheduler")
    workers = int(sched_cfg.get("workers", 4))
    return SchedulerConfig(workers=max(1, workers))


def get_task_specs(cfg: Mapping[str, Any] | None, defaults: FollowOptions) -> List[TaskSpec]:
    raw_tasks = (cfg or {}).get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise ValidationError("config 'tasks' must be a list")
    specs: List[TaskSpec] = []
    for entry in raw_tasks:
        if not isinstance(entry, Mapping):
            raise ValidationError(f"task entry must be a mapping, got {entry!r}")
        specs.append(
            TaskSpec(
                agent_id=validate_agent_id(entry.get("agent_id")),
                interval_seconds=validate_interval(entry.get("interval_seconds", 30)),
                options=defaults.merged(entry.get("options") or {}),
                start=bool(entry.get("start", True)),
            )
        )
    return specs


def load_config(path: Path | str | None = None, *, dotenv: bool = True) -> CopytradeConfig:
    if dotenv:
        load_dotenv(override=False)
    raw = load_runtime_config(path)
    defaults = FollowOptions.from_mapping(_section(raw, "defaults").get("follow_options") or {})
    return CopytradeConfig(
        broker=get_broker_config(raw),
        feed=get_feed_config(raw),
        reconciliation=get_reconciliation_config(raw),
        executor=get_executor_config(raw),
        scheduler=get_scheduler_config(raw),
        default_options=defaults,
        tasks=get_task_specs(raw, defaults),
    )


__all__ = [
    "load_runtime_config",
    "load_config",
    "BrokerConfig",
    "FeedConfig",
    "ReconciliationConfig",
    "ExecutorConfig",
    "SchedulerConfig",
    "TaskSpec",
    "CopytradeConfig",
    "get_broker_config",
    "get_feed_config",
    "get_reconciliation_config",
    "get_executor_config",
    "get_scheduler_config",
    "get_task_specs",
]
