"""Thread-safe JSONL event logs with size-based rotation."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import enum
import gzip
import json
import logging
import os
import shutil
import socket
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, MutableMapping

LOG = logging.getLogger("copytrade.log_utils")

_HOSTNAME = socket.gethostname()
_DEFAULT_LOG_DIR = "logs/copytrade"
_LOGGERS: Dict[str, "JsonlLogger"] = {}
_LOGGERS_LOCK = threading.Lock()


def log_dir() -> Path:
    """Directory holding every JSONL stream; ``COPYTRADE_LOG_DIR`` overrides."""
    return Path(os.getenv("COPYTRADE_LOG_DIR") or _DEFAULT_LOG_DIR)


class JsonlLogger:
    """Append-only JSONL writer; rotates to ``name.N.jsonl`` once ``max_bytes`` is hit."""

    def __init__(self, path: Path, max_bytes: int, backup_count: int) -> None:
        self.path = path
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._lock = threading.RLock()

    def write(self, record: Mapping[str, Any] | None) -> None:
        line = json.dumps(safe_dump(record or {}), ensure_ascii=False)
        encoded = f"{line}\n".encode("utf-8")
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_needed(len(encoded))
            with self.path.open("ab") as handle:
                handle.write(encoded)
                handle.flush()
                os.fsync(handle.fileno())

    def _indexed_path(self, index: int) -> Path:
        if index == 0:
            return self.path
        suffix = self.path.suffix
        base = self.path.name[: -len(suffix)] if suffix else self.path.name
        return self.path.with_name(f"{base}.{index}{suffix}")

    def _rotate_if_needed(self, incoming_len: int) -> None:
        if self.backup_count <= 0 or self.max_bytes <= 0 or not self.path.exists():
            return
        if self.path.stat().st_size + incoming_len <= self.max_bytes:
            return
        oldest = self._indexed_path(self.backup_count)
        if oldest.exists():
            self._archive(oldest)
        for idx in range(self.backup_count, 0, -1):
            src = self._indexed_path(idx - 1)
            if src.exists():
                os.replace(src, self._indexed_path(idx))

    def _archive(self, path: Path) -> None:
        archive_dir = self.path.parent / "archive"
        archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = _dt.datetime.now(tz=_dt.timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = archive_dir / f"{path.name}.{stamp}.gz"
        with path.open("rb") as src, gzip.open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
        path.unlink()
        LOG.info("[log_utils] archived %s -> %s", path, target)


def get_logger(path: str | Path, max_bytes: int = 10_000_000, backup_count: int = 5) -> JsonlLogger:
    """Return the shared logger for ``path``; relative paths land under :func:`log_dir`."""
    target = Path(path)
    if not target.is_absolute():
        target = log_dir() / target
    key = str(target)
    with _LOGGERS_LOCK:
        logger = _LOGGERS.get(key)
        if logger is None:
            logger = JsonlLogger(target, max_bytes=max_bytes, backup_count=backup_count)
            _LOGGERS[key] = logger
        return logger


def reset_loggers() -> None:
    with _LOGGERS_LOCK:
        _LOGGERS.clear()


def log_event(stream: str | JsonlLogger, event_type: str, payload: Mapping[str, Any] | None) -> None:
    """Write ``payload`` to ``stream`` stamped with ts/event_type/pid/hostname.

    A failing event log never takes the caller down; the failure is reported on
    the module logger instead.
    """
    logger = stream if isinstance(stream, JsonlLogger) else get_logger(stream)
    event: MutableMapping[str, Any] = safe_dump(payload or {})
    event.update(
        {
            "ts": utc_now().isoformat(),
            "event_type": event_type,
            "pid": os.getpid(),
            "hostname": _HOSTNAME,
        }
    )
    try:
        logger.write(event)
    except OSError as exc:
        LOG.warning("[log_utils] write failed path=%s event=%s err=%s", logger.path, event_type, exc)


def append_jsonl(path: Path, record: Mapping[str, Any] | None) -> None:
    """Append one record to ``path`` without rotation, creating parents if needed."""
    line = json.dumps(safe_dump(record or {}), ensure_ascii=False)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{line}\n")
        handle.flush()
        os.fsync(handle.fileno())


def read_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield dict rows of ``path``; blank and corrupt lines are skipped."""
    if not path.exists():
        return
    with path.open("r", encoding="utf-8") as handle:
        for lineno, raw in enumerate(handle, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                LOG.warning("[log_utils] skipping corrupt line %s:%d", path, lineno)
                continue
            if isinstance(row, dict):
                yield row


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


def safe_dump(obj: Any) -> MutableMapping[str, Any]:
    """Return a dict that can be JSON-serialized by coercing complex objects."""

    def coerce(value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, enum.Enum):
            return coerce(value.value)
        if isinstance(value, Mapping):
            return {str(k): coerce(v) for k, v in value.items()}
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return coerce(dataclasses.asdict(value))
        if isinstance(value, (list, tuple, set, frozenset)):
            return [coerce(v) for v in value]
        if isinstance(value, _dt.datetime):
            item = value if value.tzinfo else value.replace(tzinfo=_dt.timezone.utc)
            return item.astimezone(_dt.timezone.utc).isoformat()
        if isinstance(value, _dt.date):
            return value.isoformat()
        if isinstance(value, BaseException):
            return f"{type(value).__name__}: {value}"
        if hasattr(value, "__dict__"):
            return {str(k): coerce(v) for k, v in vars(value).items()}
        return repr(value)

    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return {str(k): coerce(v) for k, v in obj.items()}
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return safe_dump(dataclasses.asdict(obj))
    if hasattr(obj, "__dict__"):
        return safe_dump(vars(obj))
    return {"value": coerce(obj)}


__all__ = [
    "JsonlLogger",
    "get_logger",
    "reset_loggers",
    "log_event",
    "append_jsonl",
    "read_jsonl",
    "log_dir",
    "utc_now",
    "safe_dump",
]
