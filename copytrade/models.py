from __future__ import annotations

import dataclasses
import datetime as _dt
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from copytrade.errors import PartialExecutionFailure, ValidationError

MIN_INTERVAL_SECONDS = 5


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG

    @classmethod
    def parse(cls, value: Any) -> "Side":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(f"side must be LONG or SHORT, got {value!r}") from None


class MarginType(str, Enum):
    ISOLATED = "ISOLATED"
    CROSSED = "CROSSED"

    @classmethod
    def parse(cls, value: Any) -> "MarginType":
        if isinstance(value, cls):
            return value
        raw = str(value or "").upper()
        if raw == "CROSS":
            raw = "CROSSED"
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(f"margin_type must be ISOLATED or CROSSED, got {value!r}") from None


class IntentKind(str, Enum):
    OPEN = "OPEN"
    INCREASE = "INCREASE"
    REDUCE = "REDUCE"
    CLOSE = "CLOSE"


class ResolutionAction(str, Enum):
    TRUST_ACTUAL = "trust_actual"
    REBUILD_HISTORY = "rebuild_history"
    ABORT = "abort"

    @classmethod
    def parse(cls, value: Any) -> "ResolutionAction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            allowed = ", ".join(a.value for a in cls)
            raise ValidationError(f"unknown resolution action {value!r} (expected one of {allowed})") from None


class ExecutionStatus(str, Enum):
    BLOCKED = "blocked"
    RISK_ONLY = "risk_only"
    EXECUTED = "executed"
    PARTIAL = "partial"
    FAILED = "failed"
    NOOP = "noop"


def position_key(symbol: str, side: Side | str) -> str:
    return f"{str(symbol).upper()}:{Side.parse(side).value}"


@dataclass(frozen=True)
class Position:
    """A position as reported by the brokerage or the followed agent."""

    symbol: str
    side: Side
    quantity: float
    leverage: int = 1
    entry_price: float = 0.0
    current_price: float = 0.0
    margin: float = 0.0
    unrealized_pnl: float = 0.0
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    margin_type: Optional[MarginType] = None
    entry_ref: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "symbol", str(self.symbol).upper())
        object.__setattr__(self, "side", Side.parse(self.side))
        if self.margin_type is not None:
            object.__setattr__(self, "margin_type", MarginType.parse(self.margin_type))
        if not self.symbol:
            raise ValidationError("position symbol must be non-empty")
        if not math.isfinite(self.quantity) or self.quantity < 0:
            raise ValidationError(f"{self.symbol}: quantity must be >= 0, got {self.quantity}")
        if int(self.leverage) < 1:
            raise ValidationError(f"{self.symbol}: leverage must be a positive integer, got {self.leverage}")
        object.__setattr__(self, "leverage", int(self.leverage))

    @property
    def key(self) -> str:
        return position_key(self.symbol, self.side)

    @property
    def mark_price(self) -> float:
        return self.current_price or self.entry_price

    def required_margin(self) -> float:
        """Margin backing the position; derived from entry notional when not reported."""
        if self.margin > 0:
            return self.margin
        return abs(self.quantity * self.entry_price) / max(self.leverage, 1)


@dataclass(frozen=True)
class FollowOptions:
    price_tolerance: float = 0.01
    total_margin: float = 50.0
    profit_target: Optional[float] = None
    auto_refollow: bool = False
    margin_type: MarginType = MarginType.CROSSED
    risk_only: bool = True
    max_leverage: int = 20
    symbol_tolerances: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "margin_type", MarginType.parse(self.margin_type))
        _check_fraction("price_tolerance", self.price_tolerance)
        if not _is_number(self.total_margin) or self.total_margin < 0:
            raise ValidationError(f"total_margin must be >= 0, got {self.total_margin!r}")
        if self.profit_target is not None:
            if not _is_number(self.profit_target) or self.profit_target <= 0:
                raise ValidationError(f"profit_target must be a positive fraction, got {self.profit_target!r}")
        if isinstance(self.max_leverage, bool) or not isinstance(self.max_leverage, int) or self.max_leverage < 1:
            raise ValidationError(f"max_leverage must be a positive integer, got {self.max_leverage!r}")
        for flag in ("auto_refollow", "risk_only"):
            if not isinstance(getattr(self, flag), bool):
                raise ValidationError(f"{flag} must be a boolean")
        overrides: Dict[str, float] = {}
        for symbol, tol in dict(self.symbol_tolerances or {}).items():
            _check_fraction(f"symbol_tolerances[{symbol}]", tol)
            overrides[str(symbol).upper()] = float(tol)
        object.__setattr__(self, "symbol_tolerances", overrides)

    def tolerance_for(self, symbol: str) -> float:
        return self.symbol_tolerances.get(str(symbol).upper(), self.price_tolerance)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, base: "FollowOptions | None" = None) -> "FollowOptions":
        """Build options from API/config input; camelCase and snake_case keys both work.

        Keys missing from ``data`` keep the value from ``base`` (or the defaults).
        """
        if data is not None and not isinstance(data, Mapping):
            raise ValidationError("options must be a mapping")
        merged: Dict[str, Any] = dataclasses.asdict(base) if base is not None else {}
        known = {f.name for f in dataclasses.fields(cls)}
        for raw_key, value in (data or {}).items():
            key = _OPTION_ALIASES.get(raw_key, raw_key)
            if key not in known:
                raise ValidationError(f"unknown option {raw_key!r}")
            merged[key] = value
        return cls(**merged)

    def merged(self, updates: Mapping[str, Any] | None) -> "FollowOptions":
        return FollowOptions.from_mapping(updates or {}, base=self)

    def to_dict(self) -> Dict[str, Any]:
        out = dataclasses.asdict(self)
        out["margin_type"] = self.margin_type.value
        return out


_OPTION_ALIASES = {
    "priceTolerance": "price_tolerance",
    "totalMargin": "total_margin",
    "profitTarget": "profit_target",
    "autoRefollow": "auto_refollow",
    "marginType": "margin_type",
    "riskOnly": "risk_only",
    "maxLeverage": "max_leverage",
    "symbolTolerances": "symbol_tolerances",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _check_fraction(name: str, value: Any) -> None:
    if not _is_number(value) or not 0 < value <= 1:
        raise ValidationError(f"{name} must be a fraction in (0, 1], got {value!r}")


def validate_interval(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"interval_seconds must be a whole number of seconds, got {value!r}")
    if value < MIN_INTERVAL_SECONDS:
        raise ValidationError(f"interval_seconds must be >= {MIN_INTERVAL_SECONDS}, got {value}")
    return value


def validate_agent_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("agent_id must be a non-empty string")
    return value.strip()


@dataclass
class Task:
    """A recurring follow job. Mutated only through the task registry."""

    id: str
    agent_id: str
    options: FollowOptions
    interval_seconds: int
    enabled: bool = False
    created_at: _dt.datetime = field(default_factory=_utc_now)
    last_executed_at: Optional[_dt.datetime] = None
    execution_count: int = 0
    user_id: Optional[str] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None

    def snapshot(self) -> "Task":
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "options": self.options.to_dict(),
            "interval_seconds": self.interval_seconds,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "last_executed_at": self.last_executed_at.isoformat() if self.last_executed_at else None,
            "execution_count": self.execution_count,
            "user_id": self.user_id,
            "last_status": self.last_status,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Task":
        last = data.get("last_executed_at")
        return cls(
            id=str(data["id"]),
            agent_id=validate_agent_id(data.get("agent_id")),
            options=FollowOptions.from_mapping(data.get("options") or {}),
            interval_seconds=validate_interval(data.get("interval_seconds")),
            enabled=bool(data.get("enabled", False)),
            created_at=_dt.datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utc_now(),
            last_executed_at=_dt.datetime.fromisoformat(last) if last else None,
            execution_count=int(data.get("execution_count") or 0),
            user_id=data.get("user_id"),
            last_status=data.get("last_status"),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class OrderIntent:
    symbol: str
    kind: IntentKind
    position_side: Side
    quantity: float
    leverage: int
    reference_price: float
    margin_type: MarginType
    reason: str = "rebalance"
    weight: float = 0.0
    requested_leverage: Optional[int] = None

    @property
    def reduce_only(self) -> bool:
        return self.kind in (IntentKind.REDUCE, IntentKind.CLOSE)

    @property
    def order_side(self) -> str:
        buy = self.position_side is Side.LONG
        if self.reduce_only:
            buy = not buy
        return "BUY" if buy else "SELL"

    @property
    def leverage_clamped(self) -> bool:
        return self.requested_leverage is not None and self.requested_leverage > self.leverage

    def margin(self, price: Optional[float] = None) -> float:
        """Margin this intent commits; reduce-only intents commit none."""
        if self.reduce_only:
            return 0.0
        px = price if price else self.reference_price
        return abs(self.quantity * px) / max(self.leverage, 1)


@dataclass(frozen=True)
class Fill:
    order_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    realized_pnl: float = 0.0
    fee: float = 0.0
    status: str = "FILLED"
    dry_run: bool = False
    ts: _dt.datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class RiskVerdict:
    accepted: bool
    reason: Optional[str] = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def accept(cls) -> "RiskVerdict":
        return cls(True)

    @classmethod
    def reject(cls, reason: str, **detail: Any) -> "RiskVerdict":
        return cls(False, reason, detail)


@dataclass
class DiffRow:
    """One symbol of the target-vs-actual comparison."""

    symbol: str
    action: str
    target_side: Optional[Side] = None
    target_qty: float = 0.0
    desired_qty: float = 0.0
    actual_side: Optional[Side] = None
    actual_qty: float = 0.0
    price_drift: Optional[float] = None
    note: Optional[str] = None


@dataclass
class IntentOutcome:
    intent: OrderIntent
    status: str
    verdict: Optional[RiskVerdict] = None
    fill: Optional[Fill] = None
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    agent_id: str
    status: ExecutionStatus
    diff: List[DiffRow] = field(default_factory=list)
    outcomes: List[IntentOutcome] = field(default_factory=list)
    gate: Any = None
    started_at: _dt.datetime = field(default_factory=_utc_now)
    finished_at: Optional[_dt.datetime] = None

    @property
    def intents(self) -> List[OrderIntent]:
        return [o.intent for o in self.outcomes]

    @property
    def submitted(self) -> List[OrderIntent]:
        """Intents actually sent to the brokerage."""
        return [o.intent for o in self.outcomes if o.status in ("executed", "failed")]

    @property
    def fills(self) -> List[Fill]:
        return [o.fill for o in self.outcomes if o.fill is not None]

    @property
    def summary(self) -> Dict[str, int]:
        counts = {"total": len(self.outcomes), "executed": 0, "rejected": 0, "failed": 0, "risk_only": 0, "skipped": 0}
        for outcome in self.outcomes:
            key = outcome.status.replace("-", "_")
            counts[key] = counts.get(key, 0) + 1
        return counts

    def raise_for_status(self) -> None:
        if self.status in (ExecutionStatus.PARTIAL, ExecutionStatus.FAILED):
            raise PartialExecutionFailure(self)


__all__ = [
    "MIN_INTERVAL_SECONDS",
    "Side",
    "MarginType",
    "IntentKind",
    "ResolutionAction",
    "ExecutionStatus",
    "position_key",
    "Position",
    "FollowOptions",
    "validate_interval",
    "validate_agent_id",
    "Task",
    "OrderIntent",
    "Fill",
    "RiskVerdict",
    "DiffRow",
    "IntentOutcome",
    "ExecutionResult",
]
