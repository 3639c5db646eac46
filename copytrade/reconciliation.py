"""Per-agent reconciliation gate.

Before a follow cycle trades, the brokerage's actual book is compared with the
book the previous cycle left behind. A mismatch beyond tolerance blocks the
agent until an operator resolves it:

    Clean --divergence--> NeedsConfirmation --resolve--> Resolved(action)
    Resolved(trust_actual | rebuild_history) --clean check--> Clean
    Resolved(abort) stays blocked until resolved with another action.

With a ledger attached, every transition and expected book is written to it and
restored on start, so a restart does not re-adopt the account as a new baseline.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from copytrade.errors import NotFoundError
from copytrade.log_utils import log_event, utc_now
from copytrade.models import Position, ResolutionAction
from copytrade.order_ledger import OrderHistoryLedger

LOG = logging.getLogger("copytrade.reconciliation")

EVENT_LOG = "reconciliation.jsonl"


@dataclass(frozen=True)
class Divergence:
    key: str
    symbol: str
    kind: str  # missing | unexpected | quantity | entry_price
    expected_qty: float = 0.0
    actual_qty: float = 0.0
    expected_entry: float = 0.0
    actual_entry: float = 0.0
    deviation: Optional[float] = None


@dataclass(frozen=True)
class Clean:
    since: _dt.datetime


@dataclass(frozen=True)
class NeedsConfirmation:
    detected_at: _dt.datetime
    divergences: Tuple[Divergence, ...]


@dataclass(frozen=True)
class Resolved:
    action: ResolutionAction
    resolved_at: _dt.datetime


ReconciliationState = Union[Clean, NeedsConfirmation, Resolved]


@dataclass(frozen=True)
class GateDecision:
    agent_id: str
    proceed: bool
    state: ReconciliationState
    divergences: Tuple[Divergence, ...] = ()

    @property
    def blocked(self) -> bool:
        return not self.proceed


def state_name(state: ReconciliationState) -> str:
    if isinstance(state, Resolved):
        return f"resolved:{state.action.value}"
    return "needs_confirmation" if isinstance(state, NeedsConfirmation) else "clean"


def _relative(expected: float, actual: float) -> float:
    if expected == 0:
        return 0.0 if actual == 0 else float("inf")
    return abs(actual - expected) / abs(expected)


def _book(positions: Sequence[Position]) -> Dict[str, Position]:
    return {p.key: p for p in positions if p.quantity > 0}


def detect_divergences(
    expected: Mapping[str, Position], actual: Sequence[Position], tolerance: float
) -> List[Divergence]:
    """Positions whose quantity or entry price moved more than ``tolerance`` (relative),
    plus positions present on one side only."""
    observed = _book(actual)
    out: List[Divergence] = []
    for key in sorted(set(expected) | set(observed)):
        exp = expected.get(key)
        act = observed.get(key)
        if act is None:
            out.append(Divergence(key, exp.symbol, "missing", exp.quantity, 0.0, exp.entry_price, 0.0))
            continue
        if exp is None:
            out.append(Divergence(key, act.symbol, "unexpected", 0.0, act.quantity, 0.0, act.entry_price))
            continue
        qty_dev = _relative(exp.quantity, act.quantity)
        if qty_dev > tolerance:
            out.append(
                Divergence(key, act.symbol, "quantity", exp.quantity, act.quantity, exp.entry_price, act.entry_price, qty_dev)
            )
            continue
        if exp.entry_price > 0 and act.entry_price > 0:
            px_dev = _relative(exp.entry_price, act.entry_price)
            if px_dev > tolerance:
                out.append(
                    Divergence(key, act.symbol, "entry_price", exp.quantity, act.quantity, exp.entry_price, act.entry_price, px_dev)
                )
    return out


def _position_row(pos: Position) -> Dict[str, Any]:
    return {
        "symbol": pos.symbol,
        "side": pos.side.value,
        "quantity": pos.quantity,
        "leverage": pos.leverage,
        "entry_price": pos.entry_price,
        "margin_type": pos.margin_type.value if pos.margin_type else None,
    }


def _state_row(state: ReconciliationState) -> Dict[str, Any]:
    if isinstance(state, Resolved):
        return {"name": "resolved", "action": state.action.value, "at": state.resolved_at.isoformat()}
    if isinstance(state, NeedsConfirmation):
        return {
            "name": "needs_confirmation",
            "at": state.detected_at.isoformat(),
            "divergences": [asdict(d) for d in state.divergences],
        }
    return {"name": "clean", "at": state.since.isoformat()}


def _state_from_row(row: Mapping[str, Any]) -> ReconciliationState:
    name = row["name"]
    at = _dt.datetime.fromisoformat(row["at"])
    if name == "resolved":
        return Resolved(ResolutionAction.parse(row["action"]), at)
    if name == "needs_confirmation":
        return NeedsConfirmation(at, tuple(Divergence(**d) for d in row.get("divergences") or ()))
    if name == "clean":
        return Clean(at)
    raise ValueError(f"unknown gate state {name!r}")


@dataclass
class _AgentBook:
    state: ReconciliationState
    expected: Dict[str, Position] = field(default_factory=dict)


class ReconciliationGate:
    def __init__(
        self,
        tolerance: float = 0.05,
        ledger: Optional[OrderHistoryLedger] = None,
        clock: Callable[[], _dt.datetime] = utc_now,
    ) -> None:
        self.tolerance = float(tolerance)
        self._ledger = ledger
        self._clock = clock
        self._lock = threading.Lock()
        self._agents: Dict[str, _AgentBook] = {}
        if ledger is not None:
            self._restore(ledger)

    def check(self, agent_id: str, actual_positions: Sequence[Position]) -> GateDecision:
        with self._lock:
            book = self._agents.get(agent_id)
            if book is None:
                # nothing recorded yet: the observed account is the baseline
                book = _AgentBook(state=Clean(self._clock()), expected=_book(actual_positions))
                self._agents[agent_id] = book
                self._save(agent_id, book)
                self._emit(agent_id, "baseline_adopted", book.state, positions=len(book.expected))
                return GateDecision(agent_id, True, book.state)

            state = book.state
            if isinstance(state, NeedsConfirmation):
                return GateDecision(agent_id, False, state, state.divergences)
            if isinstance(state, Resolved) and state.action is ResolutionAction.ABORT:
                return GateDecision(agent_id, False, state)

            divergences = tuple(detect_divergences(book.expected, actual_positions, self.tolerance))
            if divergences:
                book.state = NeedsConfirmation(self._clock(), divergences)
                self._save(agent_id, book)
                LOG.warning(
                    "[reconcile] agent=%s blocked: %d divergent position(s) %s",
                    agent_id,
                    len(divergences),
                    ", ".join(f"{d.key}:{d.kind}" for d in divergences),
                )
                self._emit(agent_id, "divergence_detected", book.state, divergences=divergences)
                return GateDecision(agent_id, False, book.state, divergences)

            if isinstance(state, Resolved):
                book.state = Clean(self._clock())
                self._save(agent_id, book)
                self._emit(agent_id, "clean", book.state, previous=state_name(state))
            return GateDecision(agent_id, True, book.state)

    def resolve(
        self, agent_id: str, action: ResolutionAction | str, actual_positions: Sequence[Position]
    ) -> ReconciliationState:
        resolution = ResolutionAction.parse(action)
        with self._lock:
            book = self._agents.get(agent_id)
            if book is None:
                raise NotFoundError(f"no reconciliation state for agent {agent_id!r}")
            previous = book.state
            if resolution is ResolutionAction.REBUILD_HISTORY and self._ledger is not None:
                self._ledger.rebase(agent_id, actual_positions)
            if resolution is not ResolutionAction.ABORT:
                book.expected = _book(actual_positions)
            book.state = Resolved(resolution, self._clock())
            self._save(agent_id, book)
            LOG.info("[reconcile] agent=%s resolved with %s (was %s)", agent_id, resolution.value, state_name(previous))
            self._emit(agent_id, "resolved", book.state, previous=state_name(previous), positions=len(actual_positions))
            return book.state

    def record_expected(self, agent_id: str, positions: Sequence[Position]) -> None:
        """Remember the book a cycle is expected to leave on the account."""
        with self._lock:
            book = self._agents.get(agent_id)
            if book is None:
                book = _AgentBook(state=Clean(self._clock()), expected=_book(positions))
                self._agents[agent_id] = book
            else:
                book.expected = _book(positions)
            self._save(agent_id, book)

    def state(self, agent_id: str) -> ReconciliationState:
        with self._lock:
            book = self._agents.get(agent_id)
            if book is None:
                raise NotFoundError(f"no reconciliation state for agent {agent_id!r}")
            return book.state

    def expected(self, agent_id: str) -> List[Position]:
        with self._lock:
            book = self._agents.get(agent_id)
            return list(book.expected.values()) if book is not None else []

    def pending(self) -> Dict[str, NeedsConfirmation]:
        with self._lock:
            return {a: b.state for a, b in self._agents.items() if isinstance(b.state, NeedsConfirmation)}

    def _save(self, agent_id: str, book: _AgentBook) -> None:
        if self._ledger is None:
            return
        snapshot = {"state": _state_row(book.state), "expected": [_position_row(p) for p in book.expected.values()]}
        self._ledger.record_gate(agent_id, snapshot)

    def _restore(self, ledger: OrderHistoryLedger) -> None:
        for agent_id, snap in ledger.gate_snapshots().items():
            try:
                state = _state_from_row(snap["state"])
                expected = _book([Position(**row) for row in snap.get("expected") or ()])
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("[reconcile] agent=%s stored gate state unreadable, ignoring: %s", agent_id, exc)
                continue
            self._agents[agent_id] = _AgentBook(state=state, expected=expected)
            LOG.info("[reconcile] agent=%s restored %s with %d expected position(s)", agent_id, state_name(state), len(expected))

    def _emit(self, agent_id: str, event: str, state: ReconciliationState, **extra) -> None:
        log_event(EVENT_LOG, event, {"agent_id": agent_id, "state": state_name(state), **extra})


__all__ = [
    "EVENT_LOG",
    "Divergence",
    "Clean",
    "NeedsConfirmation",
    "Resolved",
    "ReconciliationState",
    "GateDecision",
    "state_name",
    "detect_divergences",
    "ReconciliationGate",
]
