from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from copytrade.capital_allocator import Allocation, allocate, round_quantity
from copytrade.errors import CredentialError, TransientExecutionError, VenueRejectedError
from copytrade.log_utils import log_event, utc_now
from copytrade.models import (
    DiffRow,
    ExecutionResult,
    ExecutionStatus,
    Fill,
    FollowOptions,
    IntentKind,
    IntentOutcome,
    MarginType,
    OrderIntent,
    Position,
    Side,
)
from copytrade.order_ledger import OrderHistoryLedger
from copytrade.reconciliation import ReconciliationGate
from copytrade.risk_manager import RiskManager

LOGGER = logging.getLogger("copytrade.executor")

ORDERS_LOG = "orders_executed.jsonl"
CYCLES_LOG = "follow_cycles.jsonl"

REASON_PROFIT = "profit_target"
REASON_REFOLLOW = "refollow"
REASON_STOP_LOSS = "stop_loss"
REASON_TAKE_PROFIT = "take_profit"


class Brokerage(Protocol):
    def get_positions(self) -> List[Position]: ...

    def place_order(self, intent: OrderIntent) -> Fill: ...


def entry_ref(pos: Position) -> str:
    """Identity of the agent's entry; a new entry means a new position to follow."""
    return pos.entry_ref or f"{pos.side.value}@{pos.entry_price:g}"


def exit_trigger(target: Position, mark: float) -> Optional[str]:
    """``stop_loss`` / ``take_profit`` when ``mark`` has crossed that level of the target."""
    if mark <= 0:
        return None
    long = target.side is Side.LONG
    stop, take = target.stop_loss, target.take_profit
    if stop and (mark <= stop if long else mark >= stop):
        return REASON_STOP_LOSS
    if take and (mark >= take if long else mark <= take):
        return REASON_TAKE_PROFIT
    return None


@dataclass
class _Plan:
    diff: List[DiffRow] = field(default_factory=list)
    intents: List[OrderIntent] = field(default_factory=list)
    market: Dict[str, float] = field(default_factory=dict)
    committed: float = 0.0
    profit_exits: Dict[str, Tuple[str, float]] = field(default_factory=dict)


class FollowExecutor:
    """Turn an agent's target book into orders on our account.

    One ``run`` is one follow cycle: gate check, diff, budget and leverage
    policy, profit-target exits, risk validation, order placement and ledger
    writes. Orders already placed are never rolled back; each intent's outcome
    is reported on its own.
    """

    def __init__(
        self,
        broker: Brokerage,
        gate: ReconciliationGate,
        ledger: OrderHistoryLedger,
        risk: Optional[RiskManager] = None,
        *,
        quantity_tolerance: float = 0.01,
    ) -> None:
        self._broker = broker
        self._gate = gate
        self._ledger = ledger
        self._risk = risk or RiskManager()
        self.quantity_tolerance = float(quantity_tolerance)

    def run(self, agent_id: str, target_positions: Sequence[Position], options: FollowOptions) -> ExecutionResult:
        result = ExecutionResult(agent_id=agent_id, status=ExecutionStatus.NOOP)
        actual = [p for p in self._broker.get_positions() if p.quantity > 0]
        decision = self._gate.check(agent_id, actual)
        result.gate = decision
        if decision.blocked:
            LOGGER.warning("[executor] agent=%s blocked at reconciliation gate", agent_id)
            return self._finish(result, ExecutionStatus.BLOCKED)

        plan = self._plan(agent_id, target_positions, actual, options)
        result.diff = plan.diff

        if options.risk_only:
            committed = plan.committed
            for intent in plan.intents:
                verdict = self._risk.validate(
                    intent, options, plan.market.get(intent.symbol), committed, agent_id=agent_id
                )
                if verdict.accepted:
                    committed += intent.margin(plan.market.get(intent.symbol))
                result.outcomes.append(IntentOutcome(intent, "risk-only", verdict=verdict))
            return self._finish(result, ExecutionStatus.RISK_ONLY)

        projected = {p.key: p for p in actual}
        try:
            self._execute(agent_id, plan, options, result, projected)
        finally:
            self._gate.record_expected(agent_id, list(projected.values()))
        executed = result.summary["executed"]
        failed = result.summary["failed"]
        if failed and executed:
            status = ExecutionStatus.PARTIAL
        elif failed:
            status = ExecutionStatus.FAILED
        elif executed:
            status = ExecutionStatus.EXECUTED
        else:
            status = ExecutionStatus.NOOP
        return self._finish(result, status)

    # -- planning -------------------------------------------------------------
    def _plan(
        self,
        agent_id: str,
        targets: Sequence[Position],
        actual: Sequence[Position],
        options: FollowOptions,
    ) -> _Plan:
        plan = _Plan()
        target_by_symbol: Dict[str, Position] = {}
        for pos in targets:
            if pos.quantity <= 0:
                continue
            if pos.symbol in target_by_symbol:
                LOGGER.warning("[executor] agent=%s duplicate target for %s ignored", agent_id, pos.symbol)
                continue
            target_by_symbol[pos.symbol] = pos
            if pos.current_price > 0:
                plan.market[pos.symbol] = pos.current_price
        held: Dict[str, List[Position]] = {}
        for pos in actual:
            held.setdefault(pos.symbol, []).append(pos)
            plan.market.setdefault(pos.symbol, pos.current_price or pos.entry_price)

        closing: List[OrderIntent] = []
        opening: List[OrderIntent] = []
        excluded = set()

        # profit-taking first; it overrides rebalancing for the symbol
        if options.profit_target is not None:
            for symbol, positions in held.items():
                target = target_by_symbol.get(symbol)
                for pos in positions:
                    if target is None or target.side is not pos.side:
                        continue
                    margin = pos.required_margin()
                    if margin <= 0:
                        continue
                    pnl_pct = (self._ledger.realized_pnl(agent_id, symbol) + pos.unrealized_pnl) / margin
                    if pnl_pct < options.profit_target:
                        continue
                    closing.append(self._close_intent(pos, REASON_PROFIT))
                    plan.profit_exits[symbol] = (entry_ref(target), pnl_pct)
                    excluded.add(symbol)
                    plan.diff.append(
                        DiffRow(
                            symbol,
                            "profit_exit",
                            target_side=target.side,
                            target_qty=target.quantity,
                            actual_side=pos.side,
                            actual_qty=pos.quantity,
                            note=f"pnl {pnl_pct:.2%} >= target {options.profit_target:.2%}",
                        )
                    )

        # the agent's own exit plan; nothing is (re)opened past its levels
        for symbol, target in target_by_symbol.items():
            if symbol in excluded:
                continue
            same_side = [p for p in held.get(symbol, []) if p.side is target.side]
            # our own mark wins when we hold the position
            mark = same_side[0].current_price if same_side and same_side[0].current_price > 0 else plan.market.get(symbol, 0.0)
            trigger = exit_trigger(target, mark)
            if trigger is None:
                continue
            excluded.add(symbol)
            for pos in same_side:
                closing.append(self._close_intent(pos, trigger))
            plan.diff.append(
                DiffRow(
                    symbol,
                    "exit" if same_side else "suppressed",
                    target_side=target.side,
                    target_qty=target.quantity,
                    actual_side=same_side[0].side if same_side else None,
                    actual_qty=same_side[0].quantity if same_side else 0.0,
                    note=f"{trigger} at mark {mark:g}",
                )
            )
            LOGGER.info("[executor] agent=%s %s %s triggered at mark %s", agent_id, symbol, trigger, mark)

        refollow = set()
        for symbol, target in target_by_symbol.items():
            if symbol in excluded:
                continue
            exit_ = self._ledger.profit_exit(agent_id, symbol)
            if exit_ is None:
                continue
            if options.auto_refollow or exit_.entry_ref != entry_ref(target):
                refollow.add(symbol)
                continue
            excluded.add(symbol)
            plan.diff.append(
                DiffRow(
                    symbol,
                    "suppressed",
                    target_side=target.side,
                    target_qty=target.quantity,
                    note="closed at profit target; waiting for a new agent entry",
                )
            )

        followed = [t for s, t in target_by_symbol.items() if s not in excluded]
        desired: Dict[str, Allocation] = {a.symbol: a for a in allocate(followed, options)}
        priority = {a.symbol: idx for idx, a in enumerate(desired.values())}

        profit_closed = {(i.symbol, i.position_side) for i in closing}
        for symbol in sorted(set(desired) | set(held), key=lambda s: (priority.get(s, -1), s)):
            alloc = desired.get(symbol)
            target = target_by_symbol.get(symbol)
            same_side: Optional[Position] = None
            for pos in held.get(symbol, []):
                if (symbol, pos.side) in profit_closed:
                    continue
                if alloc is not None and alloc.desired_qty > 0 and pos.side is alloc.side:
                    same_side = pos
                    continue
                if alloc is None:
                    reason = "suppressed" if symbol in excluded else "not_in_target"
                else:
                    reason = "flip" if alloc.desired_qty > 0 else "below_budget"
                closing.append(self._close_intent(pos, reason))
                plan.diff.append(
                    DiffRow(
                        symbol,
                        "close",
                        target_side=target.side if target else None,
                        target_qty=target.quantity if target else 0.0,
                        desired_qty=alloc.desired_qty if alloc else 0.0,
                        actual_side=pos.side,
                        actual_qty=pos.quantity,
                        note=reason,
                    )
                )
            if alloc is None or alloc.desired_qty <= 0 or target is None:
                continue

            row = DiffRow(
                symbol,
                "hold",
                target_side=target.side,
                target_qty=target.quantity,
                desired_qty=alloc.desired_qty,
                actual_side=same_side.side if same_side else None,
                actual_qty=same_side.quantity if same_side else 0.0,
                price_drift=self._price_drift(target),
            )
            if row.price_drift is not None and row.price_drift > options.tolerance_for(symbol):
                row.note = "entry drift beyond price tolerance"
            plan.diff.append(row)

            reason = REASON_REFOLLOW if symbol in refollow else "rebalance"
            if same_side is None:
                row.action = "open"
                opening.append(self._open_intent(IntentKind.OPEN, target, alloc, alloc.desired_qty, options, reason))
                continue

            plan.committed += abs(min(same_side.quantity, alloc.desired_qty) * alloc.price) / alloc.leverage
            gap = alloc.desired_qty - same_side.quantity
            if abs(gap) / alloc.desired_qty <= self.quantity_tolerance:
                continue
            qty = round_quantity(symbol, abs(gap))
            if qty <= 0:
                continue
            if gap > 0:
                row.action = "increase"
                opening.append(
                    self._open_intent(IntentKind.INCREASE, target, alloc, qty, options, reason, held=same_side)
                )
            else:
                row.action = "reduce"
                closing.append(self._close_intent(same_side, "rebalance", kind=IntentKind.REDUCE, quantity=qty))

        plan.intents = closing + opening
        return plan

    @staticmethod
    def _price_drift(target: Position) -> Optional[float]:
        if target.entry_price <= 0 or target.current_price <= 0:
            return None
        return abs(target.current_price - target.entry_price) / target.entry_price

    @staticmethod
    def _close_intent(
        pos: Position, reason: str, kind: IntentKind = IntentKind.CLOSE, quantity: Optional[float] = None
    ) -> OrderIntent:
        return OrderIntent(
            symbol=pos.symbol,
            kind=kind,
            position_side=pos.side,
            quantity=pos.quantity if quantity is None else quantity,
            leverage=pos.leverage,
            reference_price=pos.mark_price,
            margin_type=pos.margin_type or MarginType.CROSSED,
            reason=reason,
        )

    @staticmethod
    def _open_intent(
        kind: IntentKind,
        target: Position,
        alloc: Allocation,
        quantity: float,
        options: FollowOptions,
        reason: str,
        held: Optional[Position] = None,
    ) -> OrderIntent:
        margin_type = held.margin_type if held is not None and held.margin_type is not None else options.margin_type
        return OrderIntent(
            symbol=target.symbol,
            kind=kind,
            position_side=target.side,
            quantity=quantity,
            leverage=alloc.leverage,
            reference_price=target.entry_price or alloc.price,
            margin_type=margin_type,
            reason=reason,
            weight=alloc.weight,
            requested_leverage=alloc.requested_leverage,
        )

    # -- execution ------------------------------------------------------------
    def _execute(
        self,
        agent_id: str,
        plan: _Plan,
        options: FollowOptions,
        result: ExecutionResult,
        projected: Dict[str, Position],
    ) -> None:
        committed = plan.committed
        for idx, intent in enumerate(plan.intents):
            market = plan.market.get(intent.symbol)
            verdict = self._risk.validate(intent, options, market, committed, agent_id=agent_id)
            if not verdict.accepted:
                result.outcomes.append(IntentOutcome(intent, "rejected", verdict=verdict, error=verdict.reason))
                continue
            try:
                fill = self._broker.place_order(intent)
            except CredentialError as exc:
                LOGGER.error("[executor] agent=%s credential failure on %s: %s", agent_id, intent.symbol, exc)
                result.outcomes.append(IntentOutcome(intent, "failed", verdict=verdict, error=str(exc)))
                for rest in plan.intents[idx + 1:]:
                    result.outcomes.append(IntentOutcome(rest, "skipped", error="aborted: credential failure"))
                self._finish(result, ExecutionStatus.FAILED)
                exc.result = result
                raise
            except (TransientExecutionError, VenueRejectedError) as exc:
                LOGGER.warning(
                    "[executor] agent=%s %s %s failed: %s", agent_id, intent.kind.value, intent.symbol, exc
                )
                result.outcomes.append(IntentOutcome(intent, "failed", verdict=verdict, error=str(exc)))
                continue

            self._ledger.append(agent_id, intent, fill)
            result.outcomes.append(IntentOutcome(intent, "executed", verdict=verdict, fill=fill))
            committed += intent.margin(market)
            log_event(
                ORDERS_LOG,
                "order_executed",
                {
                    "agent_id": agent_id,
                    "symbol": intent.symbol,
                    "kind": intent.kind,
                    "side": intent.order_side,
                    "position_side": intent.position_side,
                    "qty": fill.quantity,
                    "price": fill.price,
                    "leverage": intent.leverage,
                    "leverage_clamped": intent.leverage_clamped,
                    "reason": intent.reason,
                    "order_id": fill.order_id,
                    "dry_run": fill.dry_run,
                },
            )
            if intent.reason == REASON_PROFIT and intent.symbol in plan.profit_exits:
                ref, pnl_pct = plan.profit_exits[intent.symbol]
                self._ledger.record_profit_exit(agent_id, intent.symbol, ref, pnl_pct)
            elif intent.reason == REASON_REFOLLOW:
                self._ledger.clear_profit_exit(agent_id, intent.symbol)
            _apply_fill(projected, intent, fill)

    def _finish(self, result: ExecutionResult, status: ExecutionStatus) -> ExecutionResult:
        result.status = status
        result.finished_at = utc_now()
        log_event(
            CYCLES_LOG,
            "follow_cycle",
            {
                "agent_id": result.agent_id,
                "status": status,
                "summary": result.summary,
                "diff": result.diff,
                "rejections": [
                    {"symbol": o.intent.symbol, "reason": o.error} for o in result.outcomes if o.status == "rejected"
                ],
            },
        )
        LOGGER.info("[executor] agent=%s cycle %s %s", result.agent_id, status.value, result.summary)
        return result


def _apply_fill(book: Dict[str, Position], intent: OrderIntent, fill: Fill) -> None:
    key = f"{intent.symbol}:{intent.position_side.value}"
    current = book.get(key)
    qty = float(fill.quantity)
    if intent.reduce_only:
        if current is None:
            return
        remaining = round(current.quantity - qty, 12)
        if intent.kind is IntentKind.CLOSE or remaining <= 0:
            book.pop(key, None)
        else:
            book[key] = _replace_qty(current, remaining, current.entry_price)
        return
    if current is None:
        book[key] = Position(
            symbol=intent.symbol,
            side=intent.position_side,
            quantity=qty,
            leverage=intent.leverage,
            entry_price=fill.price,
            current_price=fill.price,
            margin_type=intent.margin_type,
        )
        return
    total = current.quantity + qty
    entry = (current.quantity * current.entry_price + qty * fill.price) / total if total > 0 else fill.price
    book[key] = _replace_qty(current, total, entry)


def _replace_qty(pos: Position, quantity: float, entry_price: float) -> Position:
    return Position(
        symbol=pos.symbol,
        side=pos.side,
        quantity=quantity,
        leverage=pos.leverage,
        entry_price=entry_price,
        current_price=pos.current_price,
        margin_type=pos.margin_type,
        entry_ref=pos.entry_ref,
    )


__all__ = ["FollowExecutor", "Brokerage", "entry_ref", "ORDERS_LOG", "CYCLES_LOG"]
