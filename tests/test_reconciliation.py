from __future__ import annotations

import pytest

from copytrade.errors import NotFoundError, ValidationError
from copytrade.log_utils import read_jsonl
from copytrade.models import Position, ResolutionAction, Side
from copytrade.order_ledger import OrderHistoryLedger
from copytrade.reconciliation import (
    Clean,
    NeedsConfirmation,
    ReconciliationGate,
    Resolved,
    detect_divergences,
    state_name,
)


def _eth(qty: float, entry: float = 2000.0) -> Position:
    return Position("ETHUSDT", Side.LONG, qty, 5, entry, entry)


def test_first_check_adopts_observed_book(gate) -> None:
    decision = gate.check("agent-a", [_eth(1.0)])
    assert decision.proceed
    assert isinstance(decision.state, Clean)
    assert [p.quantity for p in gate.expected("agent-a")] == [1.0]


@pytest.mark.parametrize("actual_qty, blocked", [(1.5, True), (1.02, False), (0.96, False), (0.9, True)])
def test_btc_quantity_band(gate, actual_qty, blocked) -> None:
    gate.record_expected("agent-a", [Position("BTCUSDT", Side.LONG, 1.0, 10, 60000.0)])
    decision = gate.check("agent-a", [Position("BTCUSDT", Side.LONG, actual_qty, 10, 60000.0)])
    assert decision.blocked is blocked


def test_quantity_within_tolerance_proceeds(gate) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    decision = gate.check("agent-a", [_eth(1.02)])
    assert decision.proceed
    assert decision.divergences == ()


def test_quantity_outside_tolerance_blocks_until_resolved(gate) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])

    decision = gate.check("agent-a", [_eth(1.5)])
    assert decision.blocked
    assert isinstance(decision.state, NeedsConfirmation)
    (div,) = decision.divergences
    assert div.kind == "quantity"
    assert div.deviation == pytest.approx(0.5)

    # stays blocked even if the account drifts back
    assert gate.check("agent-a", [_eth(1.0)]).blocked
    assert set(gate.pending()) == {"agent-a"}


def test_trust_actual_unblocks_and_adopts_observed_book(gate) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.check("agent-a", [_eth(1.5)])

    state = gate.resolve("agent-a", "trust_actual", [_eth(1.5)])
    assert isinstance(state, Resolved)
    assert state.action is ResolutionAction.TRUST_ACTUAL

    decision = gate.check("agent-a", [_eth(1.5)])
    assert decision.proceed
    assert isinstance(gate.state("agent-a"), Clean)
    assert gate.pending() == {}


def test_abort_keeps_agent_blocked_until_another_action(gate) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.check("agent-a", [_eth(1.5)])

    gate.resolve("agent-a", ResolutionAction.ABORT, [_eth(1.5)])
    decision = gate.check("agent-a", [_eth(1.5)])
    assert decision.blocked
    assert state_name(decision.state) == "resolved:abort"

    gate.resolve("agent-a", "trust_actual", [_eth(1.5)])
    assert gate.check("agent-a", [_eth(1.5)]).proceed


def test_rebuild_history_rebases_the_ledger(gate, ledger, monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(ledger, "rebase", lambda agent_id, positions: calls.append((agent_id, list(positions))))
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.check("agent-a", [_eth(2.0)])

    gate.resolve("agent-a", "rebuild_history", [_eth(2.0)])
    assert calls == [("agent-a", [_eth(2.0)])]
    assert gate.check("agent-a", [_eth(2.0)]).proceed


def test_resolved_then_new_divergence_blocks_again(gate) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.check("agent-a", [_eth(1.5)])
    gate.resolve("agent-a", "trust_actual", [_eth(1.5)])

    decision = gate.check("agent-a", [_eth(3.0)])
    assert decision.blocked
    assert isinstance(decision.state, NeedsConfirmation)


def test_resolve_unknown_agent_or_action(gate) -> None:
    with pytest.raises(NotFoundError):
        gate.resolve("ghost", "trust_actual", [])
    with pytest.raises(NotFoundError):
        gate.state("ghost")
    gate.record_expected("agent-a", [])
    with pytest.raises(ValidationError):
        gate.resolve("agent-a", "ignore_it", [])


def test_missing_and_unexpected_positions_diverge() -> None:
    expected = {p.key: p for p in [_eth(1.0)]}
    btc = Position("BTCUSDT", Side.SHORT, 0.01, 10, 60000.0)
    kinds = {(d.symbol, d.kind) for d in detect_divergences(expected, [btc], 0.05)}
    assert kinds == {("ETHUSDT", "missing"), ("BTCUSDT", "unexpected")}


def test_entry_price_move_diverges_and_empty_positions_are_ignored() -> None:
    expected = {p.key: p for p in [_eth(1.0, entry=2000.0)]}
    moved = detect_divergences(expected, [_eth(1.0, entry=2200.0)], 0.05)
    assert [d.kind for d in moved] == ["entry_price"]

    empty = Position("SOLUSDT", Side.LONG, 0.0, 1, 100.0)
    assert detect_divergences(expected, [_eth(1.0), empty], 0.05) == []


def test_gate_events_are_logged(gate, isolated_log_dir) -> None:
    gate.check("agent-a", [])
    gate.check("agent-a", [_eth(1.0)])
    gate.resolve("agent-a", "trust_actual", [_eth(1.0)])

    rows = list(read_jsonl(isolated_log_dir / "reconciliation.jsonl"))
    assert [r["event_type"] for r in rows] == ["baseline_adopted", "divergence_detected", "resolved"]
    assert rows[-1]["previous"] == "needs_confirmation"
    assert rows[-1]["state"] == "resolved:trust_actual"


def _restart(ledger) -> ReconciliationGate:
    return ReconciliationGate(0.05, ledger=OrderHistoryLedger(ledger.path))


def test_abort_survives_a_restart(gate, ledger) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.check("agent-a", [_eth(1.5)])
    gate.resolve("agent-a", "abort", [_eth(1.5)])

    decision = _restart(ledger).check("agent-a", [_eth(3.0)])
    assert decision.blocked
    assert state_name(decision.state) == "resolved:abort"


def test_pending_confirmation_survives_a_restart(gate, ledger) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.check("agent-a", [_eth(1.5)])

    restarted = _restart(ledger)
    assert set(restarted.pending()) == {"agent-a"}
    (div,) = restarted.state("agent-a").divergences
    assert div.kind == "quantity"
    assert restarted.check("agent-a", [_eth(1.0)]).blocked


def test_expected_book_survives_a_restart(gate, ledger) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])

    restarted = _restart(ledger)
    assert [p.quantity for p in restarted.expected("agent-a")] == [1.0]
    decision = restarted.check("agent-a", [_eth(3.0)])
    assert decision.blocked
    assert isinstance(decision.state, NeedsConfirmation)


def test_unchanged_book_is_not_rewritten(gate, ledger) -> None:
    gate.record_expected("agent-a", [_eth(1.0)])
    gate.record_expected("agent-a", [_eth(1.0)])
    rows = [r for r in read_jsonl(ledger.path) if r["record"] == "gate"]
    assert len(rows) == 1
