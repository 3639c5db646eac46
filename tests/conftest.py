"""
Shared fixtures: an isolated log directory, a deterministic brokerage fake and
the follow pipeline wired on top of it. No test touches the network.
"""
from __future__ import annotations

import os
from typing import Dict, List, Optional

import pytest

# Force safe defaults even if .env sets production values.
os.environ["ENV"] = "test"
os.environ["DRY_RUN"] = "1"

from copytrade import log_utils
from copytrade.follow_executor import FollowExecutor
from copytrade.models import Fill, IntentKind, OrderIntent, Position
from copytrade.order_ledger import OrderHistoryLedger
from copytrade.reconciliation import ReconciliationGate


@pytest.fixture(autouse=True)
def isolated_log_dir(tmp_path, monkeypatch):
    log_root = tmp_path / "logs"
    monkeypatch.setenv("COPYTRADE_LOG_DIR", str(log_root))
    log_utils.reset_loggers()
    yield log_root
    log_utils.reset_loggers()


class FakeBroker:
    """In-memory brokerage: fills every order at the intent's reference price."""

    def __init__(self, positions: Optional[List[Position]] = None) -> None:
        self.positions: Dict[str, Position] = {p.key: p for p in positions or []}
        self.orders: List[OrderIntent] = []
        self.failures: Dict[str, Exception] = {}
        self.positions_error: Optional[Exception] = None
        self.realized_pnl: Dict[str, float] = {}
        self._seq = 0

    def set_positions(self, positions: List[Position]) -> None:
        self.positions = {p.key: p for p in positions}

    def get_positions(self) -> List[Position]:
        if self.positions_error is not None:
            raise self.positions_error
        return list(self.positions.values())

    def place_order(self, intent: OrderIntent) -> Fill:
        self.orders.append(intent)
        if intent.symbol in self.failures:
            raise self.failures[intent.symbol]
        self._seq += 1
        key = f"{intent.symbol}:{intent.position_side.value}"
        held = self.positions.get(key)
        price = intent.reference_price
        if intent.reduce_only:
            remaining = (held.quantity if held else 0.0) - intent.quantity
            if intent.kind is IntentKind.CLOSE or remaining <= 1e-12:
                self.positions.pop(key, None)
            else:
                self.positions[key] = Position(
                    intent.symbol, intent.position_side, remaining, held.leverage, held.entry_price, price
                )
        else:
            qty = intent.quantity + (held.quantity if held else 0.0)
            entry = price if held is None else (held.quantity * held.entry_price + intent.quantity * price) / qty
            self.positions[key] = Position(
                intent.symbol,
                intent.position_side,
                qty,
                intent.leverage,
                entry,
                price,
                margin_type=intent.margin_type,
            )
        return Fill(
            order_id=f"fake-{self._seq}",
            symbol=intent.symbol,
            side=intent.order_side,
            quantity=intent.quantity,
            price=price,
            realized_pnl=self.realized_pnl.get(intent.symbol, 0.0) if intent.reduce_only else 0.0,
        )


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def ledger(tmp_path) -> OrderHistoryLedger:
    return OrderHistoryLedger(tmp_path / "order_history.jsonl")


@pytest.fixture
def gate(ledger) -> ReconciliationGate:
    return ReconciliationGate(tolerance=0.05, ledger=ledger)


@pytest.fixture
def executor(broker, gate, ledger) -> FollowExecutor:
    return FollowExecutor(broker, gate, ledger, quantity_tolerance=0.01)
