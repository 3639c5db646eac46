from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from copytrade.log_utils import append_jsonl, read_jsonl, utc_now
from copytrade.models import Fill, OrderIntent, Position

LOG = logging.getLogger("copytrade.order_ledger")

_Key = Tuple[str, str]


@dataclass(slots=True)
class LedgerRecord:
    agent_id: str
    symbol: str
    kind: str
    side: str
    position_side: str
    quantity: float
    price: float
    realized_pnl: float
    fee: float
    order_id: str
    reason: str
    dry_run: bool
    ts: str

    @classmethod
    def from_fill(cls, agent_id: str, intent: OrderIntent, fill: Fill) -> "LedgerRecord":
        return cls(
            agent_id=agent_id,
            symbol=fill.symbol,
            kind=intent.kind.value,
            side=fill.side,
            position_side=intent.position_side.value,
            quantity=float(fill.quantity),
            price=float(fill.price),
            realized_pnl=float(fill.realized_pnl),
            fee=float(fill.fee),
            order_id=str(fill.order_id),
            reason=intent.reason,
            dry_run=bool(fill.dry_run),
            ts=fill.ts.isoformat(),
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LedgerRecord":
        return cls(
            agent_id=str(row["agent_id"]),
            symbol=str(row["symbol"]),
            kind=str(row.get("kind", "")),
            side=str(row.get("side", "")),
            position_side=str(row.get("position_side", "")),
            quantity=float(row.get("quantity") or 0.0),
            price=float(row.get("price") or 0.0),
            realized_pnl=float(row.get("realized_pnl") or 0.0),
            fee=float(row.get("fee") or 0.0),
            order_id=str(row.get("order_id", "")),
            reason=str(row.get("reason", "")),
            dry_run=bool(row.get("dry_run", False)),
            ts=str(row.get("ts", "")),
        )


@dataclass(slots=True, frozen=True)
class ProfitExit:
    symbol: str
    entry_ref: Optional[str]
    pnl_pct: float
    ts: str


class OrderHistoryLedger:
    """Append-only fill history per agent, plus the bookkeeping derived from it.

    Every write goes to the JSONL file first and is then applied to the
    in-memory index, which is rebuilt by replaying the file on start. With
    ``path=None`` the ledger lives in memory only.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._fills: Dict[str, List[LedgerRecord]] = defaultdict(list)
        self._realized: Dict[_Key, float] = defaultdict(float)
        self._offsets: Dict[_Key, float] = defaultdict(float)
        self._profit_exits: Dict[_Key, ProfitExit] = {}
        self._gates: Dict[str, Dict[str, Any]] = {}
        if self.path is not None:
            self._replay()

    # -- writes ---------------------------------------------------------------
    def append(self, agent_id: str, intent: OrderIntent, fill: Fill) -> LedgerRecord:
        record = LedgerRecord.from_fill(agent_id, intent, fill)
        row = {"record": "fill", **asdict(record)}
        with self._lock:
            self._persist(row)
            self._apply(row)
        LOG.info(
            "[ledger] fill agent=%s %s %s qty=%s px=%s pnl=%s",
            agent_id,
            record.symbol,
            record.side,
            record.quantity,
            record.price,
            record.realized_pnl,
        )
        return record

    def record_profit_exit(self, agent_id: str, symbol: str, entry_ref: Optional[str], pnl_pct: float) -> ProfitExit:
        """Mark ``symbol`` as closed at target; realized PnL restarts from zero."""
        row = {
            "record": "profit_exit",
            "agent_id": agent_id,
            "symbol": symbol.upper(),
            "entry_ref": entry_ref,
            "pnl_pct": float(pnl_pct),
            "ts": utc_now().isoformat(),
        }
        with self._lock:
            self._persist(row)
            self._apply(row)
            return self._profit_exits[(agent_id, symbol.upper())]

    def clear_profit_exit(self, agent_id: str, symbol: str) -> None:
        row = {"record": "profit_exit_cleared", "agent_id": agent_id, "symbol": symbol.upper(), "ts": utc_now().isoformat()}
        with self._lock:
            if (agent_id, symbol.upper()) not in self._profit_exits:
                return
            self._persist(row)
            self._apply(row)

    def rebase(self, agent_id: str, positions: Sequence[Position]) -> None:
        """Drop prior attribution for ``agent_id``: realized PnL restarts and profit exits are forgotten."""
        row = {
            "record": "rebase",
            "agent_id": agent_id,
            "positions": [{"symbol": p.symbol, "side": p.side.value, "quantity": p.quantity, "entry_price": p.entry_price} for p in positions],
            "ts": utc_now().isoformat(),
        }
        with self._lock:
            self._persist(row)
            self._apply(row)
        LOG.warning("[ledger] rebased agent=%s on %d observed position(s)", agent_id, len(positions))

    def record_gate(self, agent_id: str, snapshot: Mapping[str, Any]) -> None:
        """Persist the reconciliation gate's state and expected book for ``agent_id``."""
        row = {"record": "gate", "agent_id": agent_id, **snapshot, "ts": utc_now().isoformat()}
        with self._lock:
            if self._gates.get(agent_id) == dict(snapshot):
                return
            self._persist(row)
            self._apply(row)

    # -- reads ----------------------------------------------------------------
    def fills(self, agent_id: str, symbol: Optional[str] = None) -> List[LedgerRecord]:
        with self._lock:
            rows = list(self._fills.get(agent_id, ()))
        if symbol:
            rows = [r for r in rows if r.symbol == symbol.upper()]
        return rows

    def realized_pnl(self, agent_id: str, symbol: str) -> float:
        key = (agent_id, symbol.upper())
        with self._lock:
            return self._realized.get(key, 0.0) - self._offsets.get(key, 0.0)

    def profit_exit(self, agent_id: str, symbol: str) -> Optional[ProfitExit]:
        with self._lock:
            return self._profit_exits.get((agent_id, symbol.upper()))

    def gate_snapshots(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {agent_id: dict(snap) for agent_id, snap in self._gates.items()}

    # -- internals ------------------------------------------------------------
    def _persist(self, row: Mapping[str, Any]) -> None:
        if self.path is not None:
            append_jsonl(self.path, row)

    def _apply(self, row: Mapping[str, Any]) -> None:
        kind = row.get("record")
        agent_id = str(row.get("agent_id"))
        if kind == "fill":
            record = LedgerRecord.from_row(row)
            self._fills[agent_id].append(record)
            self._realized[(agent_id, record.symbol)] += record.realized_pnl
        elif kind == "profit_exit":
            key = (agent_id, str(row["symbol"]))
            self._offsets[key] = self._realized.get(key, 0.0)
            self._profit_exits[key] = ProfitExit(
                symbol=key[1],
                entry_ref=row.get("entry_ref"),
                pnl_pct=float(row.get("pnl_pct") or 0.0),
                ts=str(row.get("ts", "")),
            )
        elif kind == "profit_exit_cleared":
            self._profit_exits.pop((agent_id, str(row["symbol"])), None)
        elif kind == "gate":
            self._gates[agent_id] = {"state": dict(row["state"]), "expected": list(row.get("expected") or [])}
        elif kind == "rebase":
            for key in [k for k in self._realized if k[0] == agent_id]:
                self._offsets[key] = self._realized[key]
            for key in [k for k in self._profit_exits if k[0] == agent_id]:
                del self._profit_exits[key]
        else:
            LOG.warning("[ledger] unknown record type %r ignored", kind)

    def _replay(self) -> None:
        count = 0
        for row in read_jsonl(self.path):
            try:
                self._apply(row)
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("[ledger] skipping malformed row %r: %s", row, exc)
                continue
            count += 1
        if count:
            LOG.info("[ledger] replayed %d record(s) from %s", count, self.path)


__all__ = ["OrderHistoryLedger", "LedgerRecord", "ProfitExit"]
