"""Budget policy: turn an agent's target book into a desired book for our account.

Leverage is clamped to ``max_leverage`` first; the margin each position then
needs is its weight. When the weights sum past ``total_margin`` every position
is scaled by the same factor, quantities are floored to the symbol's precision,
and whatever budget the flooring frees is handed back one step at a time,
heaviest position first (ties broken by notional, then symbol).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, Sequence

from copytrade.models import FollowOptions, Position, Side

LOG = logging.getLogger("copytrade.capital_allocator")

SYMBOL_PRECISION: Dict[str, int] = {
    "BTCUSDT": 3,
    "ETHUSDT": 3,
    "BNBUSDT": 2,
    "XRPUSDT": 1,
    "ADAUSDT": 0,
    "DOGEUSDT": 0,
    "SOLUSDT": 2,
    "AVAXUSDT": 2,
    "DOTUSDT": 2,
    "LINKUSDT": 2,
    "UNIUSDT": 2,
    "MATICUSDT": 1,
}
DEFAULT_PRECISION = 3


def quantity_precision(symbol: str) -> int:
    return SYMBOL_PRECISION.get(str(symbol).upper(), DEFAULT_PRECISION)


def quantity_step(symbol: str) -> Decimal:
    return Decimal(1).scaleb(-quantity_precision(symbol))


def round_quantity(symbol: str, qty: float) -> float:
    """Floor ``qty`` to the symbol's precision; never rounds up."""
    if qty <= 0:
        return 0.0
    step = quantity_step(symbol)
    snapped = (Decimal(str(qty)) / step).to_integral_value(rounding=ROUND_DOWN) * step
    return float(snapped)


def clamp_leverage(requested: int, max_leverage: int) -> int:
    return max(1, min(int(requested), int(max_leverage)))


@dataclass(slots=True)
class Allocation:
    symbol: str
    side: Side
    target_qty: float
    desired_qty: float
    leverage: int
    requested_leverage: int
    price: float
    weight: float
    scale: float = 1.0

    @property
    def margin(self) -> float:
        return abs(self.desired_qty * self.price) / self.leverage

    @property
    def leverage_clamped(self) -> bool:
        return self.requested_leverage > self.leverage


def _priority(alloc: Allocation) -> tuple:
    return (-alloc.weight, -abs(alloc.target_qty * alloc.price), alloc.symbol)


def allocate(targets: Sequence[Position], options: FollowOptions) -> List[Allocation]:
    """Desired positions for ``targets`` within ``options.total_margin``, highest priority first."""
    allocations: List[Allocation] = []
    for pos in targets:
        price = pos.mark_price
        if pos.quantity <= 0 or price <= 0:
            LOG.debug("[allocator] skip %s qty=%s price=%s", pos.symbol, pos.quantity, price)
            continue
        leverage = clamp_leverage(pos.leverage, options.max_leverage)
        allocations.append(
            Allocation(
                symbol=pos.symbol,
                side=pos.side,
                target_qty=pos.quantity,
                desired_qty=pos.quantity,
                leverage=leverage,
                requested_leverage=pos.leverage,
                price=price,
                weight=abs(pos.quantity * price) / leverage,
            )
        )
    allocations.sort(key=_priority)

    budget = float(options.total_margin)
    total_weight = sum(a.weight for a in allocations)
    scale = 1.0 if total_weight <= budget else (budget / total_weight if total_weight > 0 else 0.0)
    for alloc in allocations:
        alloc.scale = scale
        alloc.desired_qty = round_quantity(alloc.symbol, alloc.target_qty * scale)

    if scale < 1.0:
        remaining = budget - sum(a.margin for a in allocations)
        for alloc in allocations:
            bumped = float(Decimal(str(alloc.desired_qty)) + quantity_step(alloc.symbol))
            extra = abs((bumped - alloc.desired_qty) * alloc.price) / alloc.leverage
            if bumped <= alloc.target_qty and extra <= remaining:
                alloc.desired_qty = bumped
                remaining -= extra
        LOG.info(
            "[allocator] scaled book by %.4f (weights %.2f > budget %.2f)",
            scale,
            total_weight,
            budget,
        )
    return allocations


__all__ = [
    "SYMBOL_PRECISION",
    "DEFAULT_PRECISION",
    "quantity_precision",
    "quantity_step",
    "round_quantity",
    "clamp_leverage",
    "Allocation",
    "allocate",
]
