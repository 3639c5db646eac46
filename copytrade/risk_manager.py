from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from copytrade.log_utils import log_event
from copytrade.models import FollowOptions, OrderIntent, RiskVerdict

LOGGER = logging.getLogger("copytrade.risk")

VETO_LOG = "risk_vetoes.jsonl"

# float slack when a budget-scaled intent lands exactly on the limit
_MARGIN_EPSILON = 1e-9


@dataclass(frozen=True)
class PriceToleranceCheck:
    entry_price: float
    current_price: float
    deviation: float
    tolerance: float

    @property
    def passed(self) -> bool:
        return self.deviation <= self.tolerance

    @property
    def reason(self) -> str:
        verdict = "within" if self.passed else "exceeds"
        return (
            f"price deviation {self.deviation:.4%} {verdict} tolerance {self.tolerance:.4%} "
            f"(entry {self.entry_price}, current {self.current_price})"
        )


def check_price_tolerance(entry_price: float, current_price: float, tolerance: float) -> PriceToleranceCheck:
    """Relative distance of ``current_price`` from ``entry_price`` against ``tolerance``."""
    if entry_price <= 0:
        deviation = 0.0 if current_price <= 0 else float("inf")
    else:
        deviation = abs(current_price - entry_price) / entry_price
    return PriceToleranceCheck(entry_price, current_price, deviation, tolerance)


def _emit_veto(intent: OrderIntent, reason: str, detail: Dict[str, Any], agent_id: Optional[str]) -> None:
    LOGGER.info("[risk] veto symbol=%s kind=%s reason=%s", intent.symbol, intent.kind.value, reason)
    log_event(
        VETO_LOG,
        "risk_veto",
        {
            "agent_id": agent_id,
            "symbol": intent.symbol,
            "kind": intent.kind,
            "side": intent.order_side,
            "qty_req": intent.quantity,
            "leverage": intent.leverage,
            "veto_reason": reason,
            "veto_detail": detail,
        },
    )


class RiskManager:
    """Accept or reject one order intent against the follow limits.

    Holds no state between calls; the caller supplies the last observed market
    price and the margin already committed on the account.
    """

    def validate(
        self,
        intent: OrderIntent,
        options: FollowOptions,
        market_price: Optional[float] = None,
        committed_margin: float = 0.0,
        *,
        agent_id: Optional[str] = None,
    ) -> RiskVerdict:
        verdict = self._evaluate(intent, options, market_price, committed_margin)
        if not verdict.accepted:
            _emit_veto(intent, verdict.reason or "unknown", dict(verdict.detail), agent_id)
        return verdict

    def _evaluate(
        self,
        intent: OrderIntent,
        options: FollowOptions,
        market_price: Optional[float],
        committed_margin: float,
    ) -> RiskVerdict:
        if intent.quantity <= 0:
            return RiskVerdict.reject("invalid_quantity", quantity=intent.quantity)
        # closing exposure is always allowed
        if intent.reduce_only:
            return RiskVerdict.accept()

        if market_price:
            check = check_price_tolerance(intent.reference_price, market_price, options.tolerance_for(intent.symbol))
            if not check.passed:
                return RiskVerdict.reject(
                    "price_tolerance",
                    entry_price=check.entry_price,
                    market_price=check.current_price,
                    deviation=check.deviation,
                    tolerance=check.tolerance,
                )

        required = intent.margin(market_price)
        projected = committed_margin + required
        if projected > options.total_margin + _MARGIN_EPSILON:
            return RiskVerdict.reject(
                "margin_budget",
                committed=committed_margin,
                required=required,
                total_margin=options.total_margin,
            )

        if intent.leverage > options.max_leverage:
            return RiskVerdict.reject("leverage_cap", leverage=intent.leverage, max_leverage=options.max_leverage)

        if intent.margin_type is not options.margin_type:
            return RiskVerdict.reject(
                "margin_type",
                position_margin_type=intent.margin_type.value,
                expected=options.margin_type.value,
            )
        return RiskVerdict.accept()


__all__ = ["RiskManager", "PriceToleranceCheck", "check_price_tolerance", "VETO_LOG"]
