from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

from copytrade.errors import NotFoundError, TransientExecutionError
from copytrade.models import Position, Side
from copytrade.runtime_config import FeedConfig

LOGGER = logging.getLogger("copytrade.agent_feed")


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_agent_position(raw: Mapping[str, Any]) -> Optional[Position]:
    """One entry of an account's ``positions`` map; signed quantity gives the side."""
    qty = _num(raw.get("quantity"))
    if qty == 0 or not raw.get("symbol"):
        return None
    exit_plan = raw.get("exit_plan") or {}
    take_profit = exit_plan.get("profit_target")
    stop_loss = exit_plan.get("stop_loss")
    entry_oid = raw.get("entry_oid")
    symbol = str(raw["symbol"]).upper()
    if not symbol.endswith("USDT"):
        symbol = f"{symbol}USDT"
    return Position(
        symbol=symbol,
        side=Side.LONG if qty > 0 else Side.SHORT,
        quantity=abs(qty),
        leverage=max(1, int(_num(raw.get("leverage"), 1))),
        entry_price=_num(raw.get("entry_price")),
        current_price=_num(raw.get("current_price")),
        margin=_num(raw.get("margin")),
        unrealized_pnl=_num(raw.get("unrealized_pnl")),
        take_profit=_num(take_profit) if take_profit is not None else None,
        stop_loss=_num(stop_loss) if stop_loss is not None else None,
        entry_ref=str(entry_oid) if entry_oid not in (None, "", -1) else None,
    )


def latest_accounts(accounts: List[Mapping[str, Any]]) -> Dict[str, Mapping[str, Any]]:
    """Latest account snapshot per ``model_id`` by hourly marker."""
    latest: Dict[str, Mapping[str, Any]] = {}
    for account in accounts:
        model = str(account.get("model_id") or "")
        if not model:
            continue
        current = latest.get(model)
        marker = _num(account.get("since_inception_hourly_marker"), -1)
        if current is None or marker > _num(current.get("since_inception_hourly_marker"), -1):
            latest[model] = account
    return latest


class Nof1AgentFeed:
    """Target positions of the agents published on the nof1 leaderboard."""

    def __init__(self, config: FeedConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    def fetch_accounts(self) -> Dict[str, Mapping[str, Any]]:
        params = {"lastHourlyMarker": self.config.marker} if self.config.marker is not None else None
        url = f"{self.config.base_url}/account-totals"
        try:
            resp = self._session.get(url, params=params, timeout=self.config.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransientExecutionError(f"agent feed unavailable: {exc}") from exc
        accounts = payload.get("accountTotals", []) if isinstance(payload, dict) else []
        return latest_accounts([a for a in accounts if isinstance(a, Mapping)])

    def list_agents(self) -> List[str]:
        return sorted(self.fetch_accounts())

    def get_target_positions(self, agent_id: str) -> List[Position]:
        account = self.fetch_accounts().get(agent_id)
        if account is None:
            raise NotFoundError(f"agent {agent_id!r} not found in feed")
        positions: List[Position] = []
        for raw in (account.get("positions") or {}).values():
            if not isinstance(raw, Mapping):
                continue
            pos = parse_agent_position(raw)
            if pos is not None:
                positions.append(pos)
        LOGGER.debug("[feed] agent=%s %d target position(s)", agent_id, len(positions))
        return positions


__all__ = ["Nof1AgentFeed", "parse_agent_position", "latest_accounts"]
