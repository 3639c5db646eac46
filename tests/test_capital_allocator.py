from __future__ import annotations

import pytest

from copytrade.capital_allocator import allocate, clamp_leverage, quantity_precision, round_quantity
from copytrade.models import FollowOptions, Position, Side


def test_round_quantity_floors_to_symbol_precision() -> None:
    assert round_quantity("BTCUSDT", 0.12399) == 0.123
    assert round_quantity("DOGEUSDT", 332.9) == 332.0
    assert round_quantity("XRPUSDT", 10.19) == 10.1
    assert round_quantity("NEWUSDT", 1.23456) == 1.234
    assert round_quantity("ETHUSDT", -1.0) == 0.0
    assert quantity_precision("ethusdt") == 3


def test_clamp_leverage() -> None:
    assert clamp_leverage(10, 5) == 5
    assert clamp_leverage(3, 5) == 3
    assert clamp_leverage(0, 5) == 1


def test_book_under_budget_is_copied_unchanged() -> None:
    targets = [Position("BTCUSDT", Side.LONG, 0.5, 10, 100.0)]
    (alloc,) = allocate(targets, FollowOptions(total_margin=50))
    assert alloc.desired_qty == 0.5
    assert alloc.scale == 1.0
    assert alloc.margin == pytest.approx(5.0)


def test_leverage_is_clamped_before_weighting() -> None:
    targets = [Position("ETHUSDT", Side.LONG, 2.0, 10, 2000.0)]
    (alloc,) = allocate(targets, FollowOptions(total_margin=100, max_leverage=5))
    assert alloc.leverage == 5
    assert alloc.leverage_clamped
    assert alloc.weight == pytest.approx(800.0)
    assert alloc.desired_qty == pytest.approx(0.25)
    assert alloc.margin <= 100 + 1e-9


def test_scaling_is_uniform_and_fits_budget() -> None:
    targets = [
        Position("ETHUSDT", Side.SHORT, 10.0, 10, 3000.0),
        Position("BTCUSDT", Side.LONG, 1.0, 10, 60000.0),
    ]
    allocations = allocate(targets, FollowOptions(total_margin=90))
    assert [a.symbol for a in allocations] == ["BTCUSDT", "ETHUSDT"]
    by_symbol = {a.symbol: a for a in allocations}
    assert by_symbol["BTCUSDT"].desired_qty == pytest.approx(0.01)
    assert by_symbol["ETHUSDT"].desired_qty == pytest.approx(0.1)
    assert by_symbol["ETHUSDT"].side is Side.SHORT
    assert sum(a.margin for a in allocations) <= 90 + 1e-9


def test_budget_freed_by_flooring_goes_to_whatever_still_fits() -> None:
    targets = [
        Position("SOLUSDT", Side.LONG, 3.0, 1, 100.0),
        Position("DOGEUSDT", Side.LONG, 1000.0, 1, 0.1),
    ]
    allocations = allocate(targets, FollowOptions(total_margin=133))
    by_symbol = {a.symbol: a for a in allocations}
    # SOL floors to 0.99; one more step would cost 1.0 which no longer fits
    assert by_symbol["SOLUSDT"].desired_qty == pytest.approx(0.99)
    assert by_symbol["DOGEUSDT"].desired_qty == 333.0
    assert sum(a.margin for a in allocations) <= 133 + 1e-9


def test_zero_budget_winds_everything_down() -> None:
    targets = [Position("ETHUSDT", Side.LONG, 1.0, 5, 2000.0)]
    (alloc,) = allocate(targets, FollowOptions(total_margin=0))
    assert alloc.desired_qty == 0.0


def test_positions_without_price_or_size_are_skipped() -> None:
    targets = [
        Position("ETHUSDT", Side.LONG, 0.0, 5, 2000.0),
        Position("BTCUSDT", Side.LONG, 1.0, 5, 0.0),
    ]
    assert allocate(targets, FollowOptions()) == []
