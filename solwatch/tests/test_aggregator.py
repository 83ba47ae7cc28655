"""Tests for the sliding-window NET volume aggregator.

Tests verify:
1. Net volume = max(0, sum of signed amounts) inside one window
2. Sliding: expired entries dropped and window re-based on the oldest survivor
3. Edge-triggered one-shot flags; full expiry re-arms them
4. Staged mode fires the lowest unfired stage, one per update
"""

from __future__ import annotations

import itertools
from decimal import Decimal

import pytest

from solwatch.config.settings import AutoSellConfig, StagedSellConfig
from solwatch.core.aggregator import AggregationMode, VolumeAggregator
from solwatch.core.models import ClassifiedTrade, TradeDirection, TriggerStage

_sigs = itertools.count()


def _trade(amount: str, ts: float, direction: TradeDirection = TradeDirection.BUY) -> ClassifiedTrade:
    return ClassifiedTrade(
        signature=f"sig{next(_sigs)}",
        direction=direction,
        actor="Actor1111111111111111111111111111111111111111",
        is_owned=False,
        net_amount=Decimal(amount),
        token_amount=Decimal("1000"),
        timestamp=ts,
    )


def _buy(agg: VolumeAggregator, amount: str, ts: float) -> TriggerStage | None:
    return agg.record(_trade(amount, ts), now=ts)


def _sell(agg: VolumeAggregator, amount: str, ts: float) -> TriggerStage | None:
    return agg.record(_trade(amount, ts, TradeDirection.SELL), now=ts)


# ================================================================
# Construction
# ================================================================


class TestConstruction:
    def test_simple_mode(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        assert agg.mode == AggregationMode.SIMPLE
        assert agg.threshold(TriggerStage.INSTANT) == Decimal("1")

    def test_staged_mode(self) -> None:
        agg = VolumeAggregator(
            window_s=60, stages=(Decimal("5"), Decimal("10"), Decimal("20"))
        )
        assert agg.mode == AggregationMode.STAGED
        assert agg.next_threshold() == Decimal("5")

    def test_staged_must_ascend(self) -> None:
        with pytest.raises(ValueError, match="ascending"):
            VolumeAggregator(window_s=60, stages=(Decimal("10"), Decimal("5"), Decimal("20")))

    def test_requires_threshold(self) -> None:
        with pytest.raises(ValueError, match="threshold"):
            VolumeAggregator(window_s=60)

    def test_window_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="window_s"):
            VolumeAggregator(window_s=0, threshold=Decimal("1"))

    def test_from_config_staged_wins(self) -> None:
        agg = VolumeAggregator.from_config(
            AutoSellConfig(threshold_sol=1.0, window_s=30),
            StagedSellConfig(enabled=True, stage1=2.0, stage2=4.0, stage3=8.0),
        )
        assert agg.mode == AggregationMode.STAGED
        assert agg.window_s == 30
        assert agg.threshold(TriggerStage.STAGE3) == Decimal("8.0")

    def test_from_config_simple(self) -> None:
        agg = VolumeAggregator.from_config(AutoSellConfig(threshold_sol=0.5), StagedSellConfig())
        assert agg.mode == AggregationMode.SIMPLE
        assert agg.threshold(TriggerStage.INSTANT) == Decimal("0.5")


# ================================================================
# Net volume
# ================================================================


class TestNetVolume:
    """Buys add, sells subtract, floored at zero."""

    def test_buy_then_sell_is_net_not_gross(self) -> None:
        """Buy 2 then sell 1 → 1, not 3."""
        agg = VolumeAggregator(window_s=60, threshold=Decimal("5"))
        _buy(agg, "2", 0.0)
        _sell(agg, "1", 1.0)
        assert agg.net_volume == Decimal("1")

    def test_floor_at_zero(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("5"))
        _sell(agg, "3", 0.0)
        assert agg.net_volume == Decimal("0")
        _buy(agg, "1", 1.0)
        assert agg.net_volume == Decimal("0")

    def test_matches_clamped_sum_of_entries(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1000"))
        moves = [("+", "1.5"), ("-", "4"), ("+", "0.25"), ("+", "3"), ("-", "0.5"), ("+", "2")]
        for i, (sign, amount) in enumerate(moves):
            if sign == "+":
                _buy(agg, amount, float(i))
            else:
                _sell(agg, amount, float(i))
            total = sum((e.signed_amount for e in agg.entries), Decimal("0"))
            assert agg.net_volume == max(total, Decimal("0"))

    def test_first_trade_opens_window(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("5"))
        assert agg.window_start is None
        _buy(agg, "1", 42.0)
        assert agg.window_start == 42.0
        assert agg.window_age(50.0) == 8.0


# ================================================================
# Sliding window
# ================================================================


class TestSlidingWindow:
    def test_expired_entry_dropped_and_rebased(self) -> None:
        """+3 at t=0, +4 at t=30, window 60 → at t=65 only +4 survives."""
        agg = VolumeAggregator(window_s=60, threshold=Decimal("100"))
        _buy(agg, "3", 0.0)
        _buy(agg, "4", 30.0)
        _buy(agg, "0.5", 65.0)

        assert agg.window_start == 30.0
        assert [e.timestamp for e in agg.entries] == [30.0, 65.0]
        assert agg.net_volume == Decimal("4.5")

    def test_no_slide_inside_window(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("100"))
        _buy(agg, "3", 0.0)
        _buy(agg, "4", 60.0)
        assert len(agg.entries) == 2
        assert agg.net_volume == Decimal("7")

    def test_expired_sell_restores_volume(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("100"))
        _sell(agg, "2", 0.0)
        _buy(agg, "3", 30.0)
        assert agg.net_volume == Decimal("1")
        _buy(agg, "0", 70.0)
        assert agg.net_volume == Decimal("3")

    def test_full_expiry_opens_new_window(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("100"))
        _buy(agg, "3", 0.0)
        _buy(agg, "1", 200.0)
        assert agg.window_start == 200.0
        assert agg.net_volume == Decimal("1")
        assert len(agg.entries) == 1

    def test_reset_clears_state(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        _buy(agg, "2", 0.0)
        agg.reset()
        assert agg.window_start is None
        assert agg.net_volume == Decimal("0")
        assert not agg.is_triggered(TriggerStage.INSTANT)


# ================================================================
# Triggers
# ================================================================


class TestSimpleTrigger:
    """Single threshold, edge-triggered."""

    def test_fires_at_threshold(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        assert _buy(agg, "0.6", 0.0) is None
        assert _buy(agg, "0.4", 1.0) == TriggerStage.INSTANT
        assert agg.is_triggered(TriggerStage.INSTANT)

    def test_fires_once_per_window(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        assert _buy(agg, "2", 0.0) == TriggerStage.INSTANT
        assert _buy(agg, "5", 1.0) is None
        assert _buy(agg, "5", 2.0) is None

    def test_dip_does_not_rearm(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        assert _buy(agg, "2", 0.0) == TriggerStage.INSTANT
        _sell(agg, "2", 1.0)
        assert _buy(agg, "3", 2.0) is None

    def test_full_expiry_rearms(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        assert _buy(agg, "2", 0.0) == TriggerStage.INSTANT
        assert _buy(agg, "2", 100.0) == TriggerStage.INSTANT

    def test_partial_slide_keeps_flag(self) -> None:
        agg = VolumeAggregator(window_s=60, threshold=Decimal("1"))
        assert _buy(agg, "2", 0.0) == TriggerStage.INSTANT
        _buy(agg, "0.1", 30.0)
        assert _buy(agg, "2", 70.0) is None
        assert agg.is_triggered(TriggerStage.INSTANT)


class TestStagedTrigger:
    """Three ascending thresholds, one stage per update."""

    @pytest.fixture
    def agg(self) -> VolumeAggregator:
        return VolumeAggregator(
            window_s=60, stages=(Decimal("5"), Decimal("10"), Decimal("20"))
        )

    def test_jump_fires_only_stage1(self, agg: VolumeAggregator) -> None:
        """0 → 25 in one update fires stage1 only; stage2 fires next update."""
        assert _buy(agg, "25", 0.0) == TriggerStage.STAGE1
        assert not agg.is_triggered(TriggerStage.STAGE2)
        assert _buy(agg, "0.01", 1.0) == TriggerStage.STAGE2
        assert _buy(agg, "0.01", 2.0) == TriggerStage.STAGE3
        assert _buy(agg, "0.01", 3.0) is None
        assert agg.next_threshold() is None

    def test_stages_fire_in_order(self, agg: VolumeAggregator) -> None:
        assert _buy(agg, "4", 0.0) is None
        assert _buy(agg, "1", 1.0) == TriggerStage.STAGE1
        assert _buy(agg, "4", 2.0) is None
        assert agg.next_threshold() == Decimal("10")
        assert _buy(agg, "1", 3.0) == TriggerStage.STAGE2

    def test_fired_stage_never_refires(self, agg: VolumeAggregator) -> None:
        assert _buy(agg, "6", 0.0) == TriggerStage.STAGE1
        _sell(agg, "6", 1.0)
        assert _buy(agg, "6", 2.0) is None
        assert agg.is_triggered(TriggerStage.STAGE1)
