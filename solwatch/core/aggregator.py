"""Sliding-window NET external volume with one-shot threshold triggers.

Buys add to volume, sells subtract. Net volume is the sum of signed
amounts still inside the window, floored at zero, so gross churn
(buy 2, sell 1) counts as 1 SOL of buying pressure, not 3.

Two modes:
    SIMPLE  one threshold, one trigger (TriggerStage.INSTANT)
    STAGED  three ascending thresholds, each with its own one-shot flag;
            at most one stage fires per update (the lowest unfired one)

Triggers are edge-triggered per window. Falling back under a threshold
does not re-arm it; only a brand-new window (full expiry) resets flags.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from decimal import Decimal
from enum import Enum

from solwatch.config.settings import AutoSellConfig, StagedSellConfig
from solwatch.core.models import ClassifiedTrade, TriggerStage, VolumeWindowEntry
from solwatch.utils.logger import get_logger

logger = get_logger("aggregator")

STAGES: tuple[TriggerStage, ...] = (TriggerStage.STAGE1, TriggerStage.STAGE2, TriggerStage.STAGE3)


class AggregationMode(Enum):
    SIMPLE = "SIMPLE"
    STAGED = "STAGED"


class VolumeAggregator:
    """Owns the aggregation state for one tracking session.

    Args:
        window_s: Window length in seconds.
        threshold: Net SOL threshold for SIMPLE mode.
        stages: Ascending (stage1, stage2, stage3) thresholds. Selects STAGED mode.
        time_fn: Clock, epoch seconds.
    """

    def __init__(
        self,
        window_s: float,
        threshold: Decimal | None = None,
        stages: tuple[Decimal, Decimal, Decimal] | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        if stages is not None:
            if not stages[0] < stages[1] < stages[2]:
                raise ValueError("staged thresholds must be strictly ascending")
            self._mode = AggregationMode.STAGED
            self._thresholds = dict(zip(STAGES, stages, strict=True))
        elif threshold is not None:
            self._mode = AggregationMode.SIMPLE
            self._thresholds = {TriggerStage.INSTANT: threshold}
        else:
            raise ValueError("either threshold or stages is required")

        self._window_s = window_s
        self._time_fn = time_fn
        self._entries: deque[VolumeWindowEntry] = deque()
        self._window_start: float | None = None
        self._raw_volume = Decimal("0")
        self._triggered: dict[TriggerStage, bool] = dict.fromkeys(self._thresholds, False)

    @classmethod
    def from_config(
        cls,
        auto_sell: AutoSellConfig,
        staged: StagedSellConfig,
        time_fn: Callable[[], float] = time.time,
    ) -> VolumeAggregator:
        """Build from parsed config. Staged mode wins when enabled."""
        stages = None
        if staged.enabled:
            stages = (
                Decimal(str(staged.stage1)),
                Decimal(str(staged.stage2)),
                Decimal(str(staged.stage3)),
            )
        return cls(
            window_s=auto_sell.window_s,
            threshold=Decimal(str(auto_sell.threshold_sol)),
            stages=stages,
            time_fn=time_fn,
        )

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def mode(self) -> AggregationMode:
        return self._mode

    @property
    def net_volume(self) -> Decimal:
        """Sum of signed amounts in the window, floored at zero."""
        return max(self._raw_volume, Decimal("0"))

    @property
    def window_start(self) -> float | None:
        return self._window_start

    @property
    def window_s(self) -> float:
        return self._window_s

    @property
    def entries(self) -> tuple[VolumeWindowEntry, ...]:
        return tuple(self._entries)

    def threshold(self, stage: TriggerStage) -> Decimal:
        return self._thresholds[stage]

    def is_triggered(self, stage: TriggerStage) -> bool:
        return self._triggered.get(stage, False)

    def next_threshold(self) -> Decimal | None:
        """Lowest threshold whose trigger has not fired yet."""
        for stage, threshold in self._thresholds.items():
            if not self._triggered[stage]:
                return threshold
        return None

    def window_age(self, now: float | None = None) -> float:
        if self._window_start is None:
            return 0.0
        return (self._time_fn() if now is None else now) - self._window_start

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Drop all state (session start/stop)."""
        self._entries.clear()
        self._window_start = None
        self._raw_volume = Decimal("0")
        for stage in self._triggered:
            self._triggered[stage] = False

    def record(self, trade: ClassifiedTrade, now: float | None = None) -> TriggerStage | None:
        """Add one external trade and evaluate thresholds.

        Returns:
            The stage whose one-shot flag flipped on this update, or None.
        """
        now = self._time_fn() if now is None else now

        self._slide(now)
        if self._window_start is None:
            self._open_window(now)

        signed = trade.signed_amount
        self._entries.append(
            VolumeWindowEntry(actor=trade.actor, signed_amount=signed, timestamp=trade.timestamp)
        )
        self._raw_volume += signed

        return self._evaluate()

    def _open_window(self, now: float) -> None:
        self.reset()
        self._window_start = now
        logger.debug("volume_window_opened", window_start=now, window_s=self._window_s)

    def _slide(self, now: float) -> None:
        """Drop entries older than the window once the window has aged out."""
        if self._window_start is None or now - self._window_start <= self._window_s:
            return

        cutoff = now - self._window_s
        expired = [e for e in self._entries if e.timestamp < cutoff]
        if len(expired) == len(self._entries):
            # Full expiry: fresh window, flags re-armed
            self._open_window(now)
            return

        for entry in expired:
            self._raw_volume -= entry.signed_amount
        self._entries = deque(e for e in self._entries if e.timestamp >= cutoff)
        self._window_start = min(e.timestamp for e in self._entries)
        logger.debug(
            "volume_window_slid",
            dropped=len(expired),
            window_start=self._window_start,
            net_volume=str(self.net_volume),
        )

    def _evaluate(self) -> TriggerStage | None:
        volume = self.net_volume
        for stage, threshold in self._thresholds.items():
            if self._triggered[stage]:
                continue
            if volume >= threshold:
                self._triggered[stage] = True
                return stage
            # Ascending thresholds: a higher unfired stage cannot be met either
            return None
        return None
