"""Tracking session: stream → fetch → classify → aggregate → trigger.

One explicitly constructed object per tracked mint. Multiple sessions can
coexist as independent instances.

Concurrency model (single event loop):
- The stream's receive loop only schedules a pipeline task per
  notification and returns.
- Each pipeline task awaits the fetch, then classifies and aggregates
  synchronously, so aggregator updates never interleave.
- Every task carries the generation it was started under; results that
  complete after stop() (or a superseding start()) are discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Callable, Iterable
from decimal import Decimal
from typing import Any

from solwatch.config.settings import FetchConfig, SolwatchConfig
from solwatch.connectors.log_stream import LogStream, resolve_ws_url
from solwatch.connectors.solana_rpc import TransactionFetcher
from solwatch.core.aggregator import VolumeAggregator
from solwatch.core.classifier import classify
from solwatch.core.models import (
    ClassifiedTrade,
    ObservedTransaction,
    TradeDirection,
    TriggerContext,
    TriggerResult,
)
from solwatch.core.trigger import TriggerDispatcher
from solwatch.utils.logger import get_logger, mask_url

logger = get_logger("session")

MAX_HISTORY = 100

TradeListener = Callable[[ClassifiedTrade], None]


class TrackingSession:
    """Monitors one mint and fires the configured sell on external pressure.

    Args:
        config: Parsed configuration (endpoints, thresholds, executor).
        on_trigger_result: Called with every executor completion event.
        fetcher_factory: Builds the transaction fetcher (rpc_url, fetch config).
        stream_factory: Builds the log stream (same kwargs as LogStream).
        time_fn: Clock, epoch seconds.
    """

    def __init__(
        self,
        config: SolwatchConfig,
        on_trigger_result: Callable[[TriggerResult], None] | None = None,
        fetcher_factory: Callable[[str, FetchConfig], TransactionFetcher] = TransactionFetcher,
        stream_factory: Callable[..., LogStream] = LogStream,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._on_trigger_result = on_trigger_result
        self._fetcher_factory = fetcher_factory
        self._stream_factory = stream_factory
        self._time_fn = time_fn

        self._tracked_asset: str | None = None
        self._owned: frozenset[str] = frozenset()
        self._generation = 0

        self._fetcher: TransactionFetcher | None = None
        self._stream: LogStream | None = None
        self._aggregator: VolumeAggregator | None = None
        self._dispatcher: TriggerDispatcher | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        self._listeners: list[TradeListener] = []
        self._history: deque[ClassifiedTrade] = deque(maxlen=MAX_HISTORY)

        self._notifications = 0
        self._trades_classified = 0
        self._external_trades = 0
        self._stale_discarded = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def tracked_asset(self) -> str | None:
        return self._tracked_asset

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def aggregator(self) -> VolumeAggregator | None:
        return self._aggregator

    @property
    def dispatcher(self) -> TriggerDispatcher | None:
        return self._dispatcher

    async def start(
        self,
        tracked_asset: str,
        owned_accounts: Iterable[str],
        config: SolwatchConfig | None = None,
    ) -> bool:
        """Start tracking a mint. Supersedes any running session state.

        Returns:
            False when no usable RPC/websocket endpoint is configured.
            A failed first connect still returns True; the stream retries.
        """
        if config is not None:
            self._config = config
        cfg = self._config

        if self._tracked_asset is not None or self._stream is not None:
            await self.stop()

        ws_url = resolve_ws_url(cfg.rpc_ws_endpoint, cfg.rpc_endpoint)
        if not ws_url or not cfg.rpc_endpoint:
            logger.error(
                "session_start_failed",
                reason="RPC_ENDPOINT or RPC_WEBSOCKET_ENDPOINT not set",
            )
            return False

        self._generation += 1
        self._tracked_asset = tracked_asset
        self.update_owned_accounts(owned_accounts)

        self._aggregator = VolumeAggregator.from_config(
            cfg.auto_sell, cfg.staged_sell, time_fn=self._time_fn
        )
        self._dispatcher = TriggerDispatcher(
            executor=cfg.executor,
            sell_type=cfg.auto_sell.sell_type,
            simulation=cfg.auto_sell.simulation,
            on_result=self._handle_trigger_result,
        )

        self._fetcher = self._fetcher_factory(cfg.rpc_endpoint, cfg.fetch)
        await self._fetcher.initialize()

        self._stream = self._stream_factory(
            url=ws_url,
            program_id=cfg.stream.program_id,
            on_notification=self._on_notification,
            commitment=cfg.stream.commitment,
            heartbeat_s=cfg.stream.heartbeat_s,
            reconnect_delay_s=cfg.stream.reconnect_delay_s,
        )

        logger.info(
            "session_started",
            mint=tracked_asset,
            owned_wallets=len(self._owned),
            mode=self._aggregator.mode.value,
            threshold=cfg.auto_sell.threshold_sol,
            window_s=cfg.auto_sell.window_s,
            auto_sell=cfg.auto_sell.enabled,
            sell_type=cfg.auto_sell.sell_type,
            simulation=cfg.auto_sell.simulation,
            ws_url=mask_url(ws_url),
        )

        connected = await self._stream.start()
        if not connected:
            logger.warning("session_connect_pending", mint=tracked_asset)
        return True

    async def stop(self) -> None:
        """Stop tracking. In-flight pipeline results are discarded."""
        mint = self._tracked_asset
        final_stats = self.stats
        self._tracked_asset = None
        self._generation += 1

        if self._stream is not None:
            await self._stream.stop()
            self._stream = None

        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        if self._fetcher is not None:
            await self._fetcher.close()
            self._fetcher = None

        if self._aggregator is not None:
            self._aggregator.reset()

        if mint is not None:
            logger.info("session_stopped", **final_stats)

    async def wait_for_triggers(self) -> None:
        """Wait until every launched executor run has completed."""
        if self._dispatcher is not None:
            await self._dispatcher.wait_idle()

    def update_owned_accounts(self, owned_accounts: Iterable[str]) -> None:
        """Replace the set of wallets excluded from external volume."""
        self._owned = frozenset(a.strip().lower() for a in owned_accounts if a and a.strip())
        logger.info("owned_wallets_updated", count=len(self._owned))

    # ------------------------------------------------------------------
    # Trade feed
    # ------------------------------------------------------------------

    def add_listener(self, listener: TradeListener) -> None:
        """Subscribe to classified trades. Recent history is replayed first."""
        self._listeners.append(listener)
        for trade in list(self._history):
            self._notify(listener, trade)

    def remove_listener(self, listener: TradeListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb != listener]

    @property
    def history(self) -> list[ClassifiedTrade]:
        return list(self._history)

    def _publish_trade(self, trade: ClassifiedTrade) -> None:
        self._history.append(trade)
        for listener in list(self._listeners):
            self._notify(listener, trade)

    @staticmethod
    def _notify(listener: TradeListener, trade: ClassifiedTrade) -> None:
        try:
            listener(trade)
        except Exception as e:
            logger.warning("trade_listener_error", error=str(e))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _on_notification(self, signature: str, logs: list[str]) -> None:
        """Stream callback: schedule the pipeline, never block the receive loop."""
        if self._tracked_asset is None or self._fetcher is None:
            return
        self._notifications += 1
        priority = self._logs_mention_asset(logs)
        task = asyncio.create_task(self._process(signature, priority, self._generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _logs_mention_asset(self, logs: list[str]) -> bool:
        mint = (self._tracked_asset or "").lower()
        if not mint:
            return False
        text = " ".join(logs).lower()
        return mint in text or mint[:8] in text

    async def _process(self, signature: str, priority: bool, generation: int) -> None:
        fetcher = self._fetcher
        if fetcher is None:
            return
        try:
            tx = await fetcher.fetch(signature, priority=priority)
            if tx is None:
                return
            if generation != self._generation or self._tracked_asset is None:
                self._stale_discarded += 1
                logger.debug("stale_result_discarded", signature=signature[:16])
                return
            self.handle_transaction(tx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("pipeline_error", signature=signature[:16], error=str(e))

    def handle_transaction(self, tx: ObservedTransaction) -> ClassifiedTrade | None:
        """Classify one transaction and feed external trades to the aggregator."""
        mint = self._tracked_asset
        if mint is None or self._aggregator is None or self._dispatcher is None:
            return None

        now = self._time_fn()
        trade = classify(tx, mint, self._owned, now=now)
        if trade is None:
            return None

        self._trades_classified += 1
        auto_sell = self._config.auto_sell
        logger.info(
            "trade_detected",
            direction=trade.direction.value,
            wallet="OUR WALLET" if trade.is_owned else "EXTERNAL",
            actor=trade.actor[:8],
            sol=str(trade.net_amount.quantize(Decimal("0.0001"))),
            simulation=auto_sell.simulation,
        )
        self._publish_trade(trade)

        if trade.is_owned or not auto_sell.enabled or trade.net_amount <= 0:
            return trade

        self._external_trades += 1
        stage = self._aggregator.record(trade, now=now)

        sign = "+" if trade.direction == TradeDirection.BUY else "-"
        next_threshold = self._aggregator.next_threshold()
        logger.info(
            "external_volume",
            change=f"{sign}{trade.net_amount.quantize(Decimal('0.0001'))}",
            net_volume=str(self._aggregator.net_volume.quantize(Decimal("0.0001"))),
            next_threshold=str(next_threshold) if next_threshold is not None else None,
        )

        if stage is not None:
            self._dispatcher.fire(
                TriggerContext(
                    mint=mint,
                    stage=stage,
                    net_volume=self._aggregator.net_volume,
                    threshold=self._aggregator.threshold(stage),
                    elapsed_s=self._aggregator.window_age(now),
                    simulation=self._dispatcher.simulation,
                )
            )
        return trade

    def _handle_trigger_result(self, result: TriggerResult) -> None:
        if self._on_trigger_result is not None:
            self._on_trigger_result(result)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict[str, Any]:
        aggregator = self._aggregator
        return {
            "tracked_asset": self._tracked_asset,
            "connected": self._stream.is_connected if self._stream else False,
            "subscription_id": self._stream.subscription_id if self._stream else None,
            "logs_received": self._notifications,
            "transactions_fetched": self._fetcher.stats["fetched"] if self._fetcher else 0,
            "trades_classified": self._trades_classified,
            "external_trades": self._external_trades,
            "stale_discarded": self._stale_discarded,
            "triggers_fired": self._dispatcher.fired if self._dispatcher else 0,
            "net_volume": str(aggregator.net_volume) if aggregator else "0",
            "pending_tasks": len(self._tasks),
        }
