"""Allow running as: python -m solwatch

Usage:
  python -m solwatch <mint> [threshold] [window_s] [--sim]
  python -m solwatch <mint> --staged 5 10 20 --wallets-file wallets.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
from pathlib import Path
from typing import Any

from solwatch.config.settings import (
    AutoSellConfig,
    SolwatchConfig,
    StagedSellConfig,
    get_config,
)
from solwatch.core.models import TriggerResult
from solwatch.core.session import TrackingSession
from solwatch.utils.logger import get_logger, setup_logging

logger = get_logger("main")


def load_wallets_file(path: Path) -> list[str]:
    """Read owned wallets from a JSON list or ``{"wallets": [...]}``."""
    with open(path) as f:
        data: Any = json.load(f)
    if isinstance(data, dict):
        data = data.get("wallets", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of wallet addresses")
    wallets: list[str] = []
    for item in data:
        # Entries may be bare addresses or {"publicKey"/"address": ...}
        if isinstance(item, str):
            wallets.append(item)
        elif isinstance(item, dict):
            address = item.get("publicKey") or item.get("address")
            if isinstance(address, str):
                wallets.append(address)
    return wallets


def apply_overrides(config: SolwatchConfig, args: argparse.Namespace) -> SolwatchConfig:
    """Layer CLI arguments over the loaded config."""
    auto = config.auto_sell.model_dump()
    if args.threshold is not None:
        auto["threshold_sol"] = args.threshold
    if args.window is not None:
        auto["window_s"] = args.window
    if args.sim:
        auto["simulation"] = True
    if args.sell_type is not None:
        auto["sell_type"] = args.sell_type
    if args.no_auto_sell:
        auto["enabled"] = False

    staged = config.staged_sell
    if args.staged is not None:
        s1, s2, s3 = args.staged
        staged = StagedSellConfig(enabled=True, stage1=s1, stage2=s2, stage3=s3)

    wallets = list(config.owned_wallets)
    wallets.extend(args.wallet or [])
    if args.wallets_file is not None:
        wallets.extend(load_wallets_file(args.wallets_file))

    return config.model_copy(
        update={
            "auto_sell": AutoSellConfig(**auto),
            "staged_sell": staged,
            "owned_wallets": list(dict.fromkeys(wallets)),
        }
    )


async def run(mint: str, config: SolwatchConfig) -> int:
    """Track ``mint`` until SIGINT/SIGTERM. Returns the process exit code."""
    shutdown = asyncio.Event()

    def _on_result(result: TriggerResult) -> None:
        logger.info(
            "trigger_result",
            stage=result.stage.value,
            success=result.success,
            simulated=result.simulated,
            exit_code=result.exit_code,
        )

    session = TrackingSession(config, on_trigger_result=_on_result)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    if not await session.start(mint, config.owned_wallets):
        return 1

    try:
        await shutdown.wait()
        logger.info("shutdown_signal_received")
    finally:
        await session.stop()
        await session.wait_for_triggers()
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Solwatch token transaction monitor")
    parser.add_argument("mint", help="Token mint address to track")
    parser.add_argument("threshold", nargs="?", type=float, help="NET SOL threshold")
    parser.add_argument("window", nargs="?", type=float, help="Window length in seconds")
    parser.add_argument("--sim", action="store_true", help="Simulation mode (no sells)")
    parser.add_argument(
        "--staged",
        nargs=3,
        type=float,
        metavar=("S1", "S2", "S3"),
        help="Enable staged sells with ascending thresholds",
    )
    parser.add_argument("--wallet", action="append", help="Owned wallet (repeatable)")
    parser.add_argument("--wallets-file", type=Path, help="JSON file of owned wallets")
    parser.add_argument(
        "--sell-type",
        choices=["rapid-sell", "rapid-sell-50-percent"],
        help="Executor script for instant sells",
    )
    parser.add_argument("--no-auto-sell", action="store_true", help="Observe only")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    config = get_config()
    setup_logging(log_level=args.log_level or config.log_level)

    config = apply_overrides(config, args)
    raise SystemExit(asyncio.run(run(args.mint, config)))


if __name__ == "__main__":
    main()
