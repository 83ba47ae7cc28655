"""Trade classification for the tracked asset.

Decides whether an observed transaction is a buy or sell of the tracked
mint, who initiated it, and how much SOL changed hands net of fees.

Fee estimate is a tiered heuristic over the raw SOL balance change:
    raw <= 0.001        base fee only
    0.001 < raw <= 0.01 base + 0.001 priority + 2% protocol fee
    raw > 0.01          base + 0.002 priority + 2% protocol fee
Large trades are then capped at 88% of the raw change. Thresholds are
tuned against this approximation, so it is intentionally not exact.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from decimal import Decimal

from solwatch.core.models import ClassifiedTrade, ObservedTransaction, TokenBalance, TradeDirection

LAMPORTS_PER_SOL = Decimal("1000000000")

BASE_FEE_SOL = Decimal("0.000005")
PROTOCOL_FEE_RATE = Decimal("0.02")

# (lower bound exclusive, estimated priority fee)
LARGE_BAND_SOL = Decimal("0.01")
LARGE_PRIORITY_FEE_SOL = Decimal("0.002")
MEDIUM_BAND_SOL = Decimal("0.001")
MEDIUM_PRIORITY_FEE_SOL = Decimal("0.001")

NET_CAP_RATIO = Decimal("0.88")


def estimate_fees(raw_change: Decimal) -> Decimal:
    """Estimate total fees paid inside a raw SOL balance change.

    Examples:
        raw=0.0005 → 0.000005
        raw=0.005  → 0.000005 + 0.001 + 0.0001 = 0.001105
        raw=1.0    → 0.000005 + 0.002 + 0.02   = 0.022005
    """
    if raw_change > LARGE_BAND_SOL:
        return BASE_FEE_SOL + LARGE_PRIORITY_FEE_SOL + raw_change * PROTOCOL_FEE_RATE
    if raw_change > MEDIUM_BAND_SOL:
        return BASE_FEE_SOL + MEDIUM_PRIORITY_FEE_SOL + raw_change * PROTOCOL_FEE_RATE
    return BASE_FEE_SOL


def net_sol_amount(raw_change: Decimal) -> Decimal:
    """Fee-adjusted SOL amount, capped at 88% of raw for large trades."""
    raw_change = abs(raw_change)
    fees = estimate_fees(raw_change)
    net = raw_change - fees if raw_change > fees else raw_change

    if raw_change > LARGE_BAND_SOL:
        cap = raw_change * NET_CAP_RATIO
        if net > cap:
            net = cap
    return net


def _token_balance(balances: Iterable[TokenBalance], owner: str, mint: str) -> Decimal:
    """First matching owner+mint balance, 0 when absent."""
    for balance in balances:
        if balance.mint.lower() == mint and balance.owner.lower() == owner:
            return balance.amount
    return Decimal("0")


def mentions_asset(tx: ObservedTransaction, tracked_asset: str) -> bool:
    """Whether the mint appears in account keys or any token balance record."""
    mint = tracked_asset.lower()
    if any(key.lower() == mint for key in tx.account_keys):
        return True
    return any(
        b.mint.lower() == mint for b in (*tx.pre_token_balances, *tx.post_token_balances)
    )


def _sol_change(tx: ObservedTransaction, actor: str) -> Decimal:
    """Absolute native balance change of the actor, in SOL."""
    for index, key in enumerate(tx.account_keys):
        if key.lower() != actor:
            continue
        if index >= len(tx.pre_balances) or index >= len(tx.post_balances):
            return Decimal("0")
        delta = tx.pre_balances[index] - tx.post_balances[index]
        return abs(Decimal(delta)) / LAMPORTS_PER_SOL
    return Decimal("0")


def classify(
    tx: ObservedTransaction,
    tracked_asset: str,
    owned_accounts: Iterable[str],
    now: float | None = None,
) -> ClassifiedTrade | None:
    """Classify a transaction against the tracked mint.

    Args:
        tx: Normalized transaction.
        tracked_asset: Mint address being monitored.
        owned_accounts: Our wallets (compared case-insensitively).
        now: Timestamp to stamp on the trade. Defaults to time.time().

    Returns:
        ClassifiedTrade, or None if the mint is absent or the actor's token
        balance did not move.
    """
    if not tracked_asset or not mentions_asset(tx, tracked_asset):
        return None

    actor = tx.signers[0] if tx.signers else next((k for k in tx.account_keys if k), "")
    if not actor:
        return None

    mint = tracked_asset.lower()
    actor_lower = actor.lower()

    pre_tokens = _token_balance(tx.pre_token_balances, actor_lower, mint)
    post_tokens = _token_balance(tx.post_token_balances, actor_lower, mint)
    token_delta = post_tokens - pre_tokens
    if token_delta == 0:
        return None

    direction = TradeDirection.BUY if token_delta > 0 else TradeDirection.SELL
    net_amount = net_sol_amount(_sol_change(tx, actor_lower))
    is_owned = actor_lower in {a.lower() for a in owned_accounts}

    return ClassifiedTrade(
        signature=tx.signature,
        direction=direction,
        actor=actor,
        is_owned=is_owned,
        net_amount=net_amount,
        token_amount=abs(token_delta),
        timestamp=time.time() if now is None else now,
    )
