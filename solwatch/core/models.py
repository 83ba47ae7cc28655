"""Domain DTOs shared by the fetch → classify → aggregate → trigger pipeline.

Account identifiers are plain base58 strings everywhere past the RPC
boundary; ``connectors.solana_rpc`` is the only place that sees the raw
transport shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class TradeDirection(Enum):
    BUY = "BUY"
    SELL = "SELL"


class TriggerStage(Enum):
    """Which one-shot trigger fired. INSTANT is the single-threshold mode."""

    INSTANT = "instant"
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    STAGE3 = "stage3"


@dataclass(frozen=True)
class TokenBalance:
    """One pre/post token balance record of a transaction."""

    account_index: int
    mint: str
    owner: str
    amount: Decimal  # UI units (decimals applied)


@dataclass
class ObservedTransaction:
    """Resolved transaction, normalized at the RPC boundary."""

    signature: str
    account_keys: list[str]
    signers: list[str]
    pre_balances: list[int]  # lamports, aligned with account_keys
    post_balances: list[int]
    pre_token_balances: list[TokenBalance] = field(default_factory=list)
    post_token_balances: list[TokenBalance] = field(default_factory=list)
    slot: int | None = None


@dataclass(frozen=True)
class ClassifiedTrade:
    """A buy or sell of the tracked asset by one actor."""

    signature: str
    direction: TradeDirection
    actor: str
    is_owned: bool
    net_amount: Decimal  # SOL, fee-adjusted
    token_amount: Decimal
    timestamp: float  # epoch seconds

    @property
    def signed_amount(self) -> Decimal:
        """+amount for buys, -amount for sells."""
        return self.net_amount if self.direction == TradeDirection.BUY else -self.net_amount


@dataclass(frozen=True)
class VolumeWindowEntry:
    actor: str
    signed_amount: Decimal
    timestamp: float


@dataclass(frozen=True)
class TriggerContext:
    """Everything the executor needs to run one sell action."""

    mint: str
    stage: TriggerStage
    net_volume: Decimal
    threshold: Decimal
    elapsed_s: float  # since window start
    simulation: bool = False


@dataclass(frozen=True)
class TriggerResult:
    """Completion event for one dispatched trigger."""

    stage: TriggerStage
    mint: str
    success: bool
    simulated: bool = False
    exit_code: int | None = None
    error: str | None = None
    duration_s: float = 0.0
