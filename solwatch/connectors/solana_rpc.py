"""Solana JSON-RPC transaction fetcher.

Resolves a bare signature from a log notification into an
ObservedTransaction via ``getTransaction`` (jsonParsed encoding).

Commitment fallback: ``processed`` first (fastest, often not yet
resolvable), one retry at ``confirmed``, then give up. A signature that
never becomes visible inside those two attempts is dropped silently.

All transport shapes (string keys, ``{"pubkey": ...}`` objects, token
balance records) are normalized here; nothing downstream sees raw RPC
JSON.
"""

from __future__ import annotations

import itertools
import ssl
from decimal import Decimal, InvalidOperation
from typing import Any

import aiohttp
import certifi

from solwatch.config.settings import FetchConfig
from solwatch.core.dedup import SignatureCache
from solwatch.core.models import ObservedTransaction, TokenBalance
from solwatch.utils.logger import get_logger, mask_url

logger = get_logger("solana_rpc")


# ================================================================
# Error types
# ================================================================


class SolanaRpcError(Exception):
    """Base error for Solana RPC calls."""


class RpcNotFoundError(SolanaRpcError):
    """Transaction not (yet) visible at the requested commitment."""


class RpcResponseError(SolanaRpcError):
    """RPC returned an error object or a non-200 status."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


# ================================================================
# Boundary normalization
# ================================================================


def normalize_account_key(raw: Any) -> str | None:
    """Convert any transport account-key shape into a base58 string.

    Accepts a plain string or a jsonParsed ``{"pubkey": ..., "signer": ...}``
    object. Anything else returns None.
    """
    if isinstance(raw, str):
        return raw.strip() or None
    if isinstance(raw, dict):
        pubkey = raw.get("pubkey")
        if isinstance(pubkey, str) and pubkey.strip():
            return pubkey.strip()
    return None


def _parse_ui_amount(ui: dict[str, Any]) -> Decimal:
    """Token amount in UI units from a uiTokenAmount record."""
    ui_string = ui.get("uiAmountString")
    if ui_string not in (None, ""):
        return Decimal(str(ui_string))
    ui_amount = ui.get("uiAmount")
    if ui_amount is not None:
        return Decimal(str(ui_amount))
    raw_amount = ui.get("amount")
    if raw_amount in (None, ""):
        return Decimal("0")
    return Decimal(str(raw_amount)).scaleb(-int(ui.get("decimals", 0)))


def parse_token_balance(raw: Any) -> TokenBalance | None:
    """Parse one pre/post token balance record. Malformed → None."""
    try:
        mint = normalize_account_key(raw.get("mint"))
        owner = normalize_account_key(raw.get("owner")) or ""
        if mint is None:
            return None
        return TokenBalance(
            account_index=int(raw.get("accountIndex", -1)),
            mint=mint,
            owner=owner,
            amount=_parse_ui_amount(raw.get("uiTokenAmount") or {}),
        )
    except (AttributeError, TypeError, ValueError, InvalidOperation) as e:
        logger.debug("token_balance_parse_error", error=str(e))
        return None


def _parse_lamports(values: Any) -> list[int]:
    if not isinstance(values, list):
        return []
    parsed: list[int] = []
    for v in values:
        try:
            parsed.append(int(v))
        except (TypeError, ValueError):
            parsed.append(0)
    return parsed


def parse_transaction(signature: str, result: dict[str, Any]) -> ObservedTransaction | None:
    """Normalize a getTransaction result.

    Returns None for transactions without execution metadata. Account keys
    that cannot be normalized are kept as empty strings so indices stay
    aligned with the native balance arrays.
    """
    meta = result.get("meta")
    if not meta:
        return None

    transaction = result.get("transaction") or {}
    message = transaction.get("message") or {}
    raw_keys = message.get("accountKeys") or []

    account_keys: list[str] = []
    signers: list[str] = []
    for raw in raw_keys:
        key = normalize_account_key(raw)
        account_keys.append(key or "")
        if key and isinstance(raw, dict) and raw.get("signer"):
            signers.append(key)

    if not signers:
        # Plain string keys: the first numRequiredSignatures keys sign
        header = message.get("header") or {}
        try:
            n_signers = max(int(header.get("numRequiredSignatures", 1)), 1)
        except (TypeError, ValueError):
            n_signers = 1
        signers = [k for k in account_keys[:n_signers] if k]

    pre_token = [b for b in map(parse_token_balance, meta.get("preTokenBalances") or []) if b]
    post_token = [b for b in map(parse_token_balance, meta.get("postTokenBalances") or []) if b]

    return ObservedTransaction(
        signature=signature,
        account_keys=account_keys,
        signers=signers,
        pre_balances=_parse_lamports(meta.get("preBalances")),
        post_balances=_parse_lamports(meta.get("postBalances")),
        pre_token_balances=pre_token,
        post_token_balances=post_token,
        slot=result.get("slot"),
    )


# ================================================================
# Fetcher
# ================================================================


class TransactionFetcher:
    """Signature → ObservedTransaction with dedup and commitment fallback.

    Args:
        rpc_url: HTTP JSON-RPC endpoint.
        config: Commitment levels, timeouts and dedup capacity.
        session: Optional shared aiohttp session.
    """

    def __init__(
        self,
        rpc_url: str,
        config: FetchConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._config = config or FetchConfig()
        self._session = session
        self._owns_session = session is None
        self._cache = SignatureCache(self._config.dedup_capacity)
        self._ids = itertools.count(1)
        self._fetched = 0
        self._not_found = 0
        self._duplicates = 0

    @property
    def cache(self) -> SignatureCache:
        return self._cache

    async def initialize(self) -> None:
        """Create HTTP session."""
        if self._session is None:
            ssl_ctx = ssl.create_default_context(cafile=certifi.where())
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
                connector=aiohttp.TCPConnector(ssl=ssl_ctx),
            )
        logger.info("tx_fetcher_initialized", rpc_url=mask_url(self._rpc_url))

    async def close(self) -> None:
        """Close HTTP session (only if we created it)."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(self, signature: str, priority: bool = False) -> ObservedTransaction | None:
        """Resolve a signature once. Duplicates and misses return None.

        ``priority`` marks signatures whose log text already mentions the
        tracked asset; it only affects logging.
        """
        if not self._cache.should_process(signature):
            self._duplicates += 1
            return None

        self._fetched += 1
        try:
            result = await self._resolve(signature, priority)
        finally:
            self._cache.release(signature)

        if result is None:
            self._not_found += 1
            return None

        tx = parse_transaction(signature, result)
        if tx is None:
            logger.debug("tx_without_meta", signature=signature[:16])
        return tx

    async def _resolve(self, signature: str, priority: bool) -> dict[str, Any] | None:
        attempts = (
            (self._config.fast_commitment, self._config.fast_timeout_s),
            (self._config.fallback_commitment, self._config.fallback_timeout_s),
        )
        for commitment, timeout_s in attempts:
            try:
                return await self._get_transaction(signature, commitment, timeout_s)
            except (SolanaRpcError, aiohttp.ClientError, TimeoutError, ValueError) as e:
                logger.debug(
                    "tx_fetch_miss",
                    signature=signature[:16],
                    commitment=commitment,
                    priority=priority,
                    error=str(e) or type(e).__name__,
                )
        return None

    async def _get_transaction(
        self, signature: str, commitment: str, timeout_s: float
    ) -> dict[str, Any]:
        """getTransaction RPC call. Raises RpcNotFoundError on null result."""
        if self._session is None:
            raise RuntimeError("TransactionFetcher not initialized. Call initialize() first.")

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "getTransaction",
            "params": [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }
        async with self._session.post(
            self._rpc_url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout_s)
        ) as resp:
            if resp.status != 200:
                raise RpcResponseError(f"HTTP {resp.status}", code=resp.status)
            data = await resp.json(content_type=None)

        if not isinstance(data, dict):
            raise RpcResponseError("malformed RPC response")
        error = data.get("error")
        if isinstance(error, dict):
            raise RpcResponseError(str(error.get("message", error)), code=error.get("code"))
        if error:
            raise RpcResponseError(str(error))
        result = data.get("result")
        if not result:
            raise RpcNotFoundError(f"{signature} not visible at {commitment}")
        return result

    @property
    def stats(self) -> dict[str, int]:
        return {
            "fetched": self._fetched,
            "not_found": self._not_found,
            "duplicates": self._duplicates,
            "cached": len(self._cache),
        }
