"""Shared test fixtures for the solwatch test suite."""

from __future__ import annotations

import pytest

from solwatch.config.settings import SolwatchConfig

MINT = "MintTracked1111111111111111111111111111pump"
OWNED_WALLET = "OwnedWa11et111111111111111111111111111111111"
EXTERNAL_WALLET = "ExternaLBuyer11111111111111111111111111111111"


@pytest.fixture
def mint() -> str:
    """Tracked asset mint address."""
    return MINT


@pytest.fixture
def owned_wallet() -> str:
    """Wallet controlled by the operator."""
    return OWNED_WALLET


@pytest.fixture
def external_wallet() -> str:
    """Third-party trader wallet."""
    return EXTERNAL_WALLET


@pytest.fixture
def config() -> SolwatchConfig:
    """Config with endpoints set and YAML/env ignored."""
    return SolwatchConfig(
        rpc_endpoint="https://rpc.example.com/?api-key=secret",
        rpc_ws_endpoint="",
        auto_sell={"threshold_sol": 1.0, "window_s": 60, "simulation": True},
    )
