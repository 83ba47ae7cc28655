"""Configuration management using Pydantic Settings with YAML overlay.

Loading priority: .env → config/settings.yaml → config/settings.{MODE}.yaml
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"

PUMP_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"


# --- Nested config models ---


class StreamConfig(BaseModel):
    """Log subscription websocket parameters."""

    program_id: str = PUMP_PROGRAM_ID
    commitment: str = "processed"  # fastest, fires before block inclusion
    heartbeat_s: int = 30
    reconnect_delay_s: float = 1.0

    @field_validator("reconnect_delay_s")
    @classmethod
    def _min_backoff(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("reconnect_delay_s must be >= 1s")
        return v


class FetchConfig(BaseModel):
    """Transaction resolution (getTransaction) parameters."""

    fast_commitment: str = "processed"
    fallback_commitment: str = "confirmed"
    fast_timeout_s: float = 2.0
    fallback_timeout_s: float = 5.0
    dedup_capacity: int = 1000


class AutoSellConfig(BaseModel):
    """Single-threshold auto-sell on net external buy volume."""

    enabled: bool = True
    threshold_sol: float = 1.0  # cumulative NET SOL within window
    window_s: float = 60.0
    simulation: bool = False
    # rapid-sell = all wallets, rapid-sell-50-percent = half of bundler wallets
    sell_type: Literal["rapid-sell", "rapid-sell-50-percent"] = "rapid-sell"


class StagedSellConfig(BaseModel):
    """Three-stage auto-sell thresholds (SOL, NET volume)."""

    enabled: bool = False
    stage1: float = 5.0  # 30% of wallets
    stage2: float = 10.0  # 30% of wallets
    stage3: float = 20.0  # remaining 40% + DEV wallet

    @model_validator(mode="after")
    def _ascending(self) -> StagedSellConfig:
        if not self.stage1 < self.stage2 < self.stage3:
            raise ValueError("staged thresholds must be strictly ascending")
        return self


class ExecutorConfig(BaseModel):
    """External sell executor invocation."""

    command: list[str] = ["npm", "run"]
    cwd: str | None = None
    staged_script: str = "rapid-sell-staged"
    priority: str = "high"


# --- Main config class ---


class SolwatchConfig(BaseSettings):
    """Main configuration for the solwatch transaction monitor."""

    # Runtime
    mode: str = Field(default="live", alias="MODE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Endpoints
    rpc_endpoint: str = Field(default="", alias="RPC_ENDPOINT")
    rpc_ws_endpoint: str = Field(default="", alias="RPC_WEBSOCKET_ENDPOINT")

    # Accounts excluded from external volume
    owned_wallets: list[str] = []

    # Nested config (loaded from YAML)
    stream: StreamConfig = StreamConfig()
    fetch: FetchConfig = FetchConfig()
    auto_sell: AutoSellConfig = AutoSellConfig()
    staged_sell: StagedSellConfig = StagedSellConfig()
    executor: ExecutorConfig = ExecutorConfig()

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge overlay into base dict. Overlay values win."""
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


@lru_cache(maxsize=1)
def get_config() -> SolwatchConfig:
    """Load and return the singleton SolwatchConfig.

    Loading priority: .env → settings.yaml → settings.{MODE}.yaml
    """
    mode = os.getenv("MODE", "live")

    base_yaml = _load_yaml(_CONFIG_DIR / "settings.yaml")
    mode_yaml = _load_yaml(_CONFIG_DIR / f"settings.{mode}.yaml")

    merged = _deep_merge(base_yaml, mode_yaml)

    # Env vars and .env fill anything the YAML leaves unset
    return SolwatchConfig(**merged)
