"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - All subsystem configs: chain, jobs, feeds, storage, rules,
    observability, alerts
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

WEI_PER_ETHER = 10**18


def parse_ether(value: str | int | float | Decimal) -> int:
    """Convert an ether-denominated amount to wei."""
    return int(Decimal(str(value)) * WEI_PER_ETHER)


class ChainConfig(BaseModel):
    network: str = "Base"
    provider_url: str = ""
    contract_address: str = "0x6b4819f78D886eF37d4f9972FD55B0302c947277"
    erc20_buyer_token: str = "0x7F62ac1e974D65Fab4A81821CA6AF659A5F46298"
    payment_token_symbol: str = "WELS"
    simulation: bool = True
    buy_gas_limit: int = 180000
    sell_gas_limit: int = 180000
    batch_size: int = 1000
    start_block: int = 15992772
    age_of_oldest_tx_hours: int = 12
    block_fetch_frequency_ms: int = 3000
    catch_up_delta: int = 40
    min_gas_fees_balance_eth: str = "0.0001"
    min_erc20_balance: str = "3"
    max_pending_secs: int = 120
    restart_delay_secs: int = 5
    receipt_timeout_secs: int = 300

    @model_validator(mode="after")
    def _provider_from_env(self) -> "ChainConfig":
        if not self.provider_url:
            self.provider_url = os.environ.get("BASE_PROVIDER_URL", "")
        return self

    @property
    def min_gas_fees_balance_wei(self) -> int:
        return parse_ether(self.min_gas_fees_balance_eth)

    @property
    def min_erc20_balance_wei(self) -> int:
        return parse_ether(self.min_erc20_balance)


class JobsConfig(BaseModel):
    """Timings for the periodic workers."""
    function_delay_ms: int = 1000
    full_sweep_interval_ms: int = 60000
    stale_buy_order_minutes: float = 5
    stale_sell_order_minutes: float = 5
    warning_log_interval_minutes: float = 10
    pre_select_slot_sleep_ms: int = 100
    trade_gofer_interval_secs: float = 5
    low_bal_cache_ttl_minutes: float = 5
    buy_sell_mem_cache_ttl_secs: int = 3600


class FeedsConfig(BaseModel):
    """Off-chain player feeds and signing endpoints."""
    players_url: str = (
        "https://aws.ethlas.com/prod/wags/getAllPlayers?sort=wallet_created_at&page="
    )
    stats_url: str = "https://aws.ethlas.com/prod/wags/getPlayerStats"
    uid_mapping_url: str = "https://aws.ethlas.com/prod/user/getUIDByAddress"
    buy_signature_url: str = "https://aws.ethlas.com/prod/user/buyWhitelistSignature"
    interval_ms: int = 6000
    page_fetch_throttle_ms: int = 200
    request_timeout_secs: float = 15.0


class StorageConfig(BaseModel):
    data_dir: str = "data"

    @property
    def data_path(self) -> Path:
        path = Path(self.data_dir)
        return path if path.is_absolute() else _PROJECT_ROOT / path

    @property
    def whitelist_path(self) -> Path:
        return self.data_path / "whitelist"


class RulesConfig(BaseModel):
    buy_rules_path: str = "rules/buy/buyRules.json"
    sell_rules_path: str = "rules/sell/sellRules.json"

    def resolve(self, raw: str) -> Path:
        path = Path(raw)
        return path if path.is_absolute() else _PROJECT_ROOT / path


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_dir: str = "logs"
    log_file_max_bytes: int = 1024 * 1024
    log_backup_count: int = 3
    enable_metrics: bool = True


class AlertsConfig(BaseModel):
    """Alerting configuration."""
    enabled: bool = True
    slack_token: str = ""
    slack_channel_info: str = "bithoven-logs"
    slack_channel_warning: str = "bithoven-warn"
    slack_channel_error: str = "bithoven-err"
    slack_webhook: str = ""
    discord_webhook: str = ""
    min_alert_level: str = "info"
    cooldown_secs: int = 300

    @model_validator(mode="after")
    def _token_from_env(self) -> "AlertsConfig":
        if not self.slack_token:
            self.slack_token = os.environ.get("SLACK_TOKEN", "")
        return self


class BotConfig(BaseModel):
    chain: ChainConfig = Field(default_factory=ChainConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    feeds: FeedsConfig = Field(default_factory=FeedsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


def load_config(path: str | Path | None = None) -> BotConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return BotConfig(**raw)
    return BotConfig()


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


def is_simulation(config: BotConfig) -> bool:
    """Transactions are only sent when the config AND the env var allow it."""
    return config.chain.simulation or not is_live_trading_enabled()
