"""
Configuration management using pydantic and pydantic-settings.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from btcexplorer.constants import (
    DEFAULT_HARD_RETRY_BUDGET,
    DEFAULT_MAX_CONCURRENT_TASKS,
    DEFAULT_PING_INTERVAL,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_RECONNECT_BACKOFF,
    DEFAULT_RECONNECT_GRACE,
    DEFAULT_RPC_TIMEOUT,
    DEFAULT_SOFT_RETRY_BUDGET,
    DEFAULT_THROTTLE_INTERVAL,
    DEFAULT_UNTHROTTLE_AFTER_OK_COUNT,
    DEFAULT_UNTHROTTLE_AFTER_TIME,
    IRREVERSIBILITY_THRESHOLD,
    MAX_TX_PER_KEY,
)


class RequestQueueParams(BaseModel):
    """Throttling and retry parameters for the HTTP request queue."""

    max_concurrent_tasks: int = Field(
        default=DEFAULT_MAX_CONCURRENT_TASKS, ge=1, description="Admission ceiling"
    )
    throttle_interval: float = Field(
        default=DEFAULT_THROTTLE_INTERVAL, gt=0, description="Pacing delay in seconds"
    )
    unthrottle_after_ok_count: int = Field(default=DEFAULT_UNTHROTTLE_AFTER_OK_COUNT, ge=1)
    unthrottle_after_time: float = Field(
        default=DEFAULT_UNTHROTTLE_AFTER_TIME, gt=0, description="Seconds without calls"
    )
    soft_retry_budget: int = Field(default=DEFAULT_SOFT_RETRY_BUDGET, ge=1)
    hard_retry_budget: int = Field(default=DEFAULT_HARD_RETRY_BUDGET, ge=1)


class ElectrumSessionParams(BaseModel):
    """Timing parameters for the persistent Electrum session."""

    ping_interval: float = Field(default=DEFAULT_PING_INTERVAL, gt=0)
    probe_timeout: float = Field(default=DEFAULT_PROBE_TIMEOUT, gt=0)
    reconnect_backoff: float = Field(default=DEFAULT_RECONNECT_BACKOFF, ge=0)
    reconnect_grace: float = Field(default=DEFAULT_RECONNECT_GRACE, ge=0)
    rpc_timeout: float = Field(default=DEFAULT_RPC_TIMEOUT, gt=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
    )

    backend: Literal["esplora", "electrum"] = "esplora"
    network: Literal["mainnet", "testnet", "regtest"] = "mainnet"

    # Empty values fall back to the network's default server
    esplora_url: str = ""
    electrum_host: str = ""
    electrum_port: int = 0
    electrum_protocol: Literal["tcp", "ssl"] = "ssl"

    irreversibility_threshold: int = Field(default=IRREVERSIBILITY_THRESHOLD, ge=1)
    max_tx_per_key: int = Field(default=MAX_TX_PER_KEY, ge=1)

    request_queue: RequestQueueParams = Field(default_factory=RequestQueueParams)
    electrum_session: ElectrumSessionParams = Field(default_factory=ElectrumSessionParams)

    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()
