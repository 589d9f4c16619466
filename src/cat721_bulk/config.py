"""
Configuration for a bulk transfer run.
"""

from __future__ import annotations

import math
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from cat721_bulk.constants import (
    CONFIRMATION_POLL_INTERVAL,
    DEFAULT_MEMPOOL_URL,
    DEFAULT_VBYTES_PER_TRANSFER,
    DUST_LIMIT,
)


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class TransferConfig(BaseModel):
    """Configuration for one batch of transfers."""

    # Batch input
    source_file: Path
    collection_id: str = Field(min_length=1)

    # Services
    tracker_host: str = Field(min_length=1)
    mempool_url: str = DEFAULT_MEMPOOL_URL
    network: NetworkType = NetworkType.MAINNET
    http_timeout: float = Field(default=30.0, gt=0)

    # Fee payer
    fee_wif: str = Field(min_length=1, repr=False)
    fee_rate: float = Field(default=1.0, gt=0, description="Fee rate in sat/vB")
    vbytes_per_transfer: int = Field(
        default=DEFAULT_VBYTES_PER_TRANSFER,
        ge=1,
        description="Worst-case vsize of one guard + send pair",
    )
    dust_limit: int = Field(default=DUST_LIMIT, ge=0)

    confirmation_poll_interval: float = Field(default=CONFIRMATION_POLL_INTERVAL, gt=0)

    @field_validator("tracker_host", "mempool_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def bullet_value(self) -> int:
        """Value of each fee bullet in sats."""
        return math.ceil(self.vbytes_per_transfer * self.fee_rate)
