"""
Configuration management using pydantic-settings.

Every field can be set through the environment with the ``ZINSCRIBE_``
prefix (``ZINSCRIBE_RPC_URL``, ``ZINSCRIBE_GATEWAY_SECRET``...) or a ``.env``
file in the working directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from zinscribe.address import NetworkType
from zinscribe.constants import (
    DEFAULT_COMMIT_PROPAGATION_DELAY,
    DEFAULT_CONTEXT_TIMEOUT,
    DEFAULT_FEE,
    DEFAULT_INSCRIPTION_AMOUNT,
    DEFAULT_LEASE_TTL,
)
from zinscribe.models import InscriptionAmounts


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ZINSCRIBE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    network: NetworkType = NetworkType.MAINNET

    rpc_url: str = "http://127.0.0.1:8232"
    rpc_user: str = ""
    rpc_password: str = ""
    rpc_max_retries: int = Field(default=3, ge=1)
    rpc_base_delay: float = Field(default=0.5, ge=0.0)
    rpc_timeout: float = Field(default=30.0, gt=0.0)
    # used only when the node cannot report the next block's branch id
    branch_id_fallback: int | None = None

    indexer_url: str = "https://indexer.zerdinals.com"
    utxo_url: str = "https://utxos.zerdinals.com"
    taint_source: Literal["indexer", "node", "none"] = "indexer"
    relay_broadcast: bool = True

    state_file: Path = Path("zinscribe-state.json")

    commit_propagation_delay: float = Field(default=DEFAULT_COMMIT_PROPAGATION_DELAY, ge=0.0)
    lease_ttl: float = Field(default=DEFAULT_LEASE_TTL, gt=0.0)
    context_timeout: float = Field(default=DEFAULT_CONTEXT_TIMEOUT, gt=0.0)

    inscription_amount: int = Field(default=DEFAULT_INSCRIPTION_AMOUNT, gt=0)
    fee: int = Field(default=DEFAULT_FEE, ge=0)
    platform_fee: int = Field(default=0, ge=0)
    treasury_address: str | None = None

    gateway_secret: str | None = None
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 8787

    log_level: str = "INFO"

    @field_validator("branch_id_fallback", mode="before")
    @classmethod
    def parse_branch_id(cls, v: Any) -> Any:
        # accepts "c2d6d0b4", "0xc2d6d0b4" or an integer
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            return int(v, 16)
        return v

    def default_amounts(self) -> InscriptionAmounts:
        return InscriptionAmounts(
            inscription_amount=self.inscription_amount,
            fee=self.fee,
            platform_fee=self.platform_fee,
            treasury_address=self.treasury_address,
        )


def get_settings() -> Settings:
    return Settings()
