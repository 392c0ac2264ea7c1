"""Application configuration using pydantic-settings.

Settings are read once at startup (environment and optional .env file) and
passed explicitly into the orchestrator. Components never read process
state themselves.

Malformed values fall back to the field default. Every fallback is logged
as a warning so a typo in the environment is visible at startup rather than
silently changing behaviour.
"""

import logging
import re
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Any, Optional

from eth_utils import to_checksum_address
from pydantic import AfterValidator, Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

DEFAULT_TARGET_CONTRACT = "0xfB990A2eDc7811223B737cC25ac68aEccEC97d5f"
DEFAULT_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DEFAULT_USDT = "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2"
DEFAULT_UNIVERSAL_ROUTER = "0x6fF5693b99212Da76ad316178A184AB56D299b43"
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"


def _check_address(value: str) -> str:
    if not _ADDRESS_RE.match(value):
        raise ValueError(f"not an EVM address: {value!r}")
    return to_checksum_address(value)


def _check_optional_address(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    return _check_address(value)


EvmAddress = Annotated[str, AfterValidator(_check_address)]
OptionalEvmAddress = Annotated[Optional[str], AfterValidator(_check_optional_address)]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Chain
    # ======================
    chain_id: int = Field(default=8453, gt=0, description="EVM chain identifier (Base mainnet)")
    rpc_url: str = Field(default="https://mainnet.base.org", description="JSON-RPC endpoint")
    private_key: Optional[str] = Field(
        default=None, description="Hex private key used by the standalone path only"
    )
    debug: bool = Field(default=False, description="Enable debug logging")

    # ======================
    # Relay (gas-sponsored path)
    # ======================
    relay_api_key: str = Field(default="", description="Relay sponsor API key")
    relay_base_url: str = Field(
        default="https://api.gelato.digital", description="Relay REST API base URL"
    )
    high_priority: bool = Field(default=False, description="Ask the relay for high priority execution")

    # ======================
    # Permit-swap contract
    # ======================
    target_contract: EvmAddress = Field(
        default=DEFAULT_TARGET_CONTRACT, description="Permit-swap-and-pay-fee contract"
    )
    token_address: EvmAddress = Field(default=DEFAULT_USDC, description="Permit token (input asset)")
    gas_limit: int = Field(default=800_000, gt=0, description="Gas ceiling for the swap call")
    fee_buffer_bps: int = Field(
        default=2000, ge=0, le=100_000, description="Safety buffer over the quoted relay fee (bps)"
    )
    permit_deadline_seconds: int = Field(default=30 * 60, gt=0, description="Permit validity window")
    swap_deadline_seconds: int = Field(default=20 * 60, gt=0, description="Swap validity window")
    swap_min_native_out: Decimal = Field(
        default=Decimal("0"), ge=0, description="Minimum native output, in ether units"
    )

    # ======================
    # Status polling
    # ======================
    status_poll_max_attempts: int = Field(default=12, gt=0, description="Status queries before giving up")
    status_poll_interval_ms: int = Field(default=5000, ge=0, description="Delay between status queries")

    # ======================
    # Router path (direct, Permit2)
    # ======================
    router_address: EvmAddress = Field(default=DEFAULT_UNIVERSAL_ROUTER, description="Universal router")
    permit2_address: EvmAddress = Field(default=PERMIT2_ADDRESS, description="Permit2 allowance contract")
    token_out_address: EvmAddress = Field(default=DEFAULT_USDT, description="Output token")
    pool_fee: int = Field(default=500, gt=0, lt=2**24, description="Pool fee tier (uint24)")
    swap_amount: str = Field(default="0.0001", description="Input amount in token units")
    token_decimals: Optional[int] = Field(default=None, ge=0, le=255, description="Override input decimals")
    token_out_decimals: Optional[int] = Field(default=None, ge=0, le=255, description="Override output decimals")
    min_amount_out: str = Field(default="0", description="Minimum output in output token units")
    recipient: OptionalEvmAddress = Field(default=None, description="Swap recipient (default: owner)")
    swap_deadline: Optional[int] = Field(default=None, gt=0, description="Absolute swap deadline override")

    @field_validator("*", mode="wrap")
    @classmethod
    def _fallback_to_default(cls, value: Any, handler, info: ValidationInfo) -> Any:
        """Replace malformed values with the field default, loudly."""
        try:
            return handler(value)
        except ValidationError as e:
            default = cls.model_fields[info.field_name].get_default(call_default_factory=True)
            logger.warning(
                f"Invalid value for {info.field_name.upper()} ({e.errors()[0]['msg']}); "
                f"falling back to default {default!r}"
            )
            return default

    @property
    def poll_interval_seconds(self) -> float:
        return self.status_poll_interval_ms / 1000

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "chain_id": self.chain_id,
            "rpc_url": self._redact_url(self.rpc_url),
            "private_key": "***" if self.private_key else "(not set)",
            "relay": {
                "base_url": self.relay_base_url,
                "api_key": "***" if self.relay_api_key else "(not set)",
                "high_priority": self.high_priority,
            },
            "permit_swap": {
                "target": self.target_contract,
                "token": self.token_address,
                "gas_limit": self.gas_limit,
                "fee_buffer_bps": self.fee_buffer_bps,
                "permit_deadline_seconds": self.permit_deadline_seconds,
                "swap_deadline_seconds": self.swap_deadline_seconds,
                "min_native_out": str(self.swap_min_native_out),
            },
            "router_swap": {
                "router": self.router_address,
                "permit2": self.permit2_address,
                "token_out": self.token_out_address,
                "pool_fee": self.pool_fee,
                "amount": self.swap_amount,
                "min_amount_out": self.min_amount_out,
            },
            "polling": {
                "max_attempts": self.status_poll_max_attempts,
                "interval_ms": self.status_poll_interval_ms,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in an RPC URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
                return f"{proto}://***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance. Only the entry point should call this."""
    return Settings()
