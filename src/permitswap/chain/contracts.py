"""Typed wrappers over the token and Permit2 contracts.

Reads go through ChainClient.call and are decoded against the declared
output types. Writes are returned as call data; submitting them is the
TaskSubmitter's job so that every network write happens in one place.
"""

import logging

from eth_abi.exceptions import DecodingError
from web3.exceptions import ContractLogicError

from permitswap.chain import abi
from permitswap.chain.base import ChainClient
from permitswap.models import AllowanceState
from permitswap.units import ensure_width

logger = logging.getLogger(__name__)

DEFAULT_PERMIT_VERSION = "1"


class TokenContract:
    """ERC-20 token with EIP-2612 permit support."""

    def __init__(self, client: ChainClient, address: str):
        self.client = client
        self.address = address

    async def _read(self, fn: abi.AbiFunction, *args) -> tuple:
        data = await self.client.call(self.address, fn.encode_call(*args))
        return fn.decode_output(data)

    async def decimals(self) -> int:
        (value,) = await self._read(abi.ERC20_DECIMALS)
        return value

    async def balance_of(self, owner: str) -> int:
        (value,) = await self._read(abi.ERC20_BALANCE_OF, owner)
        return value

    async def nonces(self, owner: str) -> int:
        (value,) = await self._read(abi.ERC20_NONCES, owner)
        return value

    async def name(self) -> str:
        (value,) = await self._read(abi.ERC20_NAME)
        return value

    async def version(self) -> str:
        """EIP-712 domain version; tokens without version() use "1"."""
        try:
            (value,) = await self._read(abi.ERC20_VERSION)
        except (ContractLogicError, DecodingError) as e:
            logger.debug(f"version() unavailable on {self.address} ({e}); using {DEFAULT_PERMIT_VERSION!r}")
            return DEFAULT_PERMIT_VERSION
        return value

    async def allowance(self, owner: str, spender: str) -> AllowanceState:
        (value,) = await self._read(abi.ERC20_ALLOWANCE, owner, spender)
        return AllowanceState(amount=value)

    @staticmethod
    def approve_call(spender: str, value: int) -> bytes:
        ensure_width(value, 256, "approval amount")
        return abi.ERC20_APPROVE.encode_call(spender, value)


class Permit2Contract:
    """Permit2 time-bound allowance registry."""

    def __init__(self, client: ChainClient, address: str):
        self.client = client
        self.address = address

    async def allowance(self, owner: str, token: str, spender: str) -> AllowanceState:
        data = await self.client.call(
            self.address, abi.PERMIT2_ALLOWANCE.encode_call(owner, token, spender)
        )
        amount, expiration, nonce = abi.PERMIT2_ALLOWANCE.decode_output(data)
        return AllowanceState(amount=amount, expiration=expiration, nonce=nonce)

    @staticmethod
    def approve_call(token: str, spender: str, amount: int, expiration: int) -> bytes:
        ensure_width(amount, 160, "Permit2 approval amount")
        ensure_width(expiration, 48, "Permit2 approval expiration")
        return abi.PERMIT2_APPROVE.encode_call(token, spender, amount, expiration)
