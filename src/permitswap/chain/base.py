"""Chain client interface.

The swap pipeline never talks to an RPC node directly. It goes through this
narrow contract, which the web3 client implements for real networks and the
test suite implements in memory.

Every method is a suspension point: the orchestrator issues one call, waits
for its result and only then decides the next step.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TxReceipt:
    """Mined transaction receipt (the fields the pipeline needs)."""
    tx_hash: str
    block_number: int
    success: bool
    gas_used: int = 0


class ChainClient(ABC):
    """Abstract base class for chain access."""

    @abstractmethod
    async def chain_id(self) -> int:
        """Chain identifier of the connected network."""
        pass

    @abstractmethod
    async def now(self) -> int:
        """Current chain time in unix seconds."""
        pass

    @abstractmethod
    async def call(self, to: str, data: bytes) -> bytes:
        """Execute a read-only call (eth_call) and return raw return data."""
        pass

    @abstractmethod
    async def estimate_gas(self, to: str, data: bytes, value: int = 0) -> int:
        """Estimate gas for a call from the signer's account."""
        pass

    @abstractmethod
    async def send_transaction(
        self,
        to: str,
        data: bytes,
        value: int = 0,
        gas: Optional[int] = None,
    ) -> str:
        """Sign and broadcast a transaction.

        Args:
            to: Target contract
            data: Call data
            value: Native value attached (wei)
            gas: Gas limit (estimated when None)

        Returns:
            Transaction hash (0x-prefixed hex)
        """
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Return the receipt, or None while the transaction is unmined."""
        pass

    @property
    @abstractmethod
    def account(self) -> str:
        """Address transactions are sent from."""
        pass
