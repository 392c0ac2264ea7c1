"""Base interfaces for signing.

Signing flow:
1. Build typed data (permit) or an unsigned transaction
2. Submit to the signer
3. Signer returns signature components, never key material
4. Caller places the components into call data or broadcasts the raw tx

Key custody is the signer's business; the swap pipeline only ever sees an
address and signatures.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureResult:
    """Result of a typed-data signing operation.

    Attributes:
        success: Whether signing succeeded
        v: Recovery parameter (27 or 28)
        r: R component, 32 bytes
        s: S component, 32 bytes
        signer: Address that produced the signature
        error: Error message if signing failed
    """
    success: bool
    v: Optional[int] = None
    r: Optional[bytes] = None
    s: Optional[bytes] = None
    signer: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_components(cls, v: int, r: int, s: int, signer: Optional[str] = None) -> "SignatureResult":
        return cls(
            success=True,
            v=v,
            r=r.to_bytes(32, "big"),
            s=s.to_bytes(32, "big"),
            signer=signer,
        )


class Signer(ABC):
    """Abstract signing capability.

    Implementations must never expose raw private keys.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksummed address of the signing account."""
        pass

    @abstractmethod
    async def sign_typed_data(self, typed_data: dict) -> SignatureResult:
        """Sign an EIP-712 typed data structure.

        Args:
            typed_data: Full message (types, primaryType, domain, message)

        Returns:
            SignatureResult with v, r, s on success
        """
        pass

    @abstractmethod
    async def sign_transaction(self, tx_params: dict) -> bytes:
        """Sign a transaction and return the raw signed bytes."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(address={self.address})"


def recover_typed_data_signer(typed_data: dict, v: int, r: bytes, s: bytes) -> str:
    """Recover the address that signed `typed_data`.

    Used to verify a permit before it leaves the process.
    """
    signable = encode_typed_data(full_message=typed_data)
    return Account.recover_message(
        signable,
        vrs=(v, int.from_bytes(r, "big"), int.from_bytes(s, "big")),
    )
