"""Local signing backend.

Wraps an eth-account LocalAccount built from a caller-supplied key. The key
is held in memory only for the lifetime of the signer. Suitable for scripts
and tests; wallets and remote signers implement the same Signer interface.
"""

import logging

from eth_account import Account
from eth_account.messages import encode_typed_data

from permitswap.signing.base import SignatureResult, Signer

logger = logging.getLogger(__name__)


class LocalSigner(Signer):
    """Signing backend using an in-memory private key."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_typed_data(self, typed_data: dict) -> SignatureResult:
        """Sign EIP-712 typed data with the local key."""
        try:
            signable = encode_typed_data(full_message=typed_data)
            signed = self._account.sign_message(signable)
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Local typed-data signing failed: {e}")
            return SignatureResult(success=False, error=str(e))

        return SignatureResult.from_components(
            signed.v, signed.r, signed.s, signer=self._account.address
        )

    async def sign_transaction(self, tx_params: dict) -> bytes:
        signed_tx = self._account.sign_transaction(tx_params)
        # eth-account renamed rawTransaction to raw_transaction
        return getattr(signed_tx, "raw_transaction", None) or signed_tx.rawTransaction
