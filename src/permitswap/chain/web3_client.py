"""web3.py implementation of the chain client.

Transactions are signed by the supplied Signer and broadcast raw, so the
node never holds keys.
"""

import logging
from typing import Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from permitswap.chain.base import ChainClient, TxReceipt
from permitswap.signing.base import Signer

logger = logging.getLogger(__name__)


class Web3ChainClient(ChainClient):
    """Chain client backed by a JSON-RPC node."""

    def __init__(self, rpc_url: str, signer: Signer, request_timeout: int = 30):
        self.rpc_url = rpc_url
        self.signer = signer
        self.request_timeout = request_timeout
        self._web3: Optional[Web3] = None

    @property
    def web3(self) -> Web3:
        """Lazy load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(
                Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.request_timeout})
            )
        return self._web3

    @property
    def account(self) -> str:
        return self.signer.address

    async def chain_id(self) -> int:
        return self.web3.eth.chain_id

    async def now(self) -> int:
        return int(self.web3.eth.get_block("latest")["timestamp"])

    async def call(self, to: str, data: bytes) -> bytes:
        result = self.web3.eth.call(
            {"to": Web3.to_checksum_address(to), "data": Web3.to_hex(data)}
        )
        return bytes(result)

    async def estimate_gas(self, to: str, data: bytes, value: int = 0) -> int:
        return self.web3.eth.estimate_gas(
            {
                "from": self.account,
                "to": Web3.to_checksum_address(to),
                "data": Web3.to_hex(data),
                "value": value,
            }
        )

    async def send_transaction(
        self,
        to: str,
        data: bytes,
        value: int = 0,
        gas: Optional[int] = None,
    ) -> str:
        """Sign and broadcast a transaction from the signer's account."""
        tx_params = {
            "from": self.account,
            "to": Web3.to_checksum_address(to),
            "data": Web3.to_hex(data),
            "value": value,
            "nonce": self.web3.eth.get_transaction_count(self.account, "pending"),
            "chainId": self.web3.eth.chain_id,
            "gasPrice": self.web3.eth.gas_price,
        }
        tx_params["gas"] = gas if gas is not None else self.web3.eth.estimate_gas(tx_params)

        raw_tx = await self.signer.sign_transaction(tx_params)
        tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Broadcast tx {tx_hash_hex} to {to} (nonce {tx_params['nonce']})")
        return tx_hash_hex

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            success=receipt["status"] == 1,
            gas_used=int(receipt.get("gasUsed", 0)),
        )
