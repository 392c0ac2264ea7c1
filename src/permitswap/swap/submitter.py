"""Task submission: direct broadcast or relay enqueue.

Each submit is exactly one network write. Nothing here retries: if a write
fails ambiguously (timeout, dropped connection) it may still have landed,
and resubmitting could spend the same permit nonce twice. The error says
whether the failure was ambiguous; the caller owns the retry decision.
"""

import logging
from typing import Optional

from web3.exceptions import Web3Exception

from permitswap.chain import abi
from permitswap.chain.base import ChainClient
from permitswap.errors import EncodingMismatchError, SubmissionRejectedError
from permitswap.models import FeeBound, HandleKind, TaskHandle, TaskStatus
from permitswap.relay.gelato import GelatoRelayClient
from permitswap.swap.encoder import EncodedCall

logger = logging.getLogger(__name__)


class TaskSubmitter:
    """Submits encoded calls and reports their status."""

    def __init__(
        self,
        client: ChainClient,
        relay: Optional[GelatoRelayClient] = None,
        chain_id: Optional[int] = None,
    ):
        self.client = client
        self.relay = relay
        self.chain_id = chain_id

    async def submit(
        self,
        encoded_call: EncodedCall,
        value_attached: Optional[int] = None,
        gas: Optional[int] = None,
    ) -> TaskHandle:
        """Sign and broadcast `encoded_call` from the client's account.

        Raises:
            SubmissionRejectedError: If the node rejects the transaction
                (ambiguous=False) or the request fails in transit
                (ambiguous=True)
        """
        value = encoded_call.value if value_attached is None else value_attached
        try:
            tx_hash = await self.client.send_transaction(
                encoded_call.target, encoded_call.data, value=value, gas=gas
            )
        except OSError as e:
            # requests / socket level failures: the tx may have reached the node
            raise SubmissionRejectedError(
                f"Broadcast to {encoded_call.target} failed in transit: {e}", ambiguous=True
            ) from e
        except (Web3Exception, ValueError) as e:
            raise SubmissionRejectedError(f"Broadcast to {encoded_call.target} rejected: {e}") from e

        logger.info(f"Submitted tx {tx_hash} to {encoded_call.target} (value {value})")
        return TaskHandle(id=tx_hash, kind=HandleKind.TRANSACTION)

    async def submit_to_relay(
        self,
        encoded_call: EncodedCall,
        fee_bound: FeeBound,
        gas_limit: Optional[int] = None,
    ) -> TaskHandle:
        """Hand `encoded_call` to the relay. The fee ceiling travels inside
        the call data; it is checked against `fee_bound` before enqueueing.
        """
        if self.relay is None or self.chain_id is None:
            raise SubmissionRejectedError("No relay configured for gas-sponsored submission")

        fn = abi.PERMIT_SWAP_AND_PAY_FEE_NATIVE
        if encoded_call.data[:4] == fn.selector:
            _, _, encoded_max_fee = fn.decode_call(encoded_call.data)
            if encoded_max_fee > fee_bound.maximum_fee.value:
                raise EncodingMismatchError(
                    f"Encoded max fee {encoded_max_fee} exceeds bound {fee_bound.maximum_fee.value}"
                )

        handle = await self.relay.call_with_sync_fee(
            self.chain_id,
            encoded_call.target,
            encoded_call.data,
            gas_limit=gas_limit,
        )
        logger.info(f"Relay task {handle.id} submitted (max fee {fee_bound.maximum_fee.value})")
        return handle

    async def status(self, handle: TaskHandle) -> TaskStatus:
        """Current status of a transaction or relay task."""
        if handle.kind == HandleKind.RELAY_TASK:
            if self.relay is None:
                raise SubmissionRejectedError("No relay configured to query task status", handle=handle)
            return await self.relay.get_task_status(handle)

        try:
            receipt = await self.client.get_receipt(handle.id)
        except (OSError, Web3Exception, ValueError) as e:
            # the tx is already out; a failed read counts as one pending attempt
            logger.warning(f"Receipt query for {handle.id} failed: {type(e).__name__}: {e}")
            return TaskStatus.pending(tx_hash=handle.id)
        if receipt is None:
            return TaskStatus.pending(tx_hash=handle.id)
        if receipt.success:
            return TaskStatus.confirmed(receipt)
        return TaskStatus.failed(f"Transaction {handle.id} reverted", receipt=receipt)
