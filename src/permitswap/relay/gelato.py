"""Async client for a Gelato-compatible relay REST API.

Endpoints used:
- POST /relays/v2/call-with-sync-fee: enqueue a call whose target contract
  pays the relay fee out of the swap proceeds
- GET  /oracles/{chainId}/estimate: fee quote for a gas limit
- GET  /tasks/status/{taskId}: task state

Enqueueing is never retried here. If the request times out the task may
already exist, so the error is reported as ambiguous and the decision to
resubmit is left to the caller.
"""

import logging
from typing import Any, Optional

import httpx
from web3 import Web3

from permitswap.chain.abi import NATIVE_TOKEN
from permitswap.chain.base import TxReceipt
from permitswap.errors import SubmissionRejectedError
from permitswap.models import HandleKind, TaskHandle, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.gelato.digital"

SUCCESS_STATES = {"ExecSuccess"}
FAILED_STATES = {"ExecReverted", "Cancelled", "Blacklisted", "NotFound"}
PENDING_STATES = {"CheckPending", "ExecPending", "WaitingForConfirmation"}


class GelatoRelayClient:
    """Thin wrapper around the relay endpoints the swap pipeline needs."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_s,
            transport=self._transport,
            headers={"content-type": "application/json", "accept": "application/json"},
        )

    async def estimate_fee(
        self,
        chain_id: int,
        gas_limit: int,
        high_priority: bool = False,
        payment_token: str = NATIVE_TOKEN,
    ) -> int:
        """Quote the relay fee (in payment token units) for `gas_limit`.

        Raises:
            SubmissionRejectedError: If the relay cannot quote; nothing has
                been submitted at this point
        """
        params = {
            "paymentToken": payment_token,
            "gasLimit": str(gas_limit),
            "isHighPriority": "true" if high_priority else "false",
            "gasLimitL1": "0",
        }
        try:
            async with self._client() as client:
                response = await client.get(f"/oracles/{chain_id}/estimate", params=params)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SubmissionRejectedError(f"Relay fee quote failed: {type(e).__name__}: {e}") from e

        try:
            fee = int(data["estimatedFee"])
        except (KeyError, TypeError, ValueError) as e:
            raise SubmissionRejectedError(f"Relay fee quote malformed: {data!r}") from e

        logger.info(f"Relay fee estimate on chain {chain_id}: {fee} (gas {gas_limit}, high_priority={high_priority})")
        return fee

    async def call_with_sync_fee(
        self,
        chain_id: int,
        target: str,
        data: bytes,
        gas_limit: Optional[int] = None,
        fee_token: str = NATIVE_TOKEN,
        is_relay_context: bool = True,
    ) -> TaskHandle:
        """Enqueue a relayed call. One network write, no retries.

        Raises:
            SubmissionRejectedError: ambiguous=False for 4xx responses (the
                relay refused), ambiguous=True for timeouts, transport
                errors and 5xx responses
        """
        body: dict[str, Any] = {
            "chainId": str(chain_id),
            "target": target,
            "data": Web3.to_hex(data),
            "feeToken": fee_token,
            "isRelayContext": is_relay_context,
        }
        if gas_limit is not None:
            body["gasLimit"] = str(gas_limit)
        if self.api_key:
            body["sponsorApiKey"] = self.api_key

        try:
            async with self._client() as client:
                response = await client.post("/relays/v2/call-with-sync-fee", json=body)
        except httpx.TimeoutException as e:
            raise SubmissionRejectedError(
                f"Relay request timed out; task may exist: {e}", ambiguous=True
            ) from e
        except httpx.TransportError as e:
            raise SubmissionRejectedError(
                f"Relay transport error; task may exist: {e}", ambiguous=True
            ) from e

        if response.status_code >= 500:
            raise SubmissionRejectedError(
                f"Relay error {response.status_code}: {response.text}", ambiguous=True
            )
        if response.status_code >= 400:
            raise SubmissionRejectedError(f"Relay rejected call {response.status_code}: {response.text}")

        try:
            task_id = response.json().get("taskId")
        except (ValueError, AttributeError):
            task_id = None
        if not task_id:
            raise SubmissionRejectedError(
                f"Relay accepted call but returned no task id: {response.text}", ambiguous=True
            )

        logger.info(f"Relay task {task_id} created for {target} on chain {chain_id}")
        return TaskHandle(id=task_id, kind=HandleKind.RELAY_TASK)

    async def get_task_status(self, handle: TaskHandle) -> TaskStatus:
        """Fetch a relay task's state and map it onto a TaskStatus.

        Read failures and not-yet-indexed tasks are reported as Pending: the
        attempt counts against the poll budget and an unresolved task ends
        as Expired, never as Failed.
        """
        try:
            async with self._client() as client:
                response = await client.get(f"/tasks/status/{handle.id}")
        except httpx.HTTPError as e:
            logger.warning(f"Relay status query for {handle.id} failed: {e}")
            return TaskStatus.pending()

        if response.status_code == 404:
            logger.debug(f"Relay task {handle.id} not indexed yet")
            return TaskStatus.pending()
        if response.status_code >= 400:
            logger.warning(f"Relay status query for {handle.id} returned {response.status_code}")
            return TaskStatus.pending()

        try:
            task = response.json().get("task") or {}
        except (ValueError, AttributeError):
            logger.warning(f"Relay status for {handle.id} is not a JSON object: {response.text[:200]!r}")
            return TaskStatus.pending()
        state = task.get("taskState", "")
        tx_hash = task.get("transactionHash")

        if state in SUCCESS_STATES:
            receipt = TxReceipt(
                tx_hash=tx_hash or "",
                block_number=int(task.get("blockNumber") or 0),
                success=True,
            )
            return TaskStatus.confirmed(receipt)

        if state in FAILED_STATES:
            reason = task.get("lastCheckMessage") or state
            receipt = None
            if tx_hash:
                receipt = TxReceipt(
                    tx_hash=tx_hash,
                    block_number=int(task.get("blockNumber") or 0),
                    success=False,
                )
            return TaskStatus.failed(f"{state}: {reason}", receipt=receipt)

        if state not in PENDING_STATES:
            logger.warning(f"Unknown relay task state {state!r} for {handle.id}; treating as pending")
        return TaskStatus.pending(tx_hash=tx_hash)
