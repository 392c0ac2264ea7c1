"""End-to-end tests for both swap paths against the fake chain and relay."""

from dataclasses import replace

import pytest
from eth_abi import decode
from web3 import Web3
from web3.exceptions import Web3Exception

from permitswap.chain import abi
from permitswap.errors import ErrorKind
from permitswap.signing.base import SignatureResult
from permitswap.signing.local import LocalSigner
from permitswap.swap.encoder import RouterPath, decode_permit_swap_call
from permitswap.swap.orchestrator import (
    PermitSwapRequest,
    RouterSwapRequest,
    SwapOrchestrator,
    SwapState,
)
from permitswap.units import MAX_UINT160, MAX_UINT256, MAX_UINT48

from tests.conftest import PERMIT2, ROUTER, START_TIME, TARGET, TEST_PRIVATE_KEY, USDC, USDT


@pytest.fixture
def orchestrator(settings, chain, signer, relay_client, no_sleep):
    return SwapOrchestrator(settings, chain, signer, relay=relay_client, sleep=no_sleep)


def preapprove(chain, owner):
    chain.token(USDC).allowances[(owner.lower(), PERMIT2.lower())] = MAX_UINT256
    chain.set_permit2_allowance(owner, USDC, ROUTER, MAX_UINT160, MAX_UINT48)


class TestRouterSwap:
    """Direct swap through Permit2 and the universal router."""

    @pytest.mark.asyncio
    async def test_zero_allowances_send_two_approvals_then_swap(self, orchestrator, settings, chain, owner):
        request = replace(RouterSwapRequest.from_settings(settings), amount=1_000_000, token_in_decimals=0)

        outcome = await orchestrator.run_router_swap(request)

        assert outcome.state == SwapState.CONFIRMED
        assert [tx.fn for tx in chain.sent] == [abi.ERC20_APPROVE, abi.PERMIT2_APPROVE, abi.ROUTER_EXECUTE]

        token_approval, delegate_approval, swap = chain.sent
        _, amount_in, _, _, _ = decode(list(abi.V3_SWAP_EXACT_IN_INPUT), swap.args[1][0])
        assert amount_in == 1_000_000
        assert token_approval.to == USDC
        assert token_approval.args == (PERMIT2, MAX_UINT256)
        assert delegate_approval.to == PERMIT2
        assert delegate_approval.args == (USDC, ROUTER, MAX_UINT160, MAX_UINT48)
        assert swap.to == ROUTER

        assert outcome.approvals == (token_approval.tx_hash, delegate_approval.tx_hash)
        assert outcome.tx_hash == swap.tx_hash
        assert outcome.history == (
            SwapState.INIT,
            SwapState.RESOLVING_PARAMS,
            SwapState.GATING_ALLOWANCES,
            SwapState.APPROVING_TOKEN,
            SwapState.APPROVING_DELEGATE,
            SwapState.ENCODING,
            SwapState.BOUNDING_FEE,
            SwapState.SUBMITTING,
            SwapState.POLLING,
            SwapState.CONFIRMED,
        )

    @pytest.mark.asyncio
    async def test_second_run_needs_no_approvals(self, orchestrator, settings, chain):
        request = RouterSwapRequest.from_settings(settings)
        await orchestrator.run_router_swap(request)
        chain.sent.clear()

        outcome = await orchestrator.run_router_swap(request)

        assert outcome.succeeded
        assert [tx.fn for tx in chain.sent] == [abi.ROUTER_EXECUTE]
        assert outcome.approvals == ()
        assert SwapState.APPROVING_TOKEN not in outcome.history

    @pytest.mark.asyncio
    async def test_swap_call_contents(self, orchestrator, settings, chain, owner):
        preapprove(chain, owner)

        await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        (swap,) = chain.sent
        commands, inputs, deadline = swap.args
        assert commands == bytes([abi.V3_SWAP_EXACT_IN])
        assert deadline == START_TIME + settings.swap_deadline_seconds
        assert swap.gas == 180_000

        recipient, amount_in, amount_out_min, path, payer_is_user = decode(
            list(abi.V3_SWAP_EXACT_IN_INPUT), inputs[0]
        )
        assert Web3.to_checksum_address(recipient) == owner
        assert amount_in == 1_500_000
        assert amount_out_min == 0
        assert RouterPath.decode(path) == RouterPath.single(USDC, 500, USDT)
        assert payer_is_user is True

    @pytest.mark.asyncio
    async def test_expired_delegate_allowance_is_renewed(self, orchestrator, settings, chain, owner):
        chain.token(USDC).allowances[(owner.lower(), PERMIT2.lower())] = MAX_UINT256
        chain.set_permit2_allowance(owner, USDC, ROUTER, MAX_UINT160, START_TIME - 10)

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.succeeded
        assert [tx.fn for tx in chain.sent] == [abi.PERMIT2_APPROVE, abi.ROUTER_EXECUTE]

    @pytest.mark.asyncio
    async def test_allowance_still_short_after_approval(self, orchestrator, settings, chain):
        chain.approvals_take_effect = False

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.ALLOWANCE_INSUFFICIENT
        assert chain.writes(abi.ROUTER_EXECUTE) == []

    @pytest.mark.asyncio
    async def test_gas_above_ceiling_aborts(self, orchestrator, settings, chain, owner):
        preapprove(chain, owner)
        chain.gas_estimate = settings.gas_limit + 1

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.error_kind == ErrorKind.FEE_EXCEEDS_BOUND
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_past_deadline_aborts_before_any_write(self, orchestrator, settings, chain):
        request = replace(RouterSwapRequest.from_settings(settings), deadline=START_TIME - 1)

        outcome = await orchestrator.run_router_swap(request)

        assert outcome.error_kind == ErrorKind.DEADLINE_EXPIRED
        assert outcome.history[-2] == SwapState.RESOLVING_PARAMS
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_invalid_amount(self, orchestrator, settings, chain):
        request = replace(RouterSwapRequest.from_settings(settings), amount="1.0000001")

        outcome = await orchestrator.run_router_swap(request)

        assert outcome.error_kind == ErrorKind.INVALID_AMOUNT
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_amount_above_uint160_rejected_before_any_write(self, orchestrator, settings, chain):
        request = replace(
            RouterSwapRequest.from_settings(settings), amount=MAX_UINT160 + 1, token_in_decimals=0
        )

        outcome = await orchestrator.run_router_swap(request)

        assert outcome.error_kind == ErrorKind.OUT_OF_RANGE
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_unmined_swap_expires(self, orchestrator, settings, chain, owner, no_sleep):
        preapprove(chain, owner)
        chain.mine = False

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.EXPIRED
        assert outcome.error_kind == ErrorKind.EXPIRED
        assert outcome.handle.id == chain.sent[0].tx_hash
        assert len(no_sleep.calls) == settings.status_poll_max_attempts - 1

    @pytest.mark.asyncio
    async def test_reverted_swap_fails(self, orchestrator, settings, chain, owner):
        preapprove(chain, owner)
        chain.revert_writes = True

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_on_submitted_called_once(self, orchestrator, settings, chain, owner):
        preapprove(chain, owner)
        handles = []

        await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings), on_submitted=handles.append)

        assert [h.id for h in handles] == [chain.sent[0].tx_hash]


class NonceBumpingSigner(LocalSigner):
    """Signs correctly but consumes the nonce on-chain meanwhile."""

    def __init__(self, private_key, chain):
        super().__init__(private_key)
        self.chain = chain

    async def sign_typed_data(self, typed_data):
        result = await super().sign_typed_data(typed_data)
        nonces = self.chain.token(USDC).nonces
        nonces[self.address.lower()] = nonces.get(self.address.lower(), 0) + 1
        return result


class RejectingSigner(LocalSigner):
    async def sign_typed_data(self, typed_data):
        return SignatureResult(success=False, error="user rejected the request")


class TestPermitSwap:
    """Gas-sponsored swap through the relay."""

    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, settings, chain, owner, fake_relay):
        chain.token(USDC).nonces[owner.lower()] = 3
        handles = []

        outcome = await orchestrator.run_permit_swap(
            PermitSwapRequest.from_settings(settings), on_submitted=handles.append
        )

        assert outcome.state == SwapState.CONFIRMED
        assert outcome.block_number == 1234
        assert outcome.history == (
            SwapState.INIT,
            SwapState.RESOLVING_PARAMS,
            SwapState.BUILDING_PERMIT,
            SwapState.ENCODING,
            SwapState.BOUNDING_FEE,
            SwapState.SUBMITTING,
            SwapState.POLLING,
            SwapState.CONFIRMED,
        )
        assert chain.sent == []
        assert len(fake_relay.submissions) == 1
        assert [h.id for h in handles] == ["0xtask1"]

        body = fake_relay.submissions[0]
        assert body["target"] == TARGET
        assert body["chainId"] == "8453"
        assert body["gasLimit"] == str(settings.gas_limit)

        permit, swap, max_fee = decode_permit_swap_call(Web3.to_bytes(hexstr=body["data"]))
        permit_owner, value, permit_deadline, v, r, s = permit
        assert permit_owner == owner
        assert value == 1_500_000
        assert permit_deadline == START_TIME + settings.permit_deadline_seconds
        assert v in (27, 28)
        assert swap == (0, START_TIME + settings.swap_deadline_seconds)
        assert max_fee == 12 * 10**11

    @pytest.mark.asyncio
    async def test_fee_rise_beyond_buffer_aborts(self, settings, chain, signer, relay_client, fake_relay, no_sleep):
        fake_relay.quotes = [100, 130]
        orchestrator = SwapOrchestrator(settings, chain, signer, relay=relay_client, sleep=no_sleep)

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.error_kind == ErrorKind.FEE_EXCEEDS_BOUND
        assert outcome.history[-2] == SwapState.BOUNDING_FEE
        assert fake_relay.submissions == []

    @pytest.mark.asyncio
    async def test_fee_rise_within_buffer_is_accepted(self, orchestrator, settings, fake_relay):
        fake_relay.quotes = [100, 120]

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_stale_nonce_is_not_submitted(self, settings, chain, relay_client, fake_relay, no_sleep):
        signer = NonceBumpingSigner(TEST_PRIVATE_KEY, chain)
        orchestrator = SwapOrchestrator(settings, chain, signer, relay=relay_client, sleep=no_sleep)

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.error_kind == ErrorKind.NONCE_STALE
        assert fake_relay.submissions == []

    @pytest.mark.asyncio
    async def test_signer_rejection(self, settings, chain, relay_client, fake_relay, no_sleep):
        signer = RejectingSigner(TEST_PRIVATE_KEY)
        orchestrator = SwapOrchestrator(settings, chain, signer, relay=relay_client, sleep=no_sleep)

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SIGNING_FAILED
        assert "user rejected" in outcome.error
        assert fake_relay.submissions == []

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, orchestrator, settings, chain, owner, fake_relay):
        chain.token(USDC).balances[owner.lower()] = 1_000_000

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.error_kind == ErrorKind.INVALID_AMOUNT
        assert fake_relay.submissions == []

    @pytest.mark.asyncio
    async def test_pending_task_expires_with_handle(self, orchestrator, settings, fake_relay, no_sleep):
        fake_relay.task_states = ["ExecPending"]

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.EXPIRED
        assert outcome.handle.id == "0xtask1"
        assert fake_relay.status_queries == settings.status_poll_max_attempts
        assert len(no_sleep.calls) == settings.status_poll_max_attempts - 1
        assert len(fake_relay.submissions) == 1

    @pytest.mark.asyncio
    async def test_reverted_task_fails(self, orchestrator, settings, fake_relay):
        fake_relay.task_states = ["CheckPending", "ExecReverted"]

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert "ExecReverted" in outcome.error

    @pytest.mark.asyncio
    async def test_relay_refusal(self, orchestrator, settings, fake_relay):
        fake_relay.submit_status_code = 400

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert outcome.handle is None


class TestChainFailures:
    """Node and transport errors still end the run with an outcome."""

    @pytest.mark.asyncio
    async def test_receipt_read_error_after_broadcast_keeps_polling(self, orchestrator, settings, chain, owner):
        preapprove(chain, owner)
        get_receipt = chain.get_receipt
        failures = []

        async def flaky_receipt(tx_hash):
            if not failures:
                failures.append(tx_hash)
                raise ConnectionError("rpc dropped")
            return await get_receipt(tx_hash)

        chain.get_receipt = flaky_receipt

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.CONFIRMED
        assert failures == [chain.sent[0].tx_hash]
        assert outcome.tx_hash == chain.sent[0].tx_hash

    @pytest.mark.asyncio
    async def test_receipt_reads_failing_until_budget_ends_expire_with_handle(
        self, orchestrator, settings, chain, owner
    ):
        preapprove(chain, owner)

        async def dropped(tx_hash):
            raise ConnectionError("rpc dropped")

        chain.get_receipt = dropped

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.EXPIRED
        assert outcome.error_kind == ErrorKind.EXPIRED
        assert outcome.handle.id == chain.sent[0].tx_hash
        assert outcome.tx_hash == chain.sent[0].tx_hash
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_read_failure_while_resolving_fails_before_any_write(self, orchestrator, settings, chain):
        async def down(to, data):
            raise ConnectionError("rpc down")

        chain.call = down

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert "ConnectionError" in outcome.error
        assert outcome.history[-2] == SwapState.RESOLVING_PARAMS
        assert outcome.handle is None
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_allowance_read_failure_while_gating(self, orchestrator, settings, chain):
        call = chain.call

        async def no_allowance(to, data):
            if data[:4] == abi.ERC20_ALLOWANCE.selector:
                raise Web3Exception("header not found")
            return await call(to, data)

        chain.call = no_allowance

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert outcome.history[-2] == SwapState.GATING_ALLOWANCES
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_nonce_read_failure_in_permit_path(self, orchestrator, settings, chain, fake_relay):
        call = chain.call

        async def no_nonces(to, data):
            if data[:4] == abi.ERC20_NONCES.selector:
                raise ConnectionError("rpc down")
            return await call(to, data)

        chain.call = no_nonces

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert outcome.history[-2] == SwapState.BUILDING_PERMIT
        assert fake_relay.submissions == []

    @pytest.mark.asyncio
    async def test_chain_id_mismatch_stops_permit_swap(self, orchestrator, settings, chain, fake_relay):
        chain.chain = 1

        outcome = await orchestrator.run_permit_swap(PermitSwapRequest.from_settings(settings))

        assert outcome.state == SwapState.FAILED
        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert "chain id 8453" in outcome.error
        assert outcome.history[-2] == SwapState.RESOLVING_PARAMS
        assert fake_relay.submissions == []

    @pytest.mark.asyncio
    async def test_chain_id_mismatch_stops_router_swap(self, orchestrator, settings, chain):
        chain.chain = 84532

        outcome = await orchestrator.run_router_swap(RouterSwapRequest.from_settings(settings))

        assert outcome.error_kind == ErrorKind.SUBMISSION_REJECTED
        assert chain.sent == []
