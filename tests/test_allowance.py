"""Tests for allowance gating and the contract read helpers it relies on."""

import pytest

from permitswap.chain import abi
from permitswap.chain.contracts import Permit2Contract, TokenContract
from permitswap.errors import OutOfRangeError
from permitswap.models import AllowanceState
from permitswap.swap.allowance import AllowanceGate, AllowanceLayer
from permitswap.units import MAX_UINT160, MAX_UINT256, MAX_UINT48

from tests.conftest import PERMIT2, ROUTER, START_TIME, USDC


class TestAllowanceGate:
    """Tests for the two-layer allowance decision."""

    @pytest.fixture
    def gate(self):
        return AllowanceGate()

    def test_sufficient_token_allowance_needs_nothing(self, gate, owner):
        state = AllowanceState(amount=1_000)
        assert gate.ensure_token_allowance(owner, USDC, PERMIT2, 1_000, state, START_TIME) is None

    def test_short_token_allowance_yields_max_approval(self, gate, owner):
        instruction = gate.ensure_token_allowance(
            owner, USDC, PERMIT2, 1_000, AllowanceState(amount=999), START_TIME
        )

        assert instruction.layer == AllowanceLayer.TOKEN
        assert instruction.target == USDC
        assert instruction.spender == PERMIT2
        assert instruction.amount == MAX_UINT256
        assert instruction.expiration is None

    def test_token_instruction_call_data(self, gate, owner):
        instruction = gate.ensure_token_allowance(
            owner, USDC, PERMIT2, 1, AllowanceState(amount=0), START_TIME
        )

        spender, amount = abi.ERC20_APPROVE.decode_call(instruction.call_data)
        assert spender == PERMIT2
        assert amount == MAX_UINT256

    def test_sufficient_delegate_allowance(self, gate, owner):
        state = AllowanceState(amount=5_000, expiration=START_TIME + 60, nonce=3)
        assert gate.ensure_delegate_allowance(owner, USDC, ROUTER, 5_000, state, START_TIME, PERMIT2) is None

    def test_expired_delegate_allowance_requires_approval(self, gate, owner):
        state = AllowanceState(amount=MAX_UINT160, expiration=START_TIME - 1, nonce=0)

        instruction = gate.ensure_delegate_allowance(owner, USDC, ROUTER, 1, state, START_TIME, PERMIT2)

        assert instruction.layer == AllowanceLayer.DELEGATE
        assert instruction.target == PERMIT2
        assert instruction.amount == MAX_UINT160
        assert instruction.expiration == MAX_UINT48

    def test_delegate_instruction_call_data(self, gate, owner):
        instruction = gate.ensure_delegate_allowance(
            owner, USDC, ROUTER, 10, AllowanceState(amount=0, expiration=0), START_TIME, PERMIT2
        )

        token, spender, amount, expiration = abi.PERMIT2_APPROVE.decode_call(instruction.call_data)
        assert (token, spender) == (USDC, ROUTER)
        assert amount == MAX_UINT160
        assert expiration == MAX_UINT48

    def test_delegate_requirement_must_fit_uint160(self, gate, owner):
        with pytest.raises(OutOfRangeError):
            gate.ensure_delegate_allowance(
                owner, USDC, ROUTER, MAX_UINT160 + 1, AllowanceState(amount=0), START_TIME, PERMIT2
            )

    def test_delegate_needs_target(self, gate, owner):
        with pytest.raises(ValueError):
            gate.ensure_sufficient(
                AllowanceLayer.DELEGATE, owner, USDC, ROUTER, 1, AllowanceState(amount=0), START_TIME
            )

    def test_custom_amounts_are_width_checked(self):
        with pytest.raises(OutOfRangeError):
            AllowanceGate(delegate_expiration=2**48)


class TestContractReads:
    """Read helpers against the fake chain."""

    @pytest.mark.asyncio
    async def test_token_reads(self, chain, owner):
        token = TokenContract(chain, USDC)
        chain.token(USDC).allowances[(owner.lower(), PERMIT2.lower())] = 42
        chain.token(USDC).nonces[owner.lower()] = 7

        assert await token.decimals() == 6
        assert await token.name() == "USD Coin"
        assert await token.version() == "2"
        assert await token.nonces(owner) == 7
        assert await token.balance_of(owner) == 1_000 * 10**6
        assert await token.allowance(owner, PERMIT2) == AllowanceState(amount=42)

    @pytest.mark.asyncio
    async def test_version_defaults_to_one(self, chain):
        chain.token(USDC).version = None
        assert await TokenContract(chain, USDC).version() == "1"

    @pytest.mark.asyncio
    async def test_permit2_allowance(self, chain, owner):
        chain.set_permit2_allowance(owner, USDC, ROUTER, 500, START_TIME + 100, nonce=2)

        state = await Permit2Contract(chain, PERMIT2).allowance(owner, USDC, ROUTER)

        assert state == AllowanceState(amount=500, expiration=START_TIME + 100, nonce=2)
        assert not state.is_expired(START_TIME)

    def test_permit2_approve_checks_widths(self):
        with pytest.raises(OutOfRangeError):
            Permit2Contract.approve_call(USDC, ROUTER, MAX_UINT160 + 1, 0)
        with pytest.raises(OutOfRangeError):
            Permit2Contract.approve_call(USDC, ROUTER, 1, MAX_UINT48 + 1)
