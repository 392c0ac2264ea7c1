"""End-to-end swap orchestration.

Two execution paths share one state machine:

Router path (direct, owner pays gas):
    Init -> ResolvingParams -> GatingAllowances -> [ApprovingToken]
    -> [ApprovingDelegate] -> Encoding -> BoundingFee -> Submitting
    -> Polling -> Confirmed | Failed | Expired

Permit path (gas-sponsored through a relay):
    Init -> ResolvingParams -> BuildingPermit -> Encoding -> BoundingFee
    -> Submitting -> Polling -> Confirmed | Failed | Expired

Steps run strictly one after another; each step's inputs come from state
observed by the previous one. Any SwapError moves the run straight to
Failed (or Expired) carrying the originating error kind. A failed chain read
ends the run as Failed with kind SubmissionRejected and the handle, if one
was issued; receipt reads after broadcast count as pending attempts instead.
Nothing is retried automatically and no deadline is ever silently refreshed.

Concurrent runs for the same owner and token are not serialized here; see
permitswap.utils.locks for a caller-side helper.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Union

from web3.exceptions import Web3Exception

from permitswap.chain.base import ChainClient
from permitswap.chain.contracts import Permit2Contract, TokenContract
from permitswap.config import Settings
from permitswap.errors import (
    AllowanceInsufficientError,
    DeadlineExpiredError,
    ErrorKind,
    ExpiredError,
    InvalidAmountError,
    NonceStaleError,
    SubmissionRejectedError,
    SwapError,
)
from permitswap.models import PermitParameters, StatusKind, SwapParameters, TaskHandle, TaskStatus
from permitswap.relay.gelato import GelatoRelayClient
from permitswap.signing.base import Signer
from permitswap.swap.allowance import AllowanceGate, ApprovalInstruction
from permitswap.swap.encoder import EncodedCall, RouterPath, SwapCommandEncoder, V3SwapExactIn
from permitswap.swap.fees import NATIVE_DECIMALS, FeeGuard
from permitswap.swap.permit import PermitBuilder, load_permit_domain
from permitswap.swap.poller import StatusPoller
from permitswap.swap.submitter import TaskSubmitter
from permitswap.units import (
    RawAmount,
    apply_bps,
    format_units,
    resolve_amount,
    resolve_deadline,
    resolve_decimals,
    resolve_fee_tier,
)

logger = logging.getLogger(__name__)


class SwapState(str, Enum):
    INIT = "Init"
    RESOLVING_PARAMS = "ResolvingParams"
    GATING_ALLOWANCES = "GatingAllowances"
    APPROVING_TOKEN = "ApprovingToken"
    APPROVING_DELEGATE = "ApprovingDelegate"
    BUILDING_PERMIT = "BuildingPermit"
    ENCODING = "Encoding"
    BOUNDING_FEE = "BoundingFee"
    SUBMITTING = "Submitting"
    POLLING = "Polling"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    EXPIRED = "Expired"


TERMINAL_STATES = {SwapState.CONFIRMED, SwapState.FAILED, SwapState.EXPIRED}


@dataclass(frozen=True)
class RouterSwapRequest:
    """Exact-input swap through the universal router."""
    token_in: str
    token_out: str
    pool_fee: int
    amount: RawAmount
    min_amount_out: RawAmount = "0"
    recipient: Optional[str] = None
    token_in_decimals: Optional[int] = None
    token_out_decimals: Optional[int] = None
    deadline: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RouterSwapRequest":
        return cls(
            token_in=settings.token_address,
            token_out=settings.token_out_address,
            pool_fee=settings.pool_fee,
            amount=settings.swap_amount,
            min_amount_out=settings.min_amount_out,
            recipient=settings.recipient,
            token_in_decimals=settings.token_decimals,
            token_out_decimals=settings.token_out_decimals,
            deadline=settings.swap_deadline,
        )


@dataclass(frozen=True)
class PermitSwapRequest:
    """Gas-sponsored token -> native swap through the permit-swap contract."""
    token: str
    target: str
    amount: RawAmount
    min_native_out: RawAmount = Decimal("0")
    token_decimals: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings, amount: Optional[RawAmount] = None) -> "PermitSwapRequest":
        return cls(
            token=settings.token_address,
            target=settings.target_contract,
            amount=settings.swap_amount if amount is None else amount,
            min_native_out=settings.swap_min_native_out,
            token_decimals=settings.token_decimals,
        )


@dataclass(frozen=True)
class SwapOutcome:
    """Final report of one orchestrated swap.

    Attributes:
        state: Terminal state (Confirmed, Failed or Expired)
        handle: Task handle, if the swap was submitted
        status: Last observed task status
        error_kind: Kind of the error that ended the run, if any
        error: Human-readable error message
        approvals: Hashes of approval transactions sent during the run
        history: States visited, in order
    """
    state: SwapState
    handle: Optional[TaskHandle] = None
    status: Optional[TaskStatus] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    approvals: tuple[str, ...] = ()
    history: tuple[SwapState, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state == SwapState.CONFIRMED

    @property
    def tx_hash(self) -> Optional[str]:
        if self.status and self.status.tx_hash:
            return self.status.tx_hash
        return self.handle.id if self.handle else None

    @property
    def block_number(self) -> Optional[int]:
        if self.status and self.status.receipt:
            return self.status.receipt.block_number
        return None


SubmittedCallback = Callable[[TaskHandle], None]


@dataclass
class _Run:
    """Mutable bookkeeping for one run; frozen into a SwapOutcome at the end."""
    name: str
    history: list[SwapState] = field(default_factory=lambda: [SwapState.INIT])
    approvals: list[str] = field(default_factory=list)
    handle: Optional[TaskHandle] = None
    status: Optional[TaskStatus] = None

    def enter(self, state: SwapState) -> None:
        if state in self.history:
            raise RuntimeError(f"{self.name}: state {state.value} entered twice")
        logger.info(f"{self.name}: {self.history[-1].value} -> {state.value}")
        self.history.append(state)

    def finish(self, state: SwapState, error: Optional[SwapError] = None) -> SwapOutcome:
        self.enter(state)
        if error is not None:
            log = logger.warning if state == SwapState.EXPIRED else logger.error
            log(f"{self.name} ended {state.value}: [{error.kind.value}] {error}")
        return SwapOutcome(
            state=state,
            handle=self.handle,
            status=self.status,
            error_kind=error.kind if error else None,
            error=str(error) if error else None,
            approvals=tuple(self.approvals),
            history=tuple(self.history),
        )


class SwapOrchestrator:
    """Sequences resolution, gating, permit, encoding, fee bounding,
    submission and polling into one operation.
    """

    def __init__(
        self,
        settings: Settings,
        client: ChainClient,
        signer: Signer,
        relay: Optional[GelatoRelayClient] = None,
        gate: Optional[AllowanceGate] = None,
        encoder: Optional[SwapCommandEncoder] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings
        self.client = client
        self.signer = signer
        self.relay = relay or GelatoRelayClient(
            base_url=settings.relay_base_url, api_key=settings.relay_api_key
        )
        self.gate = gate or AllowanceGate()
        self.encoder = encoder or SwapCommandEncoder()
        self.fee_guard = FeeGuard(settings.fee_buffer_bps)
        self.submitter = TaskSubmitter(client, relay=self.relay, chain_id=settings.chain_id)
        self.poller = StatusPoller(self.submitter.status, sleep=sleep)

    async def _await(self, handle: TaskHandle) -> TaskStatus:
        return await self.poller.await_terminal(
            handle,
            max_attempts=self.settings.status_poll_max_attempts,
            interval_ms=self.settings.status_poll_interval_ms,
        )

    async def _send_approval(self, run: _Run, instruction: ApprovalInstruction) -> None:
        """Submit one approval and wait until it is mined."""
        call = EncodedCall(target=instruction.target, data=instruction.call_data)
        handle = await self.submitter.submit(call)
        run.approvals.append(handle.id)
        logger.info(
            f"{instruction.layer.value} approval {handle.id}: {instruction.spender} "
            f"amount={instruction.amount} expiration={instruction.expiration}"
        )

        status = await self._await(handle)
        if status.kind == StatusKind.EXPIRED:
            raise ExpiredError(
                f"Approval {handle.id} not confirmed within poll budget", handle=handle, last_status=status
            )
        if status.kind != StatusKind.CONFIRMED:
            raise SubmissionRejectedError(
                f"Approval {handle.id} failed: {status.reason}", handle=handle
            )

    async def _poll_swap(self, run: _Run) -> SwapOutcome:
        run.enter(SwapState.POLLING)
        run.status = await self._await(run.handle)

        if run.status.kind == StatusKind.CONFIRMED:
            logger.info(f"{run.name} confirmed in block {run.status.receipt.block_number}")
            return run.finish(SwapState.CONFIRMED)
        if run.status.kind == StatusKind.EXPIRED:
            return run.finish(
                SwapState.EXPIRED,
                ExpiredError(
                    f"{run.handle.kind.value} {run.handle.id} still pending; outcome unknown",
                    handle=run.handle,
                    last_status=run.status,
                ),
            )
        return run.finish(
            SwapState.FAILED,
            SubmissionRejectedError(f"{run.handle.id} failed: {run.status.reason}", handle=run.handle),
        )

    async def run_router_swap(
        self,
        request: RouterSwapRequest,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> SwapOutcome:
        """Direct swap: token -> Permit2 -> router, owner pays gas."""
        run = _Run(name="router swap")
        settings = self.settings
        try:
            run.enter(SwapState.RESOLVING_PARAMS)
            await self._check_chain()
            owner = self.client.account
            token_in = TokenContract(self.client, request.token_in)
            token_out = TokenContract(self.client, request.token_out)
            permit2 = Permit2Contract(self.client, settings.permit2_address)

            decimals_in = await self._decimals(token_in, request.token_in_decimals)
            decimals_out = await self._decimals(token_out, request.token_out_decimals)
            amount_in = resolve_amount(request.amount, decimals_in, max_bits=160)
            min_out = resolve_amount(request.min_amount_out, decimals_out)
            path = RouterPath.single(request.token_in, resolve_fee_tier(request.pool_fee), request.token_out)
            now = await self.client.now()
            deadline = resolve_deadline(now, settings.swap_deadline_seconds, request.deadline)
            recipient = request.recipient or owner
            logger.info(
                f"Swap {amount_in} {request.token_in} -> {request.token_out} "
                f"(min out {min_out}, fee tier {path.hops[0].fee}, deadline {deadline})"
            )

            run.enter(SwapState.GATING_ALLOWANCES)
            router = settings.router_address
            token_state = await token_in.allowance(owner, permit2.address)
            instruction = self.gate.ensure_token_allowance(
                owner, token_in.address, permit2.address, amount_in.value, token_state, now
            )
            if instruction is not None:
                run.enter(SwapState.APPROVING_TOKEN)
                await self._send_approval(run, instruction)
                token_state = await token_in.allowance(owner, permit2.address)
                if self.gate.ensure_token_allowance(
                    owner, token_in.address, permit2.address, amount_in.value, token_state, now
                ) is not None:
                    raise AllowanceInsufficientError(
                        f"Token allowance for Permit2 still {token_state.amount} after approval"
                    )

            now = await self.client.now()
            delegate_state = await permit2.allowance(owner, token_in.address, router)
            instruction = self.gate.ensure_delegate_allowance(
                owner, token_in.address, router, amount_in.value, delegate_state, now, permit2.address
            )
            if instruction is not None:
                run.enter(SwapState.APPROVING_DELEGATE)
                await self._send_approval(run, instruction)
                now = await self.client.now()
                delegate_state = await permit2.allowance(owner, token_in.address, router)
                if self.gate.ensure_delegate_allowance(
                    owner, token_in.address, router, amount_in.value, delegate_state, now, permit2.address
                ) is not None:
                    raise AllowanceInsufficientError(
                        f"Permit2 allowance for router still {delegate_state.amount} after approval"
                    )

            run.enter(SwapState.ENCODING)
            command = V3SwapExactIn(
                recipient=recipient,
                amount_in=amount_in.value,
                amount_out_min=min_out.value,
                path=path,
                payer_is_user=True,
            )
            call = self.encoder.encode_router_swap(router, [command], deadline)

            run.enter(SwapState.BOUNDING_FEE)
            try:
                estimate = await self.client.estimate_gas(call.target, call.data, call.value)
            except (Web3Exception, ValueError) as e:
                raise SubmissionRejectedError(f"Swap simulation failed, not submitting: {e}") from e
            self.fee_guard.bounded_fee(estimate, settings.gas_limit)
            gas = min(apply_bps(estimate, settings.fee_buffer_bps), settings.gas_limit)

            run.enter(SwapState.SUBMITTING)
            self._check_deadline("swap", deadline, await self.client.now())
            run.handle = await self.submitter.submit(call, gas=gas)
            if on_submitted:
                on_submitted(run.handle)

            return await self._poll_swap(run)

        except ExpiredError as e:
            return run.finish(SwapState.EXPIRED, e)
        except SwapError as e:
            return run.finish(SwapState.FAILED, e)
        except (OSError, Web3Exception, ValueError) as e:
            return run.finish(SwapState.FAILED, self._chain_failure(run, e))

    async def run_permit_swap(
        self,
        request: PermitSwapRequest,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> SwapOutcome:
        """Gas-sponsored swap: signed permit + relayed permitSwapAndPayFeeNative."""
        run = _Run(name="permit swap")
        settings = self.settings
        chain_id = settings.chain_id
        try:
            run.enter(SwapState.RESOLVING_PARAMS)
            await self._check_chain()
            owner = self.signer.address
            token = TokenContract(self.client, request.token)

            decimals = await self._decimals(token, request.token_decimals)
            amount = resolve_amount(request.amount, decimals)
            if amount.value == 0:
                raise InvalidAmountError("Swap amount must be greater than zero")
            balance = await token.balance_of(owner)
            if balance < amount.value:
                raise InvalidAmountError(
                    f"Balance {format_units(balance, decimals)} is below swap amount {amount}"
                )
            min_out = resolve_amount(request.min_native_out, NATIVE_DECIMALS)
            now = await self.client.now()
            swap_deadline = resolve_deadline(now, settings.swap_deadline_seconds)

            run.enter(SwapState.BUILDING_PERMIT)
            nonce = await token.nonces(owner)
            domain = await load_permit_domain(token, chain_id)
            builder = PermitBuilder(domain)
            permit = await builder.build_permit(
                owner=owner,
                spender=request.target,
                value=amount,
                deadline_offset_seconds=settings.permit_deadline_seconds,
                current_nonce=nonce,
                sign_fn=self.signer.sign_typed_data,
                now=now,
            )
            if swap_deadline > permit.deadline:
                logger.warning(
                    f"Swap deadline {swap_deadline} is later than permit deadline {permit.deadline}"
                )

            run.enter(SwapState.ENCODING)
            quote = await self.relay.estimate_fee(chain_id, settings.gas_limit, settings.high_priority)
            fee_bound = self.fee_guard.ceiling(quote)
            swap = SwapParameters(minimum_out=min_out, deadline=swap_deadline)
            call = self.encoder.encode_permit_swap(request.target, permit, swap, fee_bound)

            run.enter(SwapState.BOUNDING_FEE)
            current_fee = await self.relay.estimate_fee(chain_id, settings.gas_limit, settings.high_priority)
            self.fee_guard.bounded_fee(current_fee, fee_bound)

            run.enter(SwapState.SUBMITTING)
            await self._preflight_permit(token, permit, swap)
            run.handle = await self.submitter.submit_to_relay(call, fee_bound, gas_limit=settings.gas_limit)
            if on_submitted:
                on_submitted(run.handle)

            return await self._poll_swap(run)

        except ExpiredError as e:
            return run.finish(SwapState.EXPIRED, e)
        except SwapError as e:
            return run.finish(SwapState.FAILED, e)
        except (OSError, Web3Exception, ValueError) as e:
            return run.finish(SwapState.FAILED, self._chain_failure(run, e))

    @staticmethod
    def _chain_failure(run: _Run, error: Exception) -> SubmissionRejectedError:
        """Wrap a node or transport failure so the run still ends with an outcome."""
        return SubmissionRejectedError(
            f"Chain request failed during {run.history[-1].value}: {type(error).__name__}: {error}",
            ambiguous=run.handle is not None,
            handle=run.handle,
        )

    async def _check_chain(self) -> None:
        """The configured chain id must match the node before anything is signed."""
        node_chain_id = await self.client.chain_id()
        if node_chain_id != self.settings.chain_id:
            raise SubmissionRejectedError(
                f"Configured chain id {self.settings.chain_id} but node reports {node_chain_id}; not submitting"
            )

    async def _decimals(self, token: TokenContract, override: Optional[Union[int, str]]) -> int:
        if override is not None:
            return resolve_decimals(override)
        return resolve_decimals(await token.decimals())

    async def _preflight_permit(self, token: TokenContract, permit: PermitParameters, swap: SwapParameters) -> None:
        """Last checks before the permit leaves the process."""
        now = await self.client.now()
        self._check_deadline("permit", permit.deadline, now)
        self._check_deadline("swap", swap.deadline, now)

        on_chain_nonce = await token.nonces(permit.owner)
        if on_chain_nonce != permit.nonce:
            raise NonceStaleError(
                f"Permit signed for nonce {permit.nonce} but token reports {on_chain_nonce}"
            )

    @staticmethod
    def _check_deadline(label: str, deadline: int, now: int) -> None:
        if deadline <= now:
            raise DeadlineExpiredError(f"{label} deadline {deadline} passed (now {now})")
