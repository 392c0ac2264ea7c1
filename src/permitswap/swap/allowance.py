"""Allowance gating for the router path.

Two allowance layers stand between the owner and the router:

1. Token contract: owner -> Permit2 (classic ERC-20 allowance)
2. Permit2: owner -> router for the token (time-bound allowance)

Permit2 pulls through the token contract, so layer 1 is gated first. Each
check returns at most one approval instruction; the caller submits it, waits
for confirmation and re-reads the allowance before moving on.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from permitswap.chain.contracts import Permit2Contract, TokenContract
from permitswap.models import AllowanceState
from permitswap.units import MAX_UINT160, MAX_UINT256, MAX_UINT48, ensure_width

logger = logging.getLogger(__name__)


class AllowanceLayer(str, Enum):
    TOKEN = "token"
    DELEGATE = "delegate"


@dataclass(frozen=True)
class ApprovalInstruction:
    """Exact parameters of the approval transaction to send.

    Attributes:
        layer: Which allowance layer this raises
        target: Contract to call (token for TOKEN, Permit2 for DELEGATE)
        token: Token being approved
        spender: Address receiving the allowance
        amount: Allowance to set
        expiration: Expiry for time-bound allowances, None otherwise
    """
    layer: AllowanceLayer
    target: str
    token: str
    spender: str
    amount: int
    expiration: Optional[int] = None

    @property
    def call_data(self) -> bytes:
        if self.layer == AllowanceLayer.TOKEN:
            return TokenContract.approve_call(self.spender, self.amount)
        return Permit2Contract.approve_call(self.token, self.spender, self.amount, self.expiration)


class AllowanceGate:
    """Decides whether an approval must precede the swap.

    Approvals are issued for the protocol maximum (and, for Permit2, the
    maximum uint48 expiration) so repeat swaps do not need new approvals.
    """

    def __init__(
        self,
        token_approval_amount: int = MAX_UINT256,
        delegate_approval_amount: int = MAX_UINT160,
        delegate_expiration: int = MAX_UINT48,
    ):
        self.token_approval_amount = ensure_width(token_approval_amount, 256, "token approval")
        self.delegate_approval_amount = ensure_width(delegate_approval_amount, 160, "Permit2 approval")
        self.delegate_expiration = ensure_width(delegate_expiration, 48, "Permit2 expiration")

    def ensure_sufficient(
        self,
        layer: AllowanceLayer,
        owner: str,
        token: str,
        spender: str,
        required: int,
        current_state: AllowanceState,
        now: int,
        target: Optional[str] = None,
    ) -> Optional[ApprovalInstruction]:
        """Check one allowance layer.

        Args:
            layer: Allowance layer being checked
            owner: Token owner
            token: Token address
            spender: Spender the allowance is for
            required: Amount the swap will pull
            current_state: Allowance as read on-chain
            now: Current unix time (for expiry)
            target: Contract to send the approval to (defaults to token for
                the TOKEN layer; required for DELEGATE)

        Returns:
            None when no action is needed, otherwise the approval to send

        Raises:
            OutOfRangeError: If `required` does not fit the layer's width
        """
        width = 256 if layer == AllowanceLayer.TOKEN else 160
        ensure_width(required, width, f"{layer.value} allowance requirement")

        if current_state.amount >= required and not current_state.is_expired(now):
            logger.debug(
                f"{layer.value} allowance ok: {current_state.amount} >= {required} "
                f"(owner {owner}, spender {spender})"
            )
            return None

        if layer == AllowanceLayer.TOKEN:
            instruction = ApprovalInstruction(
                layer=layer,
                target=target or token,
                token=token,
                spender=spender,
                amount=self.token_approval_amount,
            )
        else:
            if target is None:
                raise ValueError("Permit2 approvals need the Permit2 contract as target")
            instruction = ApprovalInstruction(
                layer=layer,
                target=target,
                token=token,
                spender=spender,
                amount=self.delegate_approval_amount,
                expiration=self.delegate_expiration,
            )

        reason = "expired" if current_state.is_expired(now) else f"{current_state.amount} < {required}"
        logger.info(f"{layer.value} allowance insufficient ({reason}); approval required for {spender}")
        return instruction

    def ensure_token_allowance(
        self,
        owner: str,
        token: str,
        spender: str,
        required: int,
        current_state: AllowanceState,
        now: int,
    ) -> Optional[ApprovalInstruction]:
        return self.ensure_sufficient(
            AllowanceLayer.TOKEN, owner, token, spender, required, current_state, now
        )

    def ensure_delegate_allowance(
        self,
        owner: str,
        token: str,
        spender: str,
        required: int,
        current_state: AllowanceState,
        now: int,
        permit2: str,
    ) -> Optional[ApprovalInstruction]:
        return self.ensure_sufficient(
            AllowanceLayer.DELEGATE, owner, token, spender, required, current_state, now, target=permit2
        )
