"""Immutable values threaded through the swap pipeline.

Each value is produced by exactly one stage and handed to the next. Nothing
is edited in place; a state change produces a new value.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from permitswap.chain.base import TxReceipt
from permitswap.errors import OutOfRangeError
from permitswap.units import TokenAmount, ensure_width


@dataclass(frozen=True)
class AllowanceState:
    """Allowance observed on-chain for an (owner, token, spender) triple.

    Classic ERC-20 allowances have no expiration or nonce; they are reported
    with `expiration=None` and `nonce=0`.
    """
    amount: int
    expiration: Optional[int] = None
    nonce: int = 0

    def is_expired(self, now: int) -> bool:
        return self.expiration is not None and self.expiration < now


@dataclass(frozen=True)
class PermitParameters:
    """A signed EIP-2612 permit, single use.

    `nonce` and `spender` are the values the signature was produced over; the
    consumer contract re-validates the nonce atomically on-chain.
    """
    token: str
    owner: str
    spender: str
    value: TokenAmount
    nonce: int
    deadline: int
    v: int
    r: bytes
    s: bytes

    def __post_init__(self):
        ensure_width(self.v, 8, "v")
        if len(self.r) != 32 or len(self.s) != 32:
            raise OutOfRangeError("Signature components r and s must be 32 bytes")
        ensure_width(self.deadline, 256, "permit deadline")

    def as_tuple(self) -> tuple:
        """(owner, value, deadline, v, r, s) as the permit-swap contract expects."""
        return (self.owner, self.value.value, self.deadline, self.v, self.r, self.s)


@dataclass(frozen=True)
class SwapParameters:
    """Slippage floor and deadline for the swap leg."""
    minimum_out: TokenAmount
    deadline: int

    def __post_init__(self):
        ensure_width(self.deadline, 256, "swap deadline")

    def as_tuple(self) -> tuple:
        return (self.minimum_out.value, self.deadline)


@dataclass(frozen=True)
class FeeBound:
    """Hard ceiling on the fee the relay may deduct, in the settlement asset."""
    maximum_fee: TokenAmount


class HandleKind(str, Enum):
    TRANSACTION = "transaction"
    RELAY_TASK = "relay_task"


@dataclass(frozen=True)
class TaskHandle:
    """Identifier of a broadcast transaction or a relay task."""
    id: str
    kind: HandleKind

    def __str__(self) -> str:
        return self.id


class StatusKind(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    EXPIRED = "Expired"


@dataclass(frozen=True)
class TaskStatus:
    """Status snapshot of a task."""
    kind: StatusKind
    receipt: Optional[TxReceipt] = None
    reason: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != StatusKind.PENDING

    @classmethod
    def pending(cls, tx_hash: Optional[str] = None) -> "TaskStatus":
        return cls(StatusKind.PENDING, tx_hash=tx_hash)

    @classmethod
    def confirmed(cls, receipt: TxReceipt) -> "TaskStatus":
        return cls(StatusKind.CONFIRMED, receipt=receipt, tx_hash=receipt.tx_hash)

    @classmethod
    def failed(cls, reason: str, receipt: Optional[TxReceipt] = None) -> "TaskStatus":
        return cls(
            StatusKind.FAILED,
            receipt=receipt,
            reason=reason,
            tx_hash=receipt.tx_hash if receipt else None,
        )

    @classmethod
    def expired(cls, last: Optional["TaskStatus"] = None) -> "TaskStatus":
        return cls(StatusKind.EXPIRED, tx_hash=last.tx_hash if last else None)
