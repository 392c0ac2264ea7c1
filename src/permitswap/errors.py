"""Error kinds raised by the swap pipeline.

Propagation rules:
- Parameter and encoding errors are never retried; they point at a caller
  or configuration defect.
- AllowanceInsufficient is handled by the orchestrator (an approval is sent
  and the allowance re-read); it only surfaces if the allowance is still
  short after the approval confirmed.
- Submission and polling errors carry the task handle and last known status
  so the caller can reconcile by hand. Nothing here resubmits a write.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Kinds of failure an operation can end with."""
    INVALID_AMOUNT = "InvalidAmount"
    OUT_OF_RANGE = "OutOfRange"
    ALLOWANCE_INSUFFICIENT = "AllowanceInsufficient"
    SIGNING_FAILED = "SigningFailed"
    NONCE_STALE = "NonceStale"
    DEADLINE_EXPIRED = "DeadlineExpired"
    FEE_EXCEEDS_BOUND = "FeeExceedsBound"
    ENCODING_MISMATCH = "EncodingMismatch"
    SUBMISSION_REJECTED = "SubmissionRejected"
    EXPIRED = "Expired"


class SwapError(Exception):
    """Base class for all swap pipeline errors."""

    kind: ErrorKind

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidAmountError(SwapError):
    """Raised when a value cannot be parsed into a token's integer units."""
    kind = ErrorKind.INVALID_AMOUNT


class OutOfRangeError(SwapError):
    """Raised when a value is too large (or small) for the slot it fills."""
    kind = ErrorKind.OUT_OF_RANGE


class AllowanceInsufficientError(SwapError):
    """Raised when an allowance is still short after its approval confirmed."""
    kind = ErrorKind.ALLOWANCE_INSUFFICIENT


class SigningFailedError(SwapError):
    """Raised when the signer rejects or errors."""
    kind = ErrorKind.SIGNING_FAILED


class NonceStaleError(SwapError):
    """Raised when a permit nonce no longer matches on-chain state."""
    kind = ErrorKind.NONCE_STALE


class DeadlineExpiredError(SwapError):
    """Raised when a permit or swap deadline is not in the future."""
    kind = ErrorKind.DEADLINE_EXPIRED


class FeeExceedsBoundError(SwapError):
    """Raised when a fee is above the ceiling the caller accepts."""
    kind = ErrorKind.FEE_EXCEEDS_BOUND

    def __init__(self, requested: int, ceiling: int):
        self.requested = requested
        self.ceiling = ceiling
        super().__init__(f"Fee {requested} exceeds bound {ceiling}")


class EncodingMismatchError(SwapError):
    """Raised when encoded call data does not decode back to its inputs.

    Internal invariant violation; never expected in correct operation.
    """
    kind = ErrorKind.ENCODING_MISMATCH


class SubmissionRejectedError(SwapError):
    """Raised when a broadcast or relay enqueue fails.

    Attributes:
        ambiguous: True when the write may still have landed (timeout,
            dropped connection, server error). The caller must check
            on-chain state before deciding to resubmit.
        handle: Task handle, if one was issued before the failure
    """
    kind = ErrorKind.SUBMISSION_REJECTED

    def __init__(self, message: str, ambiguous: bool = False, handle: Optional[Any] = None):
        self.ambiguous = ambiguous
        self.handle = handle
        super().__init__(message)


class ExpiredError(SwapError):
    """Raised when the polling budget ran out before a terminal status.

    The outcome is unknown: the transaction may still confirm.
    """
    kind = ErrorKind.EXPIRED

    def __init__(self, message: str, handle: Optional[Any] = None, last_status: Optional[Any] = None):
        self.handle = handle
        self.last_status = last_status
        super().__init__(message)
