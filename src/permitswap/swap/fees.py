"""Fee bounding.

The ceiling is always derived from a quoted fee plus a safety buffer, never
from the fee being checked. A fee above the ceiling aborts the operation
before anything is submitted.
"""

import logging
from typing import Union

from permitswap.errors import FeeExceedsBoundError, OutOfRangeError
from permitswap.models import FeeBound
from permitswap.units import TokenAmount, apply_bps, ensure_width

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18


def bounded_fee(requested_fee: int, ceiling: Union[int, FeeBound]) -> int:
    """Return `requested_fee` if it is within `ceiling`.

    Raises:
        FeeExceedsBoundError: If requested_fee > ceiling
    """
    limit = ceiling.maximum_fee.value if isinstance(ceiling, FeeBound) else int(ceiling)
    if requested_fee < 0:
        raise OutOfRangeError(f"Fee must not be negative: {requested_fee}")
    if requested_fee > limit:
        raise FeeExceedsBoundError(requested_fee, limit)
    return requested_fee


class FeeGuard:
    """Derives fee ceilings from quotes and enforces them."""

    def __init__(self, buffer_bps: int, decimals: int = NATIVE_DECIMALS):
        if buffer_bps < 0:
            raise OutOfRangeError(f"Fee buffer must not be negative: {buffer_bps}")
        self.buffer_bps = buffer_bps
        self.decimals = decimals

    def ceiling(self, quoted_fee: int) -> FeeBound:
        """Inflate a quoted fee by the safety buffer."""
        ensure_width(quoted_fee, 256, "quoted fee")
        maximum = ensure_width(apply_bps(quoted_fee, self.buffer_bps), 256, "fee ceiling")
        logger.info(f"Fee ceiling {maximum} (quote {quoted_fee} + {self.buffer_bps} bps)")
        return FeeBound(maximum_fee=TokenAmount(value=maximum, decimals=self.decimals))

    def bounded_fee(self, requested_fee: int, ceiling: Union[int, FeeBound]) -> int:
        try:
            return bounded_fee(requested_fee, ceiling)
        except FeeExceedsBoundError as e:
            logger.error(f"Fee {e.requested} exceeds accepted ceiling {e.ceiling}; not submitting")
            raise
