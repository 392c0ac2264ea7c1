"""Parameter resolution: raw values into canonical on-chain units.

Pure functions, no I/O. Every quantity that ends up in call data passes
through here first, so width and sign problems are caught before anything
touches the network.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Optional, Union

from permitswap.errors import DeadlineExpiredError, InvalidAmountError, OutOfRangeError

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1
MAX_UINT160 = 2**160 - 1
MAX_UINT48 = 2**48 - 1
MAX_UINT24 = 2**24 - 1
MAX_UINT8 = 2**8 - 1

RawAmount = Union[str, int, Decimal]


@dataclass(frozen=True)
class TokenAmount:
    """Integer amount in a token's smallest unit plus the decimals used."""

    value: int
    decimals: int

    def __post_init__(self):
        if self.value < 0:
            raise InvalidAmountError(f"Amount must not be negative: {self.value}")
        if not 0 <= self.decimals <= MAX_UINT8:
            raise OutOfRangeError(f"Decimals out of range: {self.decimals}")
        ensure_width(self.value, 256, "amount")

    def fits(self, bits: int) -> bool:
        return self.value < 2**bits

    def __str__(self) -> str:
        return format_units(self.value, self.decimals)


def ensure_width(value: int, bits: int, name: str = "value") -> int:
    """Check that an unsigned integer fits in a `bits`-wide slot.

    Raises:
        OutOfRangeError: If value is negative or does not fit
    """
    if value < 0 or value >= 2**bits:
        raise OutOfRangeError(f"{name} {value} does not fit in uint{bits}")
    return value


def resolve_decimals(value: Union[int, str]) -> int:
    """Validate a token decimals count (uint8)."""
    try:
        decimals = int(value)
    except (TypeError, ValueError):
        raise InvalidAmountError(f"Invalid decimals: {value!r}")
    if not 0 <= decimals <= MAX_UINT8:
        raise OutOfRangeError(f"Decimals {decimals} out of uint8 range")
    return decimals


def parse_units(value: RawAmount, decimals: int) -> int:
    """Convert a human-readable amount into the token's integer units.

    Args:
        value: Amount as string, int or Decimal (e.g. "1.5")
        decimals: Token decimals

    Returns:
        Amount in smallest units

    Raises:
        InvalidAmountError: If the value is not a finite, non-negative number
            representable with `decimals` fractional digits
    """
    decimals = resolve_decimals(decimals)

    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise InvalidAmountError("Amount is empty")

    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")

    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be finite: {value!r}")
    if amount < 0:
        raise InvalidAmountError(f"Amount must not be negative: {value!r}")

    with localcontext() as ctx:
        # wide enough for uint256 at any uint8 decimals
        ctx.prec = 400
        scaled = amount.scaleb(decimals)
        exact = scaled == scaled.to_integral_value()
    if not exact:
        raise InvalidAmountError(
            f"Amount {value} has more than {decimals} fractional digits"
        )
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Format integer units as a decimal string (inverse of parse_units)."""
    with localcontext() as ctx:
        ctx.prec = 400
        amount = Decimal(value).scaleb(-decimals)
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def resolve_amount(value: RawAmount, decimals: int, max_bits: int = 256) -> TokenAmount:
    """Parse an amount and check it fits the slot it will fill.

    Raises:
        InvalidAmountError: If value cannot be parsed
        OutOfRangeError: If the result does not fit in `max_bits`
    """
    units = parse_units(value, decimals)
    ensure_width(units, max_bits, "amount")
    return TokenAmount(value=units, decimals=decimals)


def resolve_fee_tier(fee: Union[int, str]) -> int:
    """Validate a pool fee tier (uint24, greater than zero)."""
    try:
        tier = int(fee)
    except (TypeError, ValueError):
        raise InvalidAmountError(f"Invalid pool fee: {fee!r}")
    if tier <= 0 or tier > MAX_UINT24:
        raise OutOfRangeError("Pool fee must be a uint24 greater than zero")
    return tier


def resolve_deadline(now: int, offset_seconds: int, absolute: Optional[int] = None) -> int:
    """Compute an absolute deadline in unix seconds.

    Args:
        now: Current unix time
        offset_seconds: Validity window, used when `absolute` is not given
        absolute: Explicit deadline override

    Raises:
        DeadlineExpiredError: If the deadline is not strictly after `now`
    """
    deadline = int(absolute) if absolute is not None else int(now) + int(offset_seconds)
    ensure_width(deadline, 256, "deadline")
    if deadline <= now:
        raise DeadlineExpiredError(f"Deadline {deadline} is not after current time {now}")
    return deadline


def apply_bps(value: int, bps: int) -> int:
    """Inflate `value` by `bps` basis points (integer math, rounds down)."""
    if bps < 0:
        raise OutOfRangeError(f"Basis points must not be negative: {bps}")
    return value * (10_000 + bps) // 10_000
