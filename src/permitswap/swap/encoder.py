"""Call data encoding for both execution paths.

Router path: the universal router takes a command byte string and an inputs
array matched index-for-index. Commands are modelled here as a sequence of
typed variants, each owning its payload, and the two parallel arrays are
derived from that sequence at encode time.

Permit-swap path: a single permitSwapAndPayFeeNative(permit, swap, maxFee)
call. The contract validates the permit, swaps and deducts the fee
atomically, so no command buffer is involved.

Every encoded call is decoded again before it is returned; a mismatch means
an internal bug and raises EncodingMismatchError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Sequence

from eth_abi import decode, encode
from eth_abi.packed import encode_packed
from eth_utils import to_checksum_address

from permitswap.chain import abi
from permitswap.errors import EncodingMismatchError, OutOfRangeError
from permitswap.models import FeeBound, PermitParameters, SwapParameters
from permitswap.units import ensure_width, resolve_fee_tier

logger = logging.getLogger(__name__)

ADDRESS_SIZE = 20
FEE_SIZE = 3


def _address(raw: bytes) -> str:
    return to_checksum_address("0x" + raw.hex())


@dataclass(frozen=True)
class Hop:
    """One pool hop: token_in -> token_out through a fee tier."""
    token_in: str
    fee: int
    token_out: str

    def __post_init__(self):
        object.__setattr__(self, "token_in", to_checksum_address(self.token_in))
        object.__setattr__(self, "token_out", to_checksum_address(self.token_out))
        object.__setattr__(self, "fee", resolve_fee_tier(self.fee))


@dataclass(frozen=True)
class RouterPath:
    """Ordered hops, packed as address | fee | address | fee | ... | address."""
    hops: tuple[Hop, ...]

    def __post_init__(self):
        if not self.hops:
            raise OutOfRangeError("Router path needs at least one hop")
        for prev, nxt in zip(self.hops, self.hops[1:]):
            if prev.token_out != nxt.token_in:
                raise OutOfRangeError(
                    f"Router path is not contiguous: {prev.token_out} then {nxt.token_in}"
                )

    @classmethod
    def single(cls, token_in: str, fee: int, token_out: str) -> "RouterPath":
        return cls(hops=(Hop(token_in, fee, token_out),))

    @property
    def token_in(self) -> str:
        return self.hops[0].token_in

    @property
    def token_out(self) -> str:
        return self.hops[-1].token_out

    def encode(self) -> bytes:
        types = ["address"]
        values = [self.hops[0].token_in]
        for hop in self.hops:
            types += ["uint24", "address"]
            values += [hop.fee, hop.token_out]
        return encode_packed(types, values)

    @classmethod
    def decode(cls, data: bytes) -> "RouterPath":
        """Parse a packed path back into hops."""
        step = FEE_SIZE + ADDRESS_SIZE
        if len(data) < ADDRESS_SIZE + step or (len(data) - ADDRESS_SIZE) % step:
            raise EncodingMismatchError(f"Packed path has invalid length {len(data)}")

        hops = []
        token_in = _address(data[:ADDRESS_SIZE])
        offset = ADDRESS_SIZE
        while offset < len(data):
            fee = int.from_bytes(data[offset:offset + FEE_SIZE], "big")
            token_out = _address(data[offset + FEE_SIZE:offset + step])
            hops.append(Hop(token_in, fee, token_out))
            token_in = token_out
            offset += step
        return cls(hops=tuple(hops))


class RouterCommand(ABC):
    """A router command: an opcode plus its ABI-encoded input."""

    opcode: ClassVar[int]

    @abstractmethod
    def encode_input(self) -> bytes:
        pass

    @classmethod
    @abstractmethod
    def decode_input(cls, data: bytes) -> "RouterCommand":
        pass


@dataclass(frozen=True)
class V3SwapExactIn(RouterCommand):
    """Exact-input swap along a V3 path.

    Attributes:
        recipient: Receiver of the output tokens
        amount_in: Exact input amount
        amount_out_min: Slippage floor
        path: Hops to swap through
        payer_is_user: Pull input from the caller (via Permit2) rather than
            from the router's own balance
    """
    opcode: ClassVar[int] = abi.V3_SWAP_EXACT_IN

    recipient: str
    amount_in: int
    amount_out_min: int
    path: RouterPath
    payer_is_user: bool = True

    def __post_init__(self):
        object.__setattr__(self, "recipient", to_checksum_address(self.recipient))
        ensure_width(self.amount_in, 256, "amountIn")
        ensure_width(self.amount_out_min, 256, "amountOutMin")

    def encode_input(self) -> bytes:
        return encode(
            list(abi.V3_SWAP_EXACT_IN_INPUT),
            [self.recipient, self.amount_in, self.amount_out_min, self.path.encode(), self.payer_is_user],
        )

    @classmethod
    def decode_input(cls, data: bytes) -> "V3SwapExactIn":
        recipient, amount_in, amount_out_min, path, payer_is_user = decode(
            list(abi.V3_SWAP_EXACT_IN_INPUT), data
        )
        return cls(
            recipient=recipient,
            amount_in=amount_in,
            amount_out_min=amount_out_min,
            path=RouterPath.decode(path),
            payer_is_user=payer_is_user,
        )


COMMAND_TYPES: dict[int, type[RouterCommand]] = {
    V3SwapExactIn.opcode: V3SwapExactIn,
}


@dataclass(frozen=True)
class RouterExecution:
    """Ordered router commands sharing one deadline."""
    commands: tuple[RouterCommand, ...]
    deadline: int

    def __post_init__(self):
        if not self.commands:
            raise OutOfRangeError("Router execution needs at least one command")
        ensure_width(self.deadline, 256, "router deadline")

    @property
    def command_bytes(self) -> bytes:
        return bytes(command.opcode for command in self.commands)

    @property
    def inputs(self) -> list[bytes]:
        return [command.encode_input() for command in self.commands]

    def encode_call(self) -> bytes:
        return abi.ROUTER_EXECUTE.encode_call(self.command_bytes, self.inputs, self.deadline)

    @classmethod
    def decode_call(cls, data: bytes) -> "RouterExecution":
        command_bytes, inputs, deadline = abi.ROUTER_EXECUTE.decode_call(data)
        if len(command_bytes) != len(inputs):
            raise EncodingMismatchError(
                f"{len(command_bytes)} commands but {len(inputs)} inputs"
            )
        commands = []
        for opcode, payload in zip(command_bytes, inputs):
            command_type = COMMAND_TYPES.get(opcode)
            if command_type is None:
                raise EncodingMismatchError(f"Unknown router command 0x{opcode:02x}")
            commands.append(command_type.decode_input(payload))
        return cls(commands=tuple(commands), deadline=deadline)


@dataclass(frozen=True)
class EncodedCall:
    """Call data ready for submission."""
    target: str
    data: bytes
    value: int = 0


class SwapCommandEncoder:
    """Builds and self-checks call data for the router and permit-swap paths."""

    def encode_router_swap(
        self,
        router: str,
        commands: Sequence[RouterCommand],
        deadline: int,
        value: int = 0,
    ) -> EncodedCall:
        """Encode router.execute(commands, inputs, deadline)."""
        execution = RouterExecution(commands=tuple(commands), deadline=deadline)
        data = execution.encode_call()

        if RouterExecution.decode_call(data) != execution:
            raise EncodingMismatchError("Router call data does not decode to its commands")

        logger.debug(
            f"Encoded router execute: commands=0x{execution.command_bytes.hex()} "
            f"inputs={len(execution.inputs)} deadline={deadline} ({len(data)} bytes)"
        )
        return EncodedCall(target=to_checksum_address(router), data=data, value=value)

    def encode_permit_swap(
        self,
        target: str,
        permit: PermitParameters,
        swap: SwapParameters,
        fee_bound: FeeBound,
    ) -> EncodedCall:
        """Encode permitSwapAndPayFeeNative(permit, swap, maxFeeEth)."""
        max_fee = ensure_width(fee_bound.maximum_fee.value, 256, "maxFeeEth")
        permit_tuple = permit.as_tuple()
        swap_tuple = swap.as_tuple()
        fn = abi.PERMIT_SWAP_AND_PAY_FEE_NATIVE
        data = fn.encode_call(permit_tuple, swap_tuple, max_fee)

        decoded = fn.decode_call(data)
        expected = (
            (to_checksum_address(permit.owner),) + permit_tuple[1:],
            swap_tuple,
            max_fee,
        )
        if decoded != expected:
            raise EncodingMismatchError("Permit-swap call data does not decode to its inputs")

        logger.debug(f"Encoded permitSwapAndPayFeeNative ({len(data)} bytes), maxFee={max_fee}")
        return EncodedCall(target=to_checksum_address(target), data=data)


def decode_permit_swap_call(data: bytes) -> tuple[tuple, tuple, int]:
    """Decode permitSwapAndPayFeeNative call data into (permit, swap, maxFee)."""
    permit, swap, max_fee = abi.PERMIT_SWAP_AND_PAY_FEE_NATIVE.decode_call(data)
    return permit, swap, max_fee
