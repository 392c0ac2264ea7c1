"""Contract surface consumed by the swap pipeline.

Function fragments are declared with their exact ABI input/output types.
Call data is encoded with eth-abi against those types, so a value that does
not fit its slot fails at encode time instead of on-chain.
"""

from dataclasses import dataclass
from typing import Any

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

# Fee token marker for native currency on the relay
NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

# Router command opcodes
V3_SWAP_EXACT_IN = 0x00

PERMIT_TUPLE = "(address,uint256,uint256,uint8,bytes32,bytes32)"
SWAP_TUPLE = "(uint256,uint256)"


@dataclass(frozen=True)
class AbiFunction:
    """A single contract function fragment."""

    name: str
    inputs: tuple[str, ...]
    outputs: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode_call(self, *args: Any) -> bytes:
        """Encode selector plus ABI-encoded arguments."""
        return self.selector + encode(list(self.inputs), _normalize(args))

    def decode_call(self, data: bytes) -> tuple:
        """Decode call data produced by encode_call."""
        if data[:4] != self.selector:
            raise ValueError(f"Call data is not a {self.signature} call")
        return tuple(_normalize(decode(list(self.inputs), data[4:])))

    def decode_output(self, data: bytes) -> tuple:
        return tuple(_normalize(decode(list(self.outputs), data)))


def _normalize(values):
    """Checksum address strings, recursing into tuples and lists."""
    out = []
    for value in values:
        if isinstance(value, tuple):
            out.append(tuple(_normalize(value)))
        elif isinstance(value, list):
            out.append(list(_normalize(value)))
        elif isinstance(value, str) and value.startswith("0x") and len(value) == 42:
            out.append(to_checksum_address(value))
        else:
            out.append(value)
    return out


# ERC-20 / EIP-2612 token
ERC20_DECIMALS = AbiFunction("decimals", (), ("uint8",))
ERC20_BALANCE_OF = AbiFunction("balanceOf", ("address",), ("uint256",))
ERC20_NONCES = AbiFunction("nonces", ("address",), ("uint256",))
ERC20_NAME = AbiFunction("name", (), ("string",))
ERC20_VERSION = AbiFunction("version", (), ("string",))
ERC20_ALLOWANCE = AbiFunction("allowance", ("address", "address"), ("uint256",))
ERC20_APPROVE = AbiFunction("approve", ("address", "uint256"), ("bool",))

# Permit2 allowance delegation
PERMIT2_ALLOWANCE = AbiFunction(
    "allowance", ("address", "address", "address"), ("uint160", "uint48", "uint48")
)
PERMIT2_APPROVE = AbiFunction("approve", ("address", "address", "uint160", "uint48"))

# Universal router
ROUTER_EXECUTE = AbiFunction("execute", ("bytes", "bytes[]", "uint256"))

# Permit-swap-and-pay-fee contract
PERMIT_SWAP_AND_PAY_FEE_NATIVE = AbiFunction(
    "permitSwapAndPayFeeNative", (PERMIT_TUPLE, SWAP_TUPLE, "uint256")
)

# Router input for V3_SWAP_EXACT_IN: recipient, amountIn, amountOutMin, path, payerIsUser
V3_SWAP_EXACT_IN_INPUT = ("address", "uint256", "uint256", "bytes", "bool")

ALL_FUNCTIONS = (
    ERC20_DECIMALS,
    ERC20_BALANCE_OF,
    ERC20_NONCES,
    ERC20_NAME,
    ERC20_VERSION,
    ERC20_ALLOWANCE,
    ERC20_APPROVE,
    PERMIT2_ALLOWANCE,
    PERMIT2_APPROVE,
    ROUTER_EXECUTE,
    PERMIT_SWAP_AND_PAY_FEE_NATIVE,
)

FUNCTIONS_BY_SELECTOR = {fn.selector: fn for fn in ALL_FUNCTIONS}
