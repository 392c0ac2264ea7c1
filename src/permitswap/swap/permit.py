"""EIP-2612 permit construction.

The permit lets the permit-swap contract pull the owner's tokens without a
prior approve() transaction. The signature covers (owner, spender, value,
nonce, deadline) under the token's EIP-712 domain; changing any of them
invalidates it.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from permitswap.chain.contracts import TokenContract
from permitswap.errors import SigningFailedError
from permitswap.models import PermitParameters
from permitswap.signing.base import SignatureResult, recover_typed_data_signer
from permitswap.units import TokenAmount, ensure_width, resolve_deadline

logger = logging.getLogger(__name__)

SignFn = Callable[[dict], Awaitable[SignatureResult]]

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

PERMIT_TYPE = [
    {"name": "owner", "type": "address"},
    {"name": "spender", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]


@dataclass(frozen=True)
class PermitDomain:
    """EIP-712 domain of a permit token."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


async def load_permit_domain(token: TokenContract, chain_id: int) -> PermitDomain:
    """Read name() and version() from the token to build its domain."""
    name = await token.name()
    version = await token.version()
    return PermitDomain(name=name, version=version, chain_id=chain_id, verifying_contract=token.address)


def permit_typed_data(
    domain: PermitDomain,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> dict:
    """Full EIP-712 message for a Permit."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "Permit": PERMIT_TYPE,
        },
        "primaryType": "Permit",
        "domain": domain.to_dict(),
        "message": {
            "owner": owner,
            "spender": spender,
            "value": value,
            "nonce": nonce,
            "deadline": deadline,
        },
    }


class PermitBuilder:
    """Builds signed permits for a single token domain."""

    def __init__(self, domain: PermitDomain):
        self.domain = domain

    async def build_permit(
        self,
        owner: str,
        spender: str,
        value: TokenAmount,
        deadline_offset_seconds: int,
        current_nonce: int,
        sign_fn: SignFn,
        now: int,
    ) -> PermitParameters:
        """Sign a permit valid for `deadline_offset_seconds` from `now`.

        Args:
            owner: Token owner (must be the signer's address)
            spender: Contract allowed to pull the tokens
            value: Amount the spender may pull
            deadline_offset_seconds: Permit validity window
            current_nonce: nonces(owner) as read from the token
            sign_fn: Signing capability (may suspend)
            now: Current unix time

        Returns:
            PermitParameters carrying v, r, s

        Raises:
            SigningFailedError: If the signer rejects, errors, or returns a
                signature that does not recover to `owner`
        """
        ensure_width(current_nonce, 256, "permit nonce")
        deadline = resolve_deadline(now, deadline_offset_seconds)
        typed_data = permit_typed_data(
            self.domain, owner, spender, value.value, current_nonce, deadline
        )

        logger.info(
            f"Requesting permit signature: owner={owner} spender={spender} "
            f"value={value.value} nonce={current_nonce} deadline={deadline}"
        )
        try:
            result = await sign_fn(typed_data)
        except SigningFailedError:
            raise
        except Exception as e:
            raise SigningFailedError(f"Signer error: {type(e).__name__}: {e}") from e

        if not result.success:
            raise SigningFailedError(f"Signer rejected permit: {result.error or 'no reason given'}")

        recovered = recover_typed_data_signer(typed_data, result.v, result.r, result.s)
        if recovered.lower() != owner.lower():
            raise SigningFailedError(f"Permit signature recovers to {recovered}, expected {owner}")

        return PermitParameters(
            token=self.domain.verifying_contract,
            owner=owner,
            spender=spender,
            value=value,
            nonce=current_nonce,
            deadline=deadline,
            v=result.v,
            r=result.r,
            s=result.s,
        )
