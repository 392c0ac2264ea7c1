"""Signing services.

- LocalSigner: private key held in memory
"""

from permitswap.signing.base import SignatureResult, Signer, recover_typed_data_signer
from permitswap.signing.local import LocalSigner

__all__ = [
    "SignatureResult",
    "Signer",
    "LocalSigner",
    "recover_typed_data_signer",
]
