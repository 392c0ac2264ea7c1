"""Chain access: ABI fragments and the async chain client interface."""

from permitswap.chain.base import ChainClient, TxReceipt

__all__ = ["ChainClient", "TxReceipt"]
