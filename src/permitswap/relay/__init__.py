"""Relay service clients."""

from permitswap.relay.gelato import GelatoRelayClient

__all__ = ["GelatoRelayClient"]
