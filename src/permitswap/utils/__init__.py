"""Utility modules for permitswap."""

from permitswap.utils.locks import OwnerTokenLock, get_owner_lock

__all__ = ["OwnerTokenLock", "get_owner_lock"]
