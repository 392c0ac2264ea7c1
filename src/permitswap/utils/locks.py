"""Per-owner locking for swap runs.

Two runs for the same owner and token must not overlap: both would read the
same allowance and permit nonce, and the second permit would be signed
against a nonce the first one consumes. The orchestrator does not serialize
runs itself; callers wrap each run in an OwnerTokenLock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# (owner, token) -> asyncio.Lock, keys lowercased
_owner_locks: dict[tuple[str, str], asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


def _key(owner: str, token: str) -> tuple[str, str]:
    return owner.lower(), token.lower()


async def get_owner_lock(owner: str, token: str) -> asyncio.Lock:
    """Get or create the lock for an (owner, token) pair.

    Args:
        owner: Owner address
        token: Token address

    Returns:
        asyncio.Lock for the pair
    """
    async with _registry_lock:
        key = _key(owner, token)
        if key not in _owner_locks:
            _owner_locks[key] = asyncio.Lock()
        return _owner_locks[key]


class OwnerTokenLock:
    """Exclusive access to one owner's allowance and nonce for a token.

    Example:
        async with OwnerTokenLock(owner, token, operation="permit swap"):
            outcome = await orchestrator.run_permit_swap(request)
    """

    def __init__(
        self,
        owner: str,
        token: str,
        timeout: Optional[float] = 30.0,
        operation: str = "swap",
    ):
        self.owner = owner
        self.token = token
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "OwnerTokenLock":
        self._lock = await get_owner_lock(self.owner, self.token)

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
            logger.debug(f"Lock acquired for {self.owner}/{self.token}: {self.operation}")
            return self

        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for {self.owner}/{self.token} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for {self.owner}/{self.token} within {self.timeout}s"
            )

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for {self.owner}/{self.token}: {self.operation}")
        return False


@asynccontextmanager
async def owner_token_lock(
    owner: str,
    token: str,
    timeout: Optional[float] = 30.0,
    operation: str = "swap",
):
    """Functional form of OwnerTokenLock."""
    async with OwnerTokenLock(owner, token, timeout=timeout, operation=operation):
        yield


def clear_owner_locks() -> None:
    """Clear all owner locks (useful for testing)."""
    _owner_locks.clear()
