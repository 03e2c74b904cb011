"""
Process-lifetime cache of message sender identities.

Every chat message is stamped with the sender's username and avatar. The
first message from a user loads them from the users collection; every later
message reuses the cached value until it is explicitly invalidated.
"""

import asyncio
from typing import Dict, Optional, Protocol

from ..core.exceptions import (
    DatabaseError,
    ErrorCode,
    UpstreamLookupError
)
from ..models.domain.user import SenderIdentity
from ..utils.logging import get_logger

logger = get_logger(__name__)


class SenderLookup(Protocol):
    async def get_sender_identity(self, user_id: str) -> Optional[SenderIdentity]:
        ...


class IdentityCache:
    """
    Get-or-fetch cache keyed by user id.

    Concurrent first lookups for the same user share one fetch. Failed and
    empty lookups are never cached.
    """

    def __init__(self, lookup: SenderLookup):
        self._lookup = lookup
        self._identities: Dict[str, SenderIdentity] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._identities

    async def get(self, user_id: str) -> SenderIdentity:
        """
        Get the display identity of a user.

        Raises:
            UpstreamLookupError: If the user is unknown or the lookup fails
        """
        identity = self._identities.get(user_id)
        if identity is not None:
            self.hits += 1
            return identity

        pending = self._inflight.get(user_id)
        if pending is not None:
            self.hits += 1
            # A cancelled waiter must not cancel the shared fetch
            return await asyncio.shield(pending)

        self.misses += 1
        future = asyncio.get_running_loop().create_future()
        self._inflight[user_id] = future
        try:
            identity = await self._load(user_id)
        except asyncio.CancelledError:
            self._fail_waiters(future, UpstreamLookupError(
                f"Lookup of user {user_id} was cancelled",
                lookup="user",
                key=user_id
            ))
            raise
        except Exception as e:
            self._fail_waiters(future, e)
            raise
        else:
            self._identities[user_id] = identity
            future.set_result(identity)
            return identity
        finally:
            self._inflight.pop(user_id, None)

    @staticmethod
    def _fail_waiters(future: asyncio.Future, error: Exception) -> None:
        future.set_exception(error)
        # Marks the exception retrieved; waiters still receive it
        future.exception()

    async def _load(self, user_id: str) -> SenderIdentity:
        try:
            identity = await self._lookup.get_sender_identity(user_id)
        except DatabaseError as e:
            logger.warning("Sender identity lookup failed", user_id=user_id, error=str(e))
            raise UpstreamLookupError(
                f"Failed to load user {user_id}: {e.message}",
                lookup="user",
                key=user_id
            ) from e

        if identity is None:
            raise UpstreamLookupError(
                f"User {user_id} not found",
                error_code=ErrorCode.USER_NOT_FOUND,
                lookup="user",
                key=user_id
            )

        logger.debug("Sender identity cached", user_id=user_id, username=identity.username)
        return identity

    def invalidate(self, user_id: str) -> bool:
        """Drop one cached identity. Returns whether it was cached."""
        return self._identities.pop(user_id, None) is not None

    def clear(self) -> None:
        self._identities.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "cached_identities": len(self._identities),
            "hits": self.hits,
            "misses": self.misses,
        }
