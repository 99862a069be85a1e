"""
Storage interfaces and the token store for SlashAuth.

This module provides the key/value storage interface tokens are kept in, an
in-memory implementation, and the TokenStore that gives tokens their
issue-once, consume-once semantics.
"""

import asyncio
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .signature import create_nonce, fingerprint
from .types import InvalidTokenError, StorageError

logger = logging.getLogger(__name__)


# ============================================================================
# Key/Value Storage
# ============================================================================


class KeyValueStorage(ABC):
    """Abstract base class for the backing store of outstanding tokens."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get the value stored for a key, or None."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value for a key, replacing any previous value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete the value for a key (no-op when absent)."""
        pass

    async def pop(self, key: str) -> Optional[str]:
        """
        Fetch and delete the value for a key.

        Stores shared between processes should override this with an atomic
        check-and-delete; the default is only atomic under the TokenStore lock.
        """
        value = await self.get(key)
        await self.delete(key)
        return value


class InMemoryStorage(KeyValueStorage):
    """
    In-memory implementation of KeyValueStorage.

    Suitable for single-instance deployments; values are lost when the
    process exits.
    """

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._values[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._values.pop(key, None)

    def __len__(self) -> int:
        return len(self._values)


# ============================================================================
# Token Store
# ============================================================================


class TokenStore:
    """
    Outstanding single-use challenge tokens, one per owner public key.

    Example usage:
        ```python
        tokens = TokenStore()

        token = await tokens.issue(public_key_hex)

        # Succeeds once, raises InvalidTokenError afterwards
        await tokens.consume(public_key_hex, token)
        ```
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        create_token: Optional[Callable[[], str]] = None,
    ) -> None:
        """
        Create a token store.

        Args:
            storage: Backing store (default: in-memory).
            create_token: Token generator (default: 32 random bytes as hex).
        """
        self.storage = storage or InMemoryStorage()
        self._create_token = create_token or create_nonce
        self._lock = asyncio.Lock()

    async def issue(self, owner_public_key: str) -> str:
        """
        Issue a fresh token for an owner, superseding any unconsumed one.

        Args:
            owner_public_key: The owner's public key (hex).

        Returns:
            The new token.

        Raises:
            StorageError: If the backing store fails.
        """
        token = self._create_token()

        async with self._lock:
            try:
                await self.storage.set(owner_public_key, token)
            except Exception as e:
                raise StorageError(f"Failed to store token: {e}") from e

        logger.debug("Issued token for %s", fingerprint(owner_public_key))
        return token

    async def consume(self, owner_public_key: str, presented_token: str) -> None:
        """
        Consume the owner's outstanding token.

        The stored entry is deleted whether or not the presented token matches,
        so a failed guess cannot be retried against the same token.

        Raises:
            InvalidTokenError: If no token is outstanding, the presented token
                is empty, or it does not match.
            StorageError: If the backing store fails.
        """
        async with self._lock:
            try:
                stored = await self.storage.pop(owner_public_key)
            except Exception as e:
                raise StorageError(f"Failed to consume token: {e}") from e

        if stored is None:
            logger.warning("No outstanding token for %s", fingerprint(owner_public_key))
            raise InvalidTokenError()

        if not presented_token or not hmac.compare_digest(
            stored.encode("utf-8"), presented_token.encode("utf-8")
        ):
            logger.warning("Token mismatch for %s", fingerprint(owner_public_key))
            raise InvalidTokenError()

        logger.debug("Consumed token for %s", fingerprint(owner_public_key))

    async def has_token(self, owner_public_key: str) -> bool:
        """Whether an unconsumed token is outstanding for an owner."""
        try:
            return await self.storage.get(owner_public_key) is not None
        except Exception as e:
            raise StorageError(f"Failed to read token: {e}") from e
