"""Token storage with an in-memory read cache.

The store interface keeps the engine independent of where the secret lives;
``CredentialCache`` is owned by the client and invalidated on save/delete.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from errors import TokenNotFoundError

logger = logging.getLogger(__name__)

TOKEN_FILENAME = "token"


class TokenStore(ABC):
    """Persistence for a single secret string."""

    @abstractmethod
    def read(self) -> str:
        """Return the stored token. Raises TokenNotFoundError if none is stored."""

    @abstractmethod
    def save(self, token: str) -> None:
        """Persist the token, replacing any previous one."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the token. Deleting a missing token is not an error."""


class FileTokenStore(TokenStore):
    """Keeps the token in a user-only readable file."""

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> str:
        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise TokenNotFoundError() from None
        if not token:
            raise TokenNotFoundError()
        return token

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryTokenStore(TokenStore):
    """Process-local store, used when nothing should touch disk."""

    def __init__(self, token: str | None = None):
        self._token = token
        self.read_count = 0

    def read(self) -> str:
        self.read_count += 1
        if not self._token:
            raise TokenNotFoundError()
        return self._token

    def save(self, token: str) -> None:
        self._token = token

    def delete(self) -> None:
        self._token = None


class CredentialCache:
    """Caches the last token read from a TokenStore."""

    def __init__(self, store: TokenStore):
        self._store = store
        self._cached: str | None = None
        self._lock = threading.Lock()

    def read(self) -> str:
        """Cached token, reading the store on first use. Raises TokenNotFoundError."""
        with self._lock:
            if self._cached:
                return self._cached
        token = self._store.read()
        with self._lock:
            self._cached = token
        return token

    def save(self, token: str) -> None:
        """Store the trimmed token and cache it. Raises ValueError if it is blank."""
        trimmed = token.strip()
        if not trimmed:
            raise ValueError("Token must not be empty")
        self._store.save(trimmed)
        with self._lock:
            self._cached = trimmed

    def delete(self) -> None:
        """Remove the token from the store and the cache."""
        self._store.delete()
        self.invalidate()

    def has(self) -> bool:
        """Whether a non-blank token is stored."""
        try:
            return bool(self.read().strip())
        except TokenNotFoundError:
            return False

    def invalidate(self) -> None:
        """Drop the cached token so the next read hits the store."""
        with self._lock:
            self._cached = None
