"""
Secret lookup for the FileMaker password and the Razorpay webhook secrets.

Why an abstraction layer: application code asks for a secret by name and
never reads os.environ directly, so a hosted secrets store can replace the
environment backend without touching callers.

Why caching: secrets are read on every webhook (signature check) and on
every FileMaker login. A short TTL keeps lookups cheap while still picking
up a rotated value without a restart.

Access is logged (who asked for which key) but the value never is.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class SecretsBackend(ABC):
    """Where secret values actually live."""

    @abstractmethod
    def get_secret(self, key: str) -> Optional[str]:
        ...


class EnvironmentBackend(SecretsBackend):
    """Reads secrets from process environment variables. Empty counts as unset."""

    def get_secret(self, key: str) -> Optional[str]:
        return os.environ.get(key) or None


@dataclass
class _CacheEntry:
    value: str
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class SecretsManager:
    """Thread-safe TTL cache in front of a SecretsBackend, with access logging."""

    def __init__(self, backend: SecretsBackend, cache_ttl_seconds: int = 300,
                 service_name: str = "fee-bridge") -> None:
        self._backend = backend
        self._cache_ttl = cache_ttl_seconds
        self._service_name = service_name
        self._cache: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def get_secret(self, key: str, requester: str = "system") -> Optional[str]:
        logger.debug("SECRET_ACCESS requester=%s key=%s service=%s",
                     requester, key, self._service_name)

        with self._lock:
            entry = self._cache.get(key)
            if entry and not entry.expired:
                return entry.value

        value = self._backend.get_secret(key)
        if value is None:
            # Misses are not cached so a secret added later is seen on the next call.
            logger.debug("SECRET_MISSING key=%s", key)
            return None
        with self._lock:
            self._cache[key] = _CacheEntry(value=value, expires_at=time.monotonic() + self._cache_ttl)
        return value

    def invalidate_cache(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key:
                self._cache.pop(key, None)
            else:
                self._cache.clear()
