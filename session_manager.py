"""
FileMaker Data API session cache.

FileMaker tokens carry no client-visible expiry; a token is good until the
server answers with code 952. The manager therefore holds at most one token,
hands it out without network I/O, and only logs in again after someone
reports the token dead via ``invalidate``.

Concurrency: one asyncio.Lock guards both the cached value and the login
exchange. Callers that find no session wait for the login already in
flight instead of starting their own, and no caller can observe a token
that is halfway through being replaced.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from filemaker_client import FileMakerClient, FileMakerError

logger = logging.getLogger(__name__)


class SessionManager:
    """Two states: no session, or one cached token."""

    def __init__(self, client: FileMakerClient) -> None:
        self._client = client
        self._token: Optional[str] = None
        self._lock = asyncio.Lock()
        self.login_count = 0

    @property
    def has_session(self) -> bool:
        return self._token is not None

    async def get_token(self) -> str:
        """
        Return the cached token, logging in first if there is none.

        Raises:
            FileMakerError: login failed. Only the calling request is affected;
                the next caller tries again.
        """
        async with self._lock:
            if self._token is not None:
                return self._token
            token = await self._client.login()
            self.login_count += 1
            self._token = token
            return token

    async def invalidate(self, token: Optional[str] = None) -> None:
        """
        Drop the cached session. Calling it with no session is a no-op.

        Pass the token that failed so a session another request has already
        refreshed is left alone.
        """
        async with self._lock:
            if self._token is None:
                return
            if token is not None and token != self._token:
                logger.debug("SESSION_INVALIDATE_SKIPPED reason=already_refreshed")
                return
            self._token = None
            logger.info("SESSION_INVALIDATED")

    async def close(self) -> None:
        """Log out of the cached session, if any. Failures are logged only."""
        async with self._lock:
            token, self._token = self._token, None
        if token is None:
            return
        try:
            await self._client.logout(token)
            logger.info("FILEMAKER_LOGOUT_OK")
        except FileMakerError as exc:
            logger.warning("FILEMAKER_LOGOUT_FAIL error=%s", exc)
