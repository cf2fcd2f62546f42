"""
HTTP transport for the FileMaker Data API.

Thin async wrapper around the four Data API calls the bridge needs: open a
session, find by payment id, create a record, close a session. It does not
interpret find or create outcomes; it returns the status code and decoded
body so callers can classify them (see ``payment_store``). Transport-level
problems (DNS, TLS, timeouts, non-JSON bodies) become FileMakerError
subclasses so no raw httpx exception leaks past this module.

Security:
- TLS certificate verification on by default; a private CA bundle can be
  supplied instead of disabling verification
- Credentials fetched just-in-time from SecretsManager at login
- Bearer tokens scrubbed from any error text before it is logged or raised
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from urllib.parse import quote

import httpx

from secrets_manager import SecretsManager

logger = logging.getLogger(__name__)

# FileMaker Data API message codes (messages[0].code in every response body)
FM_CODE_NO_RECORDS_MATCH = "401"
FM_CODE_INVALID_TOKEN = "952"


class FileMakerError(Exception):
    """Base error for any FileMaker Data API failure."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None,
                 code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class FileMakerUnavailableError(FileMakerError):
    """Network failure, timeout, or an unreadable response."""
    retryable = True


class FileMakerAuthError(FileMakerError):
    """Session creation rejected or returned no token."""


class SessionExpiredError(FileMakerError):
    """The bearer token is no longer valid (FileMaker code 952)."""
    retryable = True


class IndeterminateLookupError(FileMakerError):
    """A find response that is neither a match nor a clean miss."""
    retryable = True


class RecordWriteError(FileMakerError):
    """FileMaker rejected a record create."""


@dataclass(frozen=True)
class FileMakerResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def messages(self) -> list[dict[str, Any]]:
        messages = self.body.get("messages")
        return [m for m in messages if isinstance(m, dict)] if isinstance(messages, list) else []

    @property
    def codes(self) -> set[str]:
        return {str(m.get("code", "")) for m in self.messages}

    @property
    def message_text(self) -> str:
        return "; ".join(str(m.get("message", "")) for m in self.messages)

    @property
    def session_expired(self) -> bool:
        return FM_CODE_INVALID_TOKEN in self.codes

    def describe(self) -> str:
        codes = ",".join(sorted(self.codes)) or "-"
        return f"status={self.status_code} codes={codes} message={sanitize_error(self.message_text)!r}"


def sanitize_error(msg: str) -> str:
    """Strip bearer tokens and long token-like strings echoed in error text."""
    sanitized = re.sub(r"Bearer\s+\S+", "Bearer [REDACTED]", msg, flags=re.IGNORECASE)
    sanitized = re.sub(r"[A-Za-z0-9+/=_-]{32,}", "[REDACTED]", sanitized)
    return sanitized


class FileMakerClient:
    """
    Async client for one FileMaker database.

    All URLs hang off ``{host}/fmi/data/vLatest/databases/{database}``.
    """

    API_VERSION = "vLatest"

    def __init__(self, host: str, database: str, username: str,
                 secrets_manager: SecretsManager, timeout_seconds: float = 15.0,
                 verify: Union[bool, str] = True,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._base_url = (
            f"{host.rstrip('/')}/fmi/data/{self.API_VERSION}/databases/{quote(database, safe='')}"
        )
        self._username = username
        self._secrets = secrets_manager
        self._client = httpx.AsyncClient(
            verify=verify,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _layout_url(self, layout: str, action: str) -> str:
        return f"{self._base_url}/layouts/{quote(layout, safe='')}/{action}"

    async def _send(self, method: str, url: str, operation: str, **kwargs: Any) -> FileMakerResponse:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("FILEMAKER_TIMEOUT operation=%s", operation)
            raise FileMakerUnavailableError(f"FileMaker {operation} timed out") from exc
        except httpx.HTTPError as exc:
            detail = sanitize_error(str(exc))
            logger.warning("FILEMAKER_TRANSPORT_ERROR operation=%s error=%s", operation, detail)
            raise FileMakerUnavailableError(f"FileMaker {operation} request failed: {detail}") from exc

        if not response.content:
            return FileMakerResponse(status_code=response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise FileMakerUnavailableError(
                f"FileMaker {operation} returned a non-JSON body", status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise FileMakerUnavailableError(
                f"FileMaker {operation} returned an unexpected body", status_code=response.status_code,
            )
        return FileMakerResponse(status_code=response.status_code, body=body)

    @staticmethod
    def _bearer(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def login(self) -> str:
        """Open a Data API session and return its token."""
        password = self._secrets.get_secret("FM_PASSWORD", requester="filemaker_login")
        if not self._username or not password:
            raise FileMakerAuthError("FileMaker credentials unavailable from secrets manager")

        result = await self._send(
            "POST", f"{self._base_url}/sessions", "login",
            auth=(self._username, password), json={},
        )
        if not result.ok:
            logger.error("FILEMAKER_LOGIN_FAIL %s", result.describe())
            raise FileMakerAuthError(
                f"FileMaker login rejected: {result.describe()}",
                status_code=result.status_code, code=",".join(sorted(result.codes)) or None,
            )

        response = result.body.get("response")
        token = response.get("token") if isinstance(response, dict) else None
        if not token or not isinstance(token, str):
            raise FileMakerAuthError("FileMaker login succeeded without a token",
                                     status_code=result.status_code)
        logger.info("FILEMAKER_LOGIN_OK")
        return token

    async def logout(self, token: str) -> None:
        await self._send("DELETE", f"{self._base_url}/sessions/{quote(token, safe='')}", "logout")

    async def find(self, token: str, layout: str, query: dict[str, str],
                   limit: int = 1) -> FileMakerResponse:
        return await self._send(
            "POST", self._layout_url(layout, "_find"), "find",
            headers=self._bearer(token), json={"query": [query], "limit": limit},
        )

    async def create_record(self, token: str, layout: str,
                            field_data: dict[str, Any]) -> FileMakerResponse:
        return await self._send(
            "POST", self._layout_url(layout, "records"), "create",
            headers=self._bearer(token), json={"fieldData": field_data},
        )

    async def close(self) -> None:
        await self._client.aclose()
