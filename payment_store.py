"""
Idempotent payment writes against the FileMaker ``razor`` layout.

Two operations, each its own network call:

- ``payment_exists``: the duplicate check. FileMaker reports "no match" as
  an error (HTTP 401 with message code 401), which looks a lot like an auth
  failure. All classification happens in ``classify_find_response`` so it
  can be tested without HTTP.
- ``insert_payment``: the write. Retries only for an expired session and
  only once; any other failure is final so an ambiguous error can never
  turn into a duplicate row.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from filemaker_client import (
    FM_CODE_NO_RECORDS_MATCH,
    FileMakerClient,
    FileMakerResponse,
    IndeterminateLookupError,
    RecordWriteError,
    SessionExpiredError,
)
from session_manager import SessionManager

logger = logging.getLogger(__name__)

NO_RECORDS_MATCH_TEXT = "no records match"
_NOT_FOUND_STATUSES = frozenset({401, 404})


class FindOutcome(enum.Enum):
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    INDETERMINATE = "indeterminate"


def classify_find_response(status_code: int, body: Any) -> FindOutcome:
    """
    Map a ``_find`` response onto the duplicate-check result.

    Priority order:
    1. 2xx with at least one row          -> DUPLICATE
    2. 2xx with zero rows, or 401/404
       saying "No records match"          -> NOT_FOUND
    3. anything else (including a 401
       for a dead token)                  -> INDETERMINATE
    """
    result = FileMakerResponse(status_code=status_code, body=body if isinstance(body, dict) else {})

    if result.ok:
        response = result.body.get("response")
        data = response.get("data") if isinstance(response, dict) else None
        if isinstance(data, list):
            return FindOutcome.DUPLICATE if data else FindOutcome.NOT_FOUND
        # A 2xx without a data list says nothing either way.
        return FindOutcome.INDETERMINATE

    if status_code in _NOT_FOUND_STATUSES:
        if (NO_RECORDS_MATCH_TEXT in result.message_text.lower()
                or FM_CODE_NO_RECORDS_MATCH in result.codes):
            return FindOutcome.NOT_FOUND

    return FindOutcome.INDETERMINATE


class PaymentStore:
    """Duplicate check and insert for Razorpay payments in one FileMaker layout."""

    def __init__(self, client: FileMakerClient, sessions: SessionManager,
                 layout: str = "razor", id_field: str = "payment_id") -> None:
        self._client = client
        self._sessions = sessions
        self._layout = layout
        self._id_field = id_field

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    async def payment_exists(self, token: str, payment_id: str) -> bool:
        """
        True when a record for ``payment_id`` is already stored.

        Raises:
            SessionExpiredError: the token is dead; nothing can be concluded.
            IndeterminateLookupError: any other unclassifiable response.
                Callers must treat this as "do not write".
        """
        # "==" is FileMaker's exact-match operator; a bare value would also
        # match records whose payment_id merely starts with the same word.
        result = await self._client.find(token, self._layout, {self._id_field: f"=={payment_id}"})
        outcome = classify_find_response(result.status_code, result.body)
        logger.debug("PAYMENT_LOOKUP payment_id=%s outcome=%s", payment_id, outcome.value)

        if outcome is FindOutcome.DUPLICATE:
            return True
        if outcome is FindOutcome.NOT_FOUND:
            return False
        if result.session_expired:
            raise SessionExpiredError("FileMaker session expired during find",
                                      status_code=result.status_code, code="952")
        raise IndeterminateLookupError(
            f"FileMaker find for {payment_id} was inconclusive: {result.describe()}",
            status_code=result.status_code,
        )

    async def _create(self, token: str, record: dict[str, Any]) -> str:
        result = await self._client.create_record(token, self._layout, record)
        if result.ok:
            response = result.body.get("response")
            return str(response.get("recordId", "")) if isinstance(response, dict) else ""
        if result.session_expired:
            raise SessionExpiredError("FileMaker session expired during create",
                                      status_code=result.status_code, code="952")
        raise RecordWriteError(f"FileMaker create rejected: {result.describe()}",
                               status_code=result.status_code)

    async def insert_payment(self, token: str, record: dict[str, Any]) -> str:
        """
        Write ``record`` and return the FileMaker record id.

        On an expired session: invalidate, log in again, retry exactly once.
        A failure on the retry, or any other failure, is raised to the caller.
        """
        try:
            return await self._create(token, record)
        except SessionExpiredError:
            logger.warning("PAYMENT_INSERT_SESSION_EXPIRED payment_id=%s -- refreshing session",
                           record.get(self._id_field, ""))
            await self._sessions.invalidate(token)
            fresh_token = await self._sessions.get_token()
            return await self._create(fresh_token, record)
