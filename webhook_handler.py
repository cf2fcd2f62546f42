"""
Razorpay webhook verification and processing.

Pipeline for ``POST /razorpay/webhook``:
1. Signature check over the raw body (HMAC-SHA256, dual-key rotation)
2. JSON parse and event filter (only ``payment.captured`` is recorded)
3. FileMaker session, duplicate check, insert

The response to Razorpay is always HTTP 200. Razorpay retries any non-2xx
delivery for up to 24 hours, so surfacing an internal failure would only
multiply the traffic hitting a store that is already struggling. What
happened is reported in the ``status`` field and in the logs instead.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from filemaker_client import FileMakerError, SessionExpiredError
from payment_store import PaymentStore
from payments import WebhookEvent
from secrets_manager import SecretsManager

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-razorpay-signature"


class WebhookStatus(str, enum.Enum):
    OK = "ok"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    INVALID_SIGNATURE = "invalid-signature"


def verify_razorpay_signature(raw_body: bytes, signature: Optional[str],
                              secret: Optional[str]) -> bool:
    """
    Check ``signature`` against HMAC-SHA256(secret, raw_body) as a hex digest.

    Fails closed on a missing signature, empty body, or unset secret. The
    HMAC is taken over the bytes exactly as received; parsing and
    re-serializing JSON first would change the byte layout.
    """
    if not signature or not raw_body or not secret:
        return False

    expected_sig = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()

    # compare_digest raises TypeError on non-ASCII str input, and header
    # values are attacker-controlled.
    return hmac.compare_digest(expected_sig.encode(), signature.encode("utf-8", "replace"))


def parse_webhook_event(raw_body: bytes) -> WebhookEvent:
    """Decode the raw body into a WebhookEvent. Missing fields get defaults."""
    try:
        data: Any = json.loads(raw_body)
    except ValueError as exc:  # JSONDecodeError and UnicodeDecodeError
        raise ValueError("Malformed JSON payload") from exc
    return WebhookEvent.from_payload(data)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Holders plus waiters. Counted outside the lock, so a waiter woken by a
    # release is still counted until it has run.
    users: int = 0


class _PaymentLocks:
    """
    One asyncio.Lock per payment id, so the duplicate check and the insert
    for a given payment never interleave with another delivery of the same
    payment in this process.

    Bounded: entries nobody holds or waits on are dropped once the registry
    reaches ``max_size``.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        self._max_size = max_size
        self._entries: dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, payment_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(payment_id)
        if entry is None:
            if len(self._entries) >= self._max_size:
                self._evict_idle()
            entry = self._entries[payment_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1

    def _evict_idle(self) -> None:
        idle = [k for k, entry in self._entries.items() if entry.users == 0]
        for k in idle:
            del self._entries[k]

    def __len__(self) -> int:
        return len(self._entries)


class WebhookProcessor:
    """
    Full webhook pipeline: verify -> parse -> filter -> dedupe -> insert -> ack.

    ``process`` never raises for anything that happens after the signature
    check; failures are logged with the payment id and the stage they hit.
    """

    def __init__(self, secrets_manager: SecretsManager, store: PaymentStore) -> None:
        self._secrets_manager = secrets_manager
        self._store = store
        self._locks = _PaymentLocks()

    def _verify(self, raw_body: bytes, signature: str) -> bool:
        current_secret = self._secrets_manager.get_secret("RAZORPAY_WEBHOOK_SECRET",
                                                          requester="webhook_verifier")
        previous_secret = self._secrets_manager.get_secret("RAZORPAY_WEBHOOK_SECRET_PREVIOUS",
                                                           requester="webhook_verifier")
        if not current_secret and not previous_secret:
            logger.error("WEBHOOK_VERIFY_FAIL reason=secret_not_configured")
            return False

        for label, secret in [("current", current_secret), ("previous", previous_secret)]:
            if verify_razorpay_signature(raw_body, signature, secret):
                if label == "previous":
                    logger.warning("WEBHOOK_VERIFY_OK key=previous -- Razorpay dashboard still "
                                   "signs with the old secret")
                return True

        logger.warning("WEBHOOK_VERIFY_FAIL reason=signature_mismatch")
        return False

    async def process(self, raw_body: bytes, signature: Optional[str]) -> WebhookStatus:
        """Run the pipeline and return the status to report to Razorpay."""
        if not signature or not raw_body:
            logger.warning("WEBHOOK_IGNORED reason=missing_signature_or_body")
            return WebhookStatus.IGNORED

        if not self._verify(raw_body, signature):
            return WebhookStatus.INVALID_SIGNATURE

        try:
            event = parse_webhook_event(raw_body)
        except ValueError:
            logger.error("WEBHOOK_PROCESSING_ERROR stage=parse reason=malformed_json")
            return WebhookStatus.OK

        if not event.is_payment_captured:
            logger.info("WEBHOOK_IGNORED event=%s", event.event_type or "<missing>")
            return WebhookStatus.IGNORED

        payment_id = event.payment.id
        if not payment_id:
            logger.error("WEBHOOK_SKIPPED_INVALID reason=missing_payment_id")
            return WebhookStatus.OK

        logger.info("WEBHOOK_PAYMENT_CAPTURED payment_id=%s order_id=%s",
                    payment_id, event.payment.order_id)
        async with self._locks.hold(payment_id):
            return await self._record_payment(event)

    async def _record_payment(self, event: WebhookEvent) -> WebhookStatus:
        payment_id = event.payment.id
        sessions = self._store.sessions
        stage = "session"
        try:
            token = await sessions.get_token()

            stage = "duplicate_check"
            try:
                exists = await self._store.payment_exists(token, payment_id)
            except SessionExpiredError:
                # A find is a read, so repeating it with a fresh token is safe.
                logger.warning("PAYMENT_LOOKUP_SESSION_EXPIRED payment_id=%s -- refreshing session",
                               payment_id)
                await sessions.invalidate(token)
                stage = "session"
                token = await sessions.get_token()
                stage = "duplicate_check"
                exists = await self._store.payment_exists(token, payment_id)

            if exists:
                logger.info("PAYMENT_DUPLICATE payment_id=%s -- already recorded, skipping", payment_id)
                return WebhookStatus.DUPLICATE

            stage = "insert"
            record_id = await self._store.insert_payment(token, event.payment.to_filemaker_record())
        except FileMakerError as exc:
            logger.error("WEBHOOK_PROCESSING_ERROR stage=%s payment_id=%s error_type=%s error=%s",
                         stage, payment_id, type(exc).__name__, exc)
            return WebhookStatus.OK
        except Exception:
            logger.exception("WEBHOOK_PROCESSING_ERROR stage=%s payment_id=%s", stage, payment_id)
            return WebhookStatus.OK

        logger.info("PAYMENT_INSERTED payment_id=%s record_id=%s", payment_id, record_id or "-")
        return WebhookStatus.OK
