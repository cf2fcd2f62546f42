"""
Structured request audit logging with PII/credential sanitization.

Payment webhooks and search results carry student names, parent e-mail
addresses and phone numbers. None of that belongs in logs in the clear, so
every audit line passes through ``sanitize`` before it is written.

What we NEVER log:
- Request or response bodies (webhook payloads, search results)
- Query strings on /search (they contain student names)
- FileMaker tokens or webhook secrets
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

# --- Sanitization patterns ---

# Long alphanumeric strings (FileMaker tokens, secrets)
_API_KEY_PATTERN = re.compile(r"\b([A-Za-z0-9_-]{8})[A-Za-z0-9_-]{24,}\b")

_EMAIL_PATTERN = re.compile(
    r"\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b"
)

# Phone numbers as Razorpay sends them: optional +, 10-13 digits
_PHONE_PATTERN = re.compile(r"(?<![\w.])(\+?\d{6,9})(\d{4})\b")


def sanitize_api_key(text: str) -> str:
    """Show only first 8 chars of credential-like strings."""
    return _API_KEY_PATTERN.sub(r"\1...[REDACTED]", text)


def sanitize_email(text: str) -> str:
    """Partially mask email addresses."""
    return _EMAIL_PATTERN.sub(r"\1***@\2", text)


def sanitize_phone(text: str) -> str:
    """Keep only the last 4 digits of a phone number."""
    return _PHONE_PATTERN.sub(r"******\2", text)


def sanitize(text: str) -> str:
    """Apply all sanitization rules."""
    text = sanitize_api_key(text)
    text = sanitize_email(text)
    text = sanitize_phone(text)
    return text


@dataclass
class AuditLogEntry:
    """One structured line per HTTP request."""
    timestamp: str
    request_id: str
    endpoint: str
    method: str
    source_ip: str
    user_agent: str
    response_status: int
    response_time_ms: float
    error: str = ""

    def to_json(self) -> str:
        raw = json.dumps(asdict(self), default=str)
        return sanitize(raw)


class AuditLogger:
    """Middleware-compatible audit logger with structured JSON output."""

    def __init__(self, service_name: str = "fee-bridge") -> None:
        self._service_name = service_name

    async def log_request(self, request: Any, call_next: Any) -> Any:
        # 16 hex chars stays under the credential-redaction threshold.
        request_id = request.headers.get("x-request-id", uuid.uuid4().hex[:16])
        start = time.monotonic()

        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000

        entry = AuditLogEntry(
            timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            request_id=request_id,
            endpoint=str(request.url.path),
            method=request.method,
            source_ip=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("user-agent", ""),
            response_status=response.status_code,
            response_time_ms=round(elapsed_ms, 2),
        )

        log_line = entry.to_json()
        if response.status_code >= 500:
            logger.error(log_line)
        elif response.status_code >= 400:
            logger.warning(log_line)
        else:
            logger.info(log_line)

        response.headers["X-Request-Id"] = request_id
        return response
