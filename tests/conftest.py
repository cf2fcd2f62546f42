"""Shared fixtures: test secrets, Razorpay payloads, and a fake FileMaker server."""

import hashlib
import hmac
import json
import os
from typing import Optional

import httpx
import pytest

# Ensure test settings are in the environment before importing app modules
os.environ.setdefault("FM_HOST", "https://fm.test")
os.environ.setdefault("FM_FILE", "Fees")
os.environ.setdefault("FM_USER", "api_user")
os.environ.setdefault("FM_PASSWORD", "fm_test_password")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_whsec_test_current_1234567890")
os.environ.setdefault("DATASET_URL", "")

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from filemaker_client import FileMakerClient
from payment_store import PaymentStore
from secrets_manager import SecretsBackend, SecretsManager
from session_manager import SessionManager
from webhook_handler import WebhookProcessor

WEBHOOK_SECRET = "rzp_whsec_test_current_1234567890"
PREVIOUS_WEBHOOK_SECRET = "rzp_whsec_test_previous_0987654321"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class DictBackend(SecretsBackend):
    """In-memory secrets for tests that must not depend on os.environ."""

    def __init__(self, values: dict[str, str]) -> None:
        self.values = values

    def get_secret(self, key: str) -> Optional[str]:
        return self.values.get(key) or None


class FakeFileMaker:
    """
    Minimal FileMaker Data API behind httpx.MockTransport.

    Behaves like the real server for the calls the bridge makes: tokens from
    /sessions, code 952 for unknown tokens, and "No records match" as a 401
    from _find. Knobs let tests inject expiries and odd responses.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict] = {}
        self.valid_tokens: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.find_queries: list[dict] = []
        self.logins = 0
        self.create_attempts = 0
        self.expire_next_creates = 0
        self.expire_next_finds = 0
        self.login_status = 200
        self.find_response: Optional[tuple[int, dict]] = None
        self.create_response: Optional[tuple[int, dict]] = None
        self.fail_transport: set[str] = set()

    @staticmethod
    def _messages(code: str, message: str) -> dict:
        return {"messages": [{"code": code, "message": message}], "response": {}}

    def _invalid_token(self) -> httpx.Response:
        return httpx.Response(401, json=self._messages("952", "Invalid FileMaker Data API token (*)"))

    def _authorized(self, request: httpx.Request) -> bool:
        auth = request.headers.get("authorization", "")
        return auth.startswith("Bearer ") and auth[7:] in self.valid_tokens

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        operation = (
            "login" if path.endswith("/sessions") else
            "logout" if "/sessions/" in path else
            "find" if path.endswith("/_find") else
            "create" if path.endswith("/records") else
            "unknown"
        )
        self.calls.append((request.method, operation))
        if operation in self.fail_transport:
            raise httpx.ConnectError("connection refused", request=request)

        if operation == "login":
            if self.login_status != 200:
                return httpx.Response(self.login_status, json=self._messages("212", "Invalid user account"))
            self.logins += 1
            token = f"fm-token-{self.logins}"
            self.valid_tokens.add(token)
            return httpx.Response(200, json={"response": {"token": token},
                                             "messages": [{"code": "0", "message": "OK"}]})

        if operation == "logout":
            self.valid_tokens.discard(path.rsplit("/", 1)[-1])
            return httpx.Response(200, json=self._messages("0", "OK"))

        if not self._authorized(request):
            return self._invalid_token()

        if operation == "find":
            if self.expire_next_finds:
                self.expire_next_finds -= 1
                self.valid_tokens.clear()
                return self._invalid_token()
            if self.find_response is not None:
                status, body = self.find_response
                return httpx.Response(status, json=body)
            query = json.loads(request.content)["query"][0]
            self.find_queries.append(query)
            payment_id = query["payment_id"].removeprefix("==")
            if payment_id in self.records:
                return httpx.Response(200, json={
                    "response": {"data": [{"fieldData": self.records[payment_id], "recordId": "1"}]},
                    "messages": [{"code": "0", "message": "OK"}],
                })
            return httpx.Response(401, json=self._messages("401", "No records match the request"))

        if operation == "create":
            self.create_attempts += 1
            if self.expire_next_creates:
                self.expire_next_creates -= 1
                self.valid_tokens.clear()
                return self._invalid_token()
            if self.create_response is not None:
                status, body = self.create_response
                return httpx.Response(status, json=body)
            field_data = json.loads(request.content)["fieldData"]
            self.records[field_data["payment_id"]] = field_data
            return httpx.Response(200, json={"response": {"recordId": str(len(self.records)), "modId": "0"},
                                             "messages": [{"code": "0", "message": "OK"}]})

        return httpx.Response(404, json=self._messages("3", "Unsupported action"))

    def count(self, operation: str) -> int:
        return sum(1 for _, op in self.calls if op == operation)


@pytest.fixture
def fake_filemaker() -> FakeFileMaker:
    return FakeFileMaker()


@pytest.fixture
def secrets() -> SecretsManager:
    return SecretsManager(
        backend=DictBackend({
            "FM_PASSWORD": "fm_test_password",
            "RAZORPAY_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "RAZORPAY_WEBHOOK_SECRET_PREVIOUS": PREVIOUS_WEBHOOK_SECRET,
        }),
        cache_ttl_seconds=60,
        service_name="test",
    )


@pytest.fixture
def filemaker_client(fake_filemaker, secrets) -> FileMakerClient:
    return FileMakerClient(
        host="https://fm.test", database="Fees", username="api_user",
        secrets_manager=secrets, transport=httpx.MockTransport(fake_filemaker.handler),
    )


@pytest.fixture
def sessions(filemaker_client) -> SessionManager:
    return SessionManager(filemaker_client)


@pytest.fixture
def store(filemaker_client, sessions) -> PaymentStore:
    return PaymentStore(filemaker_client, sessions, layout="razor")


@pytest.fixture
def processor(secrets, store) -> WebhookProcessor:
    return WebhookProcessor(secrets_manager=secrets, store=store)


def captured_payload(payment_id: str = "pay_1", **entity_overrides) -> dict:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "order_id": "order_9A33XWu170gUtm",
        "amount": 150000,
        "currency": "INR",
        "status": "captured",
        "contact": "+919876543210",
        "email": "parent@example.com",
        "notes": {"student_name": "Asha", "admission_number": "A123", "branch": "Janakpuri"},
    }
    entity.update(entity_overrides)
    return {
        "entity": "event",
        "event": "payment.captured",
        "contains": ["payment"],
        "payload": {"payment": {"entity": entity}},
        "created_at": 1700000000,
    }


@pytest.fixture
def payment_payload() -> dict:
    return captured_payload()


@pytest.fixture
def payment_body(payment_payload) -> bytes:
    return json.dumps(payment_payload).encode()
