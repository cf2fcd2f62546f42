"""
FastAPI application: Razorpay fee payments into FileMaker, plus student search.

Run with ``uvicorn app:app`` or ``python app.py``.

Endpoints:
- POST /razorpay/webhook  Razorpay payment webhooks (HMAC-authenticated)
- GET  /search            student lookup over the preloaded dataset
- GET  /health            liveness + dataset row count

Request flow:
    Client → Size Limit → Audit Log → Security Headers → CORS → Endpoint Logic
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, load_settings, parse_origins
from dataset import DatasetUnavailableError, InvalidSearchQuery, SearchQuery, StudentDirectory
from filemaker_client import FileMakerClient
from middleware.audit_logger import AuditLogger
from payment_store import PaymentStore
from secrets_manager import EnvironmentBackend, SecretsManager
from session_manager import SessionManager
from webhook_handler import SIGNATURE_HEADER, WebhookProcessor

logger = logging.getLogger(__name__)

# Globals initialized at startup
settings: Optional[Settings] = None
secrets_mgr: Optional[SecretsManager] = None
filemaker_client: Optional[FileMakerClient] = None
session_manager: Optional[SessionManager] = None
webhook_processor: Optional[WebhookProcessor] = None
student_directory: Optional[StudentDirectory] = None
audit_logger: Optional[AuditLogger] = None
_reload_task: Optional[asyncio.Task] = None


async def _periodic_dataset_reload(interval_seconds: int) -> None:
    """Refresh the student table in a worker thread every ``interval_seconds``."""
    while True:
        await asyncio.sleep(interval_seconds)
        if student_directory:
            await asyncio.to_thread(student_directory.try_load)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize all components on startup, tear down on shutdown."""
    global settings, secrets_mgr, filemaker_client, session_manager, webhook_processor
    global student_directory, audit_logger, _reload_task

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logger.info("Starting fee bridge...")

    settings = load_settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL)

    secrets_mgr = SecretsManager(backend=EnvironmentBackend(), cache_ttl_seconds=300,
                                 service_name="fee-bridge")
    filemaker_client = FileMakerClient(
        host=settings.FM_HOST, database=settings.FM_FILE, username=settings.FM_USER,
        secrets_manager=secrets_mgr, timeout_seconds=settings.FM_TIMEOUT_SECONDS,
        verify=settings.filemaker_tls_verify,
    )
    session_manager = SessionManager(filemaker_client)
    store = PaymentStore(filemaker_client, session_manager, layout=settings.FM_LAYOUT)
    webhook_processor = WebhookProcessor(secrets_manager=secrets_mgr, store=store)
    audit_logger = AuditLogger(service_name="fee-bridge")

    student_directory = StudentDirectory(
        url=settings.DATASET_URL, query=settings.DATASET_QUERY,
        name_column=settings.DATASET_NAME_COLUMN,
        admission_column=settings.DATASET_ADMISSION_COLUMN,
        school_column=settings.DATASET_SCHOOL_COLUMN,
        max_results=settings.SEARCH_MAX_RESULTS,
    )
    # A failed load leaves search returning 500 but must not block webhooks.
    await asyncio.to_thread(student_directory.try_load)
    if student_directory.configured and settings.DATASET_RELOAD_SECONDS > 0:
        _reload_task = asyncio.create_task(_periodic_dataset_reload(settings.DATASET_RELOAD_SECONDS))

    logger.info("All components initialized. Application ready.")
    yield

    # Shutdown
    if _reload_task:
        _reload_task.cancel()
    if session_manager:
        await session_manager.close()
    if filemaker_client:
        await filemaker_client.close()
    logger.info("Application shut down.")


app = FastAPI(
    title="Fee Bridge",
    description="Razorpay payment webhooks into FileMaker, with student search",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    # Installed at import time, before lifespan has loaded Settings.
    allow_origins=parse_origins(os.environ.get("ALLOWED_ORIGINS", "")),
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Request-Id"],
    allow_credentials=False,
    max_age=3600,
)


# --- Middleware stack (executed bottom-to-top in FastAPI) ---

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    if audit_logger is None:
        return await call_next(request)
    return await audit_logger.log_request(request, call_next)


# Razorpay webhook bodies are a few KB; anything far larger is not Razorpay.
MAX_BODY_SIZE = 64 * 1024
WEBHOOK_PATH = "/razorpay/webhook"


def _too_large(request: Request) -> JSONResponse:
    # Razorpay redelivers on any non-2xx, so the webhook path acknowledges instead.
    if request.url.path == WEBHOOK_PATH:
        return JSONResponse(status_code=200, content={"status": "ignored"})
    return JSONResponse(status_code=413, content={"error": "payload_too_large"})


@app.middleware("http")
async def request_size_limit_middleware(request: Request, call_next):
    """
    Reject oversized request bodies.

    The actual body is read for POSTs rather than trusting Content-Length,
    which can be omitted with chunked transfer encoding. Oversized webhooks
    get 200 ``ignored``; everything else gets 413.
    """
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > MAX_BODY_SIZE:
                logger.warning("REQUEST_TOO_LARGE path=%s content_length=%s max=%d",
                               request.url.path, content_length, MAX_BODY_SIZE)
                return _too_large(request)
        except ValueError:
            pass  # Malformed header, let downstream handle

    if request.method in ("POST", "PUT", "PATCH"):
        body = await request.body()
        if len(body) > MAX_BODY_SIZE:
            logger.warning("REQUEST_TOO_LARGE path=%s actual_size=%d max=%d",
                           request.url.path, len(body), MAX_BODY_SIZE)
            return _too_large(request)

    return await call_next(request)


# --- Global exception handler ---

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Generic error response. Never leak stack traces, tokens, or student data."""
    request_id = request.headers.get("x-request-id", uuid.uuid4().hex[:16])
    logger.exception("UNHANDLED_EXCEPTION request_id=%s path=%s", request_id, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal_error", "request_id": request_id})


# --- Endpoints ---

@app.get("/health")
async def health_check():
    """Liveness probe. ``rows`` appears once the student table has loaded."""
    body: dict[str, object] = {"status": "ok"}
    if student_directory is not None and student_directory.loaded:
        body["rows"] = student_directory.row_count
    return body


@app.get("/search")
async def search_students(name: str = "", admission: str = "", school: Optional[str] = None):
    """
    Look up students by partial name and admission number within one school.

    400 when either term is shorter than 3 characters, 500 when the student
    table is not loaded.
    """
    if student_directory is None or settings is None:
        raise HTTPException(status_code=503, detail="not_ready")
    try:
        query = SearchQuery.build(name, admission, school, default_school=settings.DEFAULT_SCHOOL)
    except InvalidSearchQuery as exc:
        return JSONResponse(status_code=400, content={"error": "query_too_short", "detail": str(exc)})
    try:
        return student_directory.search(query)
    except DatasetUnavailableError:
        logger.error("SEARCH_FAIL reason=dataset_unavailable")
        return JSONResponse(status_code=500, content={"error": "dataset_unavailable"})


@app.post(WEBHOOK_PATH)
async def receive_razorpay_webhook(request: Request):
    """
    Receive a Razorpay webhook.

    Always 200: the outcome is in ``status`` ("ok", "ignored", "duplicate",
    "invalid-signature"). A non-2xx answer would make Razorpay redeliver.
    """
    if webhook_processor is None:
        raise HTTPException(status_code=503, detail="not_ready")
    signature = request.headers.get(SIGNATURE_HEADER)
    body = await request.body()
    status = await webhook_processor.process(body, signature)
    return JSONResponse(status_code=200, content={"status": status.value})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host=os.environ.get("HOST", "0.0.0.0"),
                port=int(os.environ.get("PORT", "8000")), access_log=False)
