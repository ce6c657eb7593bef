from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.stock import router as stock_router
from .routers.clients import router as clients_router
from .routers.sales import router as sales_router
from .routers.invoices import router as invoices_router
from .routers.cashbook import router as cashbook_router
from .routers.allocations import router as allocations_router
from .routers.supplier_advances import router as supplier_advances_router
from .routers.reports import router as reports_router
from .routers.settings import router as settings_router
from .routers.audit import router as audit_router
from .config import settings
from .db import get_admin_conn, close_pools
from .logs import json_log

app = FastAPI(title="FuelFlow API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)

SERVICE_NAME = "fuelflow-backend"


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _concurrency_conflict(req: Request, exc: Exception, reason: str):
    rid = _current_request_id(req)
    json_log(
        "warning",
        "db.concurrency_conflict",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        reason=reason,
        error=str(exc),
    )
    content = {
        "detail": {
            "code": "concurrency_conflict",
            "message": "another request is changing the same records; retry",
        },
        "retryable": True,
        "request_id": rid,
    }
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=409, content=content)


# Lock waits and aborted transactions are retryable and kept apart from validation errors.
@app.exception_handler(pg_errors.LockNotAvailable)
def _lock_not_available(req: Request, exc: Exception):
    return _concurrency_conflict(req, exc, "lock_timeout")


@app.exception_handler(pg_errors.SerializationFailure)
def _serialization_failure(req: Request, exc: Exception):
    return _concurrency_conflict(req, exc, "serialization_failure")


@app.exception_handler(pg_errors.DeadlockDetected)
def _deadlock_detected(req: Request, exc: Exception):
    return _concurrency_conflict(req, exc, "deadlock")


def _db_error_handler(status_code: int, code: str, message: str):
    def _handler(_req: Request, exc: Exception):
        detail = {"code": code, "message": message}
        # Named ledger constraints (e.g. one live invoice per sale) surface their name.
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        if constraint:
            detail["constraint"] = constraint
        content = {"detail": detail}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=status_code, content=content)
    return _handler


# Constraint and cast errors the schema raises as a backstop to the handlers' own checks.
_invalid_text_representation = _db_error_handler(400, "invalid_value", "malformed id or value")
_foreign_key_violation = _db_error_handler(400, "invalid_reference", "referenced record does not exist")
_unique_violation = _db_error_handler(409, "conflict", "a record with the same key already exists")
_check_violation = _db_error_handler(400, "constraint_violation", "amount or status outside the allowed range")

app.add_exception_handler(pg_errors.InvalidTextRepresentation, _invalid_text_representation)
app.add_exception_handler(pg_errors.ForeignKeyViolation, _foreign_key_violation)
app.add_exception_handler(pg_errors.UniqueViolation, _unique_violation)
app.add_exception_handler(pg_errors.CheckViolation, _check_violation)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response


# The browser UI is served from a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(stock_router)
app.include_router(clients_router)
app.include_router(sales_router)
app.include_router(invoices_router)
app.include_router(cashbook_router)
app.include_router(allocations_router)
app.include_router(supplier_advances_router)
app.include_router(reports_router)
app.include_router(settings_router)
app.include_router(audit_router)


@app.on_event("startup")
def _startup():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/")
def root():
    return {"status": "ok", "service": "api"}


# Tables the ledger cannot run without; readiness fails until the schema is loaded.
LEDGER_TABLES = (
    "stock_lots",
    "sales",
    "invoices",
    "cashbook_entries",
    "payment_allocations",
    "supplier_advance_allocations",
    "document_sequences",
)


def _db_health(check_schema: bool = False):
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
                if not check_schema:
                    return True, None
                cur.execute(
                    "SELECT t AS name FROM unnest(%s::text[]) AS t WHERE to_regclass('public.' || t) IS NULL",
                    (list(LEDGER_TABLES),),
                )
                missing = [r["name"] for r in cur.fetchall() or []]
        if missing:
            return False, "missing tables: " + ", ".join(missing)
        return True, None
    except Exception as exc:
        return False, str(exc)


def _health_body(req: Request, status: str, db_ok: bool) -> dict:
    return {
        "status": status,
        "env": settings.env,
        "db": "ok" if db_ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
    }


@app.get("/health")
def health(req: Request):
    ok, err = _db_health()
    content = _health_body(req, "ok" if ok else "degraded", ok)
    content["started_at"] = STARTED_AT_UTC.isoformat()
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    ok, err = _db_health(check_schema=True)
    if not ok:
        content = _health_body(req, "degraded", False)
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return _health_body(req, "ready", True)


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
        "currency": "AED",
        "lock_timeout_ms": settings.lock_timeout_ms,
        "default_invoice_prefix": settings.default_invoice_prefix,
    }
