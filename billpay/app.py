import logging
import uuid
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .api import router
from .db import init_db, seed_if_empty
from .domain import BillPaymentError, InternalError, InvalidRequest, NotFound
from .logger_config import request_id_var, setup_logging

# ---- logging ----
setup_logging()
log = logging.getLogger("app")

# ---- status -> code mapping ----
STATUS_TO_CODE = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "UNPROCESSABLE_ENTITY",
    500: "INTERNAL_SERVER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}
def code_for(status: int) -> str:
    return STATUS_TO_CODE.get(status, f"HTTP_{status}")

def error_response(status: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": {"code": code_for(status), "message": message}},
        headers=headers,
    )

def status_for(exc: BillPaymentError) -> int:
    if isinstance(exc, InvalidRequest):
        return 400
    if isinstance(exc, NotFound):
        return 404
    if exc.retryable:
        return 503
    return 500

# ---- middleware ----
class EnforceJSONMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method in {"POST", "PUT", "PATCH"}:
            ct = request.headers.get("content-type", "").split(";")[0].strip().lower()
            if ct != "application/json":
                log.warning("Unsupported media type: %s %s", request.method, request.url.path)
                return error_response(415, "Content-Type must be application/json")
        return await call_next(request)

class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        # context-local, so overlapping requests never see each other's id
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            request_id_var.reset(token)

# ---- lifespan ----
@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if os.getenv("BILLPAY_DISABLE_SEED") != "1":
        seed_if_empty()
    log.info("Bill Payment API started")
    try:
        yield
    finally:
        log.info("Bill Payment API stopped")

def create_app() -> FastAPI:
    app = FastAPI(title="Bill Payment Service", lifespan=lifespan)

    # middleware
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(EnforceJSONMiddleware)

    # exception handlers
    @app.exception_handler(BillPaymentError)
    async def bill_payment_handler(request: Request, exc: BillPaymentError):
        status = status_for(exc)
        if isinstance(exc, InternalError):
            log.error("%s %s -> %s (%s)", request.method, request.url.path, status, exc.message,
                      exc_info=exc.__cause__ or exc)
        else:
            log.info("%s %s -> %s (%s)", request.method, request.url.path, status, exc.message)
        headers = {"Retry-After": "1"} if exc.retryable else None
        return error_response(status, exc.message, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        msg = "Invalid request."
        errors = exc.errors()
        if errors:
            err = errors[0]
            loc = ".".join(str(x) for x in err.get("loc", []))
            detail = err.get("msg", "")
            msg = f"{loc}: {detail}" if loc else (detail or msg)
        log.warning("422 validation: %s %s -> %s", request.method, request.url.path, msg)
        return error_response(422, msg)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else code_for(exc.status_code).replace("_", " ").title()
        log.warning("%s %s -> %s (%s)", request.method, request.url.path, exc.status_code, detail)
        return error_response(exc.status_code, str(detail))

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        log.exception("%s %s -> 500", request.method, request.url.path)
        return error_response(500, "Internal server error")

    # routers
    app.include_router(router)
    return app

app = create_app()
