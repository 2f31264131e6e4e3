from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from vocab_relay.app.api.health import VERSION
from vocab_relay.app.api.health import router as health_router
from vocab_relay.app.api.vocabulary import router as vocabulary_router
from vocab_relay.app.config.settings import Settings, settings
from vocab_relay.app.core.errors import APIError, RateLimitExhausted, RetryCancelled, UpstreamError
from vocab_relay.app.core.logging import get_logger, request_id_var, setup_logging
from vocab_relay.app.providers.external_data import ExternalDataClient
from vocab_relay.app.providers.gemini import GeminiProvider
from vocab_relay.app.security.cors import cors_kwargs
from vocab_relay.app.services.retry import RateLimitedCaller, RetryPolicy
from vocab_relay.app.services.throttle import ThrottleState
from vocab_relay.app.services.vocabulary_service import VocabularyService

setup_logging(
    level=settings.log_level,
    json_output=settings.log_json,
    log_file=settings.log_file or None,
)
logger = get_logger("vocab_relay")

_SENSITIVE_KEYS = {
    "key",
    "api_key",
    "apikey",
    "token",
    "access_token",
    "secret",
    "password",
    "authorization",
    "x-goog-api-key",
}


def _redact_value(value):
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                redacted[key] = "***"
            else:
                redacted[key] = _redact_value(item)
        return redacted
    if isinstance(value, list):
        return [_redact_value(item) for item in value]
    return value


def _safe_headers(request: Request) -> dict:
    allowlist = {
        "user-agent",
        "origin",
        "referer",
        "content-type",
        "x-forwarded-for",
        "x-real-ip",
        "x-request-id",
    }
    return {key: value for key, value in request.headers.items() if key.lower() in allowlist}


def _safe_body_preview(body: Any, max_bytes: int = 4096) -> str | None:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray, str)):
        if not body:
            return None
        try:
            body = json.loads(body)
        except (UnicodeDecodeError, ValueError):
            return f"<{len(body)} bytes, not JSON>"
    try:
        text = json.dumps(_redact_value(body), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return "<unserializable body>"
    if len(text) > max_bytes:
        text = text[:max_bytes] + "...(truncated)"
    return text


def _request_context(request: Request, body: Any = None) -> dict:
    if body is None:
        body = getattr(request.state, "json_body", None)
    return {
        "method": request.method,
        "path": request.url.path,
        "query": _redact_value(dict(request.query_params)),
        "client_ip": request.client.host if request.client else None,
        "headers": _safe_headers(request),
        "body_preview": _safe_body_preview(body),
    }


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_response(request: Request, status_code: int, code: str, message: str, headers: dict | None = None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message, **extra, "request_id": _request_id(request)},
        headers=headers,
    )


def build_vocabulary_service(config: Settings) -> VocabularyService:
    """Wire the upstream clients, each behind its own throttle."""
    provider = GeminiProvider(
        api_key=config.gemini_api_key,
        base_url=config.gemini_base_url,
        model=config.gemini_model,
        timeout_seconds=config.gemini_timeout_seconds,
    )
    external = None
    if config.external_data_url:
        external = ExternalDataClient(
            url=config.external_data_url,
            api_key=config.external_data_api_key,
            timeout_seconds=config.gemini_timeout_seconds,
        )
    policy = RetryPolicy.from_settings(config)
    return VocabularyService(
        provider=provider,
        caller=RateLimitedCaller(ThrottleState(), policy),
        max_words=config.max_words_per_request,
        external_data=external,
        external_caller=RateLimitedCaller(ThrottleState(), policy),
    )


app = FastAPI(title="Vocabulary Relay", version=VERSION)


@app.on_event("startup")
def startup_event():
    """Build the upstream clients on startup."""
    app.state.vocabulary_service = build_vocabulary_service(settings)
    if not settings.upstream_configured:
        logger.warning("GEMINI_API_KEY is not set; vocabulary requests will fail with 503")


@app.on_event("shutdown")
async def shutdown_event():
    service = getattr(app.state, "vocabulary_service", None)
    if service is None:
        return
    aclose = getattr(service.provider, "aclose", None)
    if aclose is not None:
        await aclose()
    if service.external_data is not None:
        await service.external_data.aclose()


app.add_middleware(
    CORSMiddleware,
    **cors_kwargs(settings.cors_origins_list),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.include_router(health_router)
app.include_router(vocabulary_router)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        latency = time.perf_counter() - start_time

        logger.info(
            "Request completed",
            data={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency * 1000, 2),
            },
        )
        return response


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(RateLimitExhausted)
async def rate_limit_exhausted_handler(request: Request, exc: RateLimitExhausted):
    logger.warning(
        "Upstream quota exhausted",
        data={"attempts": exc.attempts, "path": request.url.path},
    )
    headers = None
    if exc.retry_after is not None:
        headers = {"Retry-After": str(max(1, round(exc.retry_after)))}
    return _error_response(request, 429, exc.code, str(exc), headers=headers, attempts=exc.attempts)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    status_code = exc.status if exc.status is not None and 400 <= exc.status <= 599 else 500
    logger.warning(
        "Upstream error",
        data={"upstream_status": exc.status, "error_message": exc.message, **_request_context(request)},
    )
    return _error_response(request, status_code, "UPSTREAM_ERROR", f"Upstream error: {exc.message}")


@app.exception_handler(RetryCancelled)
async def retry_cancelled_handler(request: Request, exc: RetryCancelled):
    logger.info("Request cancelled before upstream answered", data={"attempts": exc.attempts})
    return _error_response(request, 503, exc.code, "Request was cancelled")


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    logger.warning(
        "APIError",
        data={"status_code": exc.status_code, "error_code": exc.code, "error_message": exc.message},
    )
    extra = {"detail": exc.detail} if exc.detail else {}
    return _error_response(request, exc.status_code, exc.code, exc.message, **extra)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, dict) else {"code": "HTTP_ERROR", "message": str(exc.detail)}
    logger.warning(
        "HTTPException",
        data={
            "status_code": exc.status_code,
            "error_code": detail.get("code"),
            "error_message": detail.get("message"),
            **_request_context(request),
        },
    )
    return _error_response(
        request,
        exc.status_code,
        detail.get("code", "HTTP_ERROR"),
        detail.get("message", "Request failed"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(
        "RequestValidationError",
        data={"error_detail": _validation_errors(exc), **_request_context(request, body=exc.body)},
    )
    return _error_response(
        request, 400, "VALIDATION_ERROR", "Invalid request", detail=_validation_errors(exc)
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", data=_request_context(request), exc_info=True)
    return _error_response(request, 500, "INTERNAL_ERROR", "An internal error occurred")
