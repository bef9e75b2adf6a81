from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

import os
import time
import uuid
import logging

from .config import Settings
from .deps import get_service
from .errors import ScoreboardError, NotFoundError
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .service import ScoreboardService
from .validation import validate_device_id


setup_logging(logging.INFO)
logger = get_logger("scoreboard")
app = FastAPI(title="Scoreboard")


def _now_ms() -> int:
    return int(time.time() * 1000)


def success(data) -> dict:
    return {"success": True, "data": data, "timestamp": _now_ms()}


def failure(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}, "timestamp": _now_ms()},
    )


class RateLimitedError(HTTPException):
    def __init__(self):
        super().__init__(status_code=429, detail="Too many requests, try again later")


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(service: ScoreboardService, key: str, limit: int, response: Response) -> None:
    result = service.check_rate_limit(key, limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    if not result.allowed:
        raise RateLimitedError()


def ip_rate_limit(request: Request, response: Response, service: ScoreboardService = Depends(get_service)) -> None:
    enforce_rate_limit(service, f"ip:{_client_ip(request)}", service.settings.rate_limit_ip, response)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault('Content-Security-Policy', "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Strict-Transport-Security', 'max-age=31536000; includeSubDomains')
        return response

app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-Requested-With"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": exc.errors()})
    return failure("INVALID_REQUEST_DATA", "Input validation failed", 400)


@app.exception_handler(ScoreboardError)
async def scoreboard_exception_handler(request: Request, exc: ScoreboardError):
    if exc.status >= 500:
        logger.error("request_failed", extra={"path": request.url.path, "error": exc.message})
        return failure(exc.code, "Internal server error", exc.status)
    return failure(exc.code, exc.message, exc.status)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code == 429:
        return failure("RATE_LIMIT_EXCEEDED", str(exc.detail), 429)
    return failure("HTTP_ERROR", str(exc.detail), exc.status_code)


@app.on_event("startup")
def on_startup():
    # tests and embedders may install a ready-made service first
    if getattr(app.state, "service", None) is not None:
        return
    service = ScoreboardService.from_settings(Settings.from_env())
    app.state.service = service
    warmed = service.warm_rankings()
    logger.info("cache_warm_success", extra={"count": warmed})


@app.on_event("shutdown")
def on_shutdown():
    service = getattr(app.state, "service", None)
    if service is not None:
        service.close()
        app.state.service = None


@app.get("/health", include_in_schema=False)
def health(service: ScoreboardService = Depends(get_service)):
    data = service.health()
    return JSONResponse(success(data), status_code=200 if data["status"] == "ok" else 503)


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats(service: ScoreboardService = Depends(get_service)):
    """Get cache statistics for monitoring"""
    return success({"cache_stats": service.cache.get_stats()})


class SubmitRequest(BaseModel):
    deviceId: str = Field(..., min_length=32, max_length=32, pattern=r'^[a-f0-9]{32}$')
    score: int = Field(..., ge=0, strict=True)


@app.post("/api/game/submit")
def submit_score(body: SubmitRequest, response: Response, service: ScoreboardService = Depends(get_service)):
    enforce_rate_limit(service, f"submit:{body.deviceId}", service.settings.rate_limit_submit, response)
    result = service.submit_score(body.deviceId, body.score)
    return success(result.to_dict())


@app.get("/api/game/ranking")
def ranking(
    type: str = "all",
    limit: int = 50,
    service: ScoreboardService = Depends(get_service),
    _: None = Depends(ip_rate_limit),
):
    items, cached = service.fetch_ranking(type, limit)
    logger.info("ranking_served", extra={"time_range": type, "limit": limit, "count": len(items), "cached": cached})
    return success({
        "rankings": [item.to_dict() for item in items],
        "total": len(items),
        "type": type,
        "cached": cached,
    })


@app.get("/api/game/stats/{device_id}")
def device_stats(device_id: str, response: Response, service: ScoreboardService = Depends(get_service)):
    validate_device_id(device_id)
    enforce_rate_limit(service, f"read:{device_id}", service.settings.rate_limit_read, response)
    stats = service.get_device_stats(device_id)
    if stats is None:
        raise NotFoundError("device has no recorded scores")
    data = stats.to_dict()
    data["rank"] = service.get_device_rank(device_id)
    return success(data)


@app.get("/api/game/history/{device_id}")
def history(
    device_id: str,
    response: Response,
    limit: int = 20,
    offset: int = 0,
    service: ScoreboardService = Depends(get_service),
):
    validate_device_id(device_id)
    enforce_rate_limit(service, f"read:{device_id}", service.settings.rate_limit_read, response)
    page, cached = service.get_history(device_id, limit, offset)
    if page.total == 0:
        raise NotFoundError("no score records for device", code="NO_RECORDS_FOUND")
    return success({**page.to_dict(), "cached": cached})
