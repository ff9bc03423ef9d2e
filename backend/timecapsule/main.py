import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timecapsule.api.deps import shutdown_transcode_pool
from timecapsule.api.routes.capsules import router as capsules_router
from timecapsule.api.routes.uploads import router as uploads_router
from timecapsule.core.config import settings
from timecapsule.core.errors import CapsuleServiceError, InternalError, TooManyAttempts, Unauthorized
from timecapsule.core.logging_config import setup_logging
from timecapsule.db.init_db import init_db
from timecapsule.middleware.upload_limit import BodyTooLarge, UploadLimitMiddleware, upload_limits

logger = logging.getLogger(__name__)

setup_logging()

app = FastAPI(title="Time Capsule", version="0.1.0")

# Upload ceilings are enforced while the body streams in, before any form parsing
app.add_middleware(UploadLimitMiddleware, limits=upload_limits())

if settings.origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(capsules_router)
app.include_router(uploads_router)


@app.exception_handler(CapsuleServiceError)
async def _service_error(request: Request, exc: CapsuleServiceError) -> JSONResponse:
    headers = {}
    if isinstance(exc, TooManyAttempts):
        headers["Retry-After"] = str(exc.details["retry_after"])
    if isinstance(exc, Unauthorized):
        headers["WWW-Authenticate"] = "Bearer"

    if exc.status_code >= 500:
        # Full detail stays in the server log; the client gets the code only
        logger.error("%s on %s %s: %s %s", exc.code, request.method, request.url.path, exc.message, exc.details)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": "Upstream service failure"
                     if exc.status_code == status.HTTP_502_BAD_GATEWAY else "Internal server error"},
        )

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers or None)


@app.exception_handler(BodyTooLarge)
async def _body_too_large(request: Request, exc: BodyTooLarge) -> JSONResponse:
    logger.warning("Upload to %s cut off at %s bytes", request.url.path, exc.error.limit_bytes)
    return JSONResponse(status_code=exc.status_code, content=exc.error.to_dict())


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        details.setdefault(".".join(loc) or "body", []).append(err.get("msg", "Invalid value"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "ValidationError", "detail": "ValidationError", "details": details},
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.on_event("startup")
def _startup() -> None:
    init_db()


@app.on_event("shutdown")
def _shutdown() -> None:
    shutdown_transcode_pool()


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
