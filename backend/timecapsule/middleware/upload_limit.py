"""
Upload size middleware.
Caps the request body of the media upload routes while it streams in, so an
oversized upload is refused before the form parser buffers or spools it.
"""
import logging
from typing import Callable, Mapping, Tuple

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse

from timecapsule.core.config import settings
from timecapsule.core.errors import PayloadTooLarge

logger = logging.getLogger(__name__)

# Room for multipart boundaries and part headers on top of the file itself
MULTIPART_OVERHEAD = 64 * 1024

UploadLimits = Mapping[str, Tuple[Callable[[], int], str]]


class BodyTooLarge(HTTPException):
    """Raised from the body stream once a limited upload passes its ceiling."""

    def __init__(self, error: PayloadTooLarge):
        super().__init__(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=error.message)
        self.error = error


def upload_limits() -> dict:
    """Limited routes: path -> (current byte limit, error code). Limits are read per request."""
    return {
        "/api/uploads/images/compress": (lambda: settings.MEDIA_MAX_IMAGE_BYTES, "ImageTooLarge"),
        "/api/uploads/videos/transcode": (lambda: settings.MEDIA_MAX_VIDEO_BYTES, "VideoTooLarge"),
    }


class UploadLimitMiddleware:
    """
    Pure ASGI middleware: rejects a declared Content-Length over the limit
    outright and counts streamed bytes for everything else.
    """

    def __init__(self, app, limits: UploadLimits):
        self.app = app
        self.limits = limits

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope["method"] != "POST" or scope["path"] not in self.limits:
            await self.app(scope, receive, send)
            return

        limit_of, code = self.limits[scope["path"]]
        limit = limit_of()
        ceiling = limit + MULTIPART_OVERHEAD

        declared = dict(scope["headers"]).get(b"content-length")
        if declared is not None and declared.isdigit() and int(declared) > ceiling:
            logger.warning("Refused %s upload declaring %s bytes", scope["path"], int(declared))
            error = PayloadTooLarge(code, limit)
            response = JSONResponse(status_code=error.status_code, content=error.to_dict())
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > ceiling:
                    raise BodyTooLarge(PayloadTooLarge(code, limit))
            return message

        await self.app(scope, limited_receive, send)
