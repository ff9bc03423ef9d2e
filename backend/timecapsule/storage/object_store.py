"""
Object store client (Backblaze B2 native API over httpx).

The client object owns its authorization: credential and expiry live on the
instance and are refreshed transparently when stale. Two threads refreshing
at once both succeed; the last write wins.
"""
from __future__ import annotations

import hashlib
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol
from urllib.parse import quote

import httpx

from timecapsule.core.config import Settings
from timecapsule.core.errors import ObjectStoreError, ObjectStoreMisconfigured, ValidationError
from timecapsule.security.sanitizer import InputSanitizer

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {
    'image/jpeg',
    'image/png',
    'image/webp',
    'image/avif',
    'image/gif',
}

SUPPORTED_VIDEO_TYPES = {
    'video/mp4',
    'video/mpeg',
    'video/quicktime',
    'video/x-matroska',
    'video/webm',
    'video/ogg',
}

_EXTENSIONS = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/avif': 'avif',
    'image/gif': 'gif',
    'video/mp4': 'mp4',
    'video/mpeg': 'mpg',
    'video/quicktime': 'mov',
    'video/x-matroska': 'mkv',
    'video/webm': 'webm',
    'video/ogg': 'ogv',
}

_PLAIN_OWNER_PATTERN = re.compile(r'^[A-Za-z0-9_\-][A-Za-z0-9._\-]{0,63}$')
_HASHED_OWNER_PREFIX = 'h-'

# B2 file info keys for upload metadata
_INFO_KEYS = {
    'width': 'src-width',
    'height': 'src-height',
    'format': 'src-format',
    'duration_seconds': 'duration-seconds',
    'bitrate': 'bitrate',
}


def infer_extension(content_type: str) -> str:
    return _EXTENSIONS.get(content_type, 'bin')


def build_object_key(
    prefix: str,
    owner_id: Optional[str],
    content_type: str,
    original_file_name: Optional[str] = None,
    fallback_base: str = 'asset',
    now_ms: Optional[int] = None,
) -> str:
    """``prefix/owner/timestamp-uuid-base.ext``; unique per call and scoped per owner."""
    safe = InputSanitizer.slugify_file_name(original_file_name)
    base = safe.rsplit('.', 1)[0] if safe and '.' in safe else safe
    base = base or fallback_base
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{prefix.strip('/')}/{owner_segment(owner_id)}/{stamp}-{uuid.uuid4()}-{base}.{infer_extension(content_type)}"


def owner_segment(owner_id: Optional[str]) -> str:
    """
    Key-safe path segment for an owner id.

    Plain ids are used as they are; anything else (emails, ``provider|id``
    subjects, slashes) becomes ``h-`` plus a digest. Plain ids never start
    with ``h-``, so two owners cannot share a segment.
    """
    if not owner_id:
        return 'anonymous'
    if _PLAIN_OWNER_PATTERN.match(owner_id) and not owner_id.startswith(_HASHED_OWNER_PREFIX):
        return owner_id
    digest = hashlib.sha256(owner_id.encode('utf-8')).hexdigest()[:32]
    return f"{_HASHED_OWNER_PREFIX}{digest}"


def key_owner(file_name: str) -> Optional[str]:
    """Owner segment of ``prefix/owner/name``."""
    parts = file_name.split('/')
    return parts[-2] if len(parts) >= 3 else None


def key_belongs_to(file_name: str, owner_id: Optional[str]) -> bool:
    return bool(owner_id) and key_owner(file_name) == owner_segment(owner_id)


@dataclass
class Authorization:
    token: str
    api_url: str
    download_url: str
    expires_at: float


@dataclass(frozen=True)
class UploadTarget:
    upload_url: str
    upload_token: str


@dataclass(frozen=True)
class StoredObject:
    file_id: str
    file_name: str
    content_type: str
    content_length: int


@dataclass(frozen=True)
class SignedDownload:
    url: str
    token: str
    expires_in: int


class ObjectStore(Protocol):
    """What the media pipeline and the routes need from an object store."""

    def get_upload_target(self) -> UploadTarget: ...

    def get_direct_upload_target(
        self,
        owner_id: str,
        prefix: str,
        content_type: str,
        original_file_name: Optional[str] = None,
    ) -> dict[str, Any]: ...

    def upload_buffer(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> StoredObject: ...

    def get_signed_download(self, key: str, ttl_seconds: Optional[int] = None) -> SignedDownload: ...

    def delete_object(self, key: str, file_id: str) -> None: ...


class B2ObjectStore:
    """
    Backblaze B2 client.

    Every call has an explicit timeout. Only upload-target and
    download-authorization acquisition are retried (with backoff); uploads
    and deletes fail fast.
    """

    def __init__(
        self,
        cfg: Settings,
        http: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self._http = http or httpx.Client(timeout=httpx.Timeout(cfg.b2_timeout_seconds, connect=10.0))
        self._clock = clock
        self._sleep = sleep
        self._auth: Optional[Authorization] = None

    def close(self) -> None:
        self._http.close()

    # -- configuration / authorization ------------------------------------

    def ensure_config(self) -> None:
        cfg = self.cfg
        if not (cfg.B2_APPLICATION_KEY_ID and cfg.B2_APPLICATION_KEY and cfg.B2_BUCKET_ID and cfg.B2_BUCKET_NAME):
            raise ObjectStoreMisconfigured("BackblazeB2Misconfigured")

    def authorize(self, force: bool = False) -> Authorization:
        """Cached credential; re-acquired when expired or when ``force`` is set."""
        self.ensure_config()
        auth = self._auth
        if not force and auth is not None and self._clock() < auth.expires_at:
            return auth

        try:
            resp = self._http.get(
                f"{self.cfg.B2_API_URL.rstrip('/')}/b2api/v2/b2_authorize_account",
                auth=(self.cfg.B2_APPLICATION_KEY_ID, self.cfg.B2_APPLICATION_KEY),
            )
        except httpx.HTTPError as exc:
            logger.error("B2 authorization request failed: %s", exc)
            raise ObjectStoreError("Object store unreachable") from exc
        data = self._json_or_raise(resp, "b2_authorize_account")

        auth = Authorization(
            token=data['authorizationToken'],
            api_url=data['apiUrl'],
            download_url=data['downloadUrl'],
            expires_at=self._clock() + self.cfg.b2_auth_cache_seconds,
        )
        self._auth = auth
        logger.info("B2 authorization refreshed")
        return auth

    # -- low level ----------------------------------------------------------

    @staticmethod
    def _json_or_raise(resp: httpx.Response, operation: str) -> dict[str, Any]:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {'message': resp.text[:200]}
            logger.error(
                "B2 %s failed: status=%s code=%s message=%s",
                operation, resp.status_code, body.get('code'), body.get('message'),
            )
            raise ObjectStoreError(f"{operation} failed", details={'status': resp.status_code})
        try:
            return resp.json()
        except ValueError as exc:
            logger.error("B2 %s returned an unreadable body: %s", operation, resp.text[:200])
            raise ObjectStoreError(f"{operation} failed", details={'status': resp.status_code}) from exc

    def _api_call(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        auth = self.authorize()
        for attempt in (1, 2):
            try:
                resp = self._http.post(
                    f"{auth.api_url}/b2api/v2/{operation}",
                    json=payload,
                    headers={'Authorization': auth.token},
                )
            except httpx.HTTPError as exc:
                logger.error("B2 %s request failed: %s", operation, exc)
                raise ObjectStoreError("Object store unreachable") from exc
            if resp.status_code == 401 and attempt == 1:
                # Token expired server side before our TTL ran out
                auth = self.authorize(force=True)
                continue
            return self._json_or_raise(resp, operation)
        raise ObjectStoreError(f"{operation} failed")

    def _with_retry(self, operation: str, fn: Callable[[], Any]) -> Any:
        attempts = max(1, self.cfg.b2_target_retries)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ObjectStoreMisconfigured:
                raise
            except ObjectStoreError as exc:
                status = exc.details.get('status')
                retryable = status is None or status == 429 or status >= 500
                if not retryable or attempt == attempts:
                    raise
                delay = self.cfg.b2_retry_backoff * (2 ** (attempt - 1))
                logger.warning("B2 %s attempt %s failed, retrying in %.2fs", operation, attempt, delay)
                self._sleep(delay)

    # -- operations -----------------------------------------------------------

    def get_upload_target(self) -> UploadTarget:
        def fetch() -> UploadTarget:
            data = self._api_call('b2_get_upload_url', {'bucketId': self.cfg.B2_BUCKET_ID})
            return UploadTarget(upload_url=data['uploadUrl'], upload_token=data['authorizationToken'])

        return self._with_retry('b2_get_upload_url', fetch)

    def get_direct_upload_target(
        self,
        owner_id: str,
        prefix: str,
        content_type: str,
        original_file_name: Optional[str] = None,
        allowed_types: frozenset[str] | set[str] = frozenset(SUPPORTED_IMAGE_TYPES),
    ) -> dict[str, Any]:
        """Upload target plus a fresh owner-scoped key for a client-side direct upload."""
        self.ensure_config()
        if content_type not in allowed_types:
            raise ValidationError(
                "UnsupportedContentType",
                code="UnsupportedContentType",
                details={'content_type': [f"Unsupported content type {content_type}"]},
            )
        target = self.get_upload_target()
        file_name = build_object_key(prefix, owner_id, content_type, original_file_name)
        return {
            'upload_url': target.upload_url,
            'authorization_token': target.upload_token,
            'bucket_id': self.cfg.B2_BUCKET_ID,
            'file_name': file_name,
            'content_type': content_type,
            'upload_headers': {
                'X-Bz-File-Name': quote(file_name, safe='/'),
                'Content-Type': content_type,
                'X-Bz-Content-Sha1': 'do_not_verify',
            },
        }

    def upload_buffer(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> StoredObject:
        if not data:
            raise ValidationError("AssetBufferRequired", code="AssetBufferRequired")
        target = self.get_upload_target()

        headers = {
            'Authorization': target.upload_token,
            'X-Bz-File-Name': quote(key, safe='/'),
            'Content-Type': content_type,
            'Content-Length': str(len(data)),
            'X-Bz-Content-Sha1': hashlib.sha1(data).hexdigest(),
        }
        for field, info_key in _INFO_KEYS.items():
            value = (metadata or {}).get(field)
            if value:
                headers[f'X-Bz-Info-{info_key}'] = quote(str(value))

        try:
            resp = self._http.post(target.upload_url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("B2 upload of %s failed: %s", key, exc)
            raise ObjectStoreError("Object store upload failed") from exc
        body = self._json_or_raise(resp, 'b2_upload_file')
        logger.info("Uploaded %s (%s bytes)", key, len(data))
        return StoredObject(
            file_id=body['fileId'],
            file_name=key,
            content_type=content_type,
            content_length=len(data),
        )

    def download_url(self, key: str) -> str:
        if not key:
            raise ValidationError("FileNameRequired", code="FileNameRequired")
        base = self.cfg.B2_DOWNLOAD_URL or (self._auth.download_url if self._auth else None)
        if not base:
            raise ObjectStoreMisconfigured("BackblazeB2NotAuthorized")
        return f"{base.rstrip('/')}/file/{self.cfg.B2_BUCKET_NAME}/{quote(key, safe='/')}"

    def clamp_ttl(self, ttl_seconds: Optional[int]) -> int:
        ttl = self.cfg.download_default_seconds if ttl_seconds is None else ttl_seconds
        return min(max(ttl, self.cfg.download_min_seconds), self.cfg.download_max_seconds)

    def get_signed_download(self, key: str, ttl_seconds: Optional[int] = None) -> SignedDownload:
        if not key:
            raise ValidationError("FileNameRequired", code="FileNameRequired")
        duration = self.clamp_ttl(ttl_seconds)

        def fetch() -> dict[str, Any]:
            return self._api_call(
                'b2_get_download_authorization',
                {
                    'bucketId': self.cfg.B2_BUCKET_ID,
                    'fileNamePrefix': key,
                    'validDurationInSeconds': duration,
                },
            )

        data = self._with_retry('b2_get_download_authorization', fetch)
        return SignedDownload(url=self.download_url(key), token=data['authorizationToken'], expires_in=duration)

    def delete_object(self, key: str, file_id: str) -> None:
        if not key or not file_id:
            raise ValidationError("FileNameAndIdRequired", code="FileNameAndIdRequired")
        self._api_call('b2_delete_file_version', {'fileName': key, 'fileId': file_id})
        logger.info("Deleted object %s", key)
