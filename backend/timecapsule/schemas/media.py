from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timecapsule.core.config import settings
from timecapsule.security.sanitizer import InputSanitizer


class UploadTargetRequest(BaseModel):
    """Direct-upload target request (images only)."""
    model_config = ConfigDict(extra='forbid')

    content_type: str = Field(min_length=1, max_length=127)
    original_file_name: Optional[str] = Field(default=None, min_length=1, max_length=150)

    @field_validator('content_type')
    @classmethod
    def validate_content_type(cls, v: str) -> str:
        if not v.startswith('image/'):
            raise ValueError('Only image uploads are supported')
        return v


class UploadTarget(BaseModel):
    upload_url: str
    authorization_token: str
    bucket_id: str
    file_name: str
    content_type: str
    upload_headers: dict[str, str]


class DownloadRequest(BaseModel):
    model_config = ConfigDict(extra='forbid')

    file_name: str = Field(min_length=1, max_length=512)
    expires_in_seconds: Optional[int] = Field(
        default=None,
        ge=settings.download_min_seconds,
        le=settings.download_max_seconds,
    )

    @field_validator('file_name')
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        return InputSanitizer.sanitize_object_key(v)


class SignedDownload(BaseModel):
    download_url: str
    authorization_token: str
    expires_in_seconds: int


class Dimensions(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None


class PosterDescriptor(BaseModel):
    file_name: str
    file_id: Optional[str] = None
    content_type: str
    size: int
    width: int
    height: int


class MediaDescriptor(BaseModel):
    """
    Result of an ingestion. Shaped so it can be posted back verbatim as an
    ``attachments[]`` entry of a capsule-creation request (``download`` and
    ``original`` are informational and dropped by the client).
    """
    media_type: Literal['image', 'video']
    file_name: str
    file_id: Optional[str] = None
    content_type: str
    size: int
    width: int
    height: int
    original: Dimensions
    duration_seconds: Optional[float] = None
    bitrate: Optional[int] = None
    poster: Optional[PosterDescriptor] = None
    download: Optional[SignedDownload] = None
