from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from timecapsule.core.config import settings
from timecapsule.security.sanitizer import InputSanitizer


class PosterIn(BaseModel):
    """Poster frame descriptor nested in a video attachment."""
    model_config = ConfigDict(extra='forbid', populate_by_name=True)

    file_name: str = Field(min_length=1, max_length=512)
    content_type: str = Field(min_length=1, max_length=127)
    size_bytes: int = Field(ge=0, validation_alias=AliasChoices('size_bytes', 'size'))
    width: Optional[int] = Field(default=None, ge=0)
    height: Optional[int] = Field(default=None, ge=0)
    file_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator('content_type')
    @classmethod
    def validate_content_type(cls, v: str) -> str:
        if not v.startswith('image/'):
            raise ValueError('Poster must be an image')
        return v


class AttachmentIn(BaseModel):
    """
    Attachment descriptor as returned by the upload endpoints.
    The asset is already in the object store; only its metadata travels here.
    """
    model_config = ConfigDict(extra='forbid', populate_by_name=True)

    media_type: Literal['image', 'video']
    file_name: str = Field(min_length=1, max_length=512)
    content_type: str = Field(min_length=1, max_length=127)
    size_bytes: int = Field(ge=0, validation_alias=AliasChoices('size_bytes', 'size'))
    width: Optional[int] = Field(default=None, ge=0)
    height: Optional[int] = Field(default=None, ge=0)
    file_id: Optional[str] = Field(default=None, max_length=255)
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    bitrate: Optional[int] = Field(default=None, ge=0)
    poster: Optional[PosterIn] = None

    @field_validator('file_name')
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        return InputSanitizer.sanitize_object_key(v)


class CapsuleCreateRequest(BaseModel):
    """Capsule creation payload. Attachment count and shape are checked by the normalizer."""
    model_config = ConfigDict(extra='forbid')

    title: str = Field(min_length=1, max_length=settings.title_max_length)
    message: str = Field(min_length=1, max_length=settings.message_max_length)
    author: Optional[str] = Field(default=None, min_length=1, max_length=settings.author_max_length)
    reveal_at: datetime
    passphrase: Optional[str] = Field(
        default=None,
        min_length=settings.passphrase_min_length,
        max_length=settings.passphrase_max_length,
    )
    attachments: List[AttachmentIn] = Field(default_factory=list)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Title cannot be empty')
        return InputSanitizer.sanitize_string(v.strip())

    @field_validator('message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Message cannot be empty')
        return InputSanitizer.sanitize_body(v)

    @field_validator('author')
    @classmethod
    def validate_author(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return InputSanitizer.sanitize_string(v.strip())

    @field_validator('reveal_at')
    @classmethod
    def validate_reveal_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError('reveal_at must include a timezone offset')
        return v


class UnlockRequest(BaseModel):
    model_config = ConfigDict(extra='forbid')

    passphrase: str = Field(min_length=1, max_length=settings.passphrase_max_length)


class PosterView(BaseModel):
    file_name: str
    content_type: str
    size: int
    width: Optional[int] = None
    height: Optional[int] = None


class AttachmentView(BaseModel):
    id: str
    media_type: str
    file_name: str
    content_type: str
    size: int
    width: Optional[int] = None
    height: Optional[int] = None
    duration_seconds: Optional[float] = None
    bitrate: Optional[int] = None
    poster: Optional[PosterView] = None


class CapsuleView(BaseModel):
    """
    Client-facing capsule. ``message`` is only ever set when the reveal gate
    allows it; views are dumped with ``exclude_unset`` so a hidden message is
    absent rather than null.
    """
    id: str
    title: str
    message: Optional[str] = None
    author: Optional[str] = None
    created_at: datetime
    reveal_at: datetime
    is_locked: bool
    message_available: bool
    attachments: List[AttachmentView] = []


class CapsuleSummary(BaseModel):
    """List item. Has no message field at all."""
    id: str
    title: str
    author: Optional[str] = None
    created_at: datetime
    reveal_at: datetime
    is_locked: bool
    is_revealed: bool
    message_available: bool

