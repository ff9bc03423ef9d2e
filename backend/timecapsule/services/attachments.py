from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from timecapsule.core.errors import ValidationError
from timecapsule.schemas.capsule import AttachmentIn
from timecapsule.storage.object_store import key_belongs_to

MAX_ATTACHMENTS = 5


@dataclass(frozen=True)
class NormalizedPoster:
    file_name: str
    content_type: str
    size_bytes: int
    width: Optional[int]
    height: Optional[int]
    file_id: Optional[str]


@dataclass(frozen=True)
class NormalizedAttachment:
    """Attachment row ready for insertion; ``capsule_id`` is filled in by the store."""
    id: str
    capsule_id: Optional[str]
    position: int
    media_type: str
    file_name: str
    content_type: str
    size_bytes: int
    width: Optional[int]
    height: Optional[int]
    file_id: Optional[str]
    duration_seconds: Optional[float]
    bitrate: Optional[int]
    poster: Optional[NormalizedPoster]


def _field_errors(exc: PydanticValidationError, index: int) -> dict[str, list[str]]:
    details: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = ".".join(str(part) for part in ("attachments", index, *err["loc"]))
        details.setdefault(loc, []).append(err["msg"])
    return details


def normalize_attachments(
    descriptors: Sequence[Union[AttachmentIn, Mapping[str, Any]]],
    owner_id: Optional[str] = None,
    max_attachments: int = MAX_ATTACHMENTS,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> list[NormalizedAttachment]:
    """
    Validate client attachment descriptors and shape them into rows.

    Rejects the whole list on the first problem: more than
    ``max_attachments`` items, missing required fields, a poster on an image
    or a video without one, an image/video content type that disagrees with
    ``media_type`` or, when ``owner_id`` is given, a key outside that
    owner's namespace.
    """
    if descriptors is None:
        return []
    if len(descriptors) > max_attachments:
        raise ValidationError(
            "Too many attachments",
            details={"attachments": [f"At most {max_attachments} attachments are allowed"]},
        )

    normalized: list[NormalizedAttachment] = []
    for index, raw in enumerate(descriptors):
        if isinstance(raw, AttachmentIn):
            item = raw
        else:
            try:
                item = AttachmentIn.model_validate(raw)
            except PydanticValidationError as exc:
                raise ValidationError("Invalid attachment", details=_field_errors(exc, index)) from exc

        loc = f"attachments.{index}"
        expected_prefix = f"{item.media_type}/"
        if not item.content_type.startswith(expected_prefix):
            raise ValidationError(
                "Invalid attachment",
                details={f"{loc}.content_type": [f"Expected a {item.media_type} content type"]},
            )
        if item.media_type == "image" and item.poster is not None:
            raise ValidationError(
                "Invalid attachment",
                details={f"{loc}.poster": ["Only video attachments may carry a poster"]},
            )
        if item.media_type == "image" and (item.duration_seconds is not None or item.bitrate is not None):
            raise ValidationError(
                "Invalid attachment",
                details={loc: ["duration_seconds and bitrate apply to videos only"]},
            )
        if item.media_type == "video" and item.poster is None:
            raise ValidationError(
                "Invalid attachment",
                details={f"{loc}.poster": ["Video attachments must carry a poster"]},
            )
        if owner_id is not None:
            keys = [item.file_name] + ([item.poster.file_name] if item.poster else [])
            if not all(key_belongs_to(key, owner_id) for key in keys):
                raise ValidationError(
                    "Invalid attachment",
                    details={f"{loc}.file_name": ["Object key does not belong to the caller"]},
                )

        poster = None
        if item.poster is not None:
            poster = NormalizedPoster(
                file_name=item.poster.file_name,
                content_type=item.poster.content_type,
                size_bytes=item.poster.size_bytes,
                width=item.poster.width,
                height=item.poster.height,
                file_id=item.poster.file_id,
            )

        is_video = item.media_type == "video"
        normalized.append(
            NormalizedAttachment(
                id=id_factory(),
                capsule_id=None,
                position=index,
                media_type=item.media_type,
                file_name=item.file_name,
                content_type=item.content_type,
                size_bytes=item.size_bytes,
                width=item.width,
                height=item.height,
                file_id=item.file_id,
                duration_seconds=item.duration_seconds if is_video else None,
                bitrate=item.bitrate if is_video else None,
                poster=poster,
            )
        )

    return normalized
