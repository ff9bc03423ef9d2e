"""
Image ingestion: bound, orient, resize and re-encode an uploaded image,
then push it to the object store.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from timecapsule.core.config import Settings
from timecapsule.core.errors import PayloadTooLarge, ValidationError
from timecapsule.schemas.media import Dimensions, MediaDescriptor
from timecapsule.storage.object_store import ObjectStore, build_object_key

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "WEBP"
OUTPUT_CONTENT_TYPE = "image/webp"


@dataclass(frozen=True)
class CompressedImage:
    data: bytes
    width: int
    height: int
    original_width: int
    original_height: int
    content_type: str = OUTPUT_CONTENT_TYPE


def ensure_within_limit(size: Optional[int], limit: int, code: str) -> None:
    if size is not None and size > limit:
        raise PayloadTooLarge(code, limit)


def _flatten_mode(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    has_alpha = img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info)
    return img.convert("RGBA" if has_alpha else "RGB")


def compress_image(
    raw: bytes,
    max_size: tuple[int, int],
    quality: int,
    max_bytes: Optional[int] = None,
) -> CompressedImage:
    """
    Decode, apply EXIF orientation, shrink to fit inside ``max_size`` (never
    enlarging, aspect ratio kept) and re-encode as WebP.

    The byte ceiling is checked before anything is decoded.
    """
    if max_bytes is not None:
        ensure_within_limit(len(raw), max_bytes, "ImageTooLarge")
    if not raw:
        raise ValidationError("ImageFileRequired", code="ImageFileRequired")

    try:
        with Image.open(io.BytesIO(raw)) as src:
            src.load()
            img = ImageOps.exif_transpose(src)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValidationError(
            "UnsupportedImageType",
            code="UnsupportedImageType",
            details={"image": ["File is not a decodable image"]},
        ) from exc

    original_width, original_height = img.size
    # thumbnail() only ever shrinks and keeps the aspect ratio
    img.thumbnail(max_size, Image.Resampling.LANCZOS)
    img = _flatten_mode(img)

    out = io.BytesIO()
    img.save(out, format=OUTPUT_FORMAT, quality=quality)
    width, height = img.size

    return CompressedImage(
        data=out.getvalue(),
        width=width,
        height=height,
        original_width=original_width,
        original_height=original_height,
    )


class ImageIngestor:
    def __init__(self, cfg: Settings, store: ObjectStore):
        self.cfg = cfg
        self.store = store

    def ingest(
        self,
        raw: bytes,
        owner_id: str,
        content_type: Optional[str],
        original_file_name: Optional[str] = None,
    ) -> MediaDescriptor:
        ensure_within_limit(len(raw), self.cfg.MEDIA_MAX_IMAGE_BYTES, "ImageTooLarge")
        if not content_type or not content_type.startswith("image/"):
            raise ValidationError(
                "UnsupportedImageType",
                code="UnsupportedImageType",
                details={"image": ["Only image uploads are supported"]},
            )

        result = compress_image(raw, self.cfg.max_image_size, self.cfg.MEDIA_IMAGE_QUALITY)

        key = build_object_key(
            self.cfg.B2_IMAGE_PREFIX, owner_id, result.content_type, original_file_name, fallback_base="image"
        )
        stored = self.store.upload_buffer(
            key,
            result.data,
            result.content_type,
            metadata={"width": result.width, "height": result.height, "format": "webp"},
        )
        logger.info(
            "Image ingested key=%s %sx%s -> %sx%s (%s bytes)",
            key, result.original_width, result.original_height, result.width, result.height, len(result.data),
        )

        return MediaDescriptor(
            media_type="image",
            file_name=stored.file_name,
            file_id=stored.file_id,
            content_type=result.content_type,
            size=len(result.data),
            width=result.width,
            height=result.height,
            original=Dimensions(width=result.original_width, height=result.original_height),
        )
