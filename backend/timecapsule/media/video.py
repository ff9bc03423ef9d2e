"""
Video ingestion.

Steps run strictly in order for one request: write scratch input ->
transcode -> probe the transcoded output -> extract poster -> upload both
assets -> drop the scratch directory. The scratch directory goes away on
every exit path, including transcoder timeouts.
"""
from __future__ import annotations

import io
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional

from PIL import Image, UnidentifiedImageError

from timecapsule.core.config import Settings
from timecapsule.core.errors import ObjectStoreError, PayloadTooLarge, TranscoderError, ValidationError
from timecapsule.media.images import ensure_within_limit
from timecapsule.media.transcoder import Transcoder
from timecapsule.schemas.media import Dimensions, MediaDescriptor, PosterDescriptor
from timecapsule.storage.object_store import SUPPORTED_VIDEO_TYPES, ObjectStore, build_object_key, infer_extension

logger = logging.getLogger(__name__)

OUTPUT_CONTENT_TYPE = "video/mp4"
POSTER_CONTENT_TYPE = "image/jpeg"
COPY_CHUNK = 1024 * 1024


def copy_bounded(source: BinaryIO, target_path: str, limit: int) -> int:
    """Stream ``source`` to ``target_path``; abort once more than ``limit`` bytes arrive."""
    written = 0
    with open(target_path, "wb") as out:
        while True:
            chunk = source.read(COPY_CHUNK)
            if not chunk:
                break
            written += len(chunk)
            if written > limit:
                raise PayloadTooLarge("VideoTooLarge", limit)
            out.write(chunk)
    return written


class VideoIngestor:
    def __init__(self, cfg: Settings, store: ObjectStore, transcoder: Transcoder):
        self.cfg = cfg
        self.store = store
        self.transcoder = transcoder

    @contextmanager
    def scratch(self) -> Iterator[str]:
        base = self.cfg.MEDIA_SCRATCH_DIR
        if base:
            os.makedirs(base, exist_ok=True)
        workdir = tempfile.mkdtemp(prefix="capsule-video-", dir=base)
        try:
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
            if os.path.exists(workdir):
                logger.error("Scratch directory %s could not be removed", workdir)

    def ingest(
        self,
        upload: BinaryIO,
        size: Optional[int],
        owner_id: str,
        content_type: Optional[str],
        original_file_name: Optional[str] = None,
    ) -> MediaDescriptor:
        limit = self.cfg.MEDIA_MAX_VIDEO_BYTES
        # Checked before any scratch file exists
        ensure_within_limit(size, limit, "VideoTooLarge")
        if content_type not in SUPPORTED_VIDEO_TYPES:
            raise ValidationError(
                "UnsupportedVideoType",
                code="UnsupportedVideoType",
                details={"video": [f"Unsupported video type {content_type}"]},
            )

        with self.scratch() as workdir:
            source = os.path.join(workdir, f"input.{infer_extension(content_type)}")
            output = os.path.join(workdir, "output.mp4")
            poster_path = os.path.join(workdir, "poster.jpg")

            received = copy_bounded(upload, source, limit)
            if received == 0:
                raise ValidationError("VideoFileRequired", code="VideoFileRequired")

            self.transcoder.transcode(source, output)
            if not os.path.isfile(output) or os.path.getsize(output) == 0:
                raise TranscoderError("transcode produced no output", details={"stage": "transcode"})

            probe = self.transcoder.probe(output)

            offset = min(self.cfg.MEDIA_POSTER_OFFSET, probe.duration_seconds / 2)
            self.transcoder.extract_poster(output, poster_path, offset)
            if not os.path.isfile(poster_path) or os.path.getsize(poster_path) == 0:
                raise TranscoderError("poster extraction produced no frame", details={"stage": "poster"})

            with open(poster_path, "rb") as fh:
                poster_bytes = fh.read()
            poster_w, poster_h = _image_size(poster_bytes)
            with open(output, "rb") as fh:
                video_bytes = fh.read()

            video_key = build_object_key(
                self.cfg.B2_VIDEO_PREFIX, owner_id, OUTPUT_CONTENT_TYPE, original_file_name, fallback_base="video"
            )
            poster_key = build_object_key(
                self.cfg.B2_POSTER_PREFIX, owner_id, POSTER_CONTENT_TYPE, original_file_name, fallback_base="poster"
            )

            stored_video = self.store.upload_buffer(
                video_key,
                video_bytes,
                OUTPUT_CONTENT_TYPE,
                metadata={
                    "width": probe.width,
                    "height": probe.height,
                    "format": "mp4",
                    "duration_seconds": probe.duration_seconds,
                    "bitrate": probe.bitrate,
                },
            )
            try:
                stored_poster = self.store.upload_buffer(
                    poster_key,
                    poster_bytes,
                    POSTER_CONTENT_TYPE,
                    metadata={"width": poster_w, "height": poster_h, "format": "jpeg"},
                )
            except ObjectStoreError:
                self._discard(stored_video.file_name, stored_video.file_id)
                raise

        logger.info(
            "Video ingested key=%s %sx%s %.2fs bitrate=%s (%s -> %s bytes)",
            video_key, probe.width, probe.height, probe.duration_seconds, probe.bitrate, received, len(video_bytes),
        )

        return MediaDescriptor(
            media_type="video",
            file_name=stored_video.file_name,
            file_id=stored_video.file_id,
            content_type=OUTPUT_CONTENT_TYPE,
            size=len(video_bytes),
            width=probe.width,
            height=probe.height,
            original=Dimensions(),
            duration_seconds=probe.duration_seconds,
            bitrate=probe.bitrate,
            poster=PosterDescriptor(
                file_name=stored_poster.file_name,
                file_id=stored_poster.file_id,
                content_type=POSTER_CONTENT_TYPE,
                size=len(poster_bytes),
                width=poster_w,
                height=poster_h,
            ),
        )

    def _discard(self, key: str, file_id: str) -> None:
        try:
            self.store.delete_object(key, file_id)
        except ObjectStoreError:
            logger.exception("Could not remove orphaned upload %s", key)


def _image_size(data: bytes) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise TranscoderError("poster frame unreadable", details={"stage": "poster"}) from exc
