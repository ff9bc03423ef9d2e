from __future__ import annotations

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Any, Callable, Optional, TypeVar

from fastapi import Depends

from timecapsule.core.config import settings
from timecapsule.core.security import PassphraseVerifier, get_passphrase_verifier
from timecapsule.media.images import ImageIngestor
from timecapsule.media.transcoder import FFmpegTranscoder, Transcoder
from timecapsule.media.video import VideoIngestor
from timecapsule.security.rate_limit import UnlockThrottle, get_unlock_throttle
from timecapsule.services.reveal_gate import RevealGate
from timecapsule.storage.object_store import B2ObjectStore, ObjectStore

T = TypeVar("T")

# Video jobs get their own small pool so transcodes cannot starve the
# default thread pool that serves passphrase hashing and database work.
_transcode_pool: Optional[ThreadPoolExecutor] = None


def _get_transcode_pool() -> ThreadPoolExecutor:
    global _transcode_pool
    if _transcode_pool is None:
        _transcode_pool = ThreadPoolExecutor(
            max_workers=max(1, settings.MEDIA_MAX_CONCURRENT_TRANSCODES),
            thread_name_prefix="transcode",
        )
    return _transcode_pool


async def run_in_transcode_pool(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_get_transcode_pool(), functools.partial(fn, *args, **kwargs))


def shutdown_transcode_pool() -> None:
    global _transcode_pool
    if _transcode_pool is not None:
        _transcode_pool.shutdown(wait=False, cancel_futures=True)
        _transcode_pool = None


@lru_cache
def get_object_store() -> ObjectStore:
    return B2ObjectStore(settings)


@lru_cache
def get_transcoder() -> Transcoder:
    return FFmpegTranscoder(settings)


def get_reveal_gate(verifier: PassphraseVerifier = Depends(get_passphrase_verifier)) -> RevealGate:
    return RevealGate(verifier)


def get_throttle() -> UnlockThrottle:
    return get_unlock_throttle()


def get_image_ingestor(store: ObjectStore = Depends(get_object_store)) -> ImageIngestor:
    return ImageIngestor(settings, store)


def get_video_ingestor(
    store: ObjectStore = Depends(get_object_store),
    transcoder: Transcoder = Depends(get_transcoder),
) -> VideoIngestor:
    return VideoIngestor(settings, store, transcoder)
