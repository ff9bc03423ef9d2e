from __future__ import annotations

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from timecapsule.api.deps import get_image_ingestor, get_object_store, get_video_ingestor, run_in_transcode_pool
from timecapsule.core.config import settings
from timecapsule.core.errors import NotFound, PayloadTooLarge
from timecapsule.core.security import get_current_owner
from timecapsule.media.images import ImageIngestor, ensure_within_limit
from timecapsule.media.video import VideoIngestor
from timecapsule.schemas.media import DownloadRequest, SignedDownload, UploadTarget, UploadTargetRequest
from timecapsule.storage.object_store import ObjectStore, key_belongs_to

router = APIRouter(prefix='/api/uploads', tags=['uploads'])


async def _signed(store: ObjectStore, file_name: str, ttl: int | None = None) -> SignedDownload:
    info = await run_in_threadpool(store.get_signed_download, file_name, ttl)
    return SignedDownload(
        download_url=info.url,
        authorization_token=info.token,
        expires_in_seconds=info.expires_in,
    )


@router.post('/images')
async def image_upload_target(
    payload: UploadTargetRequest,
    owner_id: str = Depends(get_current_owner),
    store: ObjectStore = Depends(get_object_store),
):
    """Upload URL + token for a direct client upload into the image prefix."""
    data = await run_in_threadpool(
        store.get_direct_upload_target,
        owner_id,
        settings.B2_IMAGE_PREFIX,
        payload.content_type,
        payload.original_file_name,
    )
    return {'data': UploadTarget(**data).model_dump()}


@router.post('/images/compress', status_code=status.HTTP_201_CREATED)
async def compress_image(
    image: UploadFile = File(...),
    owner_id: str = Depends(get_current_owner),
    ingestor: ImageIngestor = Depends(get_image_ingestor),
    store: ObjectStore = Depends(get_object_store),
):
    limit = settings.MEDIA_MAX_IMAGE_BYTES
    ensure_within_limit(image.size, limit, 'ImageTooLarge')

    raw = await image.read(limit + 1)
    if len(raw) > limit:
        raise PayloadTooLarge('ImageTooLarge', limit)

    descriptor = await run_in_threadpool(
        ingestor.ingest, raw, owner_id, image.content_type, image.filename
    )
    descriptor.download = await _signed(store, descriptor.file_name)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={'data': descriptor.model_dump(mode='json', exclude_none=True)},
    )


@router.post('/videos/transcode', status_code=status.HTTP_201_CREATED)
async def transcode_video(
    video: UploadFile = File(...),
    owner_id: str = Depends(get_current_owner),
    ingestor: VideoIngestor = Depends(get_video_ingestor),
    store: ObjectStore = Depends(get_object_store),
):
    # Refuse oversized uploads before the pipeline writes a scratch file
    ensure_within_limit(video.size, settings.MEDIA_MAX_VIDEO_BYTES, 'VideoTooLarge')

    descriptor = await run_in_transcode_pool(
        ingestor.ingest, video.file, video.size, owner_id, video.content_type, video.filename
    )
    descriptor.download = await _signed(store, descriptor.file_name)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={'data': descriptor.model_dump(mode='json', exclude_none=True)},
    )


@router.post('/download')
async def signed_download(
    payload: DownloadRequest,
    owner_id: str = Depends(get_current_owner),
    store: ObjectStore = Depends(get_object_store),
):
    """Time-limited download handle for one of the caller's stored objects."""
    if not key_belongs_to(payload.file_name, owner_id):
        raise NotFound('Object not found', code='ObjectNotFound')
    download = await _signed(store, payload.file_name, payload.expires_in_seconds)
    return {'data': download.model_dump()}
