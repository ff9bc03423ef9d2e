from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from timecapsule.api.deps import get_object_store, get_reveal_gate, get_throttle
from timecapsule.core.config import settings
from timecapsule.core.errors import AccessDenied, NotFound, ObjectStoreError, TooManyAttempts
from timecapsule.core.security import PassphraseVerifier, get_current_owner, get_passphrase_verifier
from timecapsule.db.session import get_db
from timecapsule.schemas.capsule import CapsuleCreateRequest, UnlockRequest
from timecapsule.security.rate_limit import UnlockThrottle, unlock_key
from timecapsule.services import capsules as capsule_service
from timecapsule.services.capsules import GateResult, dump_view
from timecapsule.services.reveal_gate import RevealGate, RevealStatus
from timecapsule.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/capsules', tags=['capsules'])


def _gate_response(result: GateResult) -> JSONResponse:
    """200 with the full view when readable, 403 with the restricted view when gated."""
    if result.status == RevealStatus.NOT_FOUND:
        raise NotFound('Capsule not found', code='CapsuleNotFound')

    body = {'status': result.status.value, 'data': dump_view(result.capsule)}
    if result.status.message_visible:
        return JSONResponse(status_code=status.HTTP_200_OK, content=body)
    denial = AccessDenied(result.status.value)
    return JSONResponse(status_code=denial.status_code, content={**body, **denial.to_dict()})


@router.get('')
def list_capsules(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Owner's capsules without message bodies."""
    summaries = capsule_service.list_capsule_summaries(db, owner_id)
    return {'data': [s.model_dump(mode='json') for s in summaries]}


@router.post('', status_code=status.HTTP_201_CREATED)
async def create_capsule(
    payload: CapsuleCreateRequest,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    verifier: PassphraseVerifier = Depends(get_passphrase_verifier),
):
    # argon2 hashing and the insert both block; keep them off the event loop
    view = await run_in_threadpool(
        capsule_service.create_capsule, db, payload, owner_id, verifier, settings
    )
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={'data': dump_view(view)})


@router.get('/{capsule_id}')
def get_capsule(
    capsule_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    gate: RevealGate = Depends(get_reveal_gate),
):
    return _gate_response(capsule_service.get_capsule_status(db, capsule_id, owner_id, gate))


@router.post('/{capsule_id}/unlock')
async def unlock_capsule(
    capsule_id: str,
    payload: UnlockRequest,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    gate: RevealGate = Depends(get_reveal_gate),
    throttle: UnlockThrottle = Depends(get_throttle),
):
    """
    Check a passphrase. Success reveals the message in this response only;
    the capsule stays locked for every later request.
    """
    throttled = settings.unlock_throttle_enabled
    key = unlock_key(owner_id, capsule_id)
    if throttled:
        # Counted before the slow verify so parallel guesses see each other
        delay = throttle.acquire(key)
        if delay > 0:
            raise TooManyAttempts(delay)

    try:
        result = await run_in_threadpool(
            capsule_service.unlock_capsule, db, capsule_id, payload.passphrase, owner_id, gate
        )
    except Exception:
        if throttled:
            throttle.release(key)
        raise

    if throttled:
        if result.status == RevealStatus.UNLOCKED:
            throttle.succeed(key)
        elif result.status != RevealStatus.INVALID_PASSPHRASE:
            throttle.release(key)

    return _gate_response(result)


@router.delete('/{capsule_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_capsule(
    capsule_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
    store: ObjectStore = Depends(get_object_store),
):
    objects = capsule_service.delete_capsule(db, capsule_id, owner_id)
    if objects is None:
        raise NotFound('Capsule not found', code='CapsuleNotFound')

    # Rows are gone; stored assets are removed best effort
    for file_name, file_id in objects:
        if not file_id:
            continue
        try:
            store.delete_object(file_name, file_id)
        except ObjectStoreError:
            logger.warning("Stored object %s left behind after capsule %s delete", file_name, capsule_id)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
