from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from timecapsule.core.config import Settings
from timecapsule.core.errors import Unauthorized
from timecapsule.core.security import PassphraseVerifier
from timecapsule.crud import capsules as capsule_store
from timecapsule.models.attachment import CapsuleAttachment
from timecapsule.models.capsule import Capsule
from timecapsule.schemas.capsule import (
    AttachmentView,
    CapsuleCreateRequest,
    CapsuleSummary,
    CapsuleView,
    PosterView,
)
from timecapsule.services.attachments import normalize_attachments
from timecapsule.services.reveal_gate import RevealDecision, RevealGate, RevealStatus, as_utc, reveal_reached

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateResult:
    status: RevealStatus
    capsule: Optional[CapsuleView] = None


def _assert_owner(owner_id: Optional[str]) -> str:
    if not owner_id:
        raise Unauthorized("OwnerRequired")
    return owner_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def attachment_view(a: CapsuleAttachment) -> AttachmentView:
    fields = dict(
        id=a.id,
        media_type=a.media_type,
        file_name=a.file_name,
        content_type=a.content_type,
        size=a.size_bytes,
        width=a.width,
        height=a.height,
    )
    if a.media_type == "video":
        fields["duration_seconds"] = a.duration_seconds
        fields["bitrate"] = a.bitrate
        if a.has_poster:
            fields["poster"] = PosterView(
                file_name=a.poster_file_name,
                content_type=a.poster_content_type,
                size=a.poster_size_bytes or 0,
                width=a.poster_width,
                height=a.poster_height,
            )
    return AttachmentView(**fields)


def project_capsule(capsule: Capsule, include_message: bool) -> CapsuleView:
    """
    Build the client view field by field. Only named fields ever leave;
    ``message`` is not even assigned unless ``include_message`` is set.
    """
    fields = dict(
        id=capsule.id,
        title=capsule.title,
        author=capsule.author,
        created_at=as_utc(capsule.created_at),
        reveal_at=as_utc(capsule.reveal_at),
        is_locked=capsule.is_locked,
        message_available=include_message,
        attachments=[attachment_view(a) for a in capsule.attachments],
    )
    if include_message:
        fields["message"] = capsule.message
    return CapsuleView(**fields)


def project_summary(capsule: Capsule, now: datetime) -> CapsuleSummary:
    revealed = reveal_reached(capsule, now)
    return CapsuleSummary(
        id=capsule.id,
        title=capsule.title,
        author=capsule.author,
        created_at=as_utc(capsule.created_at),
        reveal_at=as_utc(capsule.reveal_at),
        is_locked=capsule.is_locked,
        is_revealed=revealed,
        message_available=revealed and not capsule.is_locked,
    )


def dump_view(view) -> dict:
    """JSON-ready dict; unset fields (a hidden message) are left out entirely."""
    return view.model_dump(mode="json", exclude_unset=True)


def _gate_result(decision: RevealDecision) -> GateResult:
    if decision.capsule is None:
        return GateResult(decision.status)
    return GateResult(decision.status, project_capsule(decision.capsule, decision.message_visible))


def create_capsule(
    db: Session,
    payload: CapsuleCreateRequest,
    owner_id: str,
    verifier: PassphraseVerifier,
    cfg: Settings,
    now: Optional[datetime] = None,
) -> CapsuleView:
    """Hash, normalize and persist. Blocking (argon2 + database)."""
    owner_id = _assert_owner(owner_id)
    now = now or _utcnow()

    attachments = normalize_attachments(
        payload.attachments,
        owner_id=owner_id,
        max_attachments=cfg.max_attachments,
    )

    is_locked = bool(payload.passphrase)
    capsule = Capsule(
        id=str(uuid.uuid4()),
        title=payload.title,
        message=payload.message,
        author=payload.author,
        owner_id=owner_id,
        created_at=now,
        reveal_at=as_utc(payload.reveal_at),
        is_locked=is_locked,
        passphrase_digest=verifier.hash(payload.passphrase) if is_locked else None,
    )

    capsule = capsule_store.create_capsule(db, capsule, attachments, max_attachments=cfg.max_attachments)
    logger.info(
        "Capsule created id=%s locked=%s attachments=%s", capsule.id, is_locked, len(attachments)
    )
    return project_capsule(capsule, include_message=not is_locked and reveal_reached(capsule, now))


def list_capsule_summaries(db: Session, owner_id: str, now: Optional[datetime] = None) -> list[CapsuleSummary]:
    owner_id = _assert_owner(owner_id)
    now = now or _utcnow()
    return [project_summary(c, now) for c in capsule_store.list_by_owner(db, owner_id)]


def get_capsule_status(
    db: Session,
    capsule_id: str,
    owner_id: str,
    gate: RevealGate,
    now: Optional[datetime] = None,
) -> GateResult:
    owner_id = _assert_owner(owner_id)
    capsule = capsule_store.get_by_owner_and_id(db, capsule_id, owner_id)
    decision = gate.status(capsule, now or _utcnow())
    logger.info("Capsule status id=%s -> %s", capsule_id, decision.status.value)
    return _gate_result(decision)


def unlock_capsule(
    db: Session,
    capsule_id: str,
    passphrase: str,
    owner_id: str,
    gate: RevealGate,
    now: Optional[datetime] = None,
) -> GateResult:
    """Blocking: the gate runs argon2 verification for locked capsules."""
    owner_id = _assert_owner(owner_id)
    capsule = capsule_store.get_by_owner_and_id(db, capsule_id, owner_id)
    decision = gate.unlock(capsule, passphrase, now or _utcnow())
    logger.info("Capsule unlock id=%s -> %s", capsule_id, decision.status.value)
    return _gate_result(decision)


def delete_capsule(db: Session, capsule_id: str, owner_id: str) -> Optional[list[tuple[str, Optional[str]]]]:
    """
    Owner-scoped delete. Returns the (key, file_id) pairs of stored objects
    that belonged to the capsule, or None when nothing was deleted.
    """
    owner_id = _assert_owner(owner_id)
    capsule = capsule_store.get_by_owner_and_id(db, capsule_id, owner_id)
    if capsule is None:
        return None

    objects: list[tuple[str, Optional[str]]] = []
    for a in capsule.attachments:
        objects.append((a.file_name, a.file_id))
        if a.has_poster:
            objects.append((a.poster_file_name, a.poster_file_id))

    if not capsule_store.delete_capsule(db, capsule_id, owner_id):
        return None
    logger.info("Capsule deleted id=%s objects=%s", capsule_id, len(objects))
    return objects
