# backend/timecapsule/crud/capsules.py
from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, defer, selectinload

from timecapsule.core.errors import ValidationError
from timecapsule.models.attachment import CapsuleAttachment
from timecapsule.models.capsule import Capsule
from timecapsule.services.attachments import MAX_ATTACHMENTS, NormalizedAttachment

logger = logging.getLogger(__name__)


def _attachment_row(capsule_id: str, a: NormalizedAttachment) -> CapsuleAttachment:
    row = CapsuleAttachment(
        id=a.id,
        capsule_id=capsule_id,
        position=a.position,
        media_type=a.media_type,
        file_name=a.file_name,
        content_type=a.content_type,
        size_bytes=a.size_bytes,
        width=a.width,
        height=a.height,
        file_id=a.file_id,
        duration_seconds=a.duration_seconds,
        bitrate=a.bitrate,
    )
    if a.poster is not None:
        row.poster_file_name = a.poster.file_name
        row.poster_content_type = a.poster.content_type
        row.poster_size_bytes = a.poster.size_bytes
        row.poster_width = a.poster.width
        row.poster_height = a.poster.height
        row.poster_file_id = a.poster.file_id
    return row


def create_capsule(
    db: Session,
    capsule: Capsule,
    attachments: Sequence[NormalizedAttachment] = (),
    max_attachments: int = MAX_ATTACHMENTS,
) -> Capsule:
    """
    Insert the capsule and all of its attachments in one transaction.
    Either every row is written or none is.
    """
    if len(attachments) > max_attachments:
        raise ValidationError(
            "Too many attachments",
            details={"attachments": [f"At most {max_attachments} attachments are allowed"]},
        )
    if capsule.is_locked != (capsule.passphrase_digest is not None):
        raise ValueError("is_locked must match the presence of a passphrase digest")

    try:
        db.add(capsule)
        db.flush()  # capsule row first, attachments reference it

        for a in attachments:
            db.add(_attachment_row(capsule.id, a))
        db.flush()

        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Capsule insert rolled back (capsule_id=%s)", capsule.id)
        raise

    db.refresh(capsule)
    return capsule


def get_by_owner_and_id(db: Session, capsule_id: str, owner_id: str) -> Capsule | None:
    stmt = (
        select(Capsule)
        .where(Capsule.id == capsule_id, Capsule.owner_id == owner_id)
        .options(selectinload(Capsule.attachments))
    )
    return db.execute(stmt).scalar_one_or_none()


def list_by_owner(db: Session, owner_id: str) -> list[Capsule]:
    """Owner's capsules, newest first. The message column is never loaded."""
    if not owner_id:
        return []
    stmt = (
        select(Capsule)
        .where(Capsule.owner_id == owner_id)
        .options(defer(Capsule.message, raiseload=True))
        .order_by(Capsule.created_at.desc())
    )
    return list(db.execute(stmt).scalars().all())


def delete_capsule(db: Session, capsule_id: str, owner_id: str) -> bool:
    """
    Delete a capsule and its attachments, scoped by id and owner.

    Returns False when no capsule with that id belongs to ``owner_id``;
    in that case no row is touched.
    """
    owned = select(Capsule.id).where(Capsule.id == capsule_id, Capsule.owner_id == owner_id)
    try:
        db.execute(
            delete(CapsuleAttachment).where(CapsuleAttachment.capsule_id.in_(owned))
        )
        result = db.execute(
            delete(Capsule).where(Capsule.id == capsule_id, Capsule.owner_id == owner_id)
        )
        if result.rowcount != 1:
            db.rollback()
            return False
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Capsule delete rolled back (capsule_id=%s)", capsule_id)
        raise
    return True
