# backend/timecapsule/models/capsule.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timecapsule.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Capsule(Base):
    __tablename__ = "capsules"
    __table_args__ = (
        # A capsule is locked exactly when it carries a passphrase digest
        CheckConstraint(
            "(is_locked AND passphrase_digest IS NOT NULL) OR "
            "(NOT is_locked AND passphrase_digest IS NULL)",
            name="ck_capsules_lock_digest",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Opaque identity reference; NULL for legacy anonymous rows
    owner_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    reveal_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)

    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, index=True, nullable=False)
    passphrase_digest: Mapped[str | None] = mapped_column(String(255), nullable=True)

    attachments = relationship(
        "CapsuleAttachment",
        back_populates="capsule",
        cascade="all,delete-orphan",
        passive_deletes=True,
        order_by="CapsuleAttachment.position",
    )
