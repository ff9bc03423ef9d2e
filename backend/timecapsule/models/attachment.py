# backend/timecapsule/models/attachment.py
from __future__ import annotations

from sqlalchemy import Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timecapsule.db.base import Base


class CapsuleAttachment(Base):
    __tablename__ = "capsule_attachments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    capsule_id: Mapped[str] = mapped_column(
        ForeignKey("capsules.id", ondelete="CASCADE"), index=True, nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    media_type: Mapped[str] = mapped_column(String(16), nullable=False)  # image | video
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)  # object-store key
    content_type: Mapped[str] = mapped_column(String(127), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Video only
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    bitrate: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Poster frame (video only), an image asset of its own
    poster_file_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    poster_content_type: Mapped[str | None] = mapped_column(String(127), nullable=True)
    poster_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    poster_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    poster_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    poster_file_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    capsule = relationship("Capsule", back_populates="attachments")

    @property
    def has_poster(self) -> bool:
        return self.poster_file_name is not None
