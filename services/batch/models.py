# services/batch/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


# Overall entry lifecycle uses the same vocabulary.
EntryStatus = AnalysisStatus


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/jpg", "image/png")
MAX_FILE_SIZE = 50_000_000


class Base(DeclarativeBase):
    pass


class Entry(Base):
    __tablename__ = "batch_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entry_number: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=EntryStatus.PENDING.value)
    ai_analysis_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AnalysisStatus.PENDING.value, index=True
    )
    ai_results: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON(none_as_null=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set by the analysis claim; a processing row with an old claim lost its worker.
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    approval_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ApprovalStatus.PENDING.value
    )
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    images: Mapped[List["EntryImage"]] = relationship(
        "EntryImage",
        back_populates="entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EntryImage.upload_order",
    )

    __table_args__ = (UniqueConstraint("batch_id", "entry_number", name="uq_batch_entry_number"),)

    def __repr__(self) -> str:
        return (
            f"<Entry(id={self.id}, batch_id={self.batch_id}, number={self.entry_number}, "
            f"ai={self.ai_analysis_status}, approval={self.approval_status})>"
        )


class EntryImage(Base):
    __tablename__ = "batch_entry_images"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    entry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batch_entries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    storage_key: Mapped[str] = mapped_column(String(500), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(String(32), nullable=False)
    upload_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    entry: Mapped["Entry"] = relationship("Entry", back_populates="images")

    def __repr__(self) -> str:
        return f"<EntryImage(id={self.id}, entry_id={self.entry_id}, order={self.upload_order})>"


class MedicineRecord(Base):
    __tablename__ = "medicines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    generic_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    dosage_form: Mapped[str] = mapped_column(String(32), nullable=False)
    active_ingredient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    strength_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    strength_unit: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    container_type: Mapped[str] = mapped_column(String(32), nullable=False)
    total_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    remaining_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    quantity_unit: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    manufacturer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lot_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    expiration_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    photo_keys: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<MedicineRecord(id={self.id}, name={self.name})>"
