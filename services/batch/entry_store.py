# services/batch/entry_store.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from services.batch.database import session_scope
from services.batch.errors import (
    DuplicateEntryNumber,
    InvalidTransition,
    NotFoundError,
    NotReadyForAnalysis,
    NotReviewable,
    ValidationError,
)
from services.batch.models import (
    ALLOWED_CONTENT_TYPES,
    MAX_FILE_SIZE,
    AnalysisStatus,
    ApprovalStatus,
    Entry,
    EntryImage,
    utcnow,
)
from services.extraction.canonical import normalize_attributes

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Analysis interrupted - please try again"

# Shown to reviewers when the extraction lacks what a saved record needs.
REQUIRED_FOR_REVIEW: Tuple[Tuple[str, str], ...] = (
    ("name", "Medicine Name"),
    ("dosage_form", "Dosage Form"),
    ("strength_value", "Strength Value"),
    ("strength_unit", "Strength Unit"),
    ("container_type", "Container Type"),
    ("total_quantity", "Total Quantity"),
    ("quantity_unit", "Quantity Unit"),
)


@dataclass(frozen=True)
class NewImage:
    storage_key: str
    original_filename: str
    file_size: int
    content_type: str
    upload_order: Optional[int] = None


@dataclass(frozen=True)
class ImageSnapshot:
    id: str
    entry_id: str
    storage_key: str
    original_filename: str
    file_size: int
    content_type: str
    upload_order: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "storage_key": self.storage_key,
            "original_filename": self.original_filename,
            "file_size": self.file_size,
            "content_type": self.content_type,
            "upload_order": self.upload_order,
        }


@dataclass(frozen=True)
class EntrySnapshot:
    """Read-only projection of an Entry row. Never written back."""

    id: str
    batch_id: str
    entry_number: int
    status: AnalysisStatus
    ai_analysis_status: AnalysisStatus
    ai_results: Optional[Dict[str, Any]]
    error_message: Optional[str]
    approval_status: ApprovalStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    analyzed_at: Optional[datetime] = None
    images: Tuple[ImageSnapshot, ...] = field(default_factory=tuple)

    @property
    def has_images(self) -> bool:
        return len(self.images) > 0

    @property
    def ready_for_analysis(self) -> bool:
        return self.has_images and self.ai_analysis_status is AnalysisStatus.PENDING

    def missing_required_fields(self) -> List[str]:
        results = self.ai_results or {}
        return [label for key, label in REQUIRED_FOR_REVIEW if results.get(key) in (None, "")]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "entry_number": self.entry_number,
            "status": self.status.value,
            "ai_analysis_status": self.ai_analysis_status.value,
            "ai_results": self.ai_results,
            "error_message": self.error_message,
            "approval_status": self.approval_status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_notes": self.review_notes,
            "analyzed_at": self.analyzed_at.isoformat() if self.analyzed_at else None,
            "missing_fields": self.missing_required_fields() if self.ai_results else [],
            "images": [i.to_dict() for i in self.images],
        }


def _image_snapshot(row: EntryImage) -> ImageSnapshot:
    return ImageSnapshot(
        id=row.id,
        entry_id=row.entry_id,
        storage_key=row.storage_key,
        original_filename=row.original_filename,
        file_size=row.file_size,
        content_type=row.content_type,
        upload_order=row.upload_order,
    )


def _snapshot(row: Entry) -> EntrySnapshot:
    images = sorted(row.images, key=lambda i: i.upload_order)
    return EntrySnapshot(
        id=row.id,
        batch_id=row.batch_id,
        entry_number=row.entry_number,
        status=AnalysisStatus(row.status),
        ai_analysis_status=AnalysisStatus(row.ai_analysis_status),
        ai_results=dict(row.ai_results) if row.ai_results is not None else None,
        error_message=row.error_message,
        approval_status=ApprovalStatus(row.approval_status),
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        review_notes=row.review_notes,
        analyzed_at=row.analyzed_at,
        images=tuple(_image_snapshot(i) for i in images),
    )


def new_batch_id() -> str:
    return uuid.uuid4().hex


class EntryStore:
    """
    Owns Entry and EntryImage rows. Every state change is a single conditional
    UPDATE keyed on the current status, so concurrent writers to one entry are
    linearized by the database.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sf = session_factory

    # --- creation ---

    def create_entry(self, batch_id: str, entry_number: int) -> EntrySnapshot:
        bid = (batch_id or "").strip()
        if not bid:
            raise ValidationError("batch_id is required")
        if not isinstance(entry_number, int) or isinstance(entry_number, bool) or entry_number <= 0:
            raise ValidationError("entry_number must be a positive integer")

        with session_scope(self._sf) as s:
            row = Entry(batch_id=bid, entry_number=entry_number)
            s.add(row)
            try:
                s.flush()
            except IntegrityError as e:
                raise DuplicateEntryNumber(bid, entry_number) from e
            s.refresh(row, attribute_names=["images"])
            snap = _snapshot(row)

        logger.info("Created entry %s (batch %s #%d)", snap.id, bid, entry_number)
        return snap

    def create_batch(self, count: int, batch_id: Optional[str] = None) -> Tuple[str, List[EntrySnapshot]]:
        bid = batch_id or new_batch_id()
        return bid, self._insert_numbers(bid, range(1, count + 1), count)

    def add_entries(self, batch_id: str, count: int) -> List[EntrySnapshot]:
        with session_scope(self._sf) as s:
            current = s.scalar(select(func.max(Entry.entry_number)).where(Entry.batch_id == batch_id))
        start = (current or 0) + 1
        return self._insert_numbers(batch_id, range(start, start + count), count)

    def _insert_numbers(self, batch_id: str, numbers: Sequence[int], count: int) -> List[EntrySnapshot]:
        if not isinstance(count, int) or count <= 0:
            raise ValidationError("count must be a positive integer")
        if not (batch_id or "").strip():
            raise ValidationError("batch_id is required")

        with session_scope(self._sf) as s:
            rows = [Entry(batch_id=batch_id, entry_number=n) for n in numbers]
            s.add_all(rows)
            try:
                s.flush()
            except IntegrityError as e:
                raise DuplicateEntryNumber(batch_id, numbers[0]) from e
            for r in rows:
                s.refresh(r, attribute_names=["images"])
            snaps = [_snapshot(r) for r in rows]

        logger.info("Created %d entries in batch %s", len(snaps), batch_id)
        return snaps

    # --- images ---

    def attach_image(self, entry_id: str, image: NewImage) -> ImageSnapshot:
        if image.content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(f"content_type must be one of {list(ALLOWED_CONTENT_TYPES)}")
        if image.file_size <= 0:
            raise ValidationError("file_size must be > 0")
        if image.file_size > MAX_FILE_SIZE:
            raise ValidationError(f"file_size exceeds {MAX_FILE_SIZE} bytes")
        if image.upload_order is not None and image.upload_order < 0:
            raise ValidationError("upload_order must be >= 0")
        if not image.storage_key or not image.original_filename:
            raise ValidationError("storage_key and original_filename are required")

        with session_scope(self._sf) as s:
            if s.get(Entry, entry_id) is None:
                raise NotFoundError("entry", entry_id)

            order = image.upload_order
            if order is None:
                current = s.scalar(
                    select(func.max(EntryImage.upload_order)).where(EntryImage.entry_id == entry_id)
                )
                order = 0 if current is None else current + 1

            row = EntryImage(
                entry_id=entry_id,
                storage_key=image.storage_key,
                original_filename=image.original_filename,
                file_size=image.file_size,
                content_type=image.content_type,
                upload_order=order,
            )
            s.add(row)
            s.flush()
            snap = _image_snapshot(row)

        logger.info("Attached image %s to entry %s (order %d)", snap.id, entry_id, snap.upload_order)
        return snap

    def remove_image(self, image_id: str) -> ImageSnapshot:
        with session_scope(self._sf) as s:
            row = s.get(EntryImage, image_id)
            if row is None:
                raise NotFoundError("image", image_id)
            snap = _image_snapshot(row)
            s.delete(row)
        return snap

    # --- analysis transitions ---

    def mark_processing(self, entry_id: str) -> EntrySnapshot:
        """Atomic claim: pending + has images -> processing. Exactly one concurrent caller wins."""
        has_images = select(EntryImage.id).where(EntryImage.entry_id == entry_id).exists()
        stmt = (
            update(Entry)
            .where(
                Entry.id == entry_id,
                Entry.ai_analysis_status == AnalysisStatus.PENDING.value,
                has_images,
            )
            .values(
                ai_analysis_status=AnalysisStatus.PROCESSING.value,
                status=AnalysisStatus.PROCESSING.value,
                claimed_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        with session_scope(self._sf) as s:
            res = s.execute(stmt)
            if res.rowcount != 1:
                row = s.get(Entry, entry_id)
                if row is None:
                    raise NotFoundError("entry", entry_id)
                if row.ai_analysis_status != AnalysisStatus.PENDING.value:
                    raise NotReadyForAnalysis(entry_id, f"analysis is {row.ai_analysis_status}")
                raise NotReadyForAnalysis(entry_id, "no images attached")
            snap = self._load(s, entry_id)

        logger.info("Entry %s claimed for analysis", entry_id)
        return snap

    def apply_analysis_success(self, entry_id: str, results: Mapping[str, Any]) -> EntrySnapshot:
        if not results:
            raise ValidationError("analysis results must be a non-empty mapping")
        return self._transition(
            entry_id,
            operation="apply_analysis_success",
            required=AnalysisStatus.PROCESSING,
            values={
                "ai_analysis_status": AnalysisStatus.COMPLETE.value,
                "status": AnalysisStatus.COMPLETE.value,
                "ai_results": dict(results),
                "error_message": None,
                "analyzed_at": utcnow(),
            },
        )

    def apply_analysis_failure(self, entry_id: str, message: str) -> EntrySnapshot:
        msg = (message or "").strip() or "Analysis failed"
        return self._transition(
            entry_id,
            operation="apply_analysis_failure",
            required=AnalysisStatus.PROCESSING,
            values={
                "ai_analysis_status": AnalysisStatus.FAILED.value,
                "status": AnalysisStatus.FAILED.value,
                "ai_results": None,
                "error_message": msg,
                "analyzed_at": utcnow(),
            },
        )

    def retry_analysis(self, entry_id: str) -> EntrySnapshot:
        return self._transition(
            entry_id,
            operation="retry_analysis",
            required=AnalysisStatus.FAILED,
            values={
                "ai_analysis_status": AnalysisStatus.PENDING.value,
                "status": AnalysisStatus.PENDING.value,
                "ai_results": None,
                "error_message": None,
            },
        )

    def release_stale(
        self,
        older_than_s: float,
        *,
        entry_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> List[EntrySnapshot]:
        """
        processing -> failed for claims older than older_than_s, so a job whose
        worker died can go through retry_analysis. Returns the released entries.
        """
        cutoff = utcnow() - timedelta(seconds=older_than_s)
        stale = [
            Entry.ai_analysis_status == AnalysisStatus.PROCESSING.value,
            or_(Entry.claimed_at.is_(None), Entry.claimed_at <= cutoff),
        ]
        if entry_id is not None:
            stale.append(Entry.id == entry_id)
        if batch_id is not None:
            stale.append(Entry.batch_id == batch_id)

        released: List[EntrySnapshot] = []
        with session_scope(self._sf) as s:
            ids = list(s.scalars(select(Entry.id).where(*stale)))
            for eid in ids:
                # Re-checked per row: the worker may have finished meanwhile.
                res = s.execute(
                    update(Entry)
                    .where(Entry.id == eid, *stale)
                    .values(
                        ai_analysis_status=AnalysisStatus.FAILED.value,
                        status=AnalysisStatus.FAILED.value,
                        ai_results=None,
                        error_message=INTERRUPTED_MESSAGE,
                        analyzed_at=utcnow(),
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    released.append(self._load(s, eid))

        for snap in released:
            logger.warning("Entry %s released from a stale analysis claim", snap.id)
        return released

    def _transition(
        self,
        entry_id: str,
        *,
        operation: str,
        required: AnalysisStatus,
        values: Dict[str, Any],
    ) -> EntrySnapshot:
        stmt = (
            update(Entry)
            .where(Entry.id == entry_id, Entry.ai_analysis_status == required.value)
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._sf) as s:
            res = s.execute(stmt)
            if res.rowcount != 1:
                row = s.get(Entry, entry_id)
                if row is None:
                    raise NotFoundError("entry", entry_id)
                raise InvalidTransition(entry_id, operation, row.ai_analysis_status, required.value)
            snap = self._load(s, entry_id)

        logger.info("Entry %s: %s -> %s", entry_id, operation, snap.ai_analysis_status.value)
        return snap

    # --- review ---

    def set_approval(
        self,
        entry_id: str,
        decision: Union[ApprovalStatus, str],
        *,
        reviewed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EntrySnapshot:
        try:
            d = ApprovalStatus(decision)
        except ValueError as e:
            raise ValidationError(f"unknown approval decision: {decision!r}") from e
        if d is ApprovalStatus.PENDING:
            raise ValidationError("approval decision must be approved or rejected")

        stmt = (
            update(Entry)
            .where(Entry.id == entry_id, Entry.ai_analysis_status == AnalysisStatus.COMPLETE.value)
            .values(
                approval_status=d.value,
                reviewed_by=reviewed_by,
                reviewed_at=utcnow(),
                review_notes=notes,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._sf) as s:
            res = s.execute(stmt)
            if res.rowcount != 1:
                row = s.get(Entry, entry_id)
                if row is None:
                    raise NotFoundError("entry", entry_id)
                raise NotReviewable(entry_id, row.ai_analysis_status)
            snap = self._load(s, entry_id)

        logger.info("Entry %s %s by %s", entry_id, d.value, reviewed_by or "unknown")
        return snap

    def update_results(self, entry_id: str, attributes: Mapping[str, Any]) -> EntrySnapshot:
        """Reviewer edit of extracted attributes; same allow-list and coercion as the sanitizer."""
        cleaned = normalize_attributes(attributes or {})
        if not cleaned:
            raise ValidationError("no recognised attributes supplied")
        return self._update_complete(entry_id, "update_results", {"ai_results": dict(cleaned)})

    def _update_complete(self, entry_id: str, operation: str, values: Dict[str, Any]) -> EntrySnapshot:
        stmt = (
            update(Entry)
            .where(Entry.id == entry_id, Entry.ai_analysis_status == AnalysisStatus.COMPLETE.value)
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        with session_scope(self._sf) as s:
            res = s.execute(stmt)
            if res.rowcount != 1:
                row = s.get(Entry, entry_id)
                if row is None:
                    raise NotFoundError("entry", entry_id)
                raise InvalidTransition(
                    entry_id, operation, row.ai_analysis_status, AnalysisStatus.COMPLETE.value
                )
            return self._load(s, entry_id)

    # --- deletion ---

    def delete_entry(self, entry_id: str) -> EntrySnapshot:
        with session_scope(self._sf) as s:
            row = s.get(Entry, entry_id, options=[selectinload(Entry.images)])
            if row is None:
                raise NotFoundError("entry", entry_id)
            snap = _snapshot(row)
            s.delete(row)

        logger.info("Deleted entry %s with %d images", entry_id, len(snap.images))
        return snap

    # --- reads ---

    def _load(self, s: Session, entry_id: str) -> EntrySnapshot:
        row = s.execute(
            select(Entry)
            .where(Entry.id == entry_id)
            .options(selectinload(Entry.images))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError("entry", entry_id)
        return _snapshot(row)

    def get_entry(self, entry_id: str) -> EntrySnapshot:
        with session_scope(self._sf) as s:
            return self._load(s, entry_id)

    def _list(self, *criteria: Any, batch_id: Optional[str] = None) -> List[EntrySnapshot]:
        stmt = select(Entry).options(selectinload(Entry.images))
        if batch_id is not None:
            stmt = stmt.where(Entry.batch_id == batch_id)
        for c in criteria:
            stmt = stmt.where(c)
        stmt = stmt.order_by(Entry.batch_id, Entry.entry_number)
        with session_scope(self._sf) as s:
            return [_snapshot(r) for r in s.execute(stmt).scalars().all()]

    def list_entries(self, batch_id: str) -> List[EntrySnapshot]:
        return self._list(batch_id=batch_id)

    def list_ready_for_analysis(self, batch_id: Optional[str] = None) -> List[EntrySnapshot]:
        return self._list(
            Entry.ai_analysis_status == AnalysisStatus.PENDING.value,
            Entry.images.any(),
            batch_id=batch_id,
        )

    def list_pending_review(self, batch_id: Optional[str] = None) -> List[EntrySnapshot]:
        return self._list(
            Entry.ai_analysis_status == AnalysisStatus.COMPLETE.value,
            Entry.approval_status == ApprovalStatus.PENDING.value,
            batch_id=batch_id,
        )

    def list_approved(self, batch_id: Optional[str] = None) -> List[EntrySnapshot]:
        return self._list(
            Entry.ai_analysis_status == AnalysisStatus.COMPLETE.value,
            Entry.approval_status == ApprovalStatus.APPROVED.value,
            batch_id=batch_id,
        )

    def batch_summary(self, batch_id: str) -> Dict[str, int]:
        with session_scope(self._sf) as s:
            by_ai = dict(
                s.execute(
                    select(Entry.ai_analysis_status, func.count())
                    .where(Entry.batch_id == batch_id)
                    .group_by(Entry.ai_analysis_status)
                ).all()
            )
            by_approval = dict(
                s.execute(
                    select(Entry.approval_status, func.count())
                    .where(Entry.batch_id == batch_id)
                    .group_by(Entry.approval_status)
                ).all()
            )

        total = sum(by_ai.values())
        complete = by_ai.get(AnalysisStatus.COMPLETE.value, 0)
        approved = by_approval.get(ApprovalStatus.APPROVED.value, 0)
        rejected = by_approval.get(ApprovalStatus.REJECTED.value, 0)
        return {
            "total": total,
            "pending": by_ai.get(AnalysisStatus.PENDING.value, 0),
            "processing": by_ai.get(AnalysisStatus.PROCESSING.value, 0),
            "complete": complete,
            "failed": by_ai.get(AnalysisStatus.FAILED.value, 0),
            "approved": approved,
            "rejected": rejected,
            "pending_review": complete - approved - rejected,
            "ready_to_save": approved,
            "analysis_completion_rate": round(complete / total * 100) if total else 0,
        }
