# services/batch/coordinator.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union

from services.batch.entry_store import EntrySnapshot, EntryStore
from services.batch.errors import NotFoundError
from services.batch.events import BATCH_TOPIC, EventBus
from services.batch.models import AnalysisStatus, ApprovalStatus, utcnow
from services.batch.records import RecordResult
from services.ingestion.storage import ImageStore, StorageError

logger = logging.getLogger(__name__)

RECORD_PHOTO_PREFIX = "medicines"


class RecordSink(Protocol):
    def create_record(self, attrs: Dict[str, Any], *, consume_entry: Optional[str] = None) -> RecordResult: ...


@dataclass(frozen=True)
class Saved:
    entry_id: str
    record_id: str
    photo_keys: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "outcome": "saved",
            "record_id": self.record_id,
            "photo_keys": list(self.photo_keys),
        }


@dataclass(frozen=True)
class Rejected:
    entry_id: str
    field_errors: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"entry_id": self.entry_id, "outcome": "rejected", "field_errors": self.field_errors}


SaveOutcome = Union[Saved, Rejected]


@dataclass(frozen=True)
class SaveSummary:
    success_count: int
    failure_count: int
    outcomes: Tuple[SaveOutcome, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def record_photo_key(entry_id: str, stamp: str, index: int, original_filename: str) -> str:
    ext = PurePosixPath(original_filename or "").suffix.lower() or ".jpg"
    return f"{RECORD_PHOTO_PREFIX}/{entry_id}_{stamp}_{index}{ext}"


class ApprovalCoordinator:
    """
    Turns approved entries into medicine records, one entry at a time.
    Not transactional across entries: each outcome stands on its own. Within
    one entry the record insert and the entry removal commit together, so an
    entry is saved at most once however often or concurrently this runs.
    """

    def __init__(
        self,
        *,
        store: EntryStore,
        records: RecordSink,
        images: ImageStore,
        events: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.records = records
        self.images = images
        self.events = events

    def save_batch(self, batch_id: str) -> SaveSummary:
        return self.save_approved(self.store.list_approved(batch_id))

    def save_approved(self, entries: Iterable[EntrySnapshot]) -> SaveSummary:
        outcomes: List[SaveOutcome] = []
        for entry in entries:
            if entry.approval_status is not ApprovalStatus.APPROVED:
                continue
            if entry.ai_analysis_status is not AnalysisStatus.COMPLETE:
                continue
            out = self._save_one(entry.id)
            if out is not None:
                outcomes.append(out)

        saved = [o for o in outcomes if isinstance(o, Saved)]
        summary = SaveSummary(
            success_count=len(saved),
            failure_count=len(outcomes) - len(saved),
            outcomes=tuple(outcomes),
        )
        logger.info("Saved %d approved entries, %d failed", summary.success_count, summary.failure_count)

        if summary.success_count > 0:
            self._notify(summary, [o.record_id for o in saved])
        return summary

    def _current(self, entry_id: str) -> Optional[EntrySnapshot]:
        """Fresh row if the entry is still waiting to be saved."""
        try:
            entry = self.store.get_entry(entry_id)
        except NotFoundError:
            return None
        if entry.approval_status is not ApprovalStatus.APPROVED:
            return None
        if entry.ai_analysis_status is not AnalysisStatus.COMPLETE:
            return None
        return entry

    def _save_one(self, entry_id: str) -> Optional[SaveOutcome]:
        """None when the entry was already saved (or withdrawn) by someone else."""
        entry = self._current(entry_id)
        if entry is None:
            logger.info("Entry %s no longer awaiting save; skipped", entry_id)
            return None

        stamp = utcnow().strftime("%Y%m%d%H%M%S")
        copied: List[str] = []
        for i, img in enumerate(entry.images):
            dst = record_photo_key(entry.id, stamp, i, img.original_filename)
            try:
                self.images.copy(img.storage_key, dst)
            except (StorageError, OSError) as e:
                self._discard(copied)
                if self._current(entry.id) is None:
                    logger.info("Entry %s saved concurrently; skipped", entry.id)
                    return None
                logger.warning("Entry %s: photo copy failed for %s: %s", entry.id, img.storage_key, e)
                return Rejected(entry.id, {"photo_keys": [f"could not copy {img.storage_key}: {e}"]})
            copied.append(dst)

        attrs: Dict[str, Any] = dict(entry.ai_results or {})
        attrs["photo_keys"] = list(copied)
        result = self.records.create_record(attrs, consume_entry=entry.id)
        if result.entry_gone:
            self._discard(copied)
            logger.info("Entry %s saved concurrently; skipped", entry.id)
            return None
        if not result.ok or not result.record_id:
            self._discard(copied)
            return Rejected(entry.id, dict(result.field_errors) or {"_record": ["record rejected"]})

        self._discard([img.storage_key for img in entry.images])
        return Saved(entry.id, result.record_id, tuple(copied))

    def _discard(self, keys: List[str]) -> None:
        for key in keys:
            try:
                self.images.delete(key)
            except (StorageError, OSError) as e:
                logger.warning("Could not delete image %s: %s", key, e)

    def _notify(self, summary: SaveSummary, record_ids: List[str]) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(
                BATCH_TOPIC,
                {
                    "type": "batch_saved",
                    "success_count": summary.success_count,
                    "failure_count": summary.failure_count,
                    "record_ids": record_ids,
                },
            )
        except Exception as e:
            logger.warning("Save notification dropped: %s", e)
