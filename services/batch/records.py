# services/batch/records.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from services.batch.database import session_scope
from services.batch.errors import NotFoundError, PersistenceError
from services.batch.models import AnalysisStatus, ApprovalStatus, Entry, MedicineRecord
from services.extraction.canonical import coerce_value, normalize_attributes
from services.validation.schema_validation import collect_field_errors

logger = logging.getLogger(__name__)

MEDICINE_SCHEMA = "medicine"

_YEAR_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


@dataclass(frozen=True)
class RecordResult:
    ok: bool
    record_id: Optional[str] = None
    field_errors: Dict[str, List[str]] = field(default_factory=dict)
    entry_gone: bool = False


def _consume_approved_entry(s: Session, entry_id: str) -> None:
    # Images go with it through the FK cascade.
    res = s.execute(
        delete(Entry)
        .where(
            Entry.id == entry_id,
            Entry.approval_status == ApprovalStatus.APPROVED.value,
            Entry.ai_analysis_status == AnalysisStatus.COMPLETE.value,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise NotFoundError("approved entry", entry_id)


def normalize_expiration(value: Any) -> Any:
    """YYYY-MM means the first day of that month."""
    if isinstance(value, str) and _YEAR_MONTH_RE.match(value.strip()):
        return f"{value.strip()}-01"
    return value


def prepare_record(attrs: Mapping[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = dict(normalize_attributes(attrs))
    if "expiration_date" in data:
        data["expiration_date"] = normalize_expiration(data["expiration_date"])

    remaining = attrs.get("remaining_quantity")
    if remaining not in (None, ""):
        data["remaining_quantity"] = coerce_value("total_quantity", remaining)

    data["photo_keys"] = [str(k) for k in (attrs.get("photo_keys") or [])]
    return data


def validate_record(data: Dict[str, Any]) -> Dict[str, List[str]]:
    errors = collect_field_errors(data, MEDICINE_SCHEMA)

    exp = data.get("expiration_date")
    if isinstance(exp, str) and "expiration_date" not in errors:
        try:
            datetime.strptime(exp, "%Y-%m-%d")
        except ValueError:
            errors["expiration_date"] = ["is not a valid calendar date"]

    total = data.get("total_quantity")
    remaining = data.get("remaining_quantity")
    if (
        isinstance(total, float)
        and isinstance(remaining, float)
        and "remaining_quantity" not in errors
        and remaining > total
    ):
        errors["remaining_quantity"] = ["cannot exceed total quantity"]
    return errors


def build_record(attrs: Mapping[str, Any]) -> Dict[str, Any]:
    """Prepared, validated column values. Raises PersistenceError with per-field messages."""
    data = prepare_record(attrs)
    errors = validate_record(data)
    if errors:
        raise PersistenceError(errors)
    data.setdefault("remaining_quantity", data["total_quantity"])
    return data


class MedicineRepository:
    """Inventory records created from approved entries."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sf = session_factory

    def create_record(self, attrs: Mapping[str, Any], *, consume_entry: Optional[str] = None) -> RecordResult:
        """
        Validate and insert one record. With consume_entry, the approved entry
        is deleted in the same transaction; if it is no longer there (or no
        longer approved) nothing is written and the result has entry_gone set.
        """
        try:
            data = build_record(attrs)
        except PersistenceError as e:
            logger.info("Medicine record rejected: %s", e)
            return RecordResult(ok=False, field_errors=e.field_errors)

        try:
            with session_scope(self._sf) as s:
                row = MedicineRecord(**data)
                s.add(row)
                s.flush()
                record_id = row.id
                if consume_entry is not None:
                    _consume_approved_entry(s, consume_entry)
        except NotFoundError:
            logger.info("Entry %s already saved or no longer approved; record discarded", consume_entry)
            return RecordResult(ok=False, entry_gone=True)
        except SQLAlchemyError as e:
            logger.error("Medicine record insert failed: %s", e)
            return RecordResult(ok=False, field_errors={"_record": [f"database error: {e}"[:300]]})

        logger.info("Created medicine record %s (%s)", record_id, data.get("name"))
        return RecordResult(ok=True, record_id=record_id)

    def get_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self._sf) as s:
            row = s.get(MedicineRecord, record_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "name": row.name,
                "brand_name": row.brand_name,
                "generic_name": row.generic_name,
                "dosage_form": row.dosage_form,
                "active_ingredient": row.active_ingredient,
                "strength_value": row.strength_value,
                "strength_unit": row.strength_unit,
                "container_type": row.container_type,
                "total_quantity": row.total_quantity,
                "remaining_quantity": row.remaining_quantity,
                "quantity_unit": row.quantity_unit,
                "manufacturer": row.manufacturer,
                "lot_number": row.lot_number,
                "expiration_date": row.expiration_date,
                "photo_keys": list(row.photo_keys or []),
                "status": row.status,
            }
