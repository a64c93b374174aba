from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.batch.coordinator import ApprovalCoordinator
from services.batch.dispatcher import AnalysisDispatcher
from services.batch.entry_store import EntryStore, NewImage
from services.batch.errors import (
    DuplicateEntryNumber,
    InvalidTransition,
    MedpackError,
    NotFoundError,
    NotReadyForAnalysis,
    NotReviewable,
    ValidationError,
)
from services.batch.models import ALLOWED_CONTENT_TYPES, MAX_FILE_SIZE, ApprovalStatus
from services.ingestion.storage import ImageStore, StorageError

logger = logging.getLogger(__name__)

CONFLICT_ERRORS = (DuplicateEntryNumber, NotReadyForAnalysis, NotReviewable, InvalidTransition)


class CountRequest(BaseModel):
    count: int = Field(..., gt=0, le=500)


class ReviewRequest(BaseModel):
    reviewed_by: Optional[str] = None
    notes: Optional[str] = None


class ResultsUpdate(BaseModel):
    attributes: Dict[str, Any]


def to_http_error(e: MedpackError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CONFLICT_ERRORS):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def image_key(batch_id: str, entry_id: str, filename: Optional[str]) -> str:
    ext = PurePosixPath(filename or "").suffix.lower() or ".jpg"
    return f"batches/{batch_id}/{entry_id}/{uuid4().hex}{ext}"


def create_batches_router(
    *,
    store: EntryStore,
    images: ImageStore,
    dispatcher: AnalysisDispatcher,
    coordinator: ApprovalCoordinator,
) -> APIRouter:
    router = APIRouter()

    def _discard(keys: List[str]) -> None:
        for key in keys:
            try:
                images.delete(key)
            except (StorageError, OSError) as e:
                logger.warning("Could not delete image %s: %s", key, e)

    # --- Batches ---
    @router.post("/batches", status_code=201)
    def create_batch(req: CountRequest):
        try:
            batch_id, entries = store.create_batch(req.count)
        except MedpackError as e:
            raise to_http_error(e) from e
        return {"batch_id": batch_id, "entries": [e.to_dict() for e in entries]}

    @router.get("/batches/{batch_id}")
    def batch_status(batch_id: str):
        entries = store.list_entries(batch_id)
        if not entries:
            raise HTTPException(status_code=404, detail="batch_not_found")
        return {
            "batch_id": batch_id,
            "summary": store.batch_summary(batch_id),
            "entries": [e.to_dict() for e in entries],
        }

    @router.post("/batches/{batch_id}/entries", status_code=201)
    def add_entries(batch_id: str, req: CountRequest):
        try:
            entries = store.add_entries(batch_id, req.count)
        except MedpackError as e:
            raise to_http_error(e) from e
        return {"batch_id": batch_id, "entries": [e.to_dict() for e in entries]}

    @router.post("/batches/{batch_id}/analyze")
    def analyze_batch(batch_id: str):
        queued = dispatcher.dispatch_ready(batch_id)
        return JSONResponse(status_code=202, content={"batch_id": batch_id, "queued": queued})

    @router.post("/batches/{batch_id}/save")
    def save_batch(batch_id: str):
        return coordinator.save_batch(batch_id).to_dict()

    # --- Entries ---
    @router.get("/entries/{entry_id}")
    def get_entry(entry_id: str):
        try:
            return store.get_entry(entry_id).to_dict()
        except MedpackError as e:
            raise to_http_error(e) from e

    @router.delete("/entries/{entry_id}")
    def delete_entry(entry_id: str):
        try:
            snap = store.delete_entry(entry_id)
        except MedpackError as e:
            raise to_http_error(e) from e
        _discard([i.storage_key for i in snap.images])
        return {"entry_id": entry_id, "deleted": True}

    @router.post("/entries/{entry_id}/images")
    async def upload_images(entry_id: str, files: List[UploadFile] = File(...)):
        try:
            entry = store.get_entry(entry_id)
        except MedpackError as e:
            raise to_http_error(e) from e

        # Validate the whole upload before anything is written.
        uploads = []
        for f in files:
            content_type = (f.content_type or "").lower()
            if content_type not in ALLOWED_CONTENT_TYPES:
                raise HTTPException(
                    status_code=422, detail=f"unsupported content type for {f.filename}: {content_type}"
                )
            blob = await f.read()
            if not blob:
                raise HTTPException(status_code=422, detail=f"empty file: {f.filename}")
            if len(blob) > MAX_FILE_SIZE:
                raise HTTPException(status_code=422, detail=f"file too large: {f.filename}")
            uploads.append((f, content_type, blob))

        attached = []
        for f, content_type, blob in uploads:
            key = image_key(entry.batch_id, entry_id, f.filename)
            stored = images.put(blob, key)
            try:
                img = store.attach_image(
                    entry_id,
                    NewImage(
                        storage_key=stored.key,
                        original_filename=f.filename or PurePosixPath(key).name,
                        file_size=stored.size,
                        content_type=content_type,
                    ),
                )
            except MedpackError as e:
                _discard([stored.key])
                raise to_http_error(e) from e
            attached.append(img.to_dict())

        # Debounced: photos uploaded in quick succession share one analysis.
        queued = store.get_entry(entry_id).ready_for_analysis
        if queued:
            dispatcher.enqueue(entry_id)

        return JSONResponse(
            status_code=202,
            content={"entry_id": entry_id, "images": attached, "analysis_queued": queued},
        )

    @router.delete("/entries/{entry_id}/images/{image_id}")
    def remove_image(entry_id: str, image_id: str):
        try:
            entry = store.get_entry(entry_id)
            if image_id not in {i.id for i in entry.images}:
                raise NotFoundError("image", image_id)
            img = store.remove_image(image_id)
        except MedpackError as e:
            raise to_http_error(e) from e
        _discard([img.storage_key])
        return {"entry_id": entry_id, "image_id": image_id, "deleted": True}

    @router.post("/entries/{entry_id}/retry")
    def retry_entry(entry_id: str):
        try:
            snap = store.retry_analysis(entry_id)
        except MedpackError as e:
            raise to_http_error(e) from e
        if snap.ready_for_analysis:
            dispatcher.enqueue(entry_id, delay_s=0.0)
        return JSONResponse(status_code=202, content=snap.to_dict())

    @router.post("/entries/{entry_id}/approve")
    def approve_entry(entry_id: str, req: Optional[ReviewRequest] = None):
        return _review(entry_id, ApprovalStatus.APPROVED, req or ReviewRequest())

    @router.post("/entries/{entry_id}/reject")
    def reject_entry(entry_id: str, req: Optional[ReviewRequest] = None):
        return _review(entry_id, ApprovalStatus.REJECTED, req or ReviewRequest())

    def _review(entry_id: str, decision: ApprovalStatus, req: ReviewRequest) -> Dict[str, Any]:
        try:
            snap = store.set_approval(entry_id, decision, reviewed_by=req.reviewed_by, notes=req.notes)
        except MedpackError as e:
            raise to_http_error(e) from e
        return snap.to_dict()

    @router.put("/entries/{entry_id}/results")
    def update_results(entry_id: str, req: ResultsUpdate):
        try:
            return store.update_results(entry_id, req.attributes).to_dict()
        except MedpackError as e:
            raise to_http_error(e) from e

    return router
