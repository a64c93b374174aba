# services/batch/dispatcher.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.batch.entry_store import INTERRUPTED_MESSAGE, EntrySnapshot, EntryStore
from services.batch.errors import (
    ImageUnavailableError,
    InvalidTransition,
    MaxRetriesExceeded,
    NotFoundError,
    NotReadyForAnalysis,
    PermanentRemoteError,
    TransientRemoteError,
)
from services.batch.events import BATCH_TOPIC, EventBus
from services.batch.jobs import JobQueue
from services.extraction.retry import RetryConfig, RetryExecutor
from services.extraction.sanitize import sanitize_analysis
from services.extraction.vision_client import ANALYSIS_INSTRUCTIONS, AnalysisRequest, VisionAnalyzer
from services.ingestion.storage import ImageRef, ImageStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_S = 5.0


class DispatchStatus:
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"  # claim refused: already in flight, not pending, or no images
    DROPPED = "dropped"  # entry removed while the job ran


@dataclass(frozen=True)
class DispatchOutcome:
    entry_id: str
    status: str
    message: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


def failure_message(err: Exception) -> str:
    """User-facing text stored on the entry for a terminal analysis failure."""
    if isinstance(err, ImageUnavailableError):
        return f"Image unavailable: {err.storage_key}"
    if isinstance(err, MaxRetriesExceeded):
        if err.last_error.kind == TransientRemoteError.TIMEOUT:
            return "AI service timeout - please try again"
        return "AI service failed after multiple retries - please try again later"
    if isinstance(err, PermanentRemoteError):
        return f"AI service call failed: {err}"
    return f"Analysis failed: {err}"


def stale_claim_after(config: RetryConfig, grace_s: float = 60.0) -> float:
    """Longest a live job can hold its claim: every attempt timing out plus every backoff."""
    attempts = config.max_retries + 1
    return attempts * config.per_attempt_timeout_s + config.max_retries * config.max_delay_s + grace_s


class AnalysisDispatcher:
    """
    Runs one analysis job per entry:
      claim -> resolve images (upload order) -> one vision call via RetryExecutor
      -> sanitize -> record success/failure -> notify.
    Analysis outcomes are always written to the entry, never raised.
    """

    def __init__(
        self,
        *,
        store: EntryStore,
        images: ImageStore,
        analyzer: VisionAnalyzer,
        retry: Optional[RetryExecutor] = None,
        retry_config: Optional[RetryConfig] = None,
        events: Optional[EventBus] = None,
        queue: Optional[JobQueue] = None,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
        stale_after_s: Optional[float] = None,
        instructions: str = ANALYSIS_INSTRUCTIONS,
    ) -> None:
        self.store = store
        self.images = images
        self.analyzer = analyzer
        self.retry = retry or RetryExecutor()
        self.retry_config = retry_config or RetryConfig()
        self.events = events
        self.queue = queue
        self.debounce_s = debounce_s
        self.stale_after_s = stale_claim_after(self.retry_config) if stale_after_s is None else stale_after_s
        self.instructions = instructions

    # --- scheduling ---

    def enqueue(self, entry_id: str, *, delay_s: Optional[float] = None) -> None:
        if self.queue is None:
            raise RuntimeError("no job queue configured for the dispatcher")
        self.queue.enqueue_analysis(entry_id, delay_s=self.debounce_s if delay_s is None else delay_s)

    def dispatch_ready(self, batch_id: Optional[str] = None) -> List[str]:
        self.release_stale(batch_id)
        ready = self.store.list_ready_for_analysis(batch_id)
        for e in ready:
            self.enqueue(e.id, delay_s=0.0)
        logger.info("Queued %d ready entries (batch=%s)", len(ready), batch_id or "*")
        return [e.id for e in ready]

    def release_stale(self, batch_id: Optional[str] = None, *, entry_id: Optional[str] = None) -> List[str]:
        """Fail entries whose claim outlived any live job so they can be retried."""
        released = self.store.release_stale(self.stale_after_s, entry_id=entry_id, batch_id=batch_id)
        for e in released:
            self._notify(e.id, DispatchStatus.FAILED, {"error": e.error_message})
        return [e.id for e in released]

    # --- job body ---

    def build_request(self, entry: EntrySnapshot) -> AnalysisRequest:
        refs: List[ImageRef] = []
        for img in sorted(entry.images, key=lambda i: i.upload_order):
            try:
                refs.append(self.images.resolve_reference(img.storage_key, content_type=img.content_type))
            except (StorageError, OSError) as e:
                raise ImageUnavailableError(img.storage_key, str(e)) from e
        return AnalysisRequest(instructions=self.instructions, images=tuple(refs))

    def dispatch(self, entry_id: str) -> DispatchOutcome:
        try:
            entry = self.store.mark_processing(entry_id)
        except NotReadyForAnalysis as e:
            # A redelivered job finds its entry still claimed by a dead worker.
            if self.release_stale(entry_id=entry_id):
                return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.FAILED, message=INTERRUPTED_MESSAGE)
            logger.info("Dispatch skipped for entry %s: %s", entry_id, e)
            return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.SKIPPED, message=str(e))
        except NotFoundError as e:
            logger.info("Dispatch skipped for entry %s: %s", entry_id, e)
            return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.SKIPPED, message=str(e))

        logger.info("Analyzing entry %s with %d image(s)", entry_id, len(entry.images))

        try:
            request = self.build_request(entry)
            raw = self.retry.execute(
                lambda timeout_s: self.analyzer.analyze(request, timeout_s=timeout_s),
                self.retry_config,
            )
        except PermanentRemoteError as e:
            logger.error("Analysis call for entry %s failed: %s", entry_id, e)
            return self._fail(entry_id, failure_message(e))
        except Exception as e:
            # Anything unexpected must still release the entry from `processing`.
            logger.exception("Unexpected error analyzing entry %s", entry_id)
            return self._fail(entry_id, failure_message(e))

        result = sanitize_analysis(raw)
        if not result.ok:
            logger.warning("Entry %s: AI result unusable (%s): %s", entry_id, result.status.value, result.reason)
            return self._fail(entry_id, result.reason or "Analysis failed")

        return self._succeed(entry_id, dict(result.attributes))

    # --- outcome recording ---

    def _succeed(self, entry_id: str, attributes: Dict[str, Any]) -> DispatchOutcome:
        try:
            self.store.apply_analysis_success(entry_id, attributes)
        except (NotFoundError, InvalidTransition) as e:
            logger.warning("Dropping analysis result for entry %s: %s", entry_id, e)
            return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.DROPPED, message=str(e))

        logger.info("Entry %s analysis complete (%d fields)", entry_id, len(attributes))
        self._notify(entry_id, DispatchStatus.COMPLETE, attributes)
        return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.COMPLETE, attributes=attributes)

    def _fail(self, entry_id: str, message: str) -> DispatchOutcome:
        try:
            self.store.apply_analysis_failure(entry_id, message)
        except (NotFoundError, InvalidTransition) as e:
            logger.warning("Dropping analysis failure for entry %s: %s", entry_id, e)
            return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.DROPPED, message=str(e))

        self._notify(entry_id, DispatchStatus.FAILED, {"error": message})
        return DispatchOutcome(entry_id=entry_id, status=DispatchStatus.FAILED, message=message)

    def _notify(self, entry_id: str, status: str, payload: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(
                BATCH_TOPIC,
                {"type": "analysis_update", "entry_id": entry_id, "status": status, "payload": payload},
            )
        except Exception as e:
            logger.warning("Notification for entry %s dropped: %s", entry_id, e)
