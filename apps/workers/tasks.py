from __future__ import annotations

import logging

from apps.workers.celery_app import celery_app
from apps.workers.pipeline_loader import get_dispatcher
from services.batch.jobs import ANALYZE_TASK_NAME

logger = logging.getLogger(__name__)


@celery_app.task(name=ANALYZE_TASK_NAME, bind=True)
def analyze_entry(self, entry_id: str) -> dict:
    # Remote retries happen inside the dispatcher; the task itself is never retried,
    # a re-delivered job just finds the entry already claimed.
    try:
        outcome = get_dispatcher().dispatch(entry_id)
        return {
            "ok": True,
            "entry_id": outcome.entry_id,
            "status": outcome.status,
            "message": outcome.message,
        }
    except Exception as e:
        logger.exception("Analysis task for entry %s failed", entry_id)
        return {"ok": False, "entry_id": entry_id, "error": "job_failed", "detail": str(e)[:300]}
