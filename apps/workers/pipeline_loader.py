from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from apps.common.settings import AppSettings, load_settings
from services.batch.coordinator import ApprovalCoordinator
from services.batch.database import create_session_factory
from services.batch.dispatcher import AnalysisDispatcher
from services.batch.entry_store import EntryStore
from services.batch.events import EventBus, InMemoryEventBus, RedisEventBus
from services.batch.jobs import CeleryJobQueue, JobQueue, ThreadPoolJobQueue
from services.batch.records import MedicineRepository
from services.extraction.retry import RetryExecutor
from services.extraction.vision_client import OpenAIVisionClient, VisionClientConfig
from services.ingestion.storage import LocalImageStore


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    url = get_settings().database_url
    if url.startswith("sqlite:///") and not url.startswith("sqlite:////"):
        # relative sqlite path: make sure its directory exists
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    return create_session_factory(url)


@lru_cache(maxsize=1)
def get_entry_store() -> EntryStore:
    return EntryStore(get_session_factory())


@lru_cache(maxsize=1)
def get_image_store() -> LocalImageStore:
    s = get_settings()
    return LocalImageStore(str(s.storage_root), public_base_url=s.public_base_url)


@lru_cache(maxsize=1)
def get_records() -> MedicineRepository:
    return MedicineRepository(get_session_factory())


@lru_cache(maxsize=1)
def get_event_bus() -> EventBus:
    s = get_settings()
    if s.job_queue == "threads":
        return InMemoryEventBus()
    return RedisEventBus(s.redis_url)


@lru_cache(maxsize=1)
def get_job_queue() -> JobQueue:
    s = get_settings()
    if s.job_queue == "threads":
        return ThreadPoolJobQueue(lambda entry_id: get_dispatcher().dispatch(entry_id), max_workers=s.worker_concurrency)

    from apps.workers.celery_app import celery_app

    return CeleryJobQueue(celery_app)


@lru_cache(maxsize=1)
def get_dispatcher() -> AnalysisDispatcher:
    s = get_settings()
    analyzer = OpenAIVisionClient(
        VisionClientConfig(
            api_key=s.openai_api_key,
            base_url=s.openai_base_url,
            model=s.openai_model,
        )
    )
    return AnalysisDispatcher(
        store=get_entry_store(),
        images=get_image_store(),
        analyzer=analyzer,
        retry=RetryExecutor(),
        retry_config=s.retry_config(),
        events=get_event_bus(),
        queue=get_job_queue(),
        debounce_s=s.analysis_debounce_s,
    )


@lru_cache(maxsize=1)
def get_coordinator() -> ApprovalCoordinator:
    return ApprovalCoordinator(
        store=get_entry_store(),
        records=get_records(),
        images=get_image_store(),
        events=get_event_bus(),
    )
