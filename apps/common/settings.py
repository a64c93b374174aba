# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from services.extraction.retry import RetryConfig

JOB_QUEUES = ("celery", "threads")


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


def _pick(cfg: Dict[str, Any], key: str, env_key: str, default: Any) -> Any:
    v = _env(env_key)
    if v is not None:
        return v
    v = cfg.get(key)
    return default if v is None or v == "" else v


def _number(raw: Any, *, name: str, cast: Callable[[Any], Any], minimum: float, strict: bool = False):
    try:
        value = cast(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e
    if value < minimum or (strict and value == minimum):
        op = ">" if strict else ">="
        raise ValueError(f"Invalid value for {name}: {raw!r} (must be {op} {minimum})")
    return value


@dataclass(frozen=True)
class AppSettings:
    database_url: str
    storage_root: Path
    public_base_url: Optional[str]
    redis_url: str
    openai_api_key: Optional[str]
    openai_model: str
    openai_base_url: str
    max_retries: int
    base_delay_s: float
    max_delay_s: float
    attempt_timeout_s: float
    jitter_s: float
    analysis_debounce_s: float
    worker_concurrency: int
    job_queue: str
    log_level: str
    api_url: str

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_s=self.base_delay_s,
            max_delay_s=self.max_delay_s,
            per_attempt_timeout_s=self.attempt_timeout_s,
            jitter_s=self.jitter_s,
        )


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) MEDPACK_CONFIG_PATH env var
      3) config/app.yaml
    Individual fields can be overridden via env vars:
      - MEDPACK_DATABASE_URL, MEDPACK_STORAGE_ROOT, MEDPACK_PUBLIC_BASE_URL, REDIS_URL
      - OPENAI_API_KEY, MEDPACK_OPENAI_MODEL, MEDPACK_OPENAI_BASE_URL
      - MEDPACK_MAX_RETRIES, MEDPACK_BASE_DELAY_S, MEDPACK_MAX_DELAY_S,
        MEDPACK_ATTEMPT_TIMEOUT_S, MEDPACK_JITTER_S
      - MEDPACK_ANALYSIS_DEBOUNCE_S, MEDPACK_WORKER_CONCURRENCY,
        MEDPACK_JOB_QUEUE (celery|threads), MEDPACK_LOG_LEVEL, MEDPACK_API_URL
    Every field has a default; only malformed values are errors.
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("MEDPACK_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)
    retry_cfg = cfg.get("retry") or {}
    openai_cfg = cfg.get("openai") or {}

    job_queue = str(_pick(cfg, "job_queue", "MEDPACK_JOB_QUEUE", "celery")).lower()
    if job_queue not in JOB_QUEUES:
        raise ValueError(
            f"Invalid value for job_queue / MEDPACK_JOB_QUEUE: {job_queue!r} "
            f"(expected one of {', '.join(JOB_QUEUES)}). Config file used: {cfg_path}"
        )

    public_base_url = _pick(cfg, "public_base_url", "MEDPACK_PUBLIC_BASE_URL", None)

    return AppSettings(
        database_url=str(_pick(cfg, "database_url", "MEDPACK_DATABASE_URL", "sqlite:///data/medpack.db")),
        storage_root=_as_path(str(_pick(cfg, "storage_root", "MEDPACK_STORAGE_ROOT", "data/images"))),
        public_base_url=str(public_base_url) if public_base_url else None,
        redis_url=str(_pick(cfg, "redis_url", "REDIS_URL", "redis://127.0.0.1:6379/0")),
        openai_api_key=_env("OPENAI_API_KEY") or openai_cfg.get("api_key") or None,
        openai_model=str(_pick(openai_cfg, "model", "MEDPACK_OPENAI_MODEL", "gpt-4o")),
        openai_base_url=str(
            _pick(openai_cfg, "base_url", "MEDPACK_OPENAI_BASE_URL", "https://api.openai.com/v1")
        ),
        max_retries=_number(
            _pick(retry_cfg, "max_retries", "MEDPACK_MAX_RETRIES", 3),
            name="retry.max_retries / MEDPACK_MAX_RETRIES", cast=int, minimum=0,
        ),
        base_delay_s=_number(
            _pick(retry_cfg, "base_delay_s", "MEDPACK_BASE_DELAY_S", 1.0),
            name="retry.base_delay_s / MEDPACK_BASE_DELAY_S", cast=float, minimum=0,
        ),
        max_delay_s=_number(
            _pick(retry_cfg, "max_delay_s", "MEDPACK_MAX_DELAY_S", 10.0),
            name="retry.max_delay_s / MEDPACK_MAX_DELAY_S", cast=float, minimum=0,
        ),
        attempt_timeout_s=_number(
            _pick(retry_cfg, "attempt_timeout_s", "MEDPACK_ATTEMPT_TIMEOUT_S", 60.0),
            name="retry.attempt_timeout_s / MEDPACK_ATTEMPT_TIMEOUT_S", cast=float, minimum=0, strict=True,
        ),
        jitter_s=_number(
            _pick(retry_cfg, "jitter_s", "MEDPACK_JITTER_S", 1.0),
            name="retry.jitter_s / MEDPACK_JITTER_S", cast=float, minimum=0,
        ),
        analysis_debounce_s=_number(
            _pick(cfg, "analysis_debounce_s", "MEDPACK_ANALYSIS_DEBOUNCE_S", 5.0),
            name="analysis_debounce_s / MEDPACK_ANALYSIS_DEBOUNCE_S", cast=float, minimum=0,
        ),
        worker_concurrency=_number(
            _pick(cfg, "worker_concurrency", "MEDPACK_WORKER_CONCURRENCY", 4),
            name="worker_concurrency / MEDPACK_WORKER_CONCURRENCY", cast=int, minimum=1,
        ),
        job_queue=job_queue,
        log_level=str(_pick(cfg, "log_level", "MEDPACK_LOG_LEVEL", "INFO")).upper(),
        api_url=str(_pick(cfg, "api_url", "MEDPACK_API_URL", "http://127.0.0.1:8000")).rstrip("/"),
    )
