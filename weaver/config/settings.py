"""
Fiction Weaver settings.

Settings are plain pydantic models built from environment variables by
``create_settings_from_env``. A ``.env`` file is loaded first when present.
"""

import json
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr

from core.critique import CritiqueOptions
from core.quota import QuotaOptions


class RedisSettings(BaseModel):
    url: str = "redis://localhost:6379"
    stream_maxlen: int = 1000
    poll_timeout: int = 5


class SupabaseSettings(BaseModel):
    url: Optional[str] = None
    service_key: Optional[SecretStr] = None

    @property
    def configured(self) -> bool:
        return bool(self.url and self.service_key)


class LangfuseSettings(BaseModel):
    public_key: Optional[str] = None
    secret_key: Optional[SecretStr] = None
    host: str = "https://cloud.langfuse.com"

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self.secret_key)


class SchedulerOptions(BaseModel):
    """Backlog scheduler tuning."""
    lore_auto_fulfillment_enabled: bool = True
    lore_auto_fulfillment_sla_minutes: float = 30
    backlog_resume_threshold_minutes: float = 60
    backlog_auto_resume_enabled: bool = True


class WeaverSettings(BaseModel):
    environment: str = "development"
    log_level: str = "INFO"
    worker_concurrency: int = 1
    job_max_retries: int = 3
    workflow_log_enabled: bool = True
    redis: RedisSettings = Field(default_factory=RedisSettings)
    supabase: SupabaseSettings = Field(default_factory=SupabaseSettings)
    langfuse: LangfuseSettings = Field(default_factory=LangfuseSettings)
    scheduler: SchedulerOptions = Field(default_factory=SchedulerOptions)
    critique: CritiqueOptions = Field(default_factory=CritiqueOptions)
    quotas: QuotaOptions = Field(default_factory=QuotaOptions)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("true", "1", "yes")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value and value.strip() else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value and value.strip() else default


def create_settings_from_env(load_env_file: bool = True) -> WeaverSettings:
    """Create settings from environment variables."""
    if load_env_file:
        load_dotenv()

    settings = WeaverSettings(
        environment=os.getenv("WEAVER_ENVIRONMENT", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        worker_concurrency=_env_int("WEAVER_WORKER_CONCURRENCY", 1),
        job_max_retries=_env_int("WEAVER_JOB_MAX_RETRIES", 3),
        workflow_log_enabled=_env_bool("WEAVER_WORKFLOW_LOG_ENABLED", True),
    )

    # Redis
    settings.redis = RedisSettings(
        url=os.getenv("REDIS_URL", "redis://localhost:6379"),
        stream_maxlen=_env_int("WEAVER_STREAM_MAXLEN", 1000),
        poll_timeout=_env_int("WEAVER_POLL_TIMEOUT", 5),
    )

    # Supabase
    if os.getenv("SUPABASE_URL"):
        service_key = os.getenv("SUPABASE_SERVICE_KEY")
        settings.supabase = SupabaseSettings(
            url=os.getenv("SUPABASE_URL"),
            service_key=SecretStr(service_key) if service_key else None,
        )

    # Langfuse
    if os.getenv("LANGFUSE_PUBLIC_KEY"):
        secret_key = os.getenv("LANGFUSE_SECRET_KEY")
        settings.langfuse = LangfuseSettings(
            public_key=os.getenv("LANGFUSE_PUBLIC_KEY"),
            secret_key=SecretStr(secret_key) if secret_key else None,
            host=os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com"),
        )

    # Scheduler
    settings.scheduler = SchedulerOptions(
        lore_auto_fulfillment_enabled=_env_bool("WEAVER_LORE_AUTO_FULFILLMENT", True),
        lore_auto_fulfillment_sla_minutes=_env_float("WEAVER_LORE_SLA_MINUTES", 30),
        backlog_resume_threshold_minutes=_env_float("WEAVER_BACKLOG_RESUME_MINUTES", 60),
        backlog_auto_resume_enabled=_env_bool("WEAVER_BACKLOG_AUTO_RESUME", True),
    )

    # Governance
    if os.getenv("WEAVER_CRITIQUE_JSON"):
        settings.critique = CritiqueOptions.model_validate(json.loads(os.environ["WEAVER_CRITIQUE_JSON"]))
    if os.getenv("WEAVER_QUOTAS_JSON"):
        settings.quotas = QuotaOptions.model_validate(json.loads(os.environ["WEAVER_QUOTAS_JSON"]))

    return settings
