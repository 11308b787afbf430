"""
Fiction Weaver Services Module
Persistence, queue, event bus and telemetry integrations.
"""

from .job_client import FictionWeaverJobClient
from .memory_store import InMemoryWeaverRepository
from .realtime_notifier import RealtimeNotifier
from .redis_queue import RedisQueueService, RedisWorker
from .redis_streams import RedisStreamsService
from .repository import WeaverRepository
from .supabase_persistence import SupabaseWeaverRepository
from .tracing import LangfusePlannerTelemetry, TracingService
from .workflow_log import WorkflowEventLogger

__all__ = [
    "FictionWeaverJobClient",
    "InMemoryWeaverRepository",
    "LangfusePlannerTelemetry",
    "RealtimeNotifier",
    "RedisQueueService",
    "RedisStreamsService",
    "RedisWorker",
    "SupabaseWeaverRepository",
    "TracingService",
    "WeaverRepository",
    "WorkflowEventLogger",
]
