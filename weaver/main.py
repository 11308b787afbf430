"""
Fiction Weaver Orchestrator - Main Entry Point
Drains the phase-job queue and runs each job through the phase engine.
"""

import asyncio
import importlib
import logging
import os
import signal
from typing import Any, Callable, Dict, Iterable, Optional

from config import WeaverSettings, create_settings_from_env
from core.backlog_scheduler import BacklogScheduler
from core.errors import ConfigurationError, PlanNotFoundError
from core.phase_engine import PhaseExecutionEngine
from core.planner import CompositePlannerTelemetry, LoggerPlannerTelemetry, PlannerTranscriptStore
from core.quota import QuotaService
from models import JobPayload, PhaseExecutionContext, PhaseKind, merge_metadata
from runners import (
    ContentGenerator,
    ContentPhaseRunner,
    LoreFulfillmentRunner,
    NotImplementedContentGenerator,
    PhaseRunner,
    PhaseRunnerRegistry,
)
from services import (
    FictionWeaverJobClient,
    InMemoryWeaverRepository,
    LangfusePlannerTelemetry,
    RealtimeNotifier,
    RedisQueueService,
    RedisStreamsService,
    RedisWorker,
    SupabaseWeaverRepository,
    TracingService,
    WorkflowEventLogger,
)

logger = logging.getLogger("weaver")

CONTENT_PHASES = (
    PhaseKind.VISION_PLANNER,
    PhaseKind.WORLD_BIBLE_MANAGER,
    PhaseKind.ITERATIVE_PLANNER,
    PhaseKind.CHAPTER_ARCHITECT,
    PhaseKind.SCROLL_REFINER,
    PhaseKind.SCENE_WEAVER,
)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def build_context(job: JobPayload) -> PhaseExecutionContext:
    """Build the execution context for a queued job."""
    metadata = merge_metadata(
        job.metadata,
        {"providerId": job.provider_id, "modelId": job.model_id},
    )
    return PhaseExecutionContext(
        plan_id=job.plan_id,
        agent_id=job.agent_id,
        conversation_id=job.conversation_id,
        branch_slug=job.branch_slug,
        chapter_blueprint_id=job.chapter_blueprint_id,
        chapter_scroll_id=job.chapter_scroll_id,
        chapter_scene_id=job.chapter_scene_id,
        lore_requirement_id=job.lore_requirement_id,
        iteration_index=job.iteration_index,
        metadata=metadata,
        invoked_by_job_id=job.job_id,
    )


class FictionWeaverJobs:
    """Queue job handler: one job runs one phase."""

    def __init__(self, engine: PhaseExecutionEngine):
        self.engine = engine

    async def run_job(self, job: JobPayload) -> Dict[str, Any]:
        logger.info(f"Processing job {job.job_id} - Phase: {job.phase.value} - Plan: {job.plan_id}")
        result = await self.engine.execute_phase(job.phase, build_context(job))
        return {
            "phase": result.phase.value,
            "status": result.status.value,
            "summary": result.summary,
            "exception": result.exception,
        }


def load_content_generator(path: Optional[str]) -> ContentGenerator:
    """
    Load a content generator from a ``module:factory`` path.

    Without a path every content phase reports not-implemented.
    """
    if not path:
        return NotImplementedContentGenerator()
    module_name, _, attribute = path.partition(":")
    if not attribute:
        raise ConfigurationError(f"Content generator path must look like 'module:factory', got '{path}'")
    factory = getattr(importlib.import_module(module_name), attribute)
    generator = factory()
    if not isinstance(generator, ContentGenerator):
        raise ConfigurationError(f"{path} did not produce a ContentGenerator")
    return generator


RunnerFactory = Callable[["FictionWeaverOrchestrator"], Iterable[PhaseRunner]]


class FictionWeaverOrchestrator:
    """
    Wires settings, services, engine and worker together.

    ``runner_factory`` is called once the repository exists; the runners
    it returns replace the content runners for their phases. Planner
    runners built there should take their collaborators from
    ``planner_dependencies()``.
    """

    def __init__(
        self,
        settings: WeaverSettings,
        content_generator: Optional[ContentGenerator] = None,
        runner_factory: Optional[RunnerFactory] = None,
    ):
        self.settings = settings
        self.content_generator = content_generator
        self.runner_factory = runner_factory
        self.queue: Optional[RedisQueueService] = None
        self.streams: Optional[RedisStreamsService] = None
        self.notifier: Optional[RealtimeNotifier] = None
        self.repository = None
        self.engine: Optional[PhaseExecutionEngine] = None
        self.worker: Optional[RedisWorker] = None
        self.tracing = TracingService()
        self.planner_telemetry = CompositePlannerTelemetry(
            LoggerPlannerTelemetry(),
            LangfusePlannerTelemetry(self.tracing),
        )

    def planner_dependencies(self) -> Dict[str, Any]:
        """Keyword arguments for ``PlannerBase`` subclasses."""
        return {
            "telemetry": self.planner_telemetry,
            "transcript_store": PlannerTranscriptStore(self.repository),
            "critique_options": self.settings.critique,
            "quota_service": QuotaService(self.settings.quotas),
        }

    def build_runners(self, workflow_log: WorkflowEventLogger) -> PhaseRunnerRegistry:
        generator = self.content_generator or load_content_generator(os.getenv("WEAVER_CONTENT_GENERATOR"))
        runners: Dict[PhaseKind, PhaseRunner] = {
            phase: ContentPhaseRunner(phase, generator) for phase in CONTENT_PHASES
        }
        runners[PhaseKind.LORE_FULFILLMENT] = LoreFulfillmentRunner(self.repository, workflow_log)
        if self.runner_factory is not None:
            for runner in self.runner_factory(self):
                runners[runner.phase] = runner
                logger.info(f"Registered {type(runner).__name__} for {runner.phase.value}")
        registry = PhaseRunnerRegistry(runners.values())
        registry.require(list(PhaseKind))
        return registry

    async def initialize(self) -> None:
        """Initialize all services and the phase engine."""
        if self.settings.langfuse.configured:
            self.tracing.initialize(
                public_key=self.settings.langfuse.public_key,
                secret_key=self.settings.langfuse.secret_key.get_secret_value(),
                host=self.settings.langfuse.host,
            )

        redis_url = self.settings.redis.url
        self.queue = RedisQueueService(redis_url)
        await self.queue.connect()
        self.streams = RedisStreamsService(redis_url, maxlen=self.settings.redis.stream_maxlen)
        await self.streams.connect()
        self.notifier = RealtimeNotifier(redis_url)
        await self.notifier.connect()
        logger.info(f"Connected to Redis at {redis_url}")

        if self.settings.supabase.configured:
            repository = SupabaseWeaverRepository(
                self.settings.supabase.url,
                self.settings.supabase.service_key.get_secret_value(),
            )
            if not await repository.connect():
                raise ConfigurationError("Could not connect to Supabase")
            self.repository = repository
            logger.info("Using Supabase persistence")
        else:
            self.repository = InMemoryWeaverRepository()
            logger.warning("Supabase not configured, using in-memory persistence")

        workflow_log = WorkflowEventLogger(self.repository, enabled=self.settings.workflow_log_enabled)
        job_client = FictionWeaverJobClient(self.queue, max_retries=self.settings.job_max_retries)
        scheduler = BacklogScheduler(self.repository, job_client, workflow_log, self.settings.scheduler)

        self.engine = PhaseExecutionEngine(
            self.repository,
            self.build_runners(workflow_log),
            scheduler=scheduler,
            event_bus=self.streams,
            notifier=self.notifier,
            workflow_log=workflow_log,
        )

    async def run(self) -> None:
        """Run the queue worker until shutdown."""
        logger.info(f"Starting Fiction Weaver worker ({self.settings.environment})")
        jobs = FictionWeaverJobs(self.engine)
        self.worker = RedisWorker(
            self.queue,
            jobs.run_job,
            poll_timeout=self.settings.redis.poll_timeout,
            non_retryable=(PlanNotFoundError, ConfigurationError),
            concurrency=self.settings.worker_concurrency,
        )
        await self.worker.start()

    async def shutdown(self) -> None:
        """Gracefully shutdown the orchestrator."""
        logger.info("Shutting down Fiction Weaver worker...")
        if self.worker:
            self.worker.stop()
        for service in (self.queue, self.streams, self.notifier):
            if service:
                await service.disconnect()
        self.tracing.shutdown()


async def main():
    """Main entry point."""
    settings = create_settings_from_env()
    configure_logging(settings.log_level)

    orchestrator = FictionWeaverOrchestrator(settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(orchestrator.shutdown()),
        )

    try:
        await orchestrator.initialize()
        await orchestrator.run()
    except KeyboardInterrupt:
        await orchestrator.shutdown()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
