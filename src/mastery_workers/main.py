"""Mastery workers: signal routing, window scheduling and tiered assessment."""

import asyncio
import logging

import httpx

from .assessment import HttpRecommendationOrchestrator, StateDeltaQuickAssessor, TieredAssessmentEngine
from .config import Config
from .dlq_monitor import DlqMonitor
from .handlers import register_handlers
from .health import start_health_server
from .logging import setup_logging
from .outbox import OutboxRelay
from .registry import registered_queues
from .rules import DeterministicRulesEngine
from .window_scheduler import WindowBucketScheduler, postgres_scheduler_scope
from .worker import Worker


def build_engine(
    config: Config, client: httpx.AsyncClient | None = None
) -> TieredAssessmentEngine:
    orchestrator = None
    if config.tier2_pipeline_url and client is not None:
        orchestrator = HttpRecommendationOrchestrator(client, config.tier2_pipeline_url)
    return TieredAssessmentEngine(
        DeterministicRulesEngine(),
        StateDeltaQuickAssessor(),
        orchestrator,
    )


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("Mastery worker starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Health port: %d", config.health_port)
    logger.info("Queues: %s", list(config.queues.all()))
    logger.info("Tier 2 pipeline: %s", config.tier2_pipeline_url or "disabled")

    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    logger = logging.getLogger(__name__)

    async with httpx.AsyncClient(timeout=config.tier2_timeout_seconds) as client:
        register_handlers(config, build_engine(config, client))
        logger.info("Registered queue handlers: %s", registered_queues())

        scheduler = WindowBucketScheduler(
            postgres_scheduler_scope(config),
            bucket_minutes=config.bucket_minutes,
            replay_buckets=config.scheduler_replay_buckets,
            error_cooldown_seconds=config.scheduler_error_cooldown_seconds,
        )
        dlq_monitor = DlqMonitor.from_config(config)
        relay = OutboxRelay.from_config(config)

        health_server = await start_health_server(
            config.health_port, config.database_url, dlq_monitor
        )
        logger.info("Health server started")

        try:
            worker = Worker(config, background=[scheduler.run, relay.run, dlq_monitor.run])
            await worker.run()
        finally:
            health_server.close()
            await health_server.wait_closed()


if __name__ == "__main__":
    main()
