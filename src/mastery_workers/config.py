import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class QueueNames:
    embeddings_pending: str = "embeddings-pending"
    signals_urgent: str = "signals-urgent"
    signals_window: str = "signals-window"
    signals_batch: str = "signals-batch"

    def all(self) -> tuple[str, ...]:
        return (
            self.embeddings_pending,
            self.signals_urgent,
            self.signals_window,
            self.signals_batch,
        )

    @classmethod
    def from_env(cls) -> "QueueNames":
        defaults = cls()
        return cls(
            embeddings_pending=os.environ.get(
                "MASTERY_QUEUE_EMBEDDINGS_PENDING", defaults.embeddings_pending
            ),
            signals_urgent=os.environ.get("MASTERY_QUEUE_SIGNALS_URGENT", defaults.signals_urgent),
            signals_window=os.environ.get("MASTERY_QUEUE_SIGNALS_WINDOW", defaults.signals_window),
            signals_batch=os.environ.get("MASTERY_QUEUE_SIGNALS_BATCH", defaults.signals_batch),
        )


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str = ""
    queues: QueueNames = field(default_factory=QueueNames)
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    queue_concurrency: int = 4
    max_deliveries: int = 5
    claim_timeout_seconds: int = 300
    bucket_minutes: int = 5
    scheduler_replay_buckets: int = 1
    scheduler_error_cooldown_seconds: float = 30.0
    dlq_check_interval_seconds: float = 900.0
    dlq_initial_delay_seconds: float = 30.0
    dlq_warning_threshold: int = 50
    dlq_critical_threshold: int = 100
    outbox_poll_interval_seconds: float = 2.0
    outbox_batch_size: int = 100
    outbox_max_retries: int = 5
    tier2_pipeline_url: str | None = None
    tier2_timeout_seconds: float = 60.0
    health_port: int = 8081
    log_format: str = "json"

    def __post_init__(self) -> None:
        if not self.listen_database_url:
            object.__setattr__(self, "listen_database_url", self.database_url)
        if 60 % self.bucket_minutes != 0:
            raise ValueError("bucket_minutes must divide an hour evenly")
        if self.dlq_critical_threshold < self.dlq_warning_threshold:
            raise ValueError("dlq_critical_threshold must be >= dlq_warning_threshold")

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get("MASTERY_WORKER_LISTEN_DATABASE_URL", database_url),
            queues=QueueNames.from_env(),
            poll_interval_seconds=_env_float("MASTERY_POLL_INTERVAL", 5.0, minimum=0.1),
            batch_size=_env_int("MASTERY_BATCH_SIZE", 10),
            queue_concurrency=_env_int("MASTERY_QUEUE_CONCURRENCY", 4),
            max_deliveries=_env_int("MASTERY_MAX_DELIVERIES", 5),
            claim_timeout_seconds=_env_int("MASTERY_CLAIM_TIMEOUT_SECONDS", 300, minimum=10),
            bucket_minutes=_env_int("MASTERY_SCHEDULER_BUCKET_MINUTES", 5),
            scheduler_replay_buckets=_env_int("MASTERY_SCHEDULER_REPLAY_BUCKETS", 1, minimum=0),
            scheduler_error_cooldown_seconds=_env_float("MASTERY_SCHEDULER_ERROR_COOLDOWN", 30.0),
            dlq_check_interval_seconds=_env_float("MASTERY_DLQ_CHECK_INTERVAL", 900.0, minimum=1.0),
            dlq_initial_delay_seconds=_env_float("MASTERY_DLQ_INITIAL_DELAY", 30.0),
            dlq_warning_threshold=_env_int("MASTERY_DLQ_WARNING_THRESHOLD", 50),
            dlq_critical_threshold=_env_int("MASTERY_DLQ_CRITICAL_THRESHOLD", 100),
            outbox_poll_interval_seconds=_env_float("MASTERY_OUTBOX_POLL_INTERVAL", 2.0, minimum=0.1),
            outbox_batch_size=_env_int("MASTERY_OUTBOX_BATCH_SIZE", 100),
            outbox_max_retries=_env_int("MASTERY_OUTBOX_MAX_RETRIES", 5),
            tier2_pipeline_url=os.environ.get("MASTERY_TIER2_PIPELINE_URL") or None,
            tier2_timeout_seconds=_env_float("MASTERY_TIER2_TIMEOUT", 60.0, minimum=1.0),
            health_port=_env_int("MASTERY_HEALTH_PORT", 8081),
            log_format=os.environ.get("MASTERY_LOG_FORMAT", "json"),
        )
