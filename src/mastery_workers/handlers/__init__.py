"""Queue handlers.

Handlers depend on deployment settings (queue names, the assessment engine),
so they register at startup through ``register_handlers`` rather than at
import time.
"""

from ..config import Config
from ..pipeline import AssessmentEngine
from .entity_changes import EntityIndexer, register_entity_change_consumer
from .signal_consumers import register_signal_consumers


def register_handlers(
    config: Config,
    engine: AssessmentEngine,
    indexer: EntityIndexer | None = None,
) -> None:
    register_entity_change_consumer(
        config.queues, max_deliveries=config.max_deliveries, indexer=indexer
    )
    register_signal_consumers(config.queues, engine)
