"""Queue definitions: concurrency, throughput limit and retry policy per queue."""

from dataclasses import dataclass
from typing import Optional

ENTITY_SYNC = "entity-sync"
INSIGHTS_SYNC = "insights-sync"
RECOMMENDATIONS = "recommendations"


@dataclass(frozen=True)
class QueueConfig:
    name: str
    concurrency: int
    max_attempts: int
    backoff_seconds: float
    # at most limit_jobs started per limit_period_seconds; None means unlimited
    limit_jobs: Optional[int] = None
    limit_period_seconds: float = 60.0

    def backoff(self, attempts: int) -> float:
        """Exponential delay before retry number `attempts`."""
        return self.backoff_seconds * (2 ** max(attempts - 1, 0))


QUEUES: dict[str, QueueConfig] = {
    ENTITY_SYNC: QueueConfig(ENTITY_SYNC, concurrency=2, max_attempts=3, backoff_seconds=2, limit_jobs=10),
    INSIGHTS_SYNC: QueueConfig(INSIGHTS_SYNC, concurrency=3, max_attempts=5, backoff_seconds=5, limit_jobs=20),
    RECOMMENDATIONS: QueueConfig(RECOMMENDATIONS, concurrency=5, max_attempts=3, backoff_seconds=1),
}


def get_queue(name: str) -> QueueConfig:
    try:
        return QUEUES[name]
    except KeyError:
        raise ValueError(f"Unknown queue: {name}") from None
