"""Daily flakiness metrics aggregation.

After each upload the pipeline recomputes one day's per-test counters from
the raw ``tests`` rows. The work is a single ``INSERT ... SELECT ... ON
CONFLICT`` statement so concurrent uploads for the same day converge on
the same numbers instead of incrementing stale counters.
"""

from datetime import date
from typing import Union

import structlog

from .postgres_store import PostgresRunStore

logger = structlog.get_logger()

AGGREGATE_DAY_SQL = """
INSERT INTO test_flakiness_metrics (
    suite_test_id, date, total_runs, flaky_runs, failed_runs, passed_runs,
    flake_rate, avg_duration, updated_at
)
SELECT
    t.suite_test_id,
    $1::date,
    COUNT(*),
    COUNT(*) FILTER (WHERE t.status = 'flaky'),
    COUNT(*) FILTER (WHERE t.status IN ('failed', 'timedOut')),
    COUNT(*) FILTER (WHERE t.status = 'passed'),
    ROUND(COUNT(*) FILTER (WHERE t.status = 'flaky') * 100.0 / COUNT(*), 2),
    ROUND(AVG(t.duration))::int,
    NOW()
FROM tests t
JOIN test_runs r ON r.id = t.test_run_id
WHERE t.suite_test_id IS NOT NULL
  AND t.status <> 'skipped'
  AND r.timestamp >= $1::date
  AND r.timestamp < $1::date + INTERVAL '1 day'
GROUP BY t.suite_test_id
ON CONFLICT (suite_test_id, date) DO UPDATE SET
    total_runs = EXCLUDED.total_runs,
    flaky_runs = EXCLUDED.flaky_runs,
    failed_runs = EXCLUDED.failed_runs,
    passed_runs = EXCLUDED.passed_runs,
    flake_rate = EXCLUDED.flake_rate,
    avg_duration = EXCLUDED.avg_duration,
    updated_at = NOW()
"""


class PostgresMetricsAggregator:
    """Recompute per-test daily metrics from stored runs."""

    def __init__(self, store: PostgresRunStore):
        self.store = store

    async def aggregate(self, day: Union[str, date]) -> int:
        """Aggregate metrics for one calendar day (UTC).

        Args:
            day: ``YYYY-MM-DD`` string or date

        Returns:
            Number of metric rows written
        """
        target = date.fromisoformat(day) if isinstance(day, str) else day
        async with self.store.pool.acquire() as conn:
            status = await conn.execute(AGGREGATE_DAY_SQL, target)
        # asyncpg returns the command tag, e.g. "INSERT 0 12"
        written = int(status.split()[-1]) if status else 0
        logger.info("Aggregated flakiness metrics", date=target.isoformat(), rows=written)
        return written
