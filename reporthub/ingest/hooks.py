"""Post-ingest side effects: failure notification and metrics aggregation.

Hooks run after the run is committed. Each hook logs and swallows its own
errors; a stored run is never reported as a failed upload because a
webhook endpoint or the metrics query misbehaved.
"""

from typing import Optional

import structlog

from ..db.metrics import PostgresMetricsAggregator
from ..db.postgres_store import PostgresRunStore
from ..models.report_models import ProcessedUpload, RunFailureSummary
from ..notifications.webhooks import WebhookNotifier

logger = structlog.get_logger()


def build_run_failure_summary(
    processed: ProcessedUpload,
    run_id: str,
    project_name: str,
    app_url: str,
) -> RunFailureSummary:
    return RunFailureSummary(
        projectName=project_name,
        environment=processed.environment,
        branch=processed.branch,
        commit=processed.commit,
        totalTests=processed.stats.total,
        failedTests=processed.stats.failed,
        flakyTests=processed.stats.flaky,
        passRate=processed.stats.pass_rate,
        runUrl=f"{app_url}/runs/{run_id}",
        timestamp=processed.timestamp.isoformat(),
    )


async def notify_on_failure(
    store: PostgresRunStore,
    notifier: Optional[WebhookNotifier],
    processed: ProcessedUpload,
    run_id: str,
    project_id: str,
    app_url: str,
) -> bool:
    """Send failure webhooks when the run has failures. Returns True if sent."""
    if notifier is None or processed.stats.failed <= 0 or processed.stats.total <= 0:
        return False
    try:
        project = await store.get_project_with_organization(project_id)
        if project is None:
            logger.warning("Project not found for failure notification", project_id=project_id)
            return False
        summary = build_run_failure_summary(
            processed,
            run_id,
            project.get("display_name") or project["name"],
            app_url,
        )
        await notifier.notify_run_failure(summary, project["id"], project.get("organization_id"))
        return True
    except Exception as e:
        logger.error("Failed to send run failure notification", run_id=run_id, error=str(e))
        return False


async def aggregate_metrics(
    aggregator: Optional[PostgresMetricsAggregator], processed: ProcessedUpload
) -> bool:
    if aggregator is None:
        return False
    day = processed.timestamp.date().isoformat()
    try:
        await aggregator.aggregate(day)
        return True
    except Exception as e:
        logger.error("Failed to aggregate metrics", date=day, error=str(e))
        return False


async def run_post_ingest_hooks(
    store: PostgresRunStore,
    notifier: Optional[WebhookNotifier],
    aggregator: Optional[PostgresMetricsAggregator],
    processed: ProcessedUpload,
    run_id: str,
    project_id: str,
    app_url: str,
) -> None:
    await notify_on_failure(store, notifier, processed, run_id, project_id, app_url)
    await aggregate_metrics(aggregator, processed)
