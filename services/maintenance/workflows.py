"""
Temporal Workflows — scheduled merchant maintenance.

`WebhookRetryWorkflow` runs every 15 minutes and `RetentionSweepWorkflow`
once a day; both are started on a cron schedule by the worker's `schedule`
command.
"""

from __future__ import annotations

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from services.maintenance.activities import (
        cleanup_old_sessions,
        cleanup_old_webhooks,
        retry_failed_webhooks,
        rotate_logs,
    )


ACTIVITY_RETRY = RetryPolicy(maximum_attempts=3)


@workflow.defn
class WebhookRetryWorkflow:
    """Redeliver failed and abandoned webhook events."""

    @workflow.run
    async def run(self) -> dict:
        summary: dict = await workflow.execute_activity(
            retry_failed_webhooks,
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=ACTIVITY_RETRY,
        )
        workflow.logger.info(
            f"Webhook retry: selected={summary.get('selected')} "
            f"sent={summary.get('sent')} failed={summary.get('failed')}"
        )
        return summary


@workflow.defn
class RetentionSweepWorkflow:
    """
    Daily cleanup.

    Steps:
    1. Delete checkout sessions past their retention window
    2. Delete webhook events past their retention window
    3. Rotate the log file if it has grown too large
    """

    @workflow.run
    async def run(self) -> str:
        sessions_deleted: int = await workflow.execute_activity(
            cleanup_old_sessions,
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=ACTIVITY_RETRY,
        )
        webhooks_deleted: int = await workflow.execute_activity(
            cleanup_old_webhooks,
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=ACTIVITY_RETRY,
        )
        rotated = await workflow.execute_activity(
            rotate_logs,
            start_to_close_timeout=timedelta(minutes=1),
            retry_policy=ACTIVITY_RETRY,
        )

        summary = (
            "Retention sweep complete: "
            f"sessions_deleted={sessions_deleted} "
            f"webhooks_deleted={webhooks_deleted} "
            f"rotated_log={rotated or '-'}"
        )
        workflow.logger.info(summary)
        return summary
