"""
Temporal Worker — registers maintenance workflows and activities, then runs.

Usage:
    python -m services.maintenance.worker                 # run the worker
    python -m services.maintenance.worker schedule        # start cron workflows
    python -m services.maintenance.worker trigger webhooks
    python -m services.maintenance.worker trigger retention
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid

from temporalio.client import Client
from temporalio.worker import Worker

from acp_merchant.config import Settings
from acp_merchant.database import init_db
from acp_merchant.logging_config import configure_logging
from services.maintenance.activities import (
    cleanup_old_sessions,
    cleanup_old_webhooks,
    get_container,
    retry_failed_webhooks,
    rotate_logs,
)
from services.maintenance.workflows import RetentionSweepWorkflow, WebhookRetryWorkflow


TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "acp-maintenance")

WORKFLOWS = {
    "webhooks": (WebhookRetryWorkflow, "*/15 * * * *"),
    "retention": (RetentionSweepWorkflow, "0 3 * * *"),
}

logger = logging.getLogger(__name__)


async def run_worker():
    """Start the Temporal worker."""
    configure_logging(Settings.from_env())
    await init_db(get_container().engine)

    client = await Client.connect(TEMPORAL_HOST)
    worker = Worker(
        client,
        task_queue=TASK_QUEUE,
        workflows=[WebhookRetryWorkflow, RetentionSweepWorkflow],
        activities=[retry_failed_webhooks, cleanup_old_sessions, cleanup_old_webhooks, rotate_logs],
    )

    logger.info("Temporal worker started on queue '%s' (%s)", TASK_QUEUE, TEMPORAL_HOST)
    await worker.run()


async def schedule_workflows():
    """Start each maintenance workflow on its cron schedule."""
    client = await Client.connect(TEMPORAL_HOST)
    for name, (workflow_cls, cron) in WORKFLOWS.items():
        await client.start_workflow(
            workflow_cls.run,
            id=f"acp-maintenance-{name}",
            task_queue=TASK_QUEUE,
            cron_schedule=cron,
        )
        print(f"Scheduled {name} ({cron})")


async def trigger(name: str):
    """Run one maintenance workflow now and wait for the result."""
    workflow_cls, _ = WORKFLOWS[name]
    client = await Client.connect(TEMPORAL_HOST)
    result = await client.execute_workflow(
        workflow_cls.run,
        id=f"acp-maintenance-{name}-{uuid.uuid4().hex[:10]}",
        task_queue=TASK_QUEUE,
    )
    print(result)
    return result


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 2 and sys.argv[1] == "trigger" and sys.argv[2] in WORKFLOWS:
        asyncio.run(trigger(sys.argv[2]))
    elif len(sys.argv) > 1 and sys.argv[1] == "schedule":
        asyncio.run(schedule_workflows())
    else:
        asyncio.run(run_worker())
