"""
Periodic maintenance jobs.

Nothing here schedules itself; `services/maintenance` drives these from
Temporal workflows, and `MaintenanceRunner.run_all()` is handy from a shell.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from acp_merchant.config import Settings
from acp_merchant.database import utcnow
from acp_merchant.logging_config import rotate_logs
from acp_merchant.store import SessionStore, WebhookStore
from acp_merchant.webhooks import WebhookDispatcher


logger = logging.getLogger(__name__)


class MaintenanceRunner:
    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        webhooks: WebhookStore,
        dispatcher: WebhookDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.sessions = sessions
        self.webhooks = webhooks
        self.dispatcher = dispatcher
        self._clock = clock

    async def retry_failed_webhooks(self) -> dict:
        summary = await self.dispatcher.retry_failed(self.settings.webhook_retry_batch_size)
        return summary.as_dict()

    async def cleanup_old_sessions(self) -> int:
        cutoff = self._clock() - timedelta(days=self.settings.session_retention_days)
        deleted = await self.sessions.delete_older_than(cutoff)
        logger.info("Deleted %d checkout sessions created before %s", deleted, cutoff.isoformat())
        return deleted

    async def cleanup_old_webhooks(self) -> int:
        cutoff = self._clock() - timedelta(days=self.settings.webhook_retention_days)
        deleted = await self.webhooks.delete_older_than(cutoff)
        logger.info("Deleted %d webhook events created before %s", deleted, cutoff.isoformat())
        return deleted

    def rotate_logs(self) -> Optional[str]:
        if not self.settings.log_file:
            return None
        return rotate_logs(self.settings.log_file)

    async def run_all(self) -> dict:
        return {
            "webhooks": await self.retry_failed_webhooks(),
            "sessions_deleted": await self.cleanup_old_sessions(),
            "webhooks_deleted": await self.cleanup_old_webhooks(),
            "rotated_log": self.rotate_logs(),
        }
