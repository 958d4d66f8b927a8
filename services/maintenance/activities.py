"""
Temporal Activities — merchant maintenance jobs.

Each activity wraps one `MaintenanceRunner` operation so it can be retried
independently. The runner is built once per worker process.
"""

from __future__ import annotations

from typing import Optional

from temporalio import activity

from acp_merchant.app import Container, build_container
from acp_merchant.config import Settings
from acp_merchant.database import create_engine, create_sessionmaker
from acp_merchant.maintenance import MaintenanceRunner
from services.merchant.database import SqlCatalog, SqlOrderFulfillment


_container: Optional[Container] = None
_runner: Optional[MaintenanceRunner] = None


def get_container() -> Container:
    global _container
    if _container is None:
        settings = Settings.from_env()
        engine = create_engine(settings.database_url)
        sessionmaker = create_sessionmaker(engine)
        _container = build_container(
            settings,
            engine=engine,
            sessionmaker=sessionmaker,
            catalog=SqlCatalog(sessionmaker),
            orders=SqlOrderFulfillment(sessionmaker),
        )
    return _container


def get_runner() -> MaintenanceRunner:
    return _runner or get_container().maintenance


def set_runner(runner: Optional[MaintenanceRunner]) -> None:
    global _runner
    _runner = runner


@activity.defn
async def retry_failed_webhooks() -> dict:
    summary = await get_runner().retry_failed_webhooks()
    activity.logger.info(f"Webhook retry sweep: {summary}")
    return summary


@activity.defn
async def cleanup_old_sessions() -> int:
    deleted = await get_runner().cleanup_old_sessions()
    activity.logger.info(f"Deleted {deleted} old checkout sessions")
    return deleted


@activity.defn
async def cleanup_old_webhooks() -> int:
    deleted = await get_runner().cleanup_old_webhooks()
    activity.logger.info(f"Deleted {deleted} old webhook events")
    return deleted


@activity.defn
async def rotate_logs() -> Optional[str]:
    rotated = get_runner().rotate_logs()
    if rotated:
        activity.logger.info(f"Rotated log file to {rotated}")
    return rotated
