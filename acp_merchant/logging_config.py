"""
Logging setup for the merchant service.

Modules log through `logging.getLogger(__name__)` and attach structured data
as `extra={"context": {...}}`; `ContextFormatter` renders that context as a
JSON suffix. File logging uses `WatchedFileHandler`, so `rotate_logs()` (or
an external logrotate) can move the file out from under a running process.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Optional

from acp_merchant.config import Settings


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_KEEP = 5

logger = logging.getLogger(__name__)


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = getattr(record, "context", None)
        if context:
            message = f"{message} | {json.dumps(context, default=str, sort_keys=True)}"
        return message


def configure_logging(settings: Settings, root: Optional[logging.Logger] = None) -> logging.Logger:
    """Install console (and optional file) handlers on the `acp_merchant` logger."""
    target = root or logging.getLogger("acp_merchant")
    level = logging.DEBUG if settings.enable_debug else getattr(logging, settings.log_level.upper())
    target.setLevel(level)

    for handler in list(target.handlers):
        if getattr(handler, "_acp_managed", False):
            target.removeHandler(handler)
            handler.close()

    formatter = ContextFormatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.WatchedFileHandler(settings.log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._acp_managed = True
        target.addHandler(handler)
    return target


def rotate_logs(
    path: str,
    max_bytes: int = DEFAULT_MAX_BYTES,
    keep: int = DEFAULT_KEEP,
) -> Optional[str]:
    """
    Rename `path` to `<path>.<unix-ts>` once it exceeds `max_bytes`, then
    delete all but the newest `keep` rotated files. Returns the rotated
    file name, or None when nothing was rotated.
    """
    log_path = Path(path)
    if not log_path.exists() or log_path.stat().st_size <= max_bytes:
        return None

    stamp = int(time.time())
    rotated = log_path.with_name(f"{log_path.name}.{stamp}")
    # several rotations in one second: step the suffix so no backup is overwritten
    while rotated.exists():
        stamp += 1
        rotated = log_path.with_name(f"{log_path.name}.{stamp}")
    os.replace(log_path, rotated)
    logger.info("Rotated log file %s -> %s", log_path, rotated.name)

    backups = sorted(
        (p for p in log_path.parent.glob(f"{log_path.name}.*") if p.suffix[1:].isdigit()),
        key=lambda p: int(p.suffix[1:]),
        reverse=True,
    )
    for old in backups[keep:]:
        old.unlink(missing_ok=True)
        logger.debug("Removed old log file %s", old.name)
    return str(rotated)
