from __future__ import annotations

import logging

from backupvault.core.config import get_settings


def configure_logging(level: str | None = None) -> None:
    # Keep module loggers on one stderr handler with key=value friendly formatting.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
