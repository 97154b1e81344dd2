"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from app.packages.drive.db import session as db_session
from app.packages.drive.models import Base  # noqa: F401 - registers every table on the metadata

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create the ``file_items`` and ``storage_quota`` tables if they do not exist."""
    Base.metadata.create_all(bind=db_session.engine)
    logger.info("Database schema ready: %s", ", ".join(sorted(Base.metadata.tables)))
