"""Database helper utilities for ensuring schema consistency."""
from __future__ import annotations

import logging

from sqlalchemy import inspect

from .extensions import db

LOGGER = logging.getLogger(__name__)


def ensure_database_schema() -> None:
    """Create any model tables the database does not have yet.

    Runs on every application start. Column changes to existing tables go
    through Flask-Migrate.
    """

    from . import models  # noqa: F401

    table_names = set(inspect(db.engine).get_table_names())
    missing = [table for table in db.metadata.sorted_tables if table.name not in table_names]
    if not missing:
        return

    LOGGER.info("Creating tables: %s", ", ".join(table.name for table in missing))
    db.metadata.create_all(bind=db.engine, tables=missing)
