"""LanceDB connection and table helpers."""

from __future__ import annotations

import threading
from pathlib import Path

import lancedb
from lancedb.pydantic import LanceModel

from logging_config import get_logger

logger = get_logger(__name__)

_lock = threading.RLock()


def connect(db_path: Path) -> lancedb.DBConnection:
    """Open (creating the parent directory if needed) a LanceDB database."""
    with _lock:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return lancedb.connect(str(db_path))


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        names = db.list_tables()
    except AttributeError:
        names = db.table_names()
    # Newer lancedb returns a paginated response object
    return list(getattr(names, "tables", names))


def open_or_create_table(
    db: lancedb.DBConnection, name: str, schema: type[LanceModel]
) -> lancedb.table.Table:
    """Open `name`, creating it from `schema` when it does not exist yet."""
    with _lock:
        if name in _table_names(db):
            return db.open_table(name)
        logger.info("Creating table %s", name)
        return db.create_table(name, schema=schema)


def recreate_table(
    db: lancedb.DBConnection, name: str, schema: type[LanceModel]
) -> lancedb.table.Table:
    """Drop and recreate `name` with `schema`."""
    with _lock:
        if name in _table_names(db):
            db.drop_table(name)
        return db.create_table(name, schema=schema)


def vector_dimension(table: lancedb.table.Table, column: str = "vector") -> int | None:
    """Fixed width of a vector column, or None if it has no fixed width."""
    field_type = table.schema.field(column).type
    return getattr(field_type, "list_size", None)
