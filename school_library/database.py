import logging
import os
import sqlite3
from typing import Optional

from school_library.config import settings

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE read at call time (lets tests point at a temp file)
# 2) settings.db_file
DATABASE_FILE = settings.db_file


def resolve_db_file(db_file: Optional[str] = None) -> str:
    return db_file or os.environ.get("LIBRARY_DB_FILE") or DATABASE_FILE


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(resolve_db_file(db_file))
    conn.row_factory = sqlite3.Row
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the key-value table if it does not exist."""
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.commit()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Make sure the database file and its schema exist."""
    path = resolve_db_file(db_file)
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    conn = get_db_connection(path)
    try:
        create_tables(conn)
    finally:
        conn.close()
    logger.debug(f"Database initialized at {path}")
