import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings
from errors import Unavailable

# Make sure .env is loaded before DATABASE_FILE is resolved below.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE from the environment / .env
# 2) settings.database_file
# Tests and callers may override it per instance with db_file=...
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def get_db_connection(db_file: Optional[str] = None, timeout: Optional[float] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    ``timeout`` is the busy timeout in seconds: how long a statement waits on a
    lock held by another writer before failing.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_timeout if timeout is None else timeout,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def db_session(db_file: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
    """Yield a connection and surface storage failures as ``Unavailable``.

    An open transaction is rolled back if the block raises.
    """
    try:
        conn = get_db_connection(db_file, timeout)
    except sqlite3.OperationalError as e:
        logger.error(f"Could not open database {db_file or DATABASE_FILE}: {e}")
        raise Unavailable(f"Storage unavailable: {e}") from e
    try:
        yield conn
    except sqlite3.OperationalError as e:
        if conn.in_transaction:
            conn.rollback()
        logger.error(f"Storage operation failed: {e}")
        raise Unavailable(f"Storage unavailable: {e}") from e
    except BaseException:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the users, books and loans tables if they do not exist."""
    with db_session(db_file) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL,
                year INTEGER
            )
        """)
        # Only Active and Returned are stored; Overdue is derived on read.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                borrowed_on TEXT NOT NULL,
                due_on TEXT NOT NULL,
                returned_on TEXT,
                status TEXT NOT NULL DEFAULT 'Active' CHECK(status IN ('Active', 'Returned')),
                CHECK(returned_on IS NULL OR returned_on >= borrowed_on),
                FOREIGN KEY (user_id) REFERENCES users(id),
                FOREIGN KEY (book_id) REFERENCES books(id)
            )
        """)

        # At most one open loan per book.
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_open_book
            ON loans(book_id) WHERE status = 'Active' AND returned_on IS NULL
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrowed_on ON loans(borrowed_on DESC)")
        conn.commit()


def ping(db_file: Optional[str] = None) -> bool:
    """Return True if the database answers a trivial query."""
    try:
        with db_session(db_file) as conn:
            return conn.execute("SELECT 1 AS ok").fetchone()["ok"] == 1
    except Unavailable:
        return False


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
