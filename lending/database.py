import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from lending.config import settings

logger = logging.getLogger(__name__)

# Default database file. Callers (and tests) pass an explicit path to override it.
DATABASE_FILE = settings.database_file

# Column default matching to_db_timestamp(): SQLite only keeps milliseconds,
# padded to six fractional digits so every stored timestamp has the same width
# and text comparisons order correctly.
_NOW_SQL = "(strftime('%Y-%m-%dT%H:%M:%f', 'now') || '000+00:00')"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as fixed-width UTC ISO-8601 text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    # CURRENT_TIMESTAMP style values carry no offset; they are UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with foreign keys enforced."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_busy_timeout,
        check_same_thread=False,
        isolation_level=None,  # explicit BEGIN/COMMIT only
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the lending tables, constraints, triggers and indexes if missing."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while one writer holds the lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript(f"""
            BEGIN;

            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL UNIQUE,
                full_name TEXT,
                phone TEXT,
                role TEXT NOT NULL DEFAULT 'member'
                    CHECK (role IN ('member', 'staff', 'admin')),
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'inactive', 'suspended')),
                registration_date TEXT NOT NULL DEFAULT {_NOW_SQL},
                created_at TEXT NOT NULL DEFAULT {_NOW_SQL},
                updated_at TEXT NOT NULL DEFAULT {_NOW_SQL}
            );

            CREATE TABLE IF NOT EXISTS books (
                book_id INTEGER PRIMARY KEY AUTOINCREMENT,
                isbn TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                publication_year INTEGER
                    CHECK (publication_year IS NULL OR publication_year BETWEEN 1000 AND 2100),
                language TEXT,
                location TEXT,
                total_copies INTEGER NOT NULL CHECK (total_copies >= 0),
                available_copies INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK (status IN ('available', 'unavailable', 'maintenance')),
                created_at TEXT NOT NULL DEFAULT {_NOW_SQL},
                updated_at TEXT NOT NULL DEFAULT {_NOW_SQL},
                CONSTRAINT check_available_copies
                    CHECK (available_copies >= 0 AND available_copies <= total_copies)
            );

            CREATE TABLE IF NOT EXISTS borrowings (
                borrowing_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
                book_id INTEGER NOT NULL REFERENCES books(book_id) ON DELETE CASCADE,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed'
                    CHECK (status IN ('borrowed', 'returned', 'overdue')),
                fine_amount TEXT NOT NULL DEFAULT '0.00'
                    CHECK (CAST(fine_amount AS REAL) >= 0),
                fine_paid INTEGER NOT NULL DEFAULT 0 CHECK (fine_paid IN (0, 1)),
                notes TEXT,
                created_at TEXT NOT NULL DEFAULT {_NOW_SQL},
                updated_at TEXT NOT NULL DEFAULT {_NOW_SQL},
                CONSTRAINT check_due_after_borrow CHECK (due_date > borrow_date),
                CONSTRAINT check_return_after_borrow
                    CHECK (return_date IS NULL OR return_date > borrow_date)
            );

            -- A book with an outstanding loan cannot leave the catalog
            CREATE TRIGGER IF NOT EXISTS trg_books_restrict_delete
            BEFORE DELETE ON books
            WHEN EXISTS (
                SELECT 1 FROM borrowings
                WHERE book_id = OLD.book_id AND status IN ('borrowed', 'overdue')
            )
            BEGIN
                SELECT RAISE(ABORT, 'book has active borrowings');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_users_updated_at
            AFTER UPDATE ON users
            BEGIN
                UPDATE users SET updated_at = {_NOW_SQL} WHERE user_id = NEW.user_id;
            END;

            CREATE TRIGGER IF NOT EXISTS trg_books_updated_at
            AFTER UPDATE ON books
            BEGIN
                UPDATE books SET updated_at = {_NOW_SQL} WHERE book_id = NEW.book_id;
            END;

            CREATE TRIGGER IF NOT EXISTS trg_borrowings_updated_at
            AFTER UPDATE ON borrowings
            BEGIN
                UPDATE borrowings SET updated_at = {_NOW_SQL}
                WHERE borrowing_id = NEW.borrowing_id;
            END;

            CREATE INDEX IF NOT EXISTS idx_borrowings_user_status ON borrowings(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_borrowings_book_status ON borrowings(book_id, status);
            CREATE INDEX IF NOT EXISTS idx_borrowings_due_date ON borrowings(due_date);
            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);

            COMMIT;
        """)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables if needed."""
    create_tables(db_file)
    logger.info(f"Database ready at {db_file or DATABASE_FILE}")
