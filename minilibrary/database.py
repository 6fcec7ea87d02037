import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

# Copies of the book being updated that are currently lent out; usable inside UPDATE books
ACTIVE_LOANS_SQL = "(SELECT COUNT(*) FROM transactions t WHERE t.book_id = books.id AND t.status = 'ACTIVE')"


class Database:
    """Handle on the SQLite store.

    One instance is created per application (or per test) and passed to the
    objects that need it. Each operation opens its own short-lived
    connection, so requests share no connection state.
    """

    def __init__(self, path: str, busy_timeout: float = 30.0) -> None:
        self.path = path
        self.busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are started explicitly."""
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None,
                               check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Reads and single autocommit statements; the connection is always closed afterwards."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing unit of work.

        BEGIN IMMEDIATE takes the write lock before the first read, so a
        check such as "copies > 0" and the write that depends on it commit
        together. Any exception rolls the whole unit back.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False

    # ------------------------- Schema ------------------------- #
    def create_tables(self) -> None:
        """Create the tables and indexes if they do not exist yet."""
        with self.connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    role TEXT NOT NULL DEFAULT 'MEMBER'
                        CHECK(role IN ('MEMBER', 'LIBRARIAN', 'ADMIN')),
                    api_key TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS books (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    isbn TEXT,
                    genre TEXT,
                    publisher TEXT,
                    published_year INTEGER,
                    page_count INTEGER,
                    language TEXT DEFAULT 'English',
                    description TEXT,
                    cover_image TEXT,
                    total_copies INTEGER NOT NULL CHECK(total_copies >= 1),
                    available_copies INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK(available_copies >= 0 AND available_copies <= total_copies)
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    book_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    checkout_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    return_date TEXT,
                    status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK(status IN ('ACTIVE', 'RETURNED')),
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS reservations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    book_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING'
                        CHECK(status IN ('PENDING', 'CANCELLED', 'EXPIRED')),
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS reviews (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    book_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    rating INTEGER NOT NULL CHECK(rating >= 1 AND rating <= 5),
                    comment TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (book_id, user_id),
                    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS api_usage_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    api_name TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    success BOOLEAN NOT NULL,
                    response_time_ms INTEGER,
                    characters_used INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                -- At most one open checkout / pending reservation per (book, user)
                CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_one_active
                    ON transactions(book_id, user_id) WHERE status = 'ACTIVE';
                CREATE UNIQUE INDEX IF NOT EXISTS idx_reservations_one_pending
                    ON reservations(book_id, user_id) WHERE status = 'PENDING';

                CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
                CREATE INDEX IF NOT EXISTS idx_books_author ON books(author);
                CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre);
                CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at);
                CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_transactions_status_due ON transactions(status, due_date);
                CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations(user_id, status);
                CREATE INDEX IF NOT EXISTS idx_reviews_book ON reviews(book_id);
                CREATE INDEX IF NOT EXISTS idx_api_usage_logs_api_name ON api_usage_logs(api_name);
                CREATE INDEX IF NOT EXISTS idx_api_usage_logs_created_at ON api_usage_logs(created_at);
            """)

    def initialize(self) -> None:
        """Create the database file and schema if needed."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with self.connection() as conn:
            # WAL lets readers proceed while a checkout holds the write lock
            conn.execute("PRAGMA journal_mode=WAL;")
        self.create_tables()
        logger.info("Database ready at %s", self.path)


def open_database(path: Optional[str] = None) -> Database:
    """Build and initialize a Database for `path` (defaults to the configured file)."""
    from minilibrary.config import settings

    db = Database(path or settings.database_file)
    db.initialize()
    return db
