import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence

from lending import database
from lending.database import get_db_connection, initialize_database, to_db_timestamp, utcnow
from lending.errors import ConstraintViolation, NotFound
from lending.models import (
    Book,
    Borrowing,
    BorrowingStatus,
    User,
    UserStatus,
)

logger = logging.getLogger(__name__)

_ACTIVE_SQL = "('borrowed', 'overdue')"


class EntityStore:
    """Durable records for users, books and borrowings on top of SQLite.

    Each method opens its own connection and commits on success, unless the
    calling thread is inside ``transaction()``; then every call shares that
    thread's connection and the outer block decides between commit and rollback.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self._local = threading.local()
        initialize_database(self.db_file)

    # ------------------------- Connections ------------------------- #
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed calls as one ``BEGIN IMMEDIATE`` transaction.

        IMMEDIATE takes the database write lock up front, so concurrent
        workflows are serialized and their reads see a consistent snapshot.
        Nested use joins the outer transaction.
        """
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return

        conn = get_db_connection(self.db_file)
        self._local.conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            self._local.conn = None
            conn.close()

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self.in_transaction:
            with self._translate_errors():
                yield self._local.conn
            return

        conn = get_db_connection(self.db_file)
        try:
            with self._translate_errors():
                conn.execute("BEGIN")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        finally:
            conn.close()

    @staticmethod
    @contextmanager
    def _translate_errors() -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as e:
            logger.warning(f"Store rejected write: {e}")
            raise ConstraintViolation(str(e)) from e

    # ------------------------- Users ------------------------- #
    def create_user(self, user: User) -> User:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO users (username, email, full_name, phone, role, status) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (user.username, user.email, user.full_name, user.phone,
                 user.role.value, user.status.value),
            )
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (cursor.lastrowid,)
            ).fetchone()
        return User.from_row(row)

    def find_user(self, user_id: int) -> User:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            raise NotFound("User", user_id)
        return User.from_row(row)

    def find_user_by_username(self, username: str) -> User:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if row is None:
            raise NotFound("User", username)
        return User.from_row(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY user_id").fetchall()
        return [User.from_row(row) for row in rows]

    def set_user_status(self, user_id: int, status: UserStatus) -> User:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET status = ? WHERE user_id = ?", (status.value, user_id)
            )
        if cursor.rowcount == 0:
            raise NotFound("User", user_id)
        return self.find_user(user_id)

    def delete_user(self, user_id: int) -> bool:
        """Delete a user; their borrowings go with them (ON DELETE CASCADE)."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
        return cursor.rowcount > 0

    # ------------------------- Books ------------------------- #
    def create_book(self, book: Book) -> Book:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO books (isbn, title, author, publication_year, language, location, "
                "total_copies, available_copies, status) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (book.isbn, book.title, book.author, book.publication_year, book.language,
                 book.location, book.total_copies, book.available_copies, book.status.value),
            )
            row = conn.execute(
                "SELECT * FROM books WHERE book_id = ?", (cursor.lastrowid,)
            ).fetchone()
        return Book.from_row(row)

    def find_book(self, book_id: int) -> Book:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM books WHERE book_id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound("Book", book_id)
        return Book.from_row(row)

    def find_book_by_isbn(self, isbn: str) -> Book:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM books WHERE isbn = ?", (isbn.strip(),)).fetchone()
        if row is None:
            raise NotFound("Book", isbn)
        return Book.from_row(row)

    def list_books(self) -> List[Book]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY title").fetchall()
        return [Book.from_row(row) for row in rows]

    def search_books(self, title: str) -> List[Book]:
        """Case-insensitive search on title."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM books WHERE LOWER(title) LIKE LOWER(?) ORDER BY title",
                (f"%{title}%",),
            ).fetchall()
        return [Book.from_row(row) for row in rows]

    def list_available_books(self) -> List[Book]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM books WHERE available_copies > 0 ORDER BY title"
            ).fetchall()
        return [Book.from_row(row) for row in rows]

    def set_available_copies(self, book_id: int, available_copies: int) -> bool:
        """Administrative stock correction. Still bounded by the check constraint."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE books SET available_copies = ? WHERE book_id = ?",
                (available_copies, book_id),
            )
        return cursor.rowcount > 0

    def delete_book(self, book_id: int) -> bool:
        """Delete a book. Rejected with ConstraintViolation while it is on loan."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM books WHERE book_id = ?", (book_id,))
        return cursor.rowcount > 0

    def count_books(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    def count_available_books(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM books WHERE available_copies > 0"
            ).fetchone()[0]

    # ------------------------- Inventory ------------------------- #
    def try_decrement_available(self, book_id: int) -> bool:
        """Take one copy off the shelf if any is left. One conditional statement."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1 "
                "WHERE book_id = ? AND available_copies > 0",
                (book_id,),
            )
        return cursor.rowcount == 1

    def try_increment_available(self, book_id: int) -> bool:
        """Put one copy back if the shelf is not already full. One conditional statement."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies + 1 "
                "WHERE book_id = ? AND available_copies < total_copies",
                (book_id,),
            )
        return cursor.rowcount == 1

    # ------------------------- Borrowings ------------------------- #
    def insert_borrowing(self, borrowing: Borrowing) -> Borrowing:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO borrowings (user_id, book_id, borrow_date, due_date, return_date, "
                "status, fine_amount, fine_paid, notes) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                borrowing.to_insert_params(),
            )
            row = conn.execute(
                "SELECT * FROM borrowings WHERE borrowing_id = ?", (cursor.lastrowid,)
            ).fetchone()
        return Borrowing.from_row(row)

    def find_borrowing(self, borrowing_id: int) -> Borrowing:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM borrowings WHERE borrowing_id = ?", (borrowing_id,)
            ).fetchone()
        if row is None:
            raise NotFound("Borrowing", borrowing_id)
        return Borrowing.from_row(row)

    def count_active_borrowings(self, user_id: int) -> int:
        with self._connect() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM borrowings WHERE user_id = ? AND status IN {_ACTIVE_SQL}",
                (user_id,),
            ).fetchone()[0]

    def list_borrowings(self, user_id: Optional[int] = None,
                        status: Optional[BorrowingStatus] = None) -> List[Borrowing]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM borrowings {where} ORDER BY borrow_date DESC, borrowing_id DESC",
                params,
            ).fetchall()
        return [Borrowing.from_row(row) for row in rows]

    def update_borrowing_status(self, borrowing_id: int, status: BorrowingStatus,
                                return_date: Optional[datetime],
                                fine_amount: Decimal,
                                expected_statuses: Optional[Sequence[BorrowingStatus]] = None,
                                expected_return_date: Optional[datetime] = None) -> bool:
        """Write the return fields of one borrowing.

        With ``expected_statuses`` and/or ``expected_return_date`` the update is
        a compare-and-set: it applies only while the row still matches, and
        returns False otherwise.
        """
        clauses = ["borrowing_id = ?"]
        params: List[Any] = [status.value, to_db_timestamp(return_date), str(fine_amount), borrowing_id]
        if expected_statuses is not None:
            clauses.append(f"status IN ({', '.join('?' for _ in expected_statuses)})")
            params.extend(s.value for s in expected_statuses)
        if expected_return_date is not None:
            clauses.append("return_date = ?")
            params.append(to_db_timestamp(expected_return_date))
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE borrowings SET status = ?, return_date = ?, fine_amount = ? "
                f"WHERE {' AND '.join(clauses)}",
                params,
            )
        return cursor.rowcount == 1

    def mark_overdue(self, now: Optional[datetime] = None) -> int:
        """Flag every borrowed record past its due date as overdue. Returns the count."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE borrowings SET status = 'overdue' "
                "WHERE status = 'borrowed' AND due_date < ?",
                (to_db_timestamp(now or utcnow()),),
            )
        return cursor.rowcount

    def mark_fine_paid(self, borrowing_id: int) -> bool:
        """Settle an outstanding fine. Applies only to returned, unpaid, non-zero fines."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE borrowings SET fine_paid = 1 "
                "WHERE borrowing_id = ? AND status = 'returned' AND fine_paid = 0 "
                "AND CAST(fine_amount AS REAL) > 0",
                (borrowing_id,),
            )
        return cursor.rowcount == 1

    # ------------------------- Statistics ------------------------- #
    def statistics(self) -> Dict[str, Any]:
        with self._connect() as conn:
            users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            books, copies, available = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), "
                "COALESCE(SUM(available_copies), 0) FROM books"
            ).fetchone()
            active = conn.execute(
                f"SELECT COUNT(*) FROM borrowings WHERE status IN {_ACTIVE_SQL}"
            ).fetchone()[0]
            overdue = conn.execute(
                "SELECT COUNT(*) FROM borrowings WHERE status = 'overdue'"
            ).fetchone()[0]
            fines = conn.execute(
                "SELECT fine_amount FROM borrowings WHERE fine_paid = 0"
            ).fetchall()
        return {
            "users": users,
            "books": books,
            "copies": copies,
            "available_copies": available,
            "active_loans": active,
            "overdue_loans": overdue,
            "unpaid_fines": str(sum((Decimal(row[0]) for row in fines), Decimal("0.00"))),
        }

