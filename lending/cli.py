import logging
import os
import subprocess
import sys
from functools import wraps
from typing import Optional

import typer

from lending.config import settings
from lending.database import initialize_database
from lending.engine import BorrowingEngine
from lending.errors import LendingError
from lending.models import Book, BorrowingStatus, User, UserRole, UserStatus
from lending.store import EntityStore
from lending.ui_helpers import (
    print_error,
    print_mapping,
    print_record,
    print_records,
    set_output_mode,
)

APP_NAME = "Library Lending CLI"

BOOK_COLUMNS = ["book_id", "isbn", "title", "author", "available_copies", "total_copies"]
USER_COLUMNS = ["user_id", "username", "email", "role", "status"]
LOAN_COLUMNS = ["borrowing_id", "user_id", "book_id", "status", "due_date", "fine_amount", "fine_paid"]


class EngineManager:
    """One engine per database file for the lifetime of the process."""
    _instance: Optional[BorrowingEngine] = None
    _db_file: Optional[str] = None

    @classmethod
    def configure(cls, db_file: str) -> None:
        if db_file != cls._db_file:
            cls._instance = None
            cls._db_file = db_file

    @classmethod
    def db_file(cls) -> str:
        return cls._db_file or settings.database_file

    @classmethod
    def get_instance(cls) -> BorrowingEngine:
        if cls._instance is None:
            cls._instance = BorrowingEngine(EntityStore(cls.db_file()))
        return cls._instance


def handle_errors(func):
    """Print lending errors in a uniform way and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LendingError as e:
            print_error(e.kind, e.message)
            raise typer.Exit(code=1)
        except ValueError as e:
            print_error("invalid_argument", str(e))
            raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: str = typer.Option(
        "plain",
        "--output",
        "-o",
        help="Output format: plain | json | rich",
    ),
    db: str = typer.Option(
        settings.database_file,
        "--db",
        envvar="LENDING_DB_FILE",
        help="SQLite database file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity"),
):
    """Global CLI options (output mode, database file)."""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)
    set_output_mode(output)
    EngineManager.configure(db)


@app.command("init-db")
def cli_init_db():
    """Create the database schema if it does not exist."""
    initialize_database(EngineManager.db_file())
    print(f"Database initialized: {EngineManager.db_file()}")


# --- Users ---
@app.command("add-user")
@handle_errors
def cli_add_user(
    username: str,
    email: str,
    full_name: Optional[str] = typer.Option(None, "--name", help="Full name"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    role: UserRole = typer.Option(UserRole.MEMBER, "--role"),
):
    """Register a library user."""
    engine = EngineManager.get_instance()
    user = engine.store.create_user(
        User(username=username, email=email, full_name=full_name, phone=phone, role=role)
    )
    print_record(user, "User created")


@app.command("set-status")
@handle_errors
def cli_set_status(user_id: int, status: UserStatus):
    """Change a user's status (active, inactive, suspended)."""
    engine = EngineManager.get_instance()
    user = engine.store.set_user_status(user_id, status)
    print_record(user, "User updated")


@app.command("users")
@handle_errors
def cli_users():
    """List all users."""
    engine = EngineManager.get_instance()
    print_records(engine.store.list_users(), USER_COLUMNS, "Users", "No users registered.")


# --- Books ---
@app.command("add-book")
@handle_errors
def cli_add_book(
    isbn: str,
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", min=0, help="Total copies owned"),
    year: Optional[int] = typer.Option(None, "--year", help="Publication year"),
    location: Optional[str] = typer.Option(None, "--location", help="Shelf location"),
):
    """Add a book to the catalog."""
    engine = EngineManager.get_instance()
    book = engine.store.create_book(
        Book(isbn=isbn, title=title, author=author, total_copies=copies,
             publication_year=year, location=location)
    )
    print_record(book, "Book added")


@app.command("books")
@handle_errors
def cli_books(
    query: Optional[str] = typer.Option(None, "--search", "-s", help="Search by title"),
    available: bool = typer.Option(False, "--available", "-a", help="Only books on the shelf"),
):
    """List catalog books."""
    engine = EngineManager.get_instance()
    if query:
        books = engine.store.search_books(query)
        if available:
            books = [b for b in books if b.available_copies > 0]
    elif available:
        books = engine.store.list_available_books()
    else:
        books = engine.store.list_books()
    print_records(books, BOOK_COLUMNS, "Books", "No books in library.")


# --- Lending ---
@app.command("borrow")
@handle_errors
def cli_borrow(
    user_id: int,
    book_id: int,
    days: int = typer.Option(settings.default_loan_days, "--days", "-d", help="Loan period in days"),
):
    """Lend a book to a user."""
    engine = EngineManager.get_instance()
    borrowing = engine.borrow(user_id, book_id, days)
    print_record(borrowing, "Borrowed")


@app.command("return")
@handle_errors
def cli_return(borrowing_id: int):
    """Return a borrowed book and assess any late fine."""
    engine = EngineManager.get_instance()
    engine.return_book(borrowing_id)
    print_record(engine.get_borrowing(borrowing_id), "Returned")


@app.command("pay-fine")
@handle_errors
def cli_pay_fine(borrowing_id: int):
    """Mark the fine of a returned borrowing as paid."""
    engine = EngineManager.get_instance()
    print_record(engine.pay_fine(borrowing_id), "Fine paid")


@app.command("loans")
@handle_errors
def cli_loans(
    user_id: Optional[int] = typer.Option(None, "--user", "-u", help="Filter by user"),
    status: Optional[BorrowingStatus] = typer.Option(None, "--status", help="Filter by status"),
):
    """List borrowings."""
    engine = EngineManager.get_instance()
    loans = engine.list_borrowings(user_id=user_id, status=status)
    print_records(loans, LOAN_COLUMNS, "Borrowings", "No borrowings found.")


@app.command("mark-overdue")
@handle_errors
def cli_mark_overdue():
    """Flag borrowed books past their due date as overdue."""
    engine = EngineManager.get_instance()
    count = engine.mark_overdue()
    print(f"Marked {count} borrowing(s) overdue")


@app.command("stats")
@handle_errors
def cli_stats():
    """Show lending statistics."""
    engine = EngineManager.get_instance()
    print_mapping(engine.store.statistics(), "Library Stats")


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting lending API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False, env={**os.environ, "LENDING_DB_FILE": EngineManager.db_file()})
    except KeyboardInterrupt:
        print("Server stopped")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
