from datetime import timedelta
from decimal import Decimal

import pytest

from lending.database import get_db_connection, utcnow
from lending.errors import ConstraintViolation, NotFound
from lending.models import ACTIVE_STATUSES, Book, Borrowing, BorrowingStatus, User, UserStatus


def _loan(user_id, book_id, days=14, **kwargs):
    now = utcnow()
    return Borrowing(user_id=user_id, book_id=book_id, borrow_date=now,
                     due_date=now + timedelta(days=days), **kwargs)


def test_create_and_find_user(store):
    user = store.create_user(User("ada", "ada@example.com", full_name="Ada Lovelace"))
    assert user.user_id is not None
    assert user.status == UserStatus.ACTIVE
    assert user.registration_date is not None
    assert store.find_user(user.user_id) == user
    assert store.find_user_by_username("ada") == user
    assert store.list_users() == [user]


def test_find_missing_entities_raise_not_found(store):
    with pytest.raises(NotFound, match="User 42 not found"):
        store.find_user(42)
    with pytest.raises(NotFound):
        store.find_book(42)
    with pytest.raises(NotFound):
        store.find_borrowing(42)
    with pytest.raises(NotFound):
        store.set_user_status(42, UserStatus.INACTIVE)


def test_duplicate_username_and_email_rejected(store, make_user):
    make_user(username="ada", email="ada@example.com")
    with pytest.raises(ConstraintViolation):
        make_user(username="ada", email="other@example.com")
    with pytest.raises(ConstraintViolation):
        make_user(username="other", email="ada@example.com")
    assert len(store.list_users()) == 1


def test_duplicate_isbn_rejected(store, make_book):
    make_book(isbn="9780199535675")
    with pytest.raises(ConstraintViolation):
        make_book(isbn=" 9780199535675 ")
    assert store.count_books() == 1


def test_find_book_by_isbn(store, make_book):
    book = make_book(isbn="9780199535675")
    assert store.find_book_by_isbn(" 9780199535675") == book
    with pytest.raises(NotFound):
        store.find_book_by_isbn("000")


def test_book_starts_fully_stocked(make_book):
    book = make_book(total_copies=3)
    assert book.available_copies == 3


@pytest.mark.parametrize("total, available", [(1, 2), (2, -1), (-1, 0)])
def test_book_copy_bounds_enforced(make_book, total, available):
    with pytest.raises(ConstraintViolation):
        make_book(total_copies=total, available_copies=available)


def test_set_available_copies_bounded(store, book):
    assert store.set_available_copies(book.book_id, 0)
    with pytest.raises(ConstraintViolation):
        store.set_available_copies(book.book_id, book.total_copies + 1)
    assert store.find_book(book.book_id).available_copies == 0


def test_search_and_available_listing(store, make_book):
    make_book(title="The Hobbit")
    make_book(title="Dune", total_copies=0)
    assert [b.title for b in store.search_books("hobb")] == ["The Hobbit"]
    assert [b.title for b in store.list_available_books()] == ["The Hobbit"]
    assert store.count_available_books() == 1


def test_conditional_decrement_and_increment(store, make_book):
    book = make_book(total_copies=1)
    assert not store.try_increment_available(book.book_id)
    assert store.try_decrement_available(book.book_id)
    assert not store.try_decrement_available(book.book_id)
    assert store.find_book(book.book_id).available_copies == 0
    assert store.try_increment_available(book.book_id)
    assert store.find_book(book.book_id).available_copies == 1


def test_inventory_updates_on_missing_book_are_refused(store):
    assert not store.try_decrement_available(999)
    assert not store.try_increment_available(999)


def test_insert_borrowing_round_trip(store, user, book):
    created = store.insert_borrowing(_loan(user.user_id, book.book_id, notes="first loan"))
    found = store.find_borrowing(created.borrowing_id)
    assert found == created
    assert found.status == BorrowingStatus.BORROWED
    assert found.fine_amount == Decimal("0.00")
    assert found.notes == "first loan"
    assert found.due_date - found.borrow_date == timedelta(days=14)


def test_borrowing_requires_existing_user_and_book(store, user, book):
    with pytest.raises(ConstraintViolation):
        store.insert_borrowing(_loan(999, book.book_id))
    with pytest.raises(ConstraintViolation):
        store.insert_borrowing(_loan(user.user_id, 999))
    assert store.list_borrowings() == []


def test_due_date_must_follow_borrow_date(store, user, book):
    now = utcnow()
    with pytest.raises(ConstraintViolation):
        store.insert_borrowing(Borrowing(user.user_id, book.book_id, now, now))
    with pytest.raises(ConstraintViolation):
        store.insert_borrowing(Borrowing(user.user_id, book.book_id, now, now - timedelta(days=1)))


def test_return_date_must_follow_borrow_date(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    with pytest.raises(ConstraintViolation):
        store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.RETURNED,
                                      loan.borrow_date - timedelta(seconds=1), Decimal("0.00"))


def test_negative_fine_rejected(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    with pytest.raises(ConstraintViolation):
        store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.BORROWED,
                                      None, Decimal("-1.00"))


def test_count_active_includes_overdue(store, user, make_book):
    first = store.insert_borrowing(_loan(user.user_id, make_book().book_id))
    store.insert_borrowing(_loan(user.user_id, make_book().book_id))
    store.insert_borrowing(_loan(user.user_id, make_book().book_id, status=BorrowingStatus.RETURNED))
    assert store.count_active_borrowings(user.user_id) == 2

    store.mark_overdue(first.due_date + timedelta(days=1))
    assert store.find_borrowing(first.borrowing_id).status == BorrowingStatus.OVERDUE
    assert store.count_active_borrowings(user.user_id) == 2


def test_mark_overdue_only_touches_late_borrowed(store, user, make_book):
    short = store.insert_borrowing(_loan(user.user_id, make_book().book_id, days=1))
    long = store.insert_borrowing(_loan(user.user_id, make_book().book_id, days=30))
    assert store.mark_overdue(short.due_date + timedelta(hours=1)) == 1
    assert store.find_borrowing(long.borrowing_id).status == BorrowingStatus.BORROWED
    # Already overdue records are not counted twice
    assert store.mark_overdue(short.due_date + timedelta(hours=2)) == 0


def test_list_borrowings_filters(store, make_user, book):
    ada, bob = make_user(), make_user()
    store.insert_borrowing(_loan(ada.user_id, book.book_id))
    store.insert_borrowing(_loan(bob.user_id, book.book_id, status=BorrowingStatus.RETURNED))
    assert len(store.list_borrowings()) == 2
    assert [b.user_id for b in store.list_borrowings(user_id=ada.user_id)] == [ada.user_id]
    returned = store.list_borrowings(status=BorrowingStatus.RETURNED)
    assert [b.user_id for b in returned] == [bob.user_id]


def test_deleting_user_cascades_to_borrowings(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    assert store.delete_user(user.user_id)
    with pytest.raises(NotFound):
        store.find_borrowing(loan.borrowing_id)
    assert not store.delete_user(user.user_id)


def test_book_on_loan_cannot_be_deleted(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    with pytest.raises(ConstraintViolation, match="active borrowings"):
        store.delete_book(book.book_id)
    assert store.find_book(book.book_id) == book

    store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.RETURNED,
                                  utcnow(), Decimal("0.00"))
    assert store.delete_book(book.book_id)
    with pytest.raises(NotFound):
        store.find_borrowing(loan.borrowing_id)


def test_delete_missing_book_returns_false(store):
    assert store.delete_book(999) is False


def test_updated_at_maintained_on_update(store, user):
    updated = store.set_user_status(user.user_id, UserStatus.SUSPENDED)
    assert updated.status == UserStatus.SUSPENDED
    assert updated.updated_at >= user.updated_at
    assert updated.created_at == user.created_at


def test_mark_fine_paid_requires_outstanding_fine(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    assert not store.mark_fine_paid(loan.borrowing_id)

    store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.RETURNED,
                                  utcnow(), Decimal("2.50"))
    assert store.mark_fine_paid(loan.borrowing_id)
    assert store.find_borrowing(loan.borrowing_id).fine_paid
    assert not store.mark_fine_paid(loan.borrowing_id)


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.create_user(User("ghost", "ghost@example.com"))
            assert store.in_transaction
            raise RuntimeError("boom")
    assert not store.in_transaction
    assert store.list_users() == []


def test_transaction_commits_and_nests(store):
    with store.transaction():
        with store.transaction():
            store.create_user(User("ada", "ada@example.com"))
        store.create_book(Book("111", "Dune", "Herbert"))
    assert len(store.list_users()) == 1
    assert store.count_books() == 1


def test_statistics(store, user, make_book):
    book = make_book(total_copies=3)
    make_book(total_copies=1)
    store.try_decrement_available(book.book_id)
    store.insert_borrowing(_loan(user.user_id, book.book_id))
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.RETURNED,
                                  utcnow(), Decimal("1.50"))

    stats = store.statistics()
    assert stats == {
        "users": 1,
        "books": 2,
        "copies": 4,
        "available_copies": 3,
        "active_loans": 1,
        "overdue_loans": 0,
        "unpaid_fines": "1.50",
    }


def test_conditional_status_update(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    returned_at = utcnow() + timedelta(minutes=1)
    assert store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.RETURNED, returned_at,
                                         Decimal("0.00"), expected_statuses=ACTIVE_STATUSES)
    # Already returned: a second close matches nothing
    assert not store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.RETURNED,
                                             returned_at + timedelta(minutes=1), Decimal("0.00"),
                                             expected_statuses=ACTIVE_STATUSES)
    assert store.find_borrowing(loan.borrowing_id).return_date == returned_at

    assert not store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.BORROWED, None,
                                             Decimal("0.00"),
                                             expected_statuses=(BorrowingStatus.RETURNED,),
                                             expected_return_date=returned_at + timedelta(seconds=1))
    assert store.update_borrowing_status(loan.borrowing_id, BorrowingStatus.BORROWED, None,
                                         Decimal("0.00"),
                                         expected_statuses=(BorrowingStatus.RETURNED,),
                                         expected_return_date=returned_at)
    assert store.find_borrowing(loan.borrowing_id).status == BorrowingStatus.BORROWED


def test_default_and_written_timestamps_share_one_width(store, user, book):
    loan = store.insert_borrowing(_loan(user.user_id, book.book_id))
    conn = get_db_connection(store.db_file)
    try:
        row = conn.execute(
            "SELECT created_at, borrow_date FROM borrowings WHERE borrowing_id = ?",
            (loan.borrowing_id,),
        ).fetchone()
    finally:
        conn.close()
    assert len(row["created_at"]) == len(row["borrow_date"])
    assert row["created_at"].endswith("+00:00")
