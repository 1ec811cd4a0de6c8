import logging
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, List, Optional

from lending.config import settings
from lending.database import utcnow
from lending.errors import (
    Conflict,
    Inconsistency,
    InvalidTransition,
    NotFound,
    PolicyViolation,
)
from lending.inventory import InventoryCounter
from lending.models import ACTIVE_STATUSES, Borrowing, BorrowingStatus
from lending.policy import LendingPolicy
from lending.store import EntityStore

logger = logging.getLogger(__name__)


class BorrowingEngine:
    """Creates and closes loans while keeping book inventory consistent.

    A borrow is: policy check, conditional decrement, insert. A return is:
    status write, conditional increment. When a later step fails the earlier
    write is undone by compensation. With ``serializable`` on, each workflow
    also runs in one store transaction, so a failure rolls back everything and
    concurrent workflows cannot interleave between the check and the write.
    """

    def __init__(self, store: EntityStore, policy: Optional[LendingPolicy] = None,
                 inventory: Optional[InventoryCounter] = None,
                 serializable: Optional[bool] = None) -> None:
        self.store = store
        self.policy = policy or LendingPolicy()
        self.inventory = inventory or InventoryCounter(store)
        self.serializable = settings.serializable_lending if serializable is None else serializable

    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        with (self.store.transaction() if self.serializable else nullcontext()):
            yield

    # ------------------------- Lifecycle ------------------------- #
    def borrow(self, user_id: int, book_id: int, loan_days: Optional[int] = None) -> Borrowing:
        """Lend one copy of ``book_id`` to ``user_id`` for ``loan_days`` days.

        Raises NotFound, PolicyViolation, Conflict or ConstraintViolation. On
        any failure available copies are left as they were.
        """
        if loan_days is None:
            loan_days = settings.default_loan_days
        self.policy.validate_loan_days(loan_days)

        with self._unit_of_work():
            user = self.store.find_user(user_id)
            book = self.store.find_book(book_id)
            active = self.store.count_active_borrowings(user_id)

            decision = self.policy.can_borrow(user, book, active)
            if not decision:
                logger.info(f"Borrow denied: user={user_id} book={book_id} reason={decision.reason.value}")
                raise PolicyViolation(decision.reason)

            if not self.inventory.try_decrement(book_id):
                logger.warning(f"Borrow conflict: book {book_id} ran out of copies concurrently")
                raise Conflict(f"Book {book_id} has no copies left; retry to re-evaluate")

            borrow_date = utcnow()
            borrowing = Borrowing(
                user_id=user_id,
                book_id=book_id,
                borrow_date=borrow_date,
                due_date=self.policy.compute_due_date(borrow_date, loan_days),
            )
            try:
                created = self.store.insert_borrowing(borrowing)
            except Exception:
                self._restore_copy(book_id)
                raise

        logger.info(
            f"Borrowed: borrowing={created.borrowing_id} user={user_id} book={book_id} "
            f"due={created.due_date.isoformat()}"
        )
        return created

    def return_book(self, borrowing_id: int, now: Optional[datetime] = None) -> bool:
        """Close an active loan, assess any fine and put the copy back on the shelf.

        Raises NotFound, InvalidTransition (already returned) or Inconsistency.
        """
        with self._unit_of_work():
            borrowing = self.store.find_borrowing(borrowing_id)
            if not self.policy.can_return(borrowing):
                raise InvalidTransition(
                    f"Borrowing {borrowing_id} is {borrowing.status.value}; only active loans can be returned"
                )

            # Clock resolution must not let return_date collide with borrow_date
            returned_at = max(now or utcnow(), borrowing.borrow_date + timedelta(microseconds=1))
            fine = self.policy.compute_fine(borrowing.due_date, returned_at)

            # Compare-and-set on the status read above: a concurrent return of
            # the same borrowing that got there first leaves nothing to update
            if not self.store.update_borrowing_status(
                borrowing_id, BorrowingStatus.RETURNED, returned_at, fine,
                expected_statuses=ACTIVE_STATUSES,
            ):
                raise InvalidTransition(f"Borrowing {borrowing_id} was returned concurrently")

            try:
                incremented = self.inventory.try_increment(borrowing.book_id)
            except Exception:
                self._revert_return(borrowing, returned_at)
                raise
            if not incremented:
                self._revert_return(borrowing, returned_at)
                logger.error(
                    f"Inconsistency: book {borrowing.book_id} already at total copies while "
                    f"returning borrowing {borrowing_id}"
                )
                raise Inconsistency(
                    f"Book {borrowing.book_id} is already fully stocked; "
                    f"borrowing {borrowing_id} was left {borrowing.status.value}"
                )

        logger.info(f"Returned: borrowing={borrowing_id} book={borrowing.book_id} fine={fine}")
        return True

    def pay_fine(self, borrowing_id: int) -> Borrowing:
        borrowing = self.store.find_borrowing(borrowing_id)
        if borrowing.status != BorrowingStatus.RETURNED:
            raise InvalidTransition(f"Borrowing {borrowing_id} has not been returned yet")
        if borrowing.fine_amount <= Decimal("0"):
            raise InvalidTransition(f"Borrowing {borrowing_id} has no fine to pay")
        if borrowing.fine_paid or not self.store.mark_fine_paid(borrowing_id):
            raise InvalidTransition(f"Fine for borrowing {borrowing_id} is already paid")
        logger.info(f"Fine paid: borrowing={borrowing_id} amount={borrowing.fine_amount}")
        return self.store.find_borrowing(borrowing_id)

    def mark_overdue(self, now: Optional[datetime] = None) -> int:
        count = self.store.mark_overdue(now)
        if count:
            logger.info(f"Marked {count} borrowing(s) overdue")
        return count

    # ------------------------- Queries ------------------------- #
    def get_borrowing(self, borrowing_id: int) -> Borrowing:
        return self.store.find_borrowing(borrowing_id)

    def list_borrowings(self, user_id: Optional[int] = None,
                        status: Optional[BorrowingStatus] = None) -> List[Borrowing]:
        if user_id is not None:
            self.store.find_user(user_id)
        return self.store.list_borrowings(user_id=user_id, status=status)

    def active_borrowings(self, user_id: int) -> List[Borrowing]:
        return [b for b in self.list_borrowings(user_id=user_id) if b.is_active]

    # ------------------------- Compensation ------------------------- #
    def _restore_copy(self, book_id: int) -> None:
        """Undo a decrement whose borrowing record could not be written."""
        try:
            restored = self.inventory.try_increment(book_id)
        except Exception:
            logger.exception(f"Compensation failed: could not restore a copy of book {book_id}")
            return
        if restored:
            logger.warning(f"Compensated: restored one copy of book {book_id} after failed insert")
        else:
            logger.error(f"Compensation refused: book {book_id} already at total copies")

    def _revert_return(self, borrowing: Borrowing, returned_at: datetime) -> None:
        """Put a borrowing back in its pre-return state after the increment failed.

        Only the return written by this call is undone; the update matches on
        the returned status and the exact return_date.
        """
        try:
            reverted = self.store.update_borrowing_status(
                borrowing.borrowing_id, borrowing.status, None, borrowing.fine_amount,
                expected_statuses=(BorrowingStatus.RETURNED,),
                expected_return_date=returned_at,
            )
        except Exception:
            logger.exception(f"Compensation failed: borrowing {borrowing.borrowing_id} stuck as returned")
            return
        if not reverted:
            logger.error(f"Compensation refused: borrowing {borrowing.borrowing_id} changed since its return")
            return
        logger.warning(
            f"Compensated: borrowing {borrowing.borrowing_id} reverted to {borrowing.status.value}"
        )
