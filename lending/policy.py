"""Lending policy: who may borrow, when a loan is due, what a late return costs.

Everything here is pure. Given the same inputs a decision is always the same
and nothing is read from or written to the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from lending.config import settings
from lending.errors import DenyReason
from lending.models import Book, Borrowing, User

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy check."""
    allowed: bool
    reason: Optional[DenyReason] = None

    @staticmethod
    def allow() -> "Decision":
        return Decision(True)

    @staticmethod
    def deny(reason: DenyReason) -> "Decision":
        return Decision(False, reason)

    def __bool__(self) -> bool:
        return self.allowed


class LendingPolicy:
    def __init__(self, max_active_loans: Optional[int] = None,
                 daily_fine_rate: Optional[Decimal] = None,
                 max_loan_days: Optional[int] = None) -> None:
        self.max_active_loans = settings.max_active_loans if max_active_loans is None else max_active_loans
        self.daily_fine_rate = Decimal(settings.fine_daily_rate if daily_fine_rate is None else daily_fine_rate)
        self.max_loan_days = settings.max_loan_days if max_loan_days is None else max_loan_days

    def can_borrow(self, user: User, book: Book, active_loan_count: int) -> Decision:
        """Check user status, then availability, then the lending limit.

        The first failing check is the one reported.
        """
        if not user.is_active:
            return Decision.deny(DenyReason.USER_NOT_ACTIVE)
        if book.available_copies <= 0:
            return Decision.deny(DenyReason.NO_COPIES_AVAILABLE)
        if active_loan_count >= self.max_active_loans:
            return Decision.deny(DenyReason.LIMIT_REACHED)
        return Decision.allow()

    def can_return(self, borrowing: Borrowing) -> bool:
        return borrowing.is_active

    def validate_loan_days(self, loan_days: int) -> None:
        if isinstance(loan_days, bool) or not isinstance(loan_days, int):
            raise ValueError(f"loan_days must be an integer, got {loan_days!r}")
        if loan_days <= 0:
            raise ValueError(f"loan_days must be positive, got {loan_days}")
        if loan_days > self.max_loan_days:
            raise ValueError(f"loan_days must not exceed {self.max_loan_days}, got {loan_days}")

    def compute_due_date(self, borrow_date: datetime, loan_days: int) -> datetime:
        self.validate_loan_days(loan_days)
        return borrow_date + timedelta(days=loan_days)

    def compute_fine(self, due_date: datetime, return_date: datetime,
                     daily_rate: Optional[Decimal] = None) -> Decimal:
        """``daily_rate`` for every started day past ``due_date``; zero if on time."""
        rate = self.daily_fine_rate if daily_rate is None else Decimal(daily_rate)
        if return_date <= due_date:
            return Decimal("0.00")
        late = return_date - due_date
        # ceil to whole days without going through float seconds
        days_late = late.days + (1 if late.seconds or late.microseconds else 0)
        fine = (rate * days_late).quantize(CENTS, rounding=ROUND_HALF_UP)
        return max(fine, Decimal("0.00"))
