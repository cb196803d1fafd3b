"""Loan lifecycle engine.

Validates every request before the store is touched, then delegates the write
to the loan repository and returns the loan as derived for today.
"""

import logging
from datetime import timedelta
from typing import Any, List, Optional

from config import settings
from dates import SystemClock, parse_date
from errors import Conflict, InvalidArgument, InvalidState, NotFound
from loan import Loan, LoanStatus, LoanView, derive
from repository import BookCatalog, LoanRepository, UserDirectory

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)


class LoanEngine:
    """Starts loans and applies the return, renew, reschedule and status transitions."""

    def __init__(
        self,
        loans: LoanRepository,
        users: UserDirectory,
        books: BookCatalog,
        clock: Optional[Any] = None,
    ) -> None:
        self.loans = loans
        self.users = users
        self.books = books
        self.clock = clock or SystemClock()

    # ------------------------- Reads ------------------------- #
    def get_loan(self, loan_id: int) -> LoanView:
        return derive(self._require(loan_id), self.clock.today())

    def list_loans(
        self,
        user_id: Optional[int] = None,
        book_id: Optional[int] = None,
        status: Optional[Any] = None,
    ) -> List[LoanView]:
        """List loans as derived for today, optionally filtered by effective status."""
        today = self.clock.today()
        wanted = LoanStatus.parse(status) if status else None
        loans = self.loans.list_by_filter(user_id=user_id, book_id=book_id, status=wanted, today=today)
        return [derive(loan, today) for loan in loans]

    # ------------------------- Transitions ------------------------- #
    def start_loan(self, user_id: int, book_id: int, due_on: Any) -> LoanView:
        due = parse_date(due_on, "due_on")
        today = self.clock.today()

        user_name = self.users.display_name(user_id)
        if user_name is None:
            raise NotFound(f"User {user_id} not found")
        book_title = self.books.display_name(book_id)
        if book_title is None:
            raise NotFound(f"Book {book_id} not found")
        if due < today:
            raise InvalidArgument("Due date cannot be in the past")

        loan = Loan(id=None, user_id=user_id, book_id=book_id, borrowed_on=today, due_on=due)
        try:
            loan.id = self.loans.check_conflict_and_insert(loan)
        except Conflict as e:
            if not e.race:
                logger.warning(f"Loan refused: book {book_id} is already lent")
                raise
            # A concurrent insert won; re-run the check once so it reports against committed state.
            loan.id = self.loans.check_conflict_and_insert(loan)

        loan.user_name = user_name
        loan.book_title = book_title
        logger.info(f"Loan {loan.id} started: book {book_id} to user {user_id}, due {due.isoformat()}")
        return derive(loan, today)

    def return_loan(self, loan_id: int) -> LoanView:
        """Mark a loan returned today. Returning it again leaves the first return date in place."""
        loan = self._require(loan_id)
        today = self.clock.today()
        if loan.is_returned:
            logger.info(f"Loan {loan_id} was already returned on {loan.returned_on}")
            return derive(loan, today)
        if today < loan.borrowed_on:
            raise InvalidState(
                f"Loan {loan_id} was borrowed on {loan.borrowed_on.isoformat()} and cannot be returned on {today.isoformat()}"
            )
        self.loans.update(loan_id, status=LoanStatus.RETURNED, returned_on=today)
        logger.info(f"Loan {loan_id} returned")
        return self.get_loan(loan_id)

    def renew(self, loan_id: int, extra_days: Any = None) -> LoanView:
        if extra_days is None:
            extra_days = settings.default_renewal_days
        if isinstance(extra_days, bool) or not isinstance(extra_days, int) or extra_days <= 0:
            raise InvalidArgument(f"Renewal days must be a positive integer, got {extra_days!r}")
        loan = self._require_open(loan_id)
        try:
            new_due = loan.due_on + timedelta(days=extra_days)
        except OverflowError:
            raise InvalidArgument("Renewal moves the due date out of range") from None
        self.loans.update(loan_id, due_on=new_due)
        logger.info(f"Loan {loan_id} renewed by {extra_days} days, due {new_due.isoformat()}")
        return self.get_loan(loan_id)

    def reschedule(self, loan_id: int, new_due_on: Any) -> LoanView:
        new_due = parse_date(new_due_on, "new_due_on")
        loan = self._require_open(loan_id)
        if new_due < self.clock.today():
            raise InvalidArgument("Due date cannot be in the past")
        self.loans.update(loan.id, due_on=new_due)
        logger.info(f"Loan {loan_id} rescheduled to {new_due.isoformat()}")
        return self.get_loan(loan_id)

    def set_status(self, loan_id: int, status: Any) -> LoanView:
        """Administrative status override.

        Returned closes the loan like ``return_loan``. Active and Overdue both
        leave it open: Overdue cannot be stored, so the loan reads as Overdue
        only once its due date has passed.
        """
        wanted = LoanStatus.parse(status)
        loan = self._require_open(loan_id)
        if wanted == LoanStatus.RETURNED:
            return self.return_loan(loan.id)
        logger.info(f"Loan {loan_id} status override to {wanted.value}; stored as Active")
        return derive(loan, self.clock.today())

    # ------------------------- Helpers ------------------------- #
    def _require(self, loan_id: int) -> Loan:
        loan = self.loans.get_by_id(loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    def _require_open(self, loan_id: int) -> Loan:
        loan = self._require(loan_id)
        if loan.is_returned:
            logger.warning(f"Loan {loan_id} is returned; transition refused")
            raise InvalidState(f"Loan {loan_id} has been returned and can no longer change")
        return loan
