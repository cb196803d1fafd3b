from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dates import SystemClock
from errors import InvalidArgument
from loan import LoanStatus, effective_status
from repository import LoanRepository

logger = logging.getLogger(__name__)

SCOPES = ("user", "book")


@dataclass
class LoanSummary:
    active: int = 0
    overdue: int = 0
    returned: int = 0

    @property
    def total(self) -> int:
        return self.active + self.overdue + self.returned

    @property
    def deletable(self) -> bool:
        """True when nothing references the entity, so external code may delete it."""
        return self.total == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            LoanStatus.ACTIVE.value: self.active,
            LoanStatus.OVERDUE.value: self.overdue,
            LoanStatus.RETURNED.value: self.returned,
            "total": self.total,
            "deletable": self.deletable,
        }


class SummaryAggregator:
    """Counts a user's or book's loans per effective status."""

    def __init__(self, loans: LoanRepository, clock: Optional[Any] = None) -> None:
        self.loans = loans
        self.clock = clock or SystemClock()

    def summarize(self, scope: str, entity_id: int) -> LoanSummary:
        if scope not in SCOPES:
            raise InvalidArgument(f"Invalid summary scope {scope!r}. Allowed: {', '.join(SCOPES)}")
        if scope == "user":
            loans = self.loans.list_by_filter(user_id=entity_id)
        else:
            loans = self.loans.list_by_filter(book_id=entity_id)

        today = self.clock.today()
        summary = LoanSummary()
        for loan in loans:
            status = effective_status(loan, today)
            if status == LoanStatus.ACTIVE:
                summary.active += 1
            elif status == LoanStatus.OVERDUE:
                summary.overdue += 1
            else:
                summary.returned += 1
        logger.debug(f"Summary for {scope} {entity_id}: {summary.to_dict()}")
        return summary
