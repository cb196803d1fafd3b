"""Loan records and the status derivation applied on every read.

A loan stores only an intrinsic status (Active or Returned). What callers see
is the *effective* status, recomputed from the stored fields and the current
date each time a loan is read: an open loan whose due date has passed reads as
Overdue. The intrinsic status never leaves this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional

from dates import days_between
from errors import InvalidArgument


class LoanStatus(str, Enum):
    ACTIVE = "Active"
    OVERDUE = "Overdue"
    RETURNED = "Returned"

    @classmethod
    def parse(cls, value: Any) -> "LoanStatus":
        """Accept a status value, its name in any case, or the legacy Portuguese label."""
        if isinstance(value, LoanStatus):
            return value
        text = str(value or "").strip()
        legacy = _LEGACY_LABELS.get(text)
        if legacy is not None:
            return legacy
        for status in cls:
            if text.lower() == status.value.lower():
                return status
        allowed = ", ".join(s.value for s in cls)
        raise InvalidArgument(f"Invalid status {value!r}. Allowed: {allowed}")


_LEGACY_LABELS = {
    "Ativo": LoanStatus.ACTIVE,
    "Atrasado": LoanStatus.OVERDUE,
    "Devolvido": LoanStatus.RETURNED,
}


@dataclass
class Loan:
    """A stored loan row. ``status`` is the intrinsic status."""

    id: Optional[int]
    user_id: int
    book_id: int
    borrowed_on: date
    due_on: date
    returned_on: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE
    # display fields resolved by the store at read time
    user_name: Optional[str] = None
    book_title: Optional[str] = None

    @property
    def is_returned(self) -> bool:
        return self.returned_on is not None or self.status == LoanStatus.RETURNED

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Loan":
        returned_on = row.get("returned_on")
        return Loan(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_on=date.fromisoformat(row["borrowed_on"]),
            due_on=date.fromisoformat(row["due_on"]),
            returned_on=date.fromisoformat(returned_on) if returned_on else None,
            status=LoanStatus(row["status"]),
            user_name=row.get("user_name"),
            book_title=row.get("book_title"),
        )


@dataclass
class LoanView:
    """What every reader of a loan observes."""

    id: int
    user_id: int
    book_id: int
    borrowed_on: date
    due_on: date
    returned_on: Optional[date]
    status: LoanStatus
    elapsed_days: int
    remaining_days: int
    user_name: Optional[str] = None
    book_title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "borrowed_on": self.borrowed_on.isoformat(),
            "due_on": self.due_on.isoformat(),
            "returned_on": self.returned_on.isoformat() if self.returned_on else None,
            "status": self.status.value,
            "elapsed_days": self.elapsed_days,
            "remaining_days": self.remaining_days,
        }


def effective_status(loan: Loan, today: date) -> LoanStatus:
    # Returned wins over any date comparison.
    if loan.is_returned:
        return LoanStatus.RETURNED
    if today > loan.due_on:
        return LoanStatus.OVERDUE
    return LoanStatus.ACTIVE


def derive(loan: Loan, today: date) -> LoanView:
    """Project a stored loan into the view callers see on ``today``."""
    return LoanView(
        id=loan.id,
        user_id=loan.user_id,
        book_id=loan.book_id,
        borrowed_on=loan.borrowed_on,
        due_on=loan.due_on,
        returned_on=loan.returned_on,
        status=effective_status(loan, today),
        elapsed_days=days_between(loan.borrowed_on, loan.returned_on or today),
        remaining_days=days_between(today, loan.due_on),
        user_name=loan.user_name,
        book_title=loan.book_title,
    )
