from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, List, Optional

from database import db_session
from errors import CirculationError, Conflict, InvalidArgument, NotFound
from loan import Loan, LoanStatus, effective_status

logger = logging.getLogger(__name__)

_LOAN_SELECT = """
    SELECT l.id, l.user_id, u.name AS user_name,
           l.book_id, b.title AS book_title,
           l.borrowed_on, l.due_on, l.returned_on, l.status
    FROM loans l
    LEFT JOIN users u ON u.id = l.user_id
    LEFT JOIN books b ON b.id = l.book_id
"""

# Columns a transition may change. user_id, book_id and borrowed_on are fixed at creation.
_MUTABLE_FIELDS = {"due_on", "returned_on", "status"}


def _to_db(value: Any) -> Any:
    if isinstance(value, LoanStatus):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    return value


def _integrity_error(e: sqlite3.IntegrityError, book_id: Optional[int]) -> CirculationError:
    message = str(e)
    if "UNIQUE" in message:
        subject = f"Book {book_id}" if book_id is not None else "The book"
        return Conflict(f"{subject} is already on an active loan")
    if "CHECK" in message:
        return InvalidArgument(f"Loan dates or status rejected by the store: {message}")
    # foreign key
    return NotFound(f"Loan refers to a user or book that does not exist: {message}")


class LoanRepository:
    """Durable store for loan records. The only component that writes loans."""

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def _session(self):
        return db_session(self.db_file, self.timeout)

    def insert(self, loan: Loan) -> int:
        with self._session() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO loans (user_id, book_id, borrowed_on, due_on, returned_on, status) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (loan.user_id, loan.book_id, _to_db(loan.borrowed_on), _to_db(loan.due_on),
                     _to_db(loan.returned_on), _to_db(loan.status)),
                )
            except sqlite3.IntegrityError as e:
                raise _integrity_error(e, loan.book_id) from e
            conn.commit()
            return cursor.lastrowid

    def check_conflict_and_insert(self, loan: Loan) -> int:
        """Insert ``loan`` unless its book already has an open loan, atomically.

        The check and the insert share one write transaction, so a second
        writer blocks on BEGIN IMMEDIATE until the first commits and then sees
        its row.
        """
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM loans "
                "WHERE book_id = ? AND status = 'Active' AND returned_on IS NULL",
                (loan.book_id,),
            ).fetchone()
            if row["n"] > 0:
                conn.rollback()
                raise Conflict(f"Book {loan.book_id} is already on an active loan")
            try:
                cursor = conn.execute(
                    "INSERT INTO loans (user_id, book_id, borrowed_on, due_on, returned_on, status) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (loan.user_id, loan.book_id, _to_db(loan.borrowed_on), _to_db(loan.due_on),
                     _to_db(loan.returned_on), _to_db(loan.status)),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if "UNIQUE" not in str(e):
                    raise _integrity_error(e, loan.book_id) from e
                logger.warning(f"Concurrent loan insert detected for book {loan.book_id}: {e}")
                raise Conflict(f"Book {loan.book_id} is already on an active loan", race=True) from e
            conn.commit()
            return cursor.lastrowid

    def get_by_id(self, loan_id: int) -> Optional[Loan]:
        with self._session() as conn:
            row = conn.execute(_LOAN_SELECT + " WHERE l.id = ?", (loan_id,)).fetchone()
            return Loan.from_row(dict(row)) if row else None

    def list_by_filter(
        self,
        user_id: Optional[int] = None,
        book_id: Optional[int] = None,
        status: Optional[LoanStatus] = None,
        today: Optional[date] = None,
    ) -> List[Loan]:
        """List loans, newest first. ``status`` filters on the effective status as of ``today``."""
        if status is not None and today is None:
            raise InvalidArgument("Filtering by status requires the current date")
        clauses, params = [], []
        if user_id is not None:
            clauses.append("l.user_id = ?")
            params.append(user_id)
        if book_id is not None:
            clauses.append("l.book_id = ?")
            params.append(book_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._session() as conn:
            rows = conn.execute(
                _LOAN_SELECT + where + " ORDER BY l.borrowed_on DESC, l.id DESC", params
            ).fetchall()
        loans = [Loan.from_row(dict(row)) for row in rows]
        if status is not None:
            loans = [l for l in loans if effective_status(l, today) == status]
        return loans

    def update(self, loan_id: int, **fields: Any) -> bool:
        """Apply a partial update. Returns False if no loan has that id."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise InvalidArgument(f"Loan fields cannot be updated: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_by_id(loan_id) is not None
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_db(value) for value in fields.values()] + [loan_id]
        with self._session() as conn:
            try:
                cursor = conn.execute(f"UPDATE loans SET {assignments} WHERE id = ?", params)
            except sqlite3.IntegrityError as e:
                raise _integrity_error(e, None) from e
            conn.commit()
            return cursor.rowcount > 0

    def delete(self, loan_id: int) -> bool:
        """Hard-remove a loan. Administrative path only."""
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
            conn.commit()
            return cursor.rowcount > 0


@dataclass
class User:
    id: int
    name: str
    email: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Book:
    id: int
    title: str
    author: str
    category: str
    year: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class UserDirectory:
    """Registered members: seeding, lookup and removal."""

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def add(self, name: str, email: str) -> User:
        with db_session(self.db_file, self.timeout) as conn:
            try:
                cursor = conn.execute("INSERT INTO users (name, email) VALUES (?, ?)", (name.strip(), email.strip()))
            except sqlite3.IntegrityError as e:
                raise Conflict(f"E-mail {email} is already registered") from e
            conn.commit()
            return User(id=cursor.lastrowid, name=name.strip(), email=email.strip())

    def get(self, user_id: int) -> Optional[User]:
        with db_session(self.db_file, self.timeout) as conn:
            row = conn.execute("SELECT id, name, email FROM users WHERE id = ?", (user_id,)).fetchone()
            return User(**dict(row)) if row else None

    def display_name(self, user_id: int) -> Optional[str]:
        user = self.get(user_id)
        return user.name if user else None

    def delete(self, user_id: int) -> bool:
        """Remove a member. Loans still referencing it make this a Conflict."""
        with db_session(self.db_file, self.timeout) as conn:
            try:
                cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            except sqlite3.IntegrityError as e:
                raise Conflict(f"User {user_id} still has loans on record") from e
            conn.commit()
            return cursor.rowcount > 0


class BookCatalog:
    """Catalogued books: seeding, lookup and removal."""

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def add(self, title: str, author: str, category: str, year: Optional[int] = None) -> Book:
        with db_session(self.db_file, self.timeout) as conn:
            cursor = conn.execute(
                "INSERT INTO books (title, author, category, year) VALUES (?, ?, ?, ?)",
                (title.strip(), author.strip(), category.strip(), year),
            )
            conn.commit()
            return Book(id=cursor.lastrowid, title=title.strip(), author=author.strip(),
                        category=category.strip(), year=year)

    def get(self, book_id: int) -> Optional[Book]:
        with db_session(self.db_file, self.timeout) as conn:
            row = conn.execute(
                "SELECT id, title, author, category, year FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            return Book(**dict(row)) if row else None

    def display_name(self, book_id: int) -> Optional[str]:
        book = self.get(book_id)
        return book.title if book else None

    def delete(self, book_id: int) -> bool:
        with db_session(self.db_file, self.timeout) as conn:
            try:
                cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            except sqlite3.IntegrityError as e:
                raise Conflict(f"Book {book_id} still has loans on record") from e
            conn.commit()
            return cursor.rowcount > 0

