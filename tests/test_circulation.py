import sqlite3
import threading
from datetime import date, timedelta

import pytest

from circulation import LoanEngine
from errors import Conflict, InvalidArgument, InvalidState, NotFound, Unavailable
from loan import LoanStatus
from repository import LoanRepository


def test_start_loan(engine, today, member, book):
    view = engine.start_loan(member.id, book.id, "2024-01-15")
    assert view.id is not None
    assert view.status == LoanStatus.ACTIVE
    assert view.borrowed_on == today
    assert view.due_on == date(2024, 1, 15)
    assert view.returned_on is None
    assert view.user_name == "Ana Souza"
    assert view.book_title == "Dom Casmurro"
    assert view.remaining_days == 14

    # persisted, and read back the same way
    assert engine.get_loan(view.id).to_dict() == view.to_dict()


def test_start_loan_due_today_is_allowed(engine, today, member, book):
    assert engine.start_loan(member.id, book.id, today).due_on == today


def test_start_loan_unknown_user_or_book(engine, member, book):
    with pytest.raises(NotFound):
        engine.start_loan(999, book.id, "2024-01-15")
    with pytest.raises(NotFound):
        engine.start_loan(member.id, 999, "2024-01-15")


def test_start_loan_rejects_past_due_date(engine, member, book):
    with pytest.raises(InvalidArgument):
        engine.start_loan(member.id, book.id, "2023-12-31")
    assert engine.list_loans() == []


def test_start_loan_requires_due_date(engine, member, book):
    with pytest.raises(InvalidArgument):
        engine.start_loan(member.id, book.id, None)


def test_book_cannot_be_double_loaned(engine, users, member, book):
    other = users.add("Bruno Lima", "bruno@example.com")
    first = engine.start_loan(member.id, book.id, "2024-01-08")

    with pytest.raises(Conflict):
        engine.start_loan(other.id, book.id, "2024-01-20")

    engine.return_loan(first.id)
    third = engine.start_loan(other.id, book.id, "2024-01-20")
    assert third.status == LoanStatus.ACTIVE


def test_overdue_loan_still_blocks_the_book(engine, clock, users, member, book):
    engine.start_loan(member.id, book.id, "2024-01-08")
    clock.advance(9)
    other = users.add("Bruno Lima", "bruno@example.com")
    with pytest.raises(Conflict):
        engine.start_loan(other.id, book.id, "2024-01-20")


def test_concurrent_start_loan_only_one_succeeds(db_file, users, books, clock):
    book = books.add("Grande Sertão: Veredas", "Guimarães Rosa", "Romance", 1956)
    members = [users.add(f"Member {i}", f"m{i}@example.com") for i in range(4)]
    barrier = threading.Barrier(len(members))
    results = []
    lock = threading.Lock()

    def attempt(user_id):
        engine = LoanEngine(LoanRepository(db_file), users, books, clock=clock)
        barrier.wait()
        try:
            engine.start_loan(user_id, book.id, "2024-01-15")
            outcome = "ok"
        except Conflict:
            outcome = "conflict"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(m.id,)) for m in members]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["conflict", "conflict", "conflict", "ok"]


def test_return_sets_date_and_is_idempotent(engine, clock, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    clock.advance(3)

    returned = engine.return_loan(loan.id)
    assert returned.status == LoanStatus.RETURNED
    assert returned.returned_on == date(2024, 1, 4)
    assert returned.elapsed_days == 3

    clock.advance(5)
    again = engine.return_loan(loan.id)
    assert again.returned_on == date(2024, 1, 4)
    assert again.status == LoanStatus.RETURNED


def test_return_unknown_loan(engine):
    with pytest.raises(NotFound):
        engine.return_loan(42)


def test_returned_loan_is_terminal(engine, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    engine.return_loan(loan.id)

    with pytest.raises(InvalidState):
        engine.renew(loan.id)
    with pytest.raises(InvalidState):
        engine.reschedule(loan.id, "2024-02-01")
    with pytest.raises(InvalidState):
        engine.set_status(loan.id, "Active")
    with pytest.raises(InvalidState):
        engine.set_status(loan.id, "Returned")

    assert engine.get_loan(loan.id).due_on == date(2024, 1, 8)


def test_renew_defaults_to_seven_days(engine, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    assert engine.renew(loan.id).due_on == date(2024, 1, 15)
    assert engine.renew(loan.id, 3).due_on == date(2024, 1, 18)


def test_renew_past_the_last_representable_date(engine, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    with pytest.raises(InvalidArgument):
        engine.renew(loan.id, 3_000_000)
    assert engine.get_loan(loan.id).due_on == date(2024, 1, 8)


def test_return_before_borrow_date_is_refused(engine, clock, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    clock.advance(-1)
    with pytest.raises(InvalidState):
        engine.return_loan(loan.id)
    with pytest.raises(InvalidState):
        engine.set_status(loan.id, "Returned")

    stored = engine.get_loan(loan.id)
    assert stored.returned_on is None
    assert stored.status == LoanStatus.ACTIVE


def test_renew_overdue_loan_keeps_it_open(engine, clock, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-02")
    clock.advance(10)
    assert engine.get_loan(loan.id).status == LoanStatus.OVERDUE

    # extension does not have to reach today
    renewed = engine.renew(loan.id, 2)
    assert renewed.due_on == date(2024, 1, 4)
    assert renewed.status == LoanStatus.OVERDUE


@pytest.mark.parametrize("days", [0, -1, 1.5, "3", True])
def test_renew_rejects_non_positive_or_non_integer(engine, member, book, days):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    with pytest.raises(InvalidArgument):
        engine.renew(loan.id, days)
    assert engine.get_loan(loan.id).due_on == date(2024, 1, 8)


def test_renew_unknown_loan(engine):
    with pytest.raises(NotFound):
        engine.renew(7)


def test_reschedule_moves_due_date_either_way(engine, today, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-20")
    assert engine.reschedule(loan.id, "2024-02-01").due_on == date(2024, 2, 1)
    assert engine.reschedule(loan.id, "2024-01-03").due_on == date(2024, 1, 3)
    assert engine.reschedule(loan.id, today).due_on == today


def test_reschedule_rejects_past_or_missing_date(engine, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-20")
    with pytest.raises(InvalidArgument):
        engine.reschedule(loan.id, "2023-12-31")
    with pytest.raises(InvalidArgument):
        engine.reschedule(loan.id, None)
    assert engine.get_loan(loan.id).due_on == date(2024, 1, 20)


def test_reschedule_can_clear_overdue(engine, clock, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-02")
    clock.advance(5)
    assert engine.reschedule(loan.id, clock.today() + timedelta(days=7)).status == LoanStatus.ACTIVE


def test_override_to_overdue_before_due_date_reads_active(engine, clock, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    assert engine.set_status(loan.id, "Overdue").status == LoanStatus.ACTIVE

    clock.advance(8)
    assert engine.get_loan(loan.id).status == LoanStatus.OVERDUE


def test_override_to_returned_closes_the_loan(engine, clock, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    clock.advance(2)
    view = engine.set_status(loan.id, "Devolvido")
    assert view.status == LoanStatus.RETURNED
    assert view.returned_on == date(2024, 1, 3)


def test_override_rejects_unknown_status(engine, member, book):
    loan = engine.start_loan(member.id, book.id, "2024-01-08")
    with pytest.raises(InvalidArgument):
        engine.set_status(loan.id, "Lost")


def test_list_loans_filters_by_effective_status(engine, clock, books, member, book):
    second_book = books.add("Vidas Secas", "Graciliano Ramos", "Romance", 1938)
    third_book = books.add("Iracema", "José de Alencar", "Romance", 1865)
    late = engine.start_loan(member.id, book.id, "2024-01-02")
    on_time = engine.start_loan(member.id, second_book.id, "2024-01-30")
    done = engine.start_loan(member.id, third_book.id, "2024-01-30")
    engine.return_loan(done.id)
    clock.advance(5)

    assert [v.id for v in engine.list_loans(status="Overdue")] == [late.id]
    assert [v.id for v in engine.list_loans(status="Active")] == [on_time.id]
    assert [v.id for v in engine.list_loans(status="Returned")] == [done.id]
    assert len(engine.list_loans()) == 3
    assert [v.id for v in engine.list_loans(book_id=second_book.id)] == [on_time.id]

    with pytest.raises(InvalidArgument):
        engine.list_loans(status="Lost")


def test_store_timeout_surfaces_unavailable(db_file, users, books, clock, member, book):
    engine = LoanEngine(LoanRepository(db_file, timeout=0.1), users, books, clock=clock)
    blocker = sqlite3.connect(db_file)
    blocker.execute("BEGIN EXCLUSIVE")
    try:
        with pytest.raises(Unavailable):
            engine.list_loans()
    finally:
        blocker.rollback()
        blocker.close()
