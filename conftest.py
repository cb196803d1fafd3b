import os
from datetime import date

import pytest

import database
from circulation import LoanEngine
from dates import FixedClock
from repository import BookCatalog, LoanRepository, UserDirectory
from summary import SummaryAggregator

TODAY = date(2024, 1, 1)


@pytest.fixture
def db_file(tmp_path, request):
    # Create a unique database file for each test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    database.initialize_database(db_file)
    yield db_file
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def clock(today):
    return FixedClock(today)


@pytest.fixture
def loans(db_file):
    return LoanRepository(db_file)


@pytest.fixture
def users(db_file):
    return UserDirectory(db_file)


@pytest.fixture
def books(db_file):
    return BookCatalog(db_file)


@pytest.fixture
def engine(loans, users, books, clock):
    return LoanEngine(loans, users, books, clock=clock)


@pytest.fixture
def summaries(loans, clock):
    return SummaryAggregator(loans, clock=clock)


@pytest.fixture
def member(users):
    return users.add("Ana Souza", "ana@example.com")


@pytest.fixture
def book(books):
    return books.add("Dom Casmurro", "Machado de Assis", "Romance", 1899)
