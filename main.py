import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from circulation import LoanEngine
from config import settings
from errors import CirculationError
from repository import BookCatalog, LoanRepository, UserDirectory
from summary import SummaryAggregator
from ui_helpers import print_loan_result, print_loans_result, print_summary_result, set_output_mode

APP_NAME = "Library Circulation CLI"

console = Console()


def _db_file() -> str:
    # Resolved per call so tests can point the CLI at a temporary database
    return os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE


def _engine() -> LoanEngine:
    db_file = _db_file()
    database.initialize_database(db_file)
    return LoanEngine(LoanRepository(db_file), UserDirectory(db_file), BookCatalog(db_file))


def _fail(error: CirculationError) -> None:
    print(f"Error: {error.message}")
    raise typer.Exit(code=1)


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)

@app.command("add-user")
def cli_add_user(name: str, email: str):
    """Register a member."""
    engine = _engine()
    try:
        user = engine.users.add(name, email)
    except CirculationError as e:
        _fail(e)
    print(f"User {user.id} registered: {user.name} <{user.email}>")

@app.command("add-book")
def cli_add_book(title: str, author: str, category: str, year: Optional[int] = typer.Argument(None)):
    """Catalogue a book."""
    engine = _engine()
    try:
        book = engine.books.add(title, author, category, year)
    except CirculationError as e:
        _fail(e)
    print(f"Book {book.id} added: {book.title} by {book.author}")

@app.command("lend")
def cli_lend(user_id: int, book_id: int, due_on: str = typer.Argument(..., help="Due date, YYYY-MM-DD")):
    """Lend a book to a member until DUE_ON."""
    try:
        view = _engine().start_loan(user_id, book_id, due_on)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {view.id} started: {view.book_title} -> {view.user_name}, due {view.due_on.isoformat()}")

@app.command("return")
def cli_return(loan_id: int):
    """Record the return of a loan."""
    try:
        view = _engine().return_loan(loan_id)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {view.id} returned on {view.returned_on.isoformat()}")

@app.command("renew")
def cli_renew(loan_id: int, days: int = typer.Option(settings.default_renewal_days, "--days", "-d", help="Days to add to the due date")):
    """Extend a loan's due date."""
    try:
        view = _engine().renew(loan_id, days)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {view.id} renewed, due {view.due_on.isoformat()}")

@app.command("reschedule")
def cli_reschedule(loan_id: int, new_due_on: str = typer.Argument(..., help="New due date, YYYY-MM-DD")):
    """Move a loan's due date."""
    try:
        view = _engine().reschedule(loan_id, new_due_on)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {view.id} rescheduled, due {view.due_on.isoformat()}")

@app.command("set-status")
def cli_set_status(loan_id: int, status: str):
    """Administrative status override (Active, Overdue, Returned)."""
    try:
        view = _engine().set_status(loan_id, status)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {view.id} now reads as {view.status.value}")

@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Active | Overdue | Returned"),
    user_id: Optional[int] = typer.Option(None, "--user", help="Only loans of this member"),
    book_id: Optional[int] = typer.Option(None, "--book", help="Only loans of this book"),
):
    """List loans with their current status."""
    try:
        views = _engine().list_loans(user_id=user_id, book_id=book_id, status=status)
    except CirculationError as e:
        _fail(e)
    print_loans_result(views)

@app.command("show")
def cli_show(loan_id: int):
    """Show one loan."""
    try:
        view = _engine().get_loan(loan_id)
    except CirculationError as e:
        _fail(e)
    print_loan_result(view)

@app.command("summary")
def cli_summary(scope: str = typer.Argument(..., help="user | book"), entity_id: int = typer.Argument(...)):
    """Loan counts per status for a member or a book, and whether it can be deleted."""
    engine = _engine()
    try:
        summary = SummaryAggregator(engine.loans).summarize(scope, entity_id)
    except CirculationError as e:
        _fail(e)
    print_summary_result(scope, entity_id, summary.to_dict())

@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart the server on code changes")):
    """Start the HTTP API with Uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
