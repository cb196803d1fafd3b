import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

import database
from circulation import LoanEngine
from config import settings
from errors import CirculationError, Conflict, InvalidArgument, NotFound
from repository import BookCatalog, LoanRepository, UserDirectory
from summary import SummaryAggregator

logger = logging.getLogger(__name__)

DB_FILE = os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE

loan_repository = LoanRepository(DB_FILE)
engine = LoanEngine(loan_repository, UserDirectory(DB_FILE), BookCatalog(DB_FILE))
summaries = SummaryAggregator(loan_repository)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Make sure the schema exists before serving requests
    database.initialize_database(DB_FILE)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Status code per error kind
ERROR_STATUS = {
    "not_found": 404,
    "invalid_argument": 400,
    "conflict": 409,
    "invalid_state": 409,
    "unavailable": 503,
}


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")

def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Dependencies (overridden in tests) ---
def get_engine() -> LoanEngine:
    return engine

def get_summaries() -> SummaryAggregator:
    return summaries


# --- Models ---
class LoanModel(BaseModel):
    id: int
    user_id: int
    user_name: Optional[str] = None
    book_id: int
    book_title: Optional[str] = None
    borrowed_on: date
    due_on: date
    returned_on: Optional[date] = None
    status: str
    elapsed_days: int
    remaining_days: int

class LoanCreateModel(BaseModel):
    user_id: int
    book_id: int
    due_on: Optional[str] = Field(None, description="YYYY-MM-DD")

class LoanUpdateModel(BaseModel):
    action: Optional[str] = Field(None, description="return | renew | reschedule")
    days: Optional[int] = None
    new_due_on: Optional[str] = Field(None, description="YYYY-MM-DD, for reschedule")
    status: Optional[str] = Field(None, description="Active | Overdue | Returned")

class LoanSummaryModel(BaseModel):
    Active: int
    Overdue: int
    Returned: int
    total: int
    deletable: bool


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check with a quick database ping."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "version": settings.app_version,
        "environment": settings.environment,
        "db": database.ping(DB_FILE),
    }


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def list_loans(
    status: Optional[str] = Query(None, description="Active | Overdue | Returned"),
    user_id: Optional[int] = Query(None),
    book_id: Optional[int] = Query(None),
    engine: LoanEngine = Depends(get_engine),
):
    """List loans with their derived status, newest first."""
    views = engine.list_loans(user_id=user_id, book_id=book_id, status=status)
    return [view.to_dict() for view in views]

@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, engine: LoanEngine = Depends(get_engine)):
    return engine.get_loan(loan_id).to_dict()

@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_loan(payload: LoanCreateModel, engine: LoanEngine = Depends(get_engine)):
    return engine.start_loan(payload.user_id, payload.book_id, payload.due_on).to_dict()

@app.patch("/loans/{loan_id}", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def update_loan(
    loan_id: int,
    payload: LoanUpdateModel = Body(...),
    engine: LoanEngine = Depends(get_engine),
):
    """Apply one transition: an ``action`` (return, renew, reschedule) or a ``status`` override."""
    if payload.action == "return":
        view = engine.return_loan(loan_id)
    elif payload.action == "renew":
        view = engine.renew(loan_id, payload.days)
    elif payload.action == "reschedule":
        view = engine.reschedule(loan_id, payload.new_due_on)
    elif payload.action:
        raise InvalidArgument(f"Unknown action {payload.action!r}. Allowed: return, renew, reschedule")
    elif payload.status:
        view = engine.set_status(loan_id, payload.status)
    else:
        raise InvalidArgument("Nothing to update. Send an action or a status.")
    return view.to_dict()

@app.delete("/loans/{loan_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_loan(loan_id: int, engine: LoanEngine = Depends(get_engine)):
    """Administrative hard removal of a loan record."""
    if not engine.loans.delete(loan_id):
        raise NotFound(f"Loan {loan_id} not found")
    logger.info(f"Loan {loan_id} deleted by administrator")
    return Response(status_code=204)


# --- Summaries ---
@app.get("/users/{user_id}/loan-summary", response_model=LoanSummaryModel)
def user_loan_summary(user_id: int, summaries: SummaryAggregator = Depends(get_summaries)):
    """Loan counts per status for a user; ``deletable`` gates removing the user."""
    return summaries.summarize("user", user_id).to_dict()

@app.get("/books/{book_id}/loan-summary", response_model=LoanSummaryModel)
def book_loan_summary(book_id: int, summaries: SummaryAggregator = Depends(get_summaries)):
    """Loan counts per status for a book; ``deletable`` gates removing the book."""
    return summaries.summarize("book", book_id).to_dict()


# --- Members and books ---
@app.delete("/users/{user_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_user(
    user_id: int,
    engine: LoanEngine = Depends(get_engine),
    summaries: SummaryAggregator = Depends(get_summaries),
):
    """Remove a member who has no loan history."""
    if engine.users.get(user_id) is None:
        raise NotFound(f"User {user_id} not found")
    summary = summaries.summarize("user", user_id)
    if not summary.deletable:
        raise Conflict(f"User {user_id} has {summary.total} loan(s) on record and cannot be deleted")
    engine.users.delete(user_id)
    logger.info(f"User {user_id} deleted")
    return Response(status_code=204)

@app.delete("/books/{book_id}", status_code=204, dependencies=[Depends(get_api_key)])
def delete_book(
    book_id: int,
    engine: LoanEngine = Depends(get_engine),
    summaries: SummaryAggregator = Depends(get_summaries),
):
    """Remove a book that has never been lent."""
    if engine.books.get(book_id) is None:
        raise NotFound(f"Book {book_id} not found")
    summary = summaries.summarize("book", book_id)
    if not summary.deletable:
        raise Conflict(f"Book {book_id} has {summary.total} loan(s) on record and cannot be deleted")
    engine.books.delete(book_id)
    logger.info(f"Book {book_id} deleted")
    return Response(status_code=204)
