import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from config import settings
from library import (
    BusinessRuleViolation,
    Library,
    LibraryError,
    NotFoundError,
    ValidationError as LibraryValidationError,
)

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

# --- Middleware ---
# Compress responses larger than 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Library dependency ---
_library: Optional[Library] = None


def get_library() -> Library:
    """Return the process-wide Library, created on first use."""
    global _library
    if _library is None:
        _library = Library()
    return _library


# --- Error handling ---
def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if isinstance(exc, NotFoundError):
        return error_response(404, str(exc))
    if isinstance(exc, (LibraryValidationError, BusinessRuleViolation)):
        return error_response(400, str(exc))
    # StoreFailure was already logged with its cause where it was raised
    return error_response(500, "Internal server error")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return error_response(400, "Invalid request")
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return error_response(400, f"{location}: {message}" if location else message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookCreateModel(CamelModel):
    # Required fields are checked by Library so missing ones get the library's message
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    total_copies: Optional[int] = None
    available_copies: Optional[int] = None


class BookModel(CamelModel):
    id: str
    title: str
    author: str
    isbn: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    total_copies: int
    available_copies: int
    added_at: Optional[str] = None


class MemberCreateModel(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None


class MemberUpdateModel(CamelModel):
    is_active: bool


class MemberModel(CamelModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool
    join_date: Optional[str] = None


class TransactionCreateModel(CamelModel):
    book_id: Optional[str] = None
    member_id: Optional[str] = None
    due_date: Optional[datetime] = None


class TransactionModel(CamelModel):
    id: str
    book_id: str
    member_id: str
    borrow_date: str
    due_date: str
    return_date: Optional[str] = None
    status: str
    fine_amount: float
    is_overdue: bool
    book: Optional[BookModel] = None
    member: Optional[MemberModel] = None


class MessageModel(BaseModel):
    message: str


class StatsModel(CamelModel):
    total_books: int
    total_members: int
    active_transactions: int
    overdue_transactions: int


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health endpoint with a quick database round-trip."""
    db_ok = True
    try:
        with database.connection(library.db_file) as conn:
            conn.execute("SELECT 1")
    except sqlite3.Error:
        logger.warning("Health check could not reach the database", exc_info=True)
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats", response_model=StatsModel)
def get_stats(library: Library = Depends(get_library)):
    """Dashboard counters: books, members, active and overdue loans."""
    return library.get_statistics()


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(None, description="Filter by title or author"),
               library: Library = Depends(get_library)):
    return [b.to_dict() for b in library.list_books(query=q)]


@app.post("/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    book = library.add_book(
        title=payload.title,
        author=payload.author,
        isbn=payload.isbn,
        genre=payload.genre,
        description=payload.description,
        total_copies=payload.total_copies,
        available_copies=payload.available_copies,
    )
    return book.to_dict()


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, library: Library = Depends(get_library)):
    book = library.find_book(book_id)
    if not book:
        raise NotFoundError("Book not found")
    return book.to_dict()


@app.delete("/books/{book_id}", response_model=MessageModel)
def delete_book(book_id: str, library: Library = Depends(get_library)):
    library.remove_book(book_id)
    return {"message": "Book deleted successfully"}


# --- Members ---
@app.get("/members", response_model=List[MemberModel])
def list_members(q: Optional[str] = Query(None, description="Filter by name or email"),
                 library: Library = Depends(get_library)):
    return [m.to_dict() for m in library.list_members(query=q)]


@app.post("/members", response_model=MemberModel, status_code=201)
def create_member(payload: MemberCreateModel, library: Library = Depends(get_library)):
    member = library.add_member(
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        address=payload.address,
        is_active=payload.is_active,
    )
    return member.to_dict()


@app.get("/members/{member_id}", response_model=MemberModel)
def get_member(member_id: str, library: Library = Depends(get_library)):
    member = library.find_member(member_id)
    if not member:
        raise NotFoundError("Member not found")
    return member.to_dict()


@app.patch("/members/{member_id}", response_model=MemberModel)
def update_member(member_id: str, payload: MemberUpdateModel, library: Library = Depends(get_library)):
    """Activate or deactivate a membership."""
    return library.set_member_active(member_id, payload.is_active).to_dict()


@app.delete("/members/{member_id}", response_model=MessageModel)
def delete_member(member_id: str, library: Library = Depends(get_library)):
    library.remove_member(member_id)
    return {"message": "Member deleted successfully"}


# --- Transactions ---
@app.get("/transactions", response_model=List[TransactionModel])
def list_transactions(
    q: Optional[str] = Query(None, description="Filter by book title or member name"),
    status: Optional[str] = Query(None, description="BORROWED | RETURNED | OVERDUE | LOST"),
    overdue: Optional[bool] = Query(None, description="Only active loans past (or not past) their due date"),
    library: Library = Depends(get_library),
):
    return [t.to_dict() for t in library.list_transactions(query=q, status=status, overdue=overdue)]


@app.post("/transactions", response_model=TransactionModel, status_code=201)
def create_transaction(payload: TransactionCreateModel, library: Library = Depends(get_library)):
    """Borrow a book for a member."""
    transaction = library.borrow(payload.book_id, payload.member_id, payload.due_date)
    return transaction.to_dict()


@app.get("/transactions/{transaction_id}", response_model=TransactionModel)
def get_transaction(transaction_id: str, library: Library = Depends(get_library)):
    transaction = library.find_transaction(transaction_id)
    if not transaction:
        raise NotFoundError("Transaction not found")
    return transaction.to_dict()


@app.post("/transactions/{transaction_id}/return", response_model=TransactionModel)
def return_transaction(transaction_id: str, library: Library = Depends(get_library)):
    """Return a borrowed book, charging any overdue fine."""
    return library.return_book(transaction_id).to_dict()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.api_port))
    uvicorn.run(app, host=settings.api_host, port=port)
