import json
import logging
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Security, Request, Header, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from ai_summary_service import SummaryGenerator
from book import Book, BorrowerContact
from config import settings
from database import get_db_connection
from errors import (
    AuthRequiredError,
    ConcurrentUpdateError,
    LibraryError,
    NotFoundError,
    OutOfStockError,
    PermissionDeniedError,
    ServiceError,
    ValidationError,
)
from library import Library


logger = logging.getLogger(__name__)

library = Library()
summary_generator = SummaryGenerator()

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    # Catalog reads must always reflect the latest counters
    if request.url.path.startswith("/books") and request.method == "GET":
        response.headers["Cache-Control"] = "no-store"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(
        status_code=403,
        detail="Could not validate credentials",
    )


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Authenticated user id, forwarded by the auth provider in X-User-Id."""
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


# Status codes for ledger errors
ERROR_STATUS = {
    ValidationError: 400,
    AuthRequiredError: 401,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    OutOfStockError: 409,
    ConcurrentUpdateError: 409,
    ServiceError: 500,
}


def _http_error(e: LibraryError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies get 400 like other validation errors."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.info(f"Rejected request to {request.url.path}: {errors}")
    return JSONResponse({"detail": errors}, status_code=400)


# --- Models ---
class ProfileModel(BaseModel):
    id: str
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str = "member"


class BookModel(BaseModel):
    id: str
    title: str
    author: str
    is_borrowed: bool
    borrowed_by: str | None = None
    borrowed_at: str | None = None
    ai_summary: str | None = None
    ai_tags: List[str] = Field(default_factory=list)
    total_quantity: int
    available_quantity: int
    borrowed_quantity: int
    state: str
    created_at: str | None = None
    borrower: ProfileModel | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    total_quantity: int = Field(default=1, description="Number of copies, at least 1")
    ai_summary: str | None = None
    ai_tags: List[str] | None = None


class BorrowModel(BaseModel):
    full_name: str
    email: str
    phone: str


class LoanModel(BaseModel):
    id: int
    book_id: str
    borrower_id: str
    borrowed_at: str
    returned_at: str | None = None


class RoleUpdateModel(BaseModel):
    role: str


class StatsModel(BaseModel):
    total_titles: int
    total_copies: int
    available_copies: int
    borrowed_copies: int
    open_loans: int
    unique_authors: int


def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _get_book_or_404(book_id: str) -> Book:
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book


# --- Health ---
@app.get("/health")
async def health():
    """Lightweight health check with a quick database probe."""
    db_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "services": {
            "ai": summary_generator.is_available(),
        },
    }


# --- Summary generator ---
@app.post("/ai/book")
async def generate_book_summary(request: Request):
    """Summary and tags for a title/author pair, with a rule-based fallback."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    title = str(body.get("title") or "").strip()
    author = str(body.get("author") or "").strip()
    if not title or not author:
        return JSONResponse({"error": "Missing title/author"}, status_code=400)

    try:
        result = await summary_generator.generate(title, author)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except ServiceError as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    return JSONResponse(result.to_dict(), status_code=200)


# --- Catalog ---
@app.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(default=None, description="Filter by title or author")):
    """List all books, newest first."""
    return [_book_model(b) for b in library.list_books(q)]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    return _book_model(_get_book_or_404(book_id))


@app.post("/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, user_id: Optional[str] = Depends(get_user_id)):
    """Add a title. Only admins and librarians may do this."""
    try:
        book = library.create_book(
            payload.title,
            payload.author,
            payload.total_quantity,
            ai_summary=payload.ai_summary,
            ai_tags=payload.ai_tags,
            role=library.get_role(user_id),
        )
    except LibraryError as e:
        raise _http_error(e)
    return _book_model(book)


@app.delete("/books/{book_id}")
def delete_book(book_id: str, user_id: Optional[str] = Depends(get_user_id)):
    """Remove a title regardless of outstanding loans."""
    try:
        deleted = library.delete_book(book_id, role=library.get_role(user_id))
    except LibraryError as e:
        raise _http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"message": "Book removed."}


# --- Borrowing ---
@app.post("/books/{book_id}/borrow", response_model=BookModel)
def borrow_book(book_id: str, payload: BorrowModel, user_id: Optional[str] = Depends(get_user_id)):
    """Borrow one copy for the calling user."""
    if user_id is None:
        raise HTTPException(status_code=401, detail="You must be logged in to borrow a book.")
    book = _get_book_or_404(book_id)
    contact = BorrowerContact(full_name=payload.full_name, email=payload.email, phone=payload.phone)
    try:
        updated = library.borrow(book, user_id, contact)
    except LibraryError as e:
        raise _http_error(e)
    return _book_model(updated)


@app.post("/books/{book_id}/return", response_model=BookModel)
def return_book(book_id: str, user_id: Optional[str] = Depends(get_user_id)):
    """Return one copy. Staff close the latest open loan; members close their own."""
    if user_id is None:
        raise HTTPException(status_code=401, detail="You must be logged in to return a book.")
    book = _get_book_or_404(book_id)
    role = library.get_role(user_id)
    borrower_id = None if role in ("admin", "librarian") else user_id
    try:
        updated = library.return_book(book, borrower_id)
    except LibraryError as e:
        raise _http_error(e)
    return _book_model(updated)


@app.get("/loans", response_model=List[LoanModel])
def list_loans(book_id: Optional[str] = None, open_only: bool = True):
    return [LoanModel(**loan.to_dict()) for loan in library.list_loans(book_id, open_only)]


# --- Profiles ---
@app.put("/profiles/{user_id}/role", response_model=ProfileModel, dependencies=[Depends(get_api_key)])
def update_role(user_id: str, payload: RoleUpdateModel):
    try:
        profile = library.set_role(user_id, payload.role)
    except LibraryError as e:
        raise _http_error(e)
    return ProfileModel(**profile.to_dict())


@app.get("/stats", response_model=StatsModel)
def get_stats() -> Dict[str, Any]:
    return library.get_statistics()
