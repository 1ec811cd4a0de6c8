import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lending.config import settings
from lending.engine import BorrowingEngine
from lending.errors import LendingError, NotFound
from lending.models import Book, BookStatus, BorrowingStatus, User, UserRole, UserStatus
from lending.store import EntityStore

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_engine: Optional[BorrowingEngine] = None


def get_engine() -> BorrowingEngine:
    """Dependency returning the process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = BorrowingEngine(EntityStore(settings.database_file))
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Open the database up front so schema errors surface at startup
    app.dependency_overrides.get(get_engine, get_engine)()
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# HTTP status for each error kind
STATUS_BY_KIND = {
    "not_found": 404,
    "policy_violation": 422,
    "conflict": 409,
    "constraint_violation": 400,
    "invalid_transition": 409,
    "inconsistency": 500,
}


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    status_code = STATUS_BY_KIND.get(exc.kind, 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"kind": "invalid_argument", "detail": str(exc)})


# --- Models ---
class UserCreateModel(BaseModel):
    username: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole = UserRole.MEMBER
    status: UserStatus = UserStatus.ACTIVE


class UserStatusModel(BaseModel):
    status: UserStatus


class BookCreateModel(BaseModel):
    isbn: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    total_copies: int = Field(1, ge=0)
    available_copies: Optional[int] = Field(None, ge=0)
    publication_year: Optional[int] = None
    language: Optional[str] = None
    location: Optional[str] = None
    status: BookStatus = BookStatus.AVAILABLE


class BorrowRequest(BaseModel):
    user_id: int
    book_id: int
    loan_days: int = Field(default_factory=lambda: settings.default_loan_days, ge=1)


class ReturnResponse(BaseModel):
    borrowing_id: int
    returned: bool
    borrowing: Dict[str, Any]


class OverdueResponse(BaseModel):
    marked: int


# --- Health ---
@app.get("/health")
def health(engine: BorrowingEngine = Depends(get_engine)):
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        engine.store.count_books()
    except Exception:
        logger.exception("Health check database probe failed")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


@app.get("/stats")
def stats(engine: BorrowingEngine = Depends(get_engine)):
    return engine.store.statistics()


# --- Users ---
@app.post("/users", status_code=201)
def create_user(payload: UserCreateModel, engine: BorrowingEngine = Depends(get_engine)):
    user = engine.store.create_user(User(**payload.model_dump()))
    return user.to_dict()


@app.get("/users")
def list_users(engine: BorrowingEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return [u.to_dict() for u in engine.store.list_users()]


@app.get("/users/{user_id}")
def get_user(user_id: int, engine: BorrowingEngine = Depends(get_engine)):
    return engine.store.find_user(user_id).to_dict()


@app.patch("/users/{user_id}/status")
def set_user_status(user_id: int, payload: UserStatusModel,
                    engine: BorrowingEngine = Depends(get_engine)):
    return engine.store.set_user_status(user_id, payload.status).to_dict()


# --- Books ---
@app.post("/books", status_code=201)
def create_book(payload: BookCreateModel, engine: BorrowingEngine = Depends(get_engine)):
    book = engine.store.create_book(Book(**payload.model_dump()))
    return book.to_dict()


@app.get("/books")
def list_books(q: Optional[str] = Query(None, description="Search by title"),
               available: bool = Query(False, description="Only books with copies on the shelf"),
               engine: BorrowingEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    if q:
        books = engine.store.search_books(q)
        if available:
            books = [b for b in books if b.available_copies > 0]
    elif available:
        books = engine.store.list_available_books()
    else:
        books = engine.store.list_books()
    return [b.to_dict() for b in books]


@app.get("/books/{book_id}")
def get_book(book_id: int, engine: BorrowingEngine = Depends(get_engine)):
    return engine.store.find_book(book_id).to_dict()


@app.delete("/books/{book_id}")
def delete_book(book_id: int, engine: BorrowingEngine = Depends(get_engine)):
    if not engine.store.delete_book(book_id):
        raise NotFound("Book", book_id)
    return {"deleted": True, "book_id": book_id}


# --- Borrowings ---
# Static paths go before /borrowings/{borrowing_id}
@app.post("/borrowings/mark-overdue", response_model=OverdueResponse)
def mark_overdue(engine: BorrowingEngine = Depends(get_engine)):
    return OverdueResponse(marked=engine.mark_overdue())


@app.post("/borrowings", status_code=201)
def borrow(payload: BorrowRequest, engine: BorrowingEngine = Depends(get_engine)):
    borrowing = engine.borrow(payload.user_id, payload.book_id, payload.loan_days)
    return borrowing.to_dict()


@app.get("/borrowings")
def list_borrowings(user_id: Optional[int] = None, status: Optional[BorrowingStatus] = None,
                    engine: BorrowingEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return [b.to_dict() for b in engine.list_borrowings(user_id=user_id, status=status)]


@app.get("/borrowings/{borrowing_id}")
def get_borrowing(borrowing_id: int, engine: BorrowingEngine = Depends(get_engine)):
    return engine.get_borrowing(borrowing_id).to_dict()


@app.post("/borrowings/{borrowing_id}/return", response_model=ReturnResponse)
def return_borrowing(borrowing_id: int, engine: BorrowingEngine = Depends(get_engine)):
    returned = engine.return_book(borrowing_id)
    return ReturnResponse(
        borrowing_id=borrowing_id,
        returned=returned,
        borrowing=engine.get_borrowing(borrowing_id).to_dict(),
    )


@app.post("/borrowings/{borrowing_id}/pay-fine")
def pay_fine(borrowing_id: int, engine: BorrowingEngine = Depends(get_engine)):
    return engine.pay_fine(borrowing_id).to_dict()
