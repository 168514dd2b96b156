import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book
from config import settings
from database import get_db_connection
from errors import ExternalServiceError, LibraryError, Unauthorized
from library import Library
from loan import Loan, LoanStatus
from loans import LoanLedger
from user import Role, User
from users import Users, require_role
from wishlist import Wishlist

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()
users = Users(library.db_file)
wishlist = Wishlist(library.db_file)
ledger = LoanLedger(library, wishlist)
users.ensure_admin()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} {settings.app_version} using database {library.db_file}")
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Errors ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(request: Request, exc: ExternalServiceError):
    return JSONResponse(status_code=502, content={"detail": str(exc), "code": "external_service"})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_current_user(api_key: Optional[str] = Security(api_key_header)) -> User:
    """Resolve the acting user from the X-API-Key header."""
    user = users.find_by_token(api_key)
    if not user:
        raise Unauthorized("Invalid or missing API key.")
    return user


def get_admin(user: User = Depends(get_current_user)) -> User:
    return require_role(user, Role.ADMIN)


# --- Models ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    isbn: str | None = None
    publisher: str | None = None
    published_year: int | None = None
    category: str | None = None
    pages: int | None = None
    language: str | None = None
    description: str | None = None
    cover_url: str | None = None
    quantity: int
    available: int
    created_at: str | None = None


class BookCreateModel(BaseModel):
    isbn: str | None = Field(default=None, description="Provide alone to import from Open Library")
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    published_year: int | None = None
    category: str | None = None
    pages: int | None = Field(default=None, ge=0)
    language: str | None = None
    description: str | None = None
    cover_url: str | None = None
    quantity: int = Field(default=1, ge=0)
    available: int | None = Field(default=None, ge=0)


class UpdateBookModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    publisher: str | None = None
    published_year: int | None = None
    category: str | None = None
    pages: int | None = Field(default=None, ge=0)
    language: str | None = None
    description: str | None = None
    cover_url: str | None = None
    quantity: int | None = Field(default=None, ge=0)


class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    created_at: str | None = None


class UserWithTokenModel(UserModel):
    api_token: str


class UserCreateModel(BaseModel):
    name: str
    email: str
    role: Role = Role.USER


class ProfileUpdateModel(BaseModel):
    name: str | None = None
    email: str | None = None


class UserUpdateModel(BaseModel):
    name: str | None = None
    email: str | None = None
    role: Role | None = None


class LoanModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    loan_date: date
    due_date: date
    status: LoanStatus
    rejection_reason: str | None = None
    return_date: date | None = None
    fine: int | None = None
    book_title: str | None = None
    book_author: str | None = None
    borrower_name: str | None = None
    is_overdue: bool = False
    created_at: str | None = None
    updated_at: str | None = None


class LoanRequestModel(BaseModel):
    book_id: int
    loan_date: date | None = None
    due_date: date | None = None
    remove_from_wishlist: bool = False


class RejectModel(BaseModel):
    reason: str | None = None


class ReturnModel(BaseModel):
    return_date: date | None = None
    fine: int | None = Field(default=None, ge=0, description="Overrides the computed fine")


class LoanStatusUpdateModel(BaseModel):
    status: LoanStatus
    rejection_reason: str | None = None
    return_date: date | None = None
    fine: int | None = Field(default=None, ge=0)


class FinePreviewModel(BaseModel):
    loan_id: int
    return_date: date
    days_late: int
    fine: int


class WishlistAddModel(BaseModel):
    book_id: int


# --- Helpers ---
def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _loan_model(loan: Loan) -> LoanModel:
    return LoanModel(**loan.to_dict(), is_overdue=loan.is_overdue())


def _user_model(user: User) -> UserModel:
    return UserModel(**user.to_dict())


def _can_view(user: User, loan: Loan) -> bool:
    return user.is_admin or loan.user_id == user.id


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        logger.exception("Health check database probe failed")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "db": db_ok,
        "total_books": library.get_statistics()["total_books"] if db_ok else None,
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    search: Optional[str] = Query(None, description="Title, author or ISBN"),
    category: Optional[str] = Query(None),
):
    return [_book_model(b) for b in library.list_books(search=search, category=category)]


@app.get("/categories", response_model=List[str])
def get_categories():
    return library.list_categories()


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return _book_model(library.get_book(book_id))


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, admin: User = Depends(get_admin)):
    """Add a book from manual fields, or import it from Open Library when only an ISBN is given."""
    try:
        if payload.isbn and not payload.title:
            book = library.add_book_by_isbn(payload.isbn, quantity=payload.quantity)
        elif payload.title and payload.author:
            book = library.add_book(Book(**payload.model_dump()))
        else:
            raise HTTPException(status_code=422, detail="Provide an ISBN, or a title and author.")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _book_model(book)


@app.put("/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, update: UpdateBookModel, admin: User = Depends(get_admin)):
    try:
        book = library.update_book(book_id, **update.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _book_model(book)


@app.delete("/books/{book_id}")
def delete_book(book_id: int, admin: User = Depends(get_admin)):
    if not library.remove_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"message": "Book removed."}


# --- Stats ---
@app.get("/stats", response_model=Dict[str, int])
def get_stats(user: User = Depends(get_current_user)):
    """Admins get the library dashboard; borrowers get their own counters."""
    if not user.is_admin:
        return ledger.borrower_stats(user.id)
    catalog = library.get_statistics()
    loans = ledger.count_by_status()
    return {
        "total_books": catalog["total_books"],
        "total_copies": catalog["total_copies"],
        "available_copies": catalog["available_copies"],
        "total_users": users.count(),
        "active_loans": loans[LoanStatus.APPROVED.value],
        "pending_loans": loans[LoanStatus.PENDING.value],
        "overdue_loans": len(ledger.list_overdue()),
    }


# --- Users ---
@app.get("/me", response_model=UserWithTokenModel)
def get_me(user: User = Depends(get_current_user)):
    return UserWithTokenModel(**user.to_dict(include_token=True))


@app.put("/me", response_model=UserWithTokenModel)
def update_me(payload: ProfileUpdateModel, user: User = Depends(get_current_user)):
    """Let the acting user change their own name or email. The role stays as it is."""
    try:
        updated = users.update_user(user.id, name=payload.name, email=payload.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserWithTokenModel(**updated.to_dict(include_token=True))


@app.get("/users", response_model=List[UserModel])
def get_users(role: Optional[Role] = Query(None), admin: User = Depends(get_admin)):
    return [_user_model(u) for u in users.list_users(role=role)]


@app.post("/users", response_model=UserWithTokenModel, status_code=201)
def create_user(payload: UserCreateModel, admin: User = Depends(get_admin)):
    try:
        user = users.create_user(payload.name, payload.email, payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return UserWithTokenModel(**user.to_dict(include_token=True))


@app.put("/users/{user_id}", response_model=UserModel)
def update_user(user_id: int, payload: UserUpdateModel, admin: User = Depends(get_admin)):
    try:
        user = users.update_user(user_id, name=payload.name, email=payload.email, role=payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _user_model(user)


@app.delete("/users/{user_id}")
def delete_user(user_id: int, admin: User = Depends(get_admin)):
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account.")
    if not users.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found.")
    return {"message": "User removed."}


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def get_loans(
    status: Optional[LoanStatus] = Query(None),
    user_id: Optional[int] = Query(None, description="Admins only; borrowers always see their own"),
    search: Optional[str] = Query(None, description="Book title, author or borrower name"),
    user: User = Depends(get_current_user),
):
    if not user.is_admin:
        user_id = user.id
    return [_loan_model(l) for l in ledger.list_loans(status=status, user_id=user_id, search=search)]


@app.get("/loans/overdue", response_model=List[LoanModel])
def get_overdue_loans(admin: User = Depends(get_admin)):
    return [_loan_model(l) for l in ledger.list_overdue()]


@app.post("/loans", response_model=LoanModel, status_code=201)
def request_loan(payload: LoanRequestModel, user: User = Depends(get_current_user)):
    """Ask to borrow a book. The request waits for an admin's approval."""
    loan = ledger.request(
        user,
        payload.book_id,
        loan_date=payload.loan_date,
        due_date=payload.due_date,
        remove_from_wishlist=payload.remove_from_wishlist,
    )
    return _loan_model(loan)


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, user: User = Depends(get_current_user)):
    loan = ledger.get(loan_id)
    if not _can_view(user, loan):
        raise Unauthorized("This loan belongs to another borrower.", authenticated=True)
    return _loan_model(loan)


@app.get("/loans/{loan_id}/fine", response_model=FinePreviewModel)
def preview_fine(loan_id: int, return_date: Optional[date] = Query(None), admin: User = Depends(get_admin)):
    """Fine the return dialog should suggest before the admin confirms."""
    return_date = return_date or date.today()
    loan = ledger.get(loan_id)
    fine = ledger.fine_for(loan, return_date)
    return FinePreviewModel(loan_id=loan_id, return_date=return_date, days_late=loan.days_late(return_date), fine=fine)


@app.post("/loans/{loan_id}/approve", response_model=LoanModel)
def approve_loan(loan_id: int, admin: User = Depends(get_admin)):
    return _loan_model(ledger.approve(admin, loan_id))


@app.post("/loans/{loan_id}/reject", response_model=LoanModel)
def reject_loan(loan_id: int, payload: RejectModel, admin: User = Depends(get_admin)):
    return _loan_model(ledger.reject(admin, loan_id, payload.reason))


@app.post("/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: int, payload: Optional[ReturnModel] = None, admin: User = Depends(get_admin)):
    payload = payload or ReturnModel()
    loan = ledger.return_loan(admin, loan_id, return_date=payload.return_date, fine_override=payload.fine)
    return _loan_model(loan)


@app.put("/loans/{loan_id}", response_model=LoanModel)
def update_loan_status(loan_id: int, payload: LoanStatusUpdateModel, admin: User = Depends(get_admin)):
    """Move a loan to the given status (approve, reject or return)."""
    loan = ledger.update_status(
        admin,
        loan_id,
        payload.status,
        rejection_reason=payload.rejection_reason,
        return_date=payload.return_date,
        fine=payload.fine,
    )
    return _loan_model(loan)


# --- Wishlist ---
@app.get("/wishlist", response_model=List[BookModel])
def get_wishlist(user: User = Depends(get_current_user)):
    return [_book_model(b) for b in wishlist.list_for(user.id)]


@app.post("/wishlist", status_code=201)
def add_to_wishlist(payload: WishlistAddModel, response: Response, user: User = Depends(get_current_user)):
    added = wishlist.add(user.id, payload.book_id)
    if not added:
        response.status_code = 200
    return {"book_id": payload.book_id, "added": added}


@app.delete("/wishlist/{book_id}")
def remove_from_wishlist(book_id: int, user: User = Depends(get_current_user)):
    if not wishlist.remove(user.id, book_id):
        raise HTTPException(status_code=404, detail="Book is not on your wishlist.")
    return {"message": "Removed from wishlist."}
