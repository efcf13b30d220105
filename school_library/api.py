import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from school_library import auth
from school_library.config import settings
from school_library.errors import (
    AlreadyRenewedError,
    BorrowLimitExceededError,
    LibraryError,
    NotFoundError,
    OutOfStockError,
)
from school_library.library import Library, ReturnReceipt
from school_library.models import Book, BookUpdate, Category, Loan, LoanUpdate, utcnow
from school_library.services.file_parser import SUPPORTED_EXTENSIONS, parse_file
from school_library.services.gemini_service import AVAILABLE_MODELS, DEFAULT_MODEL, GeminiService
from school_library.storage import (
    KeyValueStore,
    SnapshotPersistence,
    SQLiteKeyValueStore,
    clear_api_config,
    get_stored_api_key,
    get_stored_model,
    save_api_key,
    save_model,
)

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_store: Optional[KeyValueStore] = None
_library: Optional[Library] = None


def get_store() -> KeyValueStore:
    global _store
    if _store is None:
        _store = SQLiteKeyValueStore()
    return _store


def get_library(store: KeyValueStore = Depends(get_store)) -> Library:
    """The shared library; opening it runs the overdue sweep once."""
    global _library
    if _library is None:
        _library = Library(SnapshotPersistence(store))
    return _library


def get_ai_service(store: KeyValueStore = Depends(get_store)) -> GeminiService:
    return GeminiService(api_key=get_stored_api_key(store), model=get_stored_model(store, DEFAULT_MODEL))


def require_session(store: KeyValueStore = Depends(get_store)) -> str:
    """Dependency for endpoints that change data."""
    if not auth.is_logged_in(store):
        raise HTTPException(status_code=401, detail="Login required.")
    return auth.current_user(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush the last state on shutdown
    if _library is not None:
        _library.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    category: str
    total: int
    available: int


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = ""
    category: str = Field(description="Category label, English name or 2-letter code")
    total: int = Field(ge=0)


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    total: Optional[int] = Field(default=None, ge=0)
    available: Optional[int] = Field(default=None, ge=0)


class ImportCandidateModel(BaseModel):
    title: str
    author: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None


class ImportBooksModel(BaseModel):
    books: List[ImportCandidateModel]


class LoanModel(BaseModel):
    id: str
    book_id: str
    book_title: str
    student_name: str
    student_class: str
    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: str
    is_renewed: bool
    fine_amount: int


class BorrowModel(BaseModel):
    book_id: str
    student_name: str = Field(min_length=1)
    student_class: str = Field(min_length=1)
    enforce_limit: bool = True


class UpdateLoanModel(BaseModel):
    student_name: Optional[str] = None
    student_class: Optional[str] = None
    due_date: Optional[datetime] = None


class ReturnModel(BaseModel):
    loan: LoanModel
    fine: int
    late: bool
    message: str


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    active_loans: int
    overdue_loans: int
    on_time_loans: int
    total_fines: int
    by_category: Dict[str, int]


class LoginModel(BaseModel):
    username: str
    password: str


class AISettingsModel(BaseModel):
    api_key: Optional[str] = None
    model: Optional[str] = None


class RecommendationRequest(BaseModel):
    query: str = Field(min_length=1)


# --- Helpers ---
def _book_model(book: Book) -> BookModel:
    return BookModel(
        id=book.id,
        title=book.title,
        author=book.author,
        category=book.category.value,
        total=book.total,
        available=book.available,
    )


def _loan_model(loan: Loan) -> LoanModel:
    return LoanModel(
        id=loan.id,
        book_id=loan.book_id,
        book_title=loan.book_title,
        student_name=loan.student_name,
        student_class=loan.student_class,
        loan_date=loan.loan_date,
        due_date=loan.due_date,
        return_date=loan.return_date,
        status=loan.status.value,
        is_renewed=loan.is_renewed,
        fine_amount=loan.fine_amount,
    )


def _return_model(receipt: ReturnReceipt) -> ReturnModel:
    return ReturnModel(loan=_loan_model(receipt.loan), fine=receipt.fine, late=receipt.is_late, message=receipt.message)


def _http_error(error: Exception) -> HTTPException:
    """Map library failures onto HTTP status codes."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (OutOfStockError, AlreadyRenewedError, BorrowLimitExceededError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, LibraryError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _parse_category(raw: str) -> Category:
    try:
        return Category.parse(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health check with basic counts."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "total_books": len(library.books),
        "total_loans": len(library.loans),
    }


# --- Session ---
@app.post("/auth/login")
def login(payload: LoginModel, store: KeyValueStore = Depends(get_store)):
    user = auth.login(store, payload.username, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid username or password.")
    return {"user": user}


@app.post("/auth/logout")
def logout(store: KeyValueStore = Depends(get_store)):
    return {"logged_out": auth.logout(store)}


@app.get("/auth/me")
def me(store: KeyValueStore = Depends(get_store)):
    return {"logged_in": auth.is_logged_in(store), "user": auth.current_user(store)}


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(None, description="Search title, author or id"),
               library: Library = Depends(get_library)):
    return [_book_model(b) for b in library.search_books(q)]


@app.get("/books/available", response_model=List[BookModel])
def list_available_books(q: Optional[str] = Query(None, description="Filter by title or id"),
                         library: Library = Depends(get_library)):
    return [_book_model(b) for b in library.available_books(q)]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, library: Library = Depends(get_library)):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(book)


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(require_session)])
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    category = _parse_category(payload.category)
    try:
        book = library.add_book(payload.title, payload.author, category, payload.total)
    except (ValueError, LibraryError) as e:
        raise _http_error(e)
    return _book_model(book)


@app.post("/books/import", response_model=List[BookModel], status_code=201, dependencies=[Depends(require_session)])
def import_books(payload: ImportBooksModel, library: Library = Depends(get_library)):
    """Add a reviewed list of extracted book candidates."""
    try:
        added = library.import_books([c.model_dump() for c in payload.books])
    except (ValueError, LibraryError) as e:
        raise _http_error(e)
    return [_book_model(b) for b in added]


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(require_session)])
def update_book(book_id: str, update: UpdateBookModel, library: Library = Depends(get_library)):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update.")
    if "category" in changes:
        changes["category"] = _parse_category(changes["category"])
    try:
        book = library.update_book(book_id, BookUpdate(**changes))
    except ValueError as e:
        raise _http_error(e)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_model(book)


@app.delete("/books/{book_id}", dependencies=[Depends(require_session)])
def delete_book(book_id: str, library: Library = Depends(get_library)):
    if not library.delete_book(book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    return {"message": "Book deleted."}


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def list_loans(status: str = Query("all", description="active | history | all"),
               student: Optional[str] = Query(None, description="Loans still held by this student"),
               library: Library = Depends(get_library)):
    if student:
        loans = library.student_loans(student)
    elif status == "active":
        loans = library.active_loans()
    elif status == "history":
        loans = library.history_loans()
    elif status == "all":
        loans = library.list_loans()
    else:
        raise HTTPException(status_code=400, detail="Invalid status. Allowed: active, history, all")
    return [_loan_model(l) for l in loans]


@app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(require_session)])
def borrow_book(payload: BorrowModel, library: Library = Depends(get_library)):
    try:
        loan = library.borrow_book(
            payload.book_id,
            payload.student_name,
            payload.student_class,
            enforce_limit=payload.enforce_limit,
        )
    except (ValueError, LibraryError) as e:
        raise _http_error(e)
    return _loan_model(loan)


@app.post("/loans/sweep", response_model=List[LoanModel], dependencies=[Depends(require_session)])
def sweep_overdue(library: Library = Depends(get_library)):
    return [_loan_model(l) for l in library.sweep_overdue()]


@app.post("/loans/{loan_id}/return", response_model=ReturnModel, dependencies=[Depends(require_session)])
def return_book(loan_id: str, library: Library = Depends(get_library)):
    receipt = library.return_book(loan_id)
    if receipt is None:
        raise HTTPException(status_code=404, detail="Loan not found or already returned.")
    return _return_model(receipt)


@app.post("/loans/{loan_id}/renew", response_model=LoanModel, dependencies=[Depends(require_session)])
def renew_loan(loan_id: str, library: Library = Depends(get_library)):
    try:
        loan = library.renew_loan(loan_id)
    except LibraryError as e:
        raise _http_error(e)
    if loan is None:
        raise HTTPException(status_code=404, detail="Loan not found.")
    return _loan_model(loan)


@app.put("/loans/{loan_id}", response_model=LoanModel, dependencies=[Depends(require_session)])
def update_loan(loan_id: str, update: UpdateLoanModel, library: Library = Depends(get_library)):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update.")
    loan = library.update_loan(loan_id, LoanUpdate(**changes))
    if loan is None:
        raise HTTPException(status_code=404, detail="Loan not found.")
    return _loan_model(loan)


@app.delete("/loans/{loan_id}", dependencies=[Depends(require_session)])
def delete_loan(loan_id: str, library: Library = Depends(get_library)):
    if not library.delete_loan(loan_id):
        raise HTTPException(status_code=404, detail="Loan not found.")
    return {"message": "Loan deleted."}


# --- Statistics ---
@app.get("/stats", response_model=StatsModel)
def get_library_stats(library: Library = Depends(get_library)):
    return StatsModel(**library.get_statistics())


# --- AI settings ---
@app.get("/settings/ai")
def get_ai_settings(store: KeyValueStore = Depends(get_store)):
    return {
        "has_api_key": bool(get_stored_api_key(store)),
        "model": get_stored_model(store, DEFAULT_MODEL),
        "available_models": AVAILABLE_MODELS,
    }


@app.put("/settings/ai", dependencies=[Depends(require_session)])
def put_ai_settings(payload: AISettingsModel, store: KeyValueStore = Depends(get_store)):
    if payload.model is not None and payload.model not in AVAILABLE_MODELS:
        raise HTTPException(status_code=400, detail=f"Unknown model. Allowed: {', '.join(AVAILABLE_MODELS)}")
    if payload.api_key is not None:
        save_api_key(store, payload.api_key.strip())
    if payload.model is not None:
        save_model(store, payload.model)
    return get_ai_settings(store)


@app.delete("/settings/ai", dependencies=[Depends(require_session)])
def delete_ai_settings(store: KeyValueStore = Depends(get_store)):
    clear_api_config(store)
    return {"message": "AI settings cleared."}


# --- AI assistant ---
@app.post("/ai/recommendations")
async def recommend_books(request: RecommendationRequest,
                          library: Library = Depends(get_library),
                          service: GeminiService = Depends(get_ai_service)) -> Dict[str, Any]:
    result = await service.get_book_recommendations(request.query, [b.title for b in library.books])
    return result.to_dict()


@app.post("/ai/extract", dependencies=[Depends(require_session)])
async def extract_books(file: UploadFile = File(...),
                        service: GeminiService = Depends(get_ai_service)) -> Dict[str, Any]:
    """Parse an uploaded book list and return candidates for review (nothing is added)."""
    data = await file.read()
    parsed = parse_file(file.filename or "", data)
    if not parsed.success:
        raise HTTPException(status_code=415 if "Unsupported" in (parsed.error or "") else 400,
                            detail=parsed.error)
    if not parsed.content.strip():
        raise HTTPException(status_code=422, detail="The file contains no text.")
    result = await service.extract_books_from_text(parsed.content, is_table_data=parsed.is_table)
    payload = result.to_dict()
    payload["file_type"] = parsed.type
    payload["supported_extensions"] = SUPPORTED_EXTENSIONS
    return payload
