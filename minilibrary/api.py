import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from minilibrary.circulation import Circulation
from minilibrary.config import Settings, settings
from minilibrary.database import Database
from minilibrary.errors import LibraryError, UnauthenticatedError, ValidationFailedError
from minilibrary.library import Library
from minilibrary.models import Book, User
from minilibrary.roles import STAFF, Role, authorize
from minilibrary.services.assistant import LibraryAssistant
from minilibrary.services.gemini_service import GeminiService
from minilibrary.services.http_client import AIHTTPClient

logger = logging.getLogger(__name__)


# --- Request models ---
class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = Field(default=None, ge=0, le=2100)
    page_count: Optional[int] = Field(default=None, ge=0)
    language: str = "English"
    description: Optional[str] = None
    cover_image: Optional[str] = None
    total_copies: int = Field(default=1, ge=1)


class BookUpdateModel(BaseModel):
    """Partial edit; available copies are always re-derived server side."""
    title: Optional[str] = Field(default=None, min_length=1)
    author: Optional[str] = Field(default=None, min_length=1)
    isbn: Optional[str] = None
    genre: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = Field(default=None, ge=0, le=2100)
    page_count: Optional[int] = Field(default=None, ge=0)
    language: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, ge=1)


class CheckoutModel(BaseModel):
    book_id: int
    user_id: Optional[int] = None
    due_date: Optional[str] = Field(default=None, description="ISO date or datetime; defaults to the loan period")


class TransactionActionModel(BaseModel):
    action: str


class ReservationCreateModel(BaseModel):
    book_id: int
    user_id: Optional[int] = None


class ReviewCreateModel(BaseModel):
    book_id: int
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class RoleUpdateModel(BaseModel):
    user_id: int
    role: str


class AISearchRequest(BaseModel):
    query: str = Field(min_length=1)


class AISummaryRequest(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: Optional[str] = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)


# --- Dependencies ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_circulation(request: Request) -> Circulation:
    return request.app.state.circulation


def get_assistant(request: Request) -> LibraryAssistant:
    return request.app.state.assistant


def get_current_user(api_key: Optional[str] = Security(api_key_header),
                     library: Library = Depends(get_library)) -> User:
    """Resolve the X-API-Key header to a user."""
    user = library.authenticate(api_key)
    if user is None:
        raise UnauthenticatedError("A valid X-API-Key header is required")
    return user


def require_role(role: Role):
    """Dependency factory: the authenticated user must hold at least `role`."""
    def dependency(user: User = Depends(get_current_user)) -> User:
        authorize(user, min_role=role)
        return user
    return dependency


router = APIRouter()


# --- Health ---
@router.get("/health")
def health(request: Request):
    """Lightweight health check: database reachability and AI availability."""
    state = request.app.state
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": state.settings.app_version,
        "database": state.db.ping(),
        "ai_available": bool(state.ai_service.is_available()),
    }


# --- Books ---
@router.get("/api/books")
def list_books(
    q: Optional[str] = Query(None, description="Free text over title, author, ISBN and genre"),
    genre: Optional[str] = None,
    available: bool = False,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    sort: str = "created_at",
    order: str = "desc",
    library: Library = Depends(get_library),
):
    return library.list_books(query=q, genre=genre, available=available, page=page,
                              limit=limit, sort=sort, order=order)


@router.post("/api/books", status_code=201)
def create_book(payload: BookCreateModel, user: User = Depends(get_current_user),
                library: Library = Depends(get_library)):
    book = library.add_book(Book(**payload.model_dump()), user)
    return book.to_dict()


@router.get("/api/books/{book_id}")
def get_book(book_id: int, library: Library = Depends(get_library)):
    return library.get_book_detail(book_id)


@router.put("/api/books/{book_id}")
def update_book(book_id: int, payload: BookUpdateModel, user: User = Depends(get_current_user),
                library: Library = Depends(get_library)):
    changes = payload.model_dump(exclude_unset=True)
    return library.update_book(book_id, changes, user).to_dict()


@router.delete("/api/books/{book_id}")
def delete_book(book_id: int, user: User = Depends(get_current_user),
                library: Library = Depends(get_library)):
    library.remove_book(book_id, user)
    return {"message": "Book deleted", "id": book_id}


@router.get("/api/books/{book_id}/reviews")
def get_book_reviews(book_id: int, library: Library = Depends(get_library)):
    return [r.to_dict() for r in library.list_reviews(book_id)]


@router.get("/api/books/{book_id}/rating")
def get_book_rating(book_id: int, library: Library = Depends(get_library)):
    library.get_book(book_id)
    return library.get_rating(book_id)


# --- Circulation ---
@router.get("/api/transactions")
def list_transactions(user_id: Optional[int] = None, status: Optional[str] = None,
                      user: User = Depends(get_current_user),
                      circulation: Circulation = Depends(get_circulation)):
    return [t.to_dict() for t in circulation.list_transactions(user, user_id=user_id, status=status)]


@router.post("/api/transactions", status_code=201)
def checkout(payload: CheckoutModel, user: User = Depends(get_current_user),
             circulation: Circulation = Depends(get_circulation)):
    transaction = circulation.checkout(payload.book_id, user, due_date=payload.due_date, user_id=payload.user_id)
    return transaction.to_dict()


@router.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, user: User = Depends(get_current_user),
                    circulation: Circulation = Depends(get_circulation)):
    return circulation.get_transaction(transaction_id, user).to_dict()


@router.put("/api/transactions/{transaction_id}")
def update_transaction(transaction_id: int, payload: TransactionActionModel,
                       user: User = Depends(get_current_user),
                       circulation: Circulation = Depends(get_circulation)):
    if payload.action != "return":
        raise ValidationFailedError.for_field("action", "Unsupported action; expected 'return'")
    return circulation.return_book(transaction_id, user).to_dict()


@router.get("/api/reservations")
def list_reservations(user_id: Optional[int] = None, user: User = Depends(get_current_user),
                      circulation: Circulation = Depends(get_circulation)):
    return [r.to_dict() for r in circulation.list_reservations(user, user_id=user_id)]


@router.post("/api/reservations", status_code=201)
def reserve(payload: ReservationCreateModel, user: User = Depends(get_current_user),
            circulation: Circulation = Depends(get_circulation)):
    return circulation.reserve(payload.book_id, user, user_id=payload.user_id).to_dict()


@router.delete("/api/reservations/{reservation_id}")
def cancel_reservation(reservation_id: int, user: User = Depends(get_current_user),
                       circulation: Circulation = Depends(get_circulation)):
    return circulation.cancel_reservation(reservation_id, user).to_dict()


# --- Reviews ---
@router.post("/api/reviews")
def submit_review(payload: ReviewCreateModel, user: User = Depends(get_current_user),
                  library: Library = Depends(get_library)):
    return library.submit_review(payload.book_id, user, payload.rating, payload.comment).to_dict()


# --- Users & administration ---
@router.get("/api/me")
def me(user: User = Depends(get_current_user), circulation: Circulation = Depends(get_circulation)):
    data = user.to_dict()
    data["summary"] = circulation.summary(user)
    return data


@router.get("/api/users")
def list_users(user: User = Depends(require_role(Role.ADMIN)), library: Library = Depends(get_library)):
    return library.list_users(user)


@router.put("/api/users")
def update_user_role(payload: RoleUpdateModel, user: User = Depends(require_role(Role.ADMIN)),
                     library: Library = Depends(get_library)):
    return library.update_role(user, payload.user_id, payload.role).to_dict()


@router.get("/api/stats", dependencies=[Depends(get_current_user)])
def stats(library: Library = Depends(get_library)):
    return library.get_statistics()


@router.get("/api/export/csv", dependencies=[Depends(require_role(STAFF))])
def export_csv(library: Library = Depends(get_library)):
    """Inventory as a CSV download."""
    return Response(
        content=library.export_csv(),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=library_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
        },
    )


# --- AI assistant ---
@router.post("/api/ai/search", dependencies=[Depends(get_current_user)])
async def ai_search(payload: AISearchRequest, assistant: LibraryAssistant = Depends(get_assistant)):
    return await assistant.search(payload.query)


@router.post("/api/ai/recommend")
async def ai_recommend(user: User = Depends(get_current_user),
                       assistant: LibraryAssistant = Depends(get_assistant)):
    return await assistant.recommend(user)


@router.post("/api/ai/summarize", dependencies=[Depends(get_current_user)])
async def ai_summarize(payload: AISummaryRequest, assistant: LibraryAssistant = Depends(get_assistant)):
    return await assistant.summarize(payload.title, payload.author, payload.isbn)


@router.post("/api/ai/chat", dependencies=[Depends(get_current_user)])
async def ai_chat(payload: ChatRequest, assistant: LibraryAssistant = Depends(get_assistant)):
    return await assistant.chat([m.model_dump() for m in payload.messages])


@router.get("/api/ai/usage", dependencies=[Depends(require_role(Role.ADMIN))])
def ai_usage(request: Request) -> Dict[str, Any]:
    return request.app.state.ai_service.get_usage_stats()


# --- Error handlers ---
async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header")]
        details.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    error = ValidationFailedError("Validation failed", details=details)
    logger.info(f"{request.method} {request.url.path} rejected: {error.code} - {details}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app(app_settings: Optional[Settings] = None, database: Optional[Database] = None,
               ai_service=None) -> FastAPI:
    """Build the application.

    The database handle and the language-model service are created in the
    lifespan unless given, so tests can inject a temporary database and a
    fake model.
    """
    cfg = app_settings or settings
    logging.basicConfig(level=getattr(logging, cfg.log_level.upper(), logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(cfg.database_file)
        db.initialize()
        http_client = AIHTTPClient(timeout=cfg.gemini_timeout)
        service = ai_service or GeminiService(
            db, http_client,
            api_key=cfg.gemini_api_key,
            model=cfg.gemini_model,
            timeout=cfg.gemini_timeout,
            enabled=cfg.enable_ai_features,
        )
        library = Library(db, page_size=cfg.default_page_size, max_page_size=cfg.max_page_size)
        app.state.settings = cfg
        app.state.db = db
        app.state.library = library
        app.state.circulation = Circulation(db, loan_days=cfg.default_loan_days, hold_days=cfg.reservation_hold_days)
        app.state.ai_service = service
        app.state.assistant = LibraryAssistant(library, service, cfg)
        logger.info(f"{cfg.app_name} {cfg.app_version} started (database={db.path})")
        try:
            yield
        finally:
            await http_client.close()

    app = FastAPI(title=f"{cfg.app_name} API", version=cfg.app_version, debug=cfg.debug, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
