import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import get_settings
from database import connect
from errors import NotFound, SuggestionBoxError
from identity import IdentityProvider, Registration, Session
from schemas import (
    CATEGORIES,
    AdminSortState,
    BulkSaveResult,
    BulkSaveRow,
    Comment,
    ProjectionCriteria,
    SortColumn,
    SortDirection,
    SortOrder,
    Suggestion,
    SuggestionCreate,
    SuggestionEdit,
    SuggestionSummaryRow,
    UserProfileOut,
    Viewer,
    VoteDirection,
)
from services import SuggestionService
from summarizer import GeminiSummarizer

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    try:
        yield
    finally:
        # Only close a service that was actually built
        if get_service.cache_info().currsize:
            service = get_service()
            if service.summarizer is not None:
                service.summarizer.close()
            logger.info("Suggestion service closed")


app = FastAPI(title="Suggestion Box API", version="1.0.1", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache()
def get_service() -> SuggestionService:
    store = connect(settings)
    identity = IdentityProvider(store, settings)
    summarizer = GeminiSummarizer(settings.gemini_api_key, settings.gemini_model,
                                  timeout=settings.summary_timeout)
    return SuggestionService(store, identity, settings, summarizer=summarizer)


def get_viewer(
    authorization: Optional[str] = Header(None),
    service: SuggestionService = Depends(get_service),
) -> Viewer:
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1]
    return service.identity.resolve(token)


@app.exception_handler(SuggestionBoxError)
async def suggestion_box_error_handler(request: Request, exc: SuggestionBoxError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# --------- Request models ---------

class RegisterRequest(BaseModel):
    prn: str
    admission_number: str


class LoginRequest(BaseModel):
    prn: str
    password: str


class AdminLoginRequest(BaseModel):
    username: str
    password: str


class VoteRequest(BaseModel):
    direction: VoteDirection


class CommentCreate(BaseModel):
    text: str


# --------- Health ---------

@app.get("/", tags=["health"])
def root():
    return {"status": "ok", "service": "Suggestion Box API"}


@app.get("/test", tags=["health"])
def test_db(service: SuggestionService = Depends(get_service)):
    ok = service.store.ping()
    return {
        "ok": ok,
        "backing": service.store.backing,
        "collections": [service.suggestions_path, service.identity.users_path],
        "count": len(service.all()) if ok else None,
    }


# --------- Auth ---------

@app.post("/auth/register", response_model=Registration, tags=["auth"])
def register(payload: RegisterRequest, service: SuggestionService = Depends(get_service)):
    return service.identity.register(payload.prn, payload.admission_number)


@app.post("/auth/login", response_model=Session, tags=["auth"])
def login(payload: LoginRequest, service: SuggestionService = Depends(get_service)):
    return service.identity.authenticate(payload.prn, payload.password)


@app.post("/auth/admin", response_model=Session, tags=["auth"])
def admin_login(payload: AdminLoginRequest, service: SuggestionService = Depends(get_service)):
    return service.identity.admin_login(payload.username, payload.password)


@app.get("/auth/me", response_model=Viewer, tags=["auth"])
def me(viewer: Viewer = Depends(get_viewer)):
    return viewer


# --------- Suggestions ---------

@app.get("/categories", tags=["suggestions"])
def categories():
    return CATEGORIES


@app.get("/suggestions", response_model=List[Suggestion], tags=["suggestions"])
def list_suggestions(
    search: str = "",
    tag: str = "All",
    category: str = "All",
    sort: SortOrder = "newest",
    service: SuggestionService = Depends(get_service),
):
    criteria = ProjectionCriteria(search=search, tag=tag, category=category, sort_order=sort)
    return service.list_public(criteria)


@app.get("/suggestions/tags", response_model=List[str], tags=["suggestions"])
def list_tags(service: SuggestionService = Depends(get_service)):
    return service.tags()


@app.get("/suggestions/{suggestion_id}", response_model=Suggestion, tags=["suggestions"])
def get_suggestion(
    suggestion_id: str,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    suggestion = service.get(suggestion_id)
    if not suggestion.is_public and not viewer.is_moderator and suggestion.user_id != viewer.public_id:
        raise NotFound(f"Suggestion not found: {suggestion_id}")
    return suggestion


@app.post("/suggestions", response_model=Suggestion, status_code=201, tags=["suggestions"])
def create_suggestion(
    payload: SuggestionCreate,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.submit(viewer, payload)


@app.post("/suggestions/{suggestion_id}/vote", response_model=Suggestion, tags=["suggestions"])
def vote(
    suggestion_id: str,
    payload: VoteRequest,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.vote(viewer, suggestion_id, payload.direction)


@app.post("/suggestions/{suggestion_id}/comments", response_model=Suggestion, tags=["comments"])
def add_comment(
    suggestion_id: str,
    payload: CommentCreate,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.comment(viewer, suggestion_id, payload.text)


@app.delete("/suggestions/{suggestion_id}", status_code=204, tags=["suggestions"])
def delete_suggestion(
    suggestion_id: str,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    service.delete(viewer, suggestion_id)


@app.get("/me/suggestions", response_model=List[SuggestionSummaryRow], tags=["profile"])
def my_suggestions(
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.list_mine(viewer)


# --------- Admin ---------

@app.get("/admin/suggestions", response_model=List[Suggestion], tags=["admin"])
def admin_suggestions(
    term: str = "",
    column: SortColumn = "created_at",
    direction: SortDirection = "desc",
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.list_for_admin(viewer, term, AdminSortState(column=column, direction=direction))


@app.patch("/admin/suggestions/{suggestion_id}", response_model=Suggestion, tags=["admin"])
def admin_edit(
    suggestion_id: str,
    payload: SuggestionEdit,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.edit(viewer, suggestion_id, payload)


@app.post("/admin/suggestions/save", response_model=BulkSaveResult, tags=["admin"])
def admin_bulk_save(
    rows: List[BulkSaveRow],
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.bulk_save(viewer, rows)


@app.delete("/admin/suggestions/{suggestion_id}/comments/{index}", response_model=Comment, tags=["admin"])
def admin_delete_comment(
    suggestion_id: str,
    index: int,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return service.delete_comment(viewer, suggestion_id, index)


@app.get("/admin/users", response_model=List[UserProfileOut], tags=["admin"])
def admin_users(
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return [UserProfileOut(**p.model_dump()) for p in service.list_users(viewer)]


@app.post("/admin/users/{owner_id}/ban", response_model=UserProfileOut, tags=["admin"])
def admin_toggle_ban(
    owner_id: str,
    service: SuggestionService = Depends(get_service),
    viewer: Viewer = Depends(get_viewer),
):
    return UserProfileOut(**service.toggle_ban(viewer, owner_id).model_dump())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
