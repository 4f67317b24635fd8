import logging
import threading
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from config import (
    SESSION_COOKIE,
    STORE_DB,
    USERS_COLLECTION,
    Settings,
    load_settings,
)
from db_store import RelationalCollectionStore, resolve_backend
from file_store import AtomicCollectionStore, LegacyProjectFile
from migration import migrate_legacy_projects
from page_access import collect_page_access, has_page_access, normalize_page_access
from tracker import (
    APP_VERSION,
    ConflictError,
    NotFoundError,
    _hash_password,
    check_user_password,
    normalize_text,
    public_user,
)

logger = logging.getLogger(__name__)

SESSION_MAX_AGE = 7 * 24 * 60 * 60
PROTECTED_COLLECTIONS = {USERS_COLLECTION}

router = APIRouter()


def build_store(settings: Settings):
    """Resolve the storage backend once, from configuration."""
    if settings.store == STORE_DB:
        return RelationalCollectionStore(resolve_backend(settings.database_url))
    return AtomicCollectionStore(settings.content_dir)


class SessionTable:
    """Cookie token -> user id, held in memory for the life of the process."""

    def __init__(self):
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    def open(self, user_id: str) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._tokens[token] = user_id
        return token

    def user_id(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with self._lock:
            return self._tokens.get(token)

    def close(self, token: Optional[str]) -> None:
        if token:
            with self._lock:
                self._tokens.pop(token, None)

    def drop_user(self, user_id: str) -> None:
        with self._lock:
            for token in [t for t, uid in self._tokens.items() if uid == user_id]:
                del self._tokens[token]


def _startup(app: FastAPI) -> None:
    store = app.state.store
    store.open()
    store.seed_pages(app.state.settings.pages)
    migrate_legacy_projects(app.state.legacy, store, only_if_empty=True)
    logger.info("Storage backend: %s", store.backend)
    logger.info("Detected collections: %s", store.list_collections())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.getLogger().setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _startup(app)
        try:
            yield
        finally:
            app.state.store.close()

    app = FastAPI(title="Tracker", version=APP_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = build_store(settings)
    app.state.sessions = SessionTable()
    app.state.legacy = LegacyProjectFile(settings.legacy_file)
    app.include_router(router)
    return app


# ============================================================================
# HELPERS
# ============================================================================

def _store(request: Request):
    return request.app.state.store


def _call(func, *args):
    try:
        return func(*args)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Not found.") from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _current_user(request: Request) -> Optional[dict]:
    token = request.cookies.get(SESSION_COOKIE)
    user_id = request.app.state.sessions.user_id(token)
    if not user_id:
        return None
    return _store(request).get_one(USERS_COLLECTION, user_id)


def _require_user(request: Request) -> dict:
    user = _current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return user


def _require_admin(request: Request) -> dict:
    user = _require_user(request)
    if not user.get("isSuperadmin"):
        raise HTTPException(status_code=403, detail="Admin access required.")
    return user


def _user_view(user: dict, pages: list) -> dict:
    view = public_user(user)
    view["pageAccess"] = normalize_page_access(pages, user.get("pageAccess"))
    return view


def _find_user_by_email(store, email: str) -> Optional[dict]:
    wanted = normalize_text(email).lower()
    for user in store.get_all(USERS_COLLECTION):
        if normalize_text(user.get("email")).lower() == wanted:
            return user
    return None


def _guard_collection(request: Request, collection: str) -> None:
    if collection in PROTECTED_COLLECTIONS:
        _require_admin(request)


# ============================================================================
# STATUS & HEALTH
# ============================================================================

@router.get("/")
def index():
    return PlainTextResponse("API server is running")


@router.get("/api/admin/health")
def health(request: Request):
    store = _store(request)
    content_dir = store.content_dir
    return {
        "contentDir": str(content_dir) if content_dir else None,
        "backend": store.backend,
        "collections": [store.collection_meta(name) for name in store.list_collections()],
    }


# ============================================================================
# AUTH
# ============================================================================

@router.post("/api/auth/login")
def auth_login(request: Request, payload: dict):
    email = normalize_text(payload.get("email"))
    password = payload.get("password")
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required.")
    store = _store(request)
    user = _find_user_by_email(store, email)
    if user is None or not check_user_password(user, password):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    token = request.app.state.sessions.open(user["id"])
    response = JSONResponse({"user": _user_view(user, store.list_pages())})
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=request.app.state.settings.cookie_secure,
    )
    return response


@router.post("/api/auth/logout")
def auth_logout(request: Request):
    request.app.state.sessions.close(request.cookies.get(SESSION_COOKIE))
    response = JSONResponse({"status": "ok"})
    response.delete_cookie(SESSION_COOKIE)
    return response


@router.get("/api/auth/status")
def auth_status(request: Request):
    return {"authenticated": _current_user(request) is not None}


@router.get("/api/auth/me")
def auth_me(request: Request):
    user = _require_user(request)
    return _user_view(user, _store(request).list_pages())


# ============================================================================
# PAGES & ACCESS
# ============================================================================

@router.get("/api/pages")
def list_pages(request: Request):
    _require_user(request)
    return [page for page in _store(request).list_pages() if not page.get("isHidden")]


@router.get("/api/access-check/{slug}")
def access_check(request: Request, slug: str):
    user = _current_user(request)
    if user is None:
        return RedirectResponse("/", status_code=303)
    page_access = normalize_page_access(_store(request).list_pages(), user.get("pageAccess"))
    if not has_page_access(page_access, slug):
        return JSONResponse({"access": False, "page": slug}, status_code=403)
    return {"access": True, "page": slug}


# ============================================================================
# ADMIN: USERS
# ============================================================================

@router.get("/api/admin/users")
def admin_list_users(request: Request):
    _require_admin(request)
    store = _store(request)
    pages = store.list_pages()
    return [_user_view(user, pages) for user in store.get_all(USERS_COLLECTION)]


@router.post("/api/admin/users", status_code=201)
def admin_create_user(request: Request, payload: dict):
    _require_admin(request)
    email = normalize_text(payload.get("email"))
    password = payload.get("password")
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required.")
    store = _store(request)
    if _find_user_by_email(store, email) is not None:
        raise HTTPException(status_code=409, detail="A user with that email already exists.")
    pages = store.list_pages()
    is_superadmin = bool(payload.get("isSuperadmin"))
    user = _call(store.create_one, USERS_COLLECTION, {
        "email": email,
        "firstName": normalize_text(payload.get("firstName")),
        "lastName": normalize_text(payload.get("lastName")),
        "passwordHash": _hash_password(password),
        "isSuperadmin": is_superadmin,
        "pageAccess": collect_page_access(pages, payload.get("pageAccess"), is_superadmin),
    })
    return _user_view(user, pages)


@router.put("/api/admin/users/{user_id}/page-access")
def admin_update_page_access(request: Request, user_id: str, payload: dict):
    _require_admin(request)
    store = _store(request)
    existing = store.get_one(USERS_COLLECTION, user_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="User not found.")
    pages = store.list_pages()
    is_superadmin = bool(payload.get("isSuperadmin", existing.get("isSuperadmin")))
    user = _call(store.update_one, USERS_COLLECTION, user_id, {
        "isSuperadmin": is_superadmin,
        "pageAccess": collect_page_access(pages, payload.get("pageAccess"), is_superadmin),
    })
    return _user_view(user, pages)


# ============================================================================
# LEGACY PROJECTS (monolithic data.json)
# ============================================================================

@router.get("/api/projects")
def legacy_get_projects(request: Request):
    return request.app.state.legacy.get_map()


@router.post("/api/projects", status_code=201)
def legacy_create_project(request: Request, payload: dict):
    project = payload.get("project")
    if not isinstance(project, dict):
        raise HTTPException(status_code=400, detail="Missing project.")
    project_id = normalize_text(payload.get("id")) or None
    return {"id": _call(request.app.state.legacy.create, project, project_id)}


@router.put("/api/projects/{project_id}")
def legacy_update_project(request: Request, project_id: str, payload: dict):
    project = payload.get("project")
    if not isinstance(project, dict):
        raise HTTPException(status_code=400, detail="Missing project.")
    _call(request.app.state.legacy.update, project_id, project)
    return {"ok": True}


@router.delete("/api/projects/{project_id}")
def legacy_delete_project(request: Request, project_id: str):
    _call(request.app.state.legacy.delete, project_id)
    return {"ok": True}


# ============================================================================
# GENERIC COLLECTIONS
# ============================================================================

@router.get("/api/collections")
def list_collections(request: Request):
    return {"collections": _store(request).list_collections()}


@router.get("/api/collections/{collection}")
def get_collection(request: Request, collection: str):
    _guard_collection(request, collection)
    return _call(_store(request).get_all, collection)


@router.post("/api/collections/{collection}", status_code=201)
def create_item(request: Request, collection: str, payload: dict):
    _guard_collection(request, collection)
    return _call(_store(request).create_one, collection, payload)


@router.get("/api/collections/{collection}/{item_id}")
def get_item(request: Request, collection: str, item_id: str):
    _guard_collection(request, collection)
    item = _call(_store(request).get_one, collection, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Not found.")
    return item


@router.put("/api/collections/{collection}/{item_id}")
def update_item(request: Request, collection: str, item_id: str, payload: dict):
    _guard_collection(request, collection)
    return _call(_store(request).update_one, collection, item_id, payload)


@router.delete("/api/collections/{collection}/{item_id}")
def delete_item(request: Request, collection: str, item_id: str):
    _guard_collection(request, collection)
    result = _call(_store(request).delete_one, collection, item_id)
    if collection == USERS_COLLECTION:
        request.app.state.sessions.drop_user(item_id)
    return result
