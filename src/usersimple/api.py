"""FastAPI application exposing login, session and user administration."""

import logging
from datetime import datetime
from typing import Generator, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.engine import Engine

from .admin import UserStore
from .auth import SessionAuthenticator
from .config import settings
from .database import engine as default_engine, init_db
from .errors import IntegrityViolation, SchemaError, StorageError
from .storage import SQLAlchemyStorage


logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "user_simple_api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


class LoginRequest(BaseModel):
    """Request body for logging in."""

    login: str
    password: str


class PasswordChange(BaseModel):
    """Request body for changing one's own password."""

    current_password: str
    new_password: str = Field(..., min_length=1)


class PasswordReset(BaseModel):
    """Request body for an administrator setting a password."""

    password: str = Field("", description="Empty disables the account")


class IdentityResponse(BaseModel):
    """The user bound to the current session."""

    id: int
    login: str
    name: str
    level: int
    session_expiry: Optional[datetime] = None


class LoginResponse(IdentityResponse):
    session: Optional[str] = None


class UserCreate(BaseModel):
    """Request body for creating a user."""

    login: str = Field(..., min_length=1)
    name: str
    password: str = ""
    level: int = Field(0, ge=0)


class UserUpdate(BaseModel):
    """Fields an administrator may change; omitted ones stay as they are."""

    login: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None
    level: Optional[int] = Field(None, ge=0)


class UserSummary(BaseModel):
    id: int
    login: str
    name: str
    level: int


class UserListResponse(BaseModel):
    total: int
    items: List[UserSummary]


class UserCreated(BaseModel):
    id: int


async def _storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


async def _integrity_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def get_storage(request: Request) -> Generator[SQLAlchemyStorage, None, None]:
    """Provide a storage connection for the duration of one request."""
    storage = SQLAlchemyStorage(request.app.state.engine)
    try:
        yield storage
    finally:
        storage.close()


def get_authenticator(storage: SQLAlchemyStorage = Depends(get_storage)) -> SessionAuthenticator:
    return SessionAuthenticator(
        storage,
        table=settings.user_table,
        duration=settings.session_duration_minutes,
        admin_level=settings.admin_level,
    )


def get_user_store(storage: SQLAlchemyStorage = Depends(get_storage)) -> UserStore:
    return UserStore(storage, table=settings.user_table, admin_level=settings.admin_level)


def current_user(
    request: Request, auth: SessionAuthenticator = Depends(get_authenticator)
) -> SessionAuthenticator:
    """Identify the caller from the session cookie."""
    token = request.cookies.get(settings.session_cookie_name)
    if not token or auth.check_session(token) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session"
        )
    return auth


def require_admin(auth: SessionAuthenticator = Depends(current_user)) -> SessionAuthenticator:
    if auth.level < settings.admin_level:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return auth


def _identity(auth: SessionAuthenticator) -> IdentityResponse:
    ident = auth.identity
    return IdentityResponse(
        id=ident.id,
        login=ident.login,
        name=ident.name,
        level=ident.level,
        session_expiry=ident.session_expiry,
    )


router = APIRouter(tags=["Session"])
users_router = APIRouter(
    prefix="/users", tags=["Users"], dependencies=[Depends(require_admin)]
)


@router.post("/login", response_model=LoginResponse)
@limiter.limit(settings.login_rate_limit)
def login(
    request: Request,
    response: Response,
    payload: LoginRequest,
    auth: SessionAuthenticator = Depends(get_authenticator),
):
    """Check login/password and open a session carried by a cookie."""
    if auth.check_login(payload.login, payload.password) is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    response.set_cookie(
        settings.session_cookie_name, auth.session, httponly=True, samesite="lax"
    )
    return LoginResponse(**_identity(auth).model_dump(), session=auth.session)


@router.get("/session", response_model=IdentityResponse)
def get_session(auth: SessionAuthenticator = Depends(current_user)):
    """Return the user behind the session cookie, refreshing its expiry."""
    return _identity(auth)


@router.post("/logout")
def logout(response: Response, auth: SessionAuthenticator = Depends(current_user)):
    auth.end_session()
    response.delete_cookie(settings.session_cookie_name)
    return {"detail": "Session closed"}


@router.post("/password")
def change_password(
    payload: PasswordChange, auth: SessionAuthenticator = Depends(current_user)
):
    """Change one's own password after confirming the current one."""
    if auth.check_login(auth.login, payload.current_password, skip_session=True) is None:
        raise HTTPException(status_code=403, detail="Invalid credentials")
    if not auth.set_password(payload.new_password):
        raise HTTPException(status_code=400, detail="Password not changed")
    return {"detail": "Password changed"}


@users_router.get("", response_model=UserListResponse)
def list_users(store: UserStore = Depends(get_user_store)):
    users = store.list_users()
    items = [UserSummary(id=user_id, **fields) for user_id, fields in sorted(users.items())]
    return UserListResponse(total=len(items), items=items)


@users_router.post("", response_model=UserCreated, status_code=201)
def create_user(
    payload: UserCreate,
    admin: SessionAuthenticator = Depends(require_admin),
    store: UserStore = Depends(get_user_store),
):
    user_id = store.create_user(payload.login, payload.name, payload.password, payload.level)
    if user_id is None:
        raise HTTPException(status_code=409, detail="Login already registered")
    logger.info("user %s created by %s", payload.login, admin.login)
    return UserCreated(id=user_id)


@users_router.patch("/{user_id}", response_model=UserSummary)
def update_user(
    user_id: int,
    payload: UserUpdate,
    store: UserStore = Depends(get_user_store),
):
    if store.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    if payload.login is not None and not store.set_login(user_id, payload.login):
        raise HTTPException(status_code=409, detail="Login already registered")
    if payload.name is not None:
        store.set_name(user_id, payload.name)
    if payload.level is not None:
        store.set_level(user_id, payload.level)
    user = store.get_user(user_id)
    return UserSummary(id=user.id, login=user.login, name=user.name, level=user.level)


@users_router.put("/{user_id}/password")
def reset_password(
    user_id: int,
    payload: PasswordReset,
    store: UserStore = Depends(get_user_store),
):
    if not store.set_password(user_id, payload.password):
        raise HTTPException(status_code=404, detail="User not found")
    return {"detail": "Password set"}


@users_router.delete("/{user_id}/session")
def clear_user_session(user_id: int, store: UserStore = Depends(get_user_store)):
    if not store.clear_session(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"detail": "Session cleared"}


@users_router.delete("/{user_id}")
def remove_user(user_id: int, store: UserStore = Depends(get_user_store)):
    if not store.remove_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"detail": "User removed"}


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """Build the application, creating the user table if needed."""
    engine = engine or default_engine
    init_db(engine)

    app = FastAPI(title=settings.api_title)
    app.state.engine = engine
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.add_exception_handler(SchemaError, _storage_error_handler)
    app.add_exception_handler(IntegrityViolation, _integrity_error_handler)

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        """Count each request by route and final status."""
        method, path = request.method, request.url.path
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception:
            logger.exception("unhandled error on %s %s", method, path)
            raise
        finally:
            REQUEST_COUNTER.labels(method=method, endpoint=path, status=str(status_code)).inc()
            logger.info("%s %s -> %s", method, path, status_code)

    app.include_router(router)
    app.include_router(users_router)
    return app
