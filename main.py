import logging
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, StrictInt
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import settings
from auth import Principal, get_current_user, require_role, token_for
from database import TRANSIENT_ERRORS, get_db
from errors import KIND_BY_STATUS, RatingAppError
from ratings import RatingService
from schemas import Role
from stores import StoreService
from users import UserService

logger = structlog.get_logger(__name__)


def configure_logging():
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL)),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    database.connect()
    yield
    database.disconnect()


# App setup
app = FastAPI(title="Store Rating App", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Error responses: {"kind", "message"} and nothing else


def error_response(status_code: int, kind: str, message: str, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"kind": kind, "message": message}, headers=headers)


@app.exception_handler(RatingAppError)
async def domain_error_handler(request: Request, exc: RatingAppError):
    return error_response(exc.status_code, exc.kind, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        exc.status_code,
        KIND_BY_STATUS.get(exc.status_code, "error"),
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    err = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in err.get("loc", ())[1:])
    message = f"{field}: {err.get('msg')}" if field else str(err.get("msg", "Invalid request"))
    return error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_input", message)


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return error_response(status.HTTP_409_CONFLICT, "conflict", "Duplicate record")


async def storage_error_handler(request: Request, exc: Exception):
    logger.error("storage_unavailable", path=request.url.path, error=type(exc).__name__)
    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "unavailable", "Storage temporarily unavailable")


for _exc in TRANSIENT_ERRORS:
    app.add_exception_handler(_exc, storage_error_handler)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal", "Server error")


# Services

def user_service(db: Database = Depends(get_db)) -> UserService:
    return UserService(db)


def store_service(db: Database = Depends(get_db)) -> StoreService:
    return StoreService(db)


def rating_service(db: Database = Depends(get_db)) -> RatingService:
    return RatingService(db)


# Pydantic models
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    address: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PasswordUpdate(BaseModel):
    old_password: str
    new_password: str


class UserIn(BaseModel):
    name: str
    email: EmailStr
    password: str
    address: str
    role: Role = "user"


class UserUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    role: Optional[Role] = None


# Store bodies reject unknown keys, so average_rating/total_ratings can't be sent
class StoreIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    email: EmailStr
    address: str
    owner_id: str


class StoreUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None


# true, "3" and 4.0 are rejected rather than coerced to an int
class RatingIn(BaseModel):
    store_id: str
    rating: StrictInt


class RatingUpdate(BaseModel):
    rating: StrictInt


# Utilities

def serialize_user(doc) -> dict:
    out = {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "address": doc.get("address"),
        "role": doc.get("role", "user"),
        "created_at": doc.get("created_at"),
    }
    if "store_rating" in doc:
        out["store_rating"] = doc["store_rating"]
    return out


def serialize_store(doc) -> dict:
    out = {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "address": doc.get("address"),
        "owner_id": str(doc.get("owner_id")) if doc.get("owner_id") else None,
        "average_rating": float(doc.get("average_rating", 0)),
        "total_ratings": int(doc.get("total_ratings", 0)),
        "created_at": doc.get("created_at"),
    }
    if "owner" in doc:
        out["owner"] = doc["owner"]
    return out


def serialize_rating(doc) -> dict:
    out = {
        "id": str(doc["_id"]),
        "user_id": str(doc.get("user_id")),
        "store_id": str(doc.get("store_id")),
        "rating": doc.get("rating"),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }
    for joined in ("store", "user"):
        if joined in doc:
            out[joined] = doc[joined]
    return out


# Routes
@app.get("/")
def root():
    return {"message": "Store Rating API is running"}


@app.get("/test")
def test_database():
    try:
        collections = get_db().list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {str(e)[:80]}"}


# Auth
@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest, users: UserService = Depends(user_service)):
    user = users.register_user(payload.name, payload.email, payload.password, payload.address)
    return TokenResponse(access_token=token_for(user), user=serialize_user(user))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, users: UserService = Depends(user_service)):
    user = users.authenticate(payload.email, payload.password)
    return TokenResponse(access_token=token_for(user), user=serialize_user(user))


@app.get("/auth/me")
def me(principal: Principal = Depends(get_current_user), users: UserService = Depends(user_service)):
    return serialize_user(users.get_user(principal.id))


@app.put("/auth/password")
def update_password(
    payload: PasswordUpdate,
    principal: Principal = Depends(get_current_user),
    users: UserService = Depends(user_service),
):
    users.update_password(principal.id, payload.old_password, payload.new_password)
    return {"message": "Password updated"}


# Users (admin)
@app.get("/users")
def list_users(
    name: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    role: Optional[str] = None,
    admin: Principal = Depends(require_role("admin")),
    users: UserService = Depends(user_service),
):
    return [serialize_user(u) for u in users.list_users(name=name, email=email, address=address, role=role)]


@app.post("/users", status_code=201)
def create_user(payload: UserIn, admin: Principal = Depends(require_role("admin")), users: UserService = Depends(user_service)):
    user = users.register_user(payload.name, payload.email, payload.password, payload.address, role=payload.role)
    return serialize_user(user)


@app.get("/users/dashboard/stats")
def dashboard_stats(admin: Principal = Depends(require_role("admin")), users: UserService = Depends(user_service)):
    return users.dashboard_stats()


@app.get("/users/{user_id}")
def get_user(user_id: str, admin: Principal = Depends(require_role("admin")), users: UserService = Depends(user_service)):
    return serialize_user(users.get_user(user_id))


@app.put("/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    admin: Principal = Depends(require_role("admin")),
    users: UserService = Depends(user_service),
):
    return serialize_user(users.update_user(user_id, payload.model_dump(exclude_unset=True)))


@app.delete("/users/{user_id}")
def delete_user(user_id: str, admin: Principal = Depends(require_role("admin")), users: UserService = Depends(user_service)):
    users.delete_user(user_id)
    return {"message": "User removed"}


# Stores
@app.get("/stores")
def list_stores(name: Optional[str] = None, address: Optional[str] = None, stores: StoreService = Depends(store_service)):
    return [serialize_store(s) for s in stores.list_stores(name=name, address=address)]


@app.post("/stores", status_code=201)
def create_store(payload: StoreIn, admin: Principal = Depends(require_role("admin")), stores: StoreService = Depends(store_service)):
    store = stores.create_store(payload.name, payload.email, payload.address, payload.owner_id)
    return serialize_store(store)


@app.post("/stores/recompute")
def recompute_stores(admin: Principal = Depends(require_role("admin")), ratings: RatingService = Depends(rating_service)):
    return ratings.recompute_all()


@app.get("/stores/owner/{user_id}")
def store_for_owner(
    user_id: str,
    principal: Principal = Depends(get_current_user),
    stores: StoreService = Depends(store_service),
):
    return serialize_store(stores.get_store_for_owner(user_id, principal))


@app.get("/stores/{store_id}")
def get_store(store_id: str, stores: StoreService = Depends(store_service)):
    return serialize_store(stores.get_store(store_id))


@app.put("/stores/{store_id}")
def update_store(
    store_id: str,
    payload: StoreUpdate,
    admin: Principal = Depends(require_role("admin")),
    stores: StoreService = Depends(store_service),
):
    return serialize_store(stores.update_store(store_id, payload.model_dump(exclude_unset=True)))


@app.delete("/stores/{store_id}")
def delete_store(store_id: str, admin: Principal = Depends(require_role("admin")), stores: StoreService = Depends(store_service)):
    stores.delete_store(store_id, admin)
    return {"message": "Store removed"}


@app.get("/stores/{store_id}/ratings")
def store_ratings(
    store_id: str,
    principal: Principal = Depends(get_current_user),
    ratings: RatingService = Depends(rating_service),
):
    return [serialize_rating(r) for r in ratings.list_store_ratings(store_id, principal)]


# Ratings
@app.post("/ratings")
def submit_rating(
    payload: RatingIn,
    response: Response,
    principal: Principal = Depends(get_current_user),
    ratings: RatingService = Depends(rating_service),
):
    rating, created = ratings.submit_rating(principal.id, payload.store_id, payload.rating)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return serialize_rating(rating)


@app.get("/ratings/user")
def my_ratings(principal: Principal = Depends(get_current_user), ratings: RatingService = Depends(rating_service)):
    return [serialize_rating(r) for r in ratings.list_user_ratings(principal.id)]


@app.get("/ratings/store/{store_id}")
def my_rating_for_store(
    store_id: str,
    principal: Principal = Depends(get_current_user),
    ratings: RatingService = Depends(rating_service),
):
    return serialize_rating(ratings.get_user_rating_for_store(principal.id, store_id))


@app.put("/ratings/{rating_id}")
def update_rating(
    rating_id: str,
    payload: RatingUpdate,
    principal: Principal = Depends(get_current_user),
    ratings: RatingService = Depends(rating_service),
):
    return serialize_rating(ratings.update_rating(rating_id, principal.id, payload.rating))


@app.delete("/ratings/{rating_id}")
def delete_rating(
    rating_id: str,
    principal: Principal = Depends(get_current_user),
    ratings: RatingService = Depends(rating_service),
):
    ratings.delete_rating(rating_id, principal.id)
    return {"message": "Rating removed"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
