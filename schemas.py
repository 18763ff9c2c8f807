"""
Database Schemas for the Store Rating App

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Store -> "store"
- Rating -> "rating"

Reference fields hold the referenced document's _id as a string here and are
stored as ObjectId.
"""

from pydantic import BaseModel, Field, EmailStr, ValidationError
from typing import Literal, Type

from errors import InvalidInput

Role = Literal["admin", "user", "store_owner"]
ROLES = ("admin", "user", "store_owner")

# Written only by ratings.RatingService.recompute_store_aggregate
DERIVED_STORE_FIELDS = frozenset({"average_rating", "total_ratings"})


class User(BaseModel):
    name: str = Field(..., min_length=3, max_length=60, description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="BCrypt hash of password")
    address: str = Field(..., max_length=400, description="Address")
    role: Role = Field("user", description="Role: admin, user, store_owner")


class Store(BaseModel):
    name: str = Field(..., min_length=1, description="Store name")
    email: EmailStr = Field(..., description="Unique store email")
    address: str = Field(..., max_length=400, description="Address")
    owner_id: str = Field(..., description="Owner user _id (string)")
    average_rating: float = Field(0.0, ge=0, le=5, description="Cached mean of the store's ratings")
    total_ratings: int = Field(0, ge=0, description="Cached count of the store's ratings")


class Rating(BaseModel):
    user_id: str = Field(..., description="User _id (string)")
    store_id: str = Field(..., description="Store _id (string)")
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")


def validated(model: Type[BaseModel], **fields) -> dict:
    """Validate ``fields`` against a collection schema, raising InvalidInput."""
    try:
        return model(**fields).model_dump()
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ()))
        raise InvalidInput(f"{field}: {err['msg']}" if field else err["msg"])
