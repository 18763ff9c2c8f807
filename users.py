from datetime import datetime, timezone
from typing import List, Optional

import structlog
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import check_password_policy, hash_password, verify_password
from database import create_document, regex_filter, to_object_id
from errors import Conflict, InvalidInput, NotFound, Unauthenticated
from ratings import RatingService
from schemas import ROLES, User as UserSchema, validated
from stores import StoreService

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("name", "email", "address", "role")


class UserService:

    def __init__(self, db: Database):
        self.db = db

    def register_user(self, name: str, email: str, password: str, address: str, role: str = "user") -> dict:
        check_password_policy(password)
        fields = validated(
            UserSchema,
            name=name,
            email=email,
            address=address,
            role=role,
            password_hash=hash_password(password),
        )
        if self.db["user"].find_one({"email": fields["email"]}):
            raise Conflict("User already exists")
        try:
            user = create_document(self.db, "user", fields)
        except DuplicateKeyError:
            raise Conflict("User already exists")
        logger.info("user_registered", user_id=str(user["_id"]), role=user["role"])
        return user

    def authenticate(self, email: str, password: str) -> dict:
        user = self.db["user"].find_one({"email": email})
        if not user or not verify_password(password, user.get("password_hash", "")):
            raise Unauthenticated("Invalid email or password")
        return user

    def list_users(
        self,
        name: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[dict]:
        q = {}
        if name:
            q["name"] = regex_filter(name)
        if email:
            q["email"] = regex_filter(email)
        if address:
            q["address"] = regex_filter(address)
        if role:
            if role not in ROLES:
                raise InvalidInput(f"Unknown role {role!r}")
            q["role"] = role
        return list(self.db["user"].find(q).sort("name", 1))

    def get_user(self, user_id) -> dict:
        """A user; store owners also get their store's cached average as ``store_rating``."""
        user = self.db["user"].find_one({"_id": to_object_id(user_id)})
        if not user:
            raise NotFound("User not found")
        if user.get("role") == "store_owner":
            store = self.db["store"].find_one({"owner_id": user["_id"]}, {"average_rating": 1})
            if store:
                user["store_rating"] = store.get("average_rating", 0.0)
        return user

    def update_user(self, user_id, updates: dict) -> dict:
        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"Fields {', '.join(sorted(unknown))} cannot be updated")
        user = self.db["user"].find_one({"_id": to_object_id(user_id)})
        if not user:
            raise NotFound("User not found")

        set_fields = {k: v for k, v in updates.items() if v is not None}
        merged = {k: user.get(k) for k in EDITABLE_FIELDS}
        merged.update(set_fields)
        merged = validated(UserSchema, password_hash=user.get("password_hash", ""), **merged)
        set_fields = {k: merged[k] for k in set_fields}
        if not set_fields:
            return user
        if "email" in set_fields and self.db["user"].find_one({"email": set_fields["email"], "_id": {"$ne": user["_id"]}}):
            raise Conflict("Email already registered")

        set_fields["updated_at"] = datetime.now(timezone.utc)
        try:
            self.db["user"].update_one({"_id": user["_id"]}, {"$set": set_fields})
        except DuplicateKeyError:
            raise Conflict("Email already registered")
        return self.db["user"].find_one({"_id": user["_id"]})

    def update_password(self, user_id, old_password: str, new_password: str) -> None:
        user = self.db["user"].find_one({"_id": to_object_id(user_id)})
        if not user:
            raise NotFound("User not found")
        if not verify_password(old_password, user.get("password_hash", "")):
            raise InvalidInput("Old password incorrect")
        check_password_policy(new_password)
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": hash_password(new_password), "updated_at": datetime.now(timezone.utc)}},
        )

    def delete_user(self, user_id) -> None:
        """Delete a user with their stores (and those stores' ratings) and their own ratings.

        Stores that lose one of the user's ratings get their aggregate rebuilt.
        """
        user = self.db["user"].find_one({"_id": to_object_id(user_id)})
        if not user:
            raise NotFound("User not found")

        StoreService(self.db).delete_stores({"owner_id": user["_id"]})

        touched = self.db["rating"].distinct("store_id", {"user_id": user["_id"]})
        removed = self.db["rating"].delete_many({"user_id": user["_id"]}).deleted_count
        ratings = RatingService(self.db)
        for store_id in touched:
            ratings.recompute_store_aggregate(store_id)

        self.db["user"].delete_one({"_id": user["_id"]})
        logger.info("user_deleted", user_id=str(user["_id"]), ratings_removed=removed, stores_recomputed=len(touched))

    def dashboard_stats(self) -> dict:
        return {
            "total_users": self.db["user"].count_documents({}),
            "total_stores": self.db["store"].count_documents({}),
            "total_ratings": self.db["rating"].count_documents({}),
        }
