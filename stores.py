from datetime import datetime, timezone
from typing import List, Optional

import structlog
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Principal, can_act_on
from database import create_document, regex_filter, to_object_id
from errors import Conflict, Forbidden, InvalidInput, NotFound
from schemas import DERIVED_STORE_FIELDS, Store as StoreSchema, validated

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("name", "email", "address")


class StoreService:

    def __init__(self, db: Database):
        self.db = db

    def create_store(self, name: str, email: str, address: str, owner_id) -> dict:
        """Create a store for an existing user, promoting them to store_owner."""
        fields = validated(StoreSchema, name=name, email=email, address=address, owner_id=str(owner_id))
        if self.db["store"].find_one({"email": fields["email"]}):
            raise Conflict("Store with this email already exists")
        owner = self.db["user"].find_one({"_id": to_object_id(owner_id)})
        if not owner:
            raise NotFound("Owner not found")
        fields["owner_id"] = owner["_id"]
        try:
            store = create_document(self.db, "store", fields)
        except DuplicateKeyError:
            raise Conflict("Store with this email already exists")

        # Promote only once the store exists
        if owner.get("role") != "store_owner":
            self.db["user"].update_one(
                {"_id": owner["_id"]},
                {"$set": {"role": "store_owner", "updated_at": datetime.now(timezone.utc)}},
            )
            logger.info("user_promoted", user_id=str(owner["_id"]), previous_role=owner.get("role"))
        logger.info("store_created", store_id=str(store["_id"]), owner_id=str(owner["_id"]))
        return store

    def list_stores(self, name: Optional[str] = None, address: Optional[str] = None) -> List[dict]:
        q = {}
        if name:
            q["name"] = regex_filter(name)
        if address:
            q["address"] = regex_filter(address)
        stores = list(self.db["store"].find(q).sort("name", 1))
        return self._with_owners(stores)

    def get_store(self, store_id) -> dict:
        store = self.db["store"].find_one({"_id": to_object_id(store_id)})
        if not store:
            raise NotFound("Store not found")
        return self._with_owners([store])[0]

    def get_store_for_owner(self, user_id, principal: Principal) -> dict:
        if not can_act_on(principal, user_id):
            raise Forbidden("Not authorized")
        store = self.db["store"].find_one({"owner_id": to_object_id(user_id)})
        if not store:
            raise NotFound("Store not found")
        return store

    def update_store(self, store_id, updates: dict) -> dict:
        """Edit name/email/address. The cached rating fields are not writable here."""
        derived = DERIVED_STORE_FIELDS.intersection(updates)
        if derived:
            raise InvalidInput(f"Fields {', '.join(sorted(derived))} are derived from ratings and cannot be set")
        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"Fields {', '.join(sorted(unknown))} cannot be updated")

        store = self.db["store"].find_one({"_id": to_object_id(store_id)})
        if not store:
            raise NotFound("Store not found")
        set_fields = {k: v for k, v in updates.items() if v is not None}
        merged = {k: store.get(k) for k in EDITABLE_FIELDS}
        merged.update(set_fields)
        merged = validated(StoreSchema, owner_id=str(store["owner_id"]), **merged)
        set_fields = {k: merged[k] for k in set_fields}
        if not set_fields:
            return store
        if "email" in set_fields and self.db["store"].find_one({"email": set_fields["email"], "_id": {"$ne": store["_id"]}}):
            raise Conflict("Store with this email already exists")

        set_fields["updated_at"] = datetime.now(timezone.utc)
        try:
            self.db["store"].update_one({"_id": store["_id"]}, {"$set": set_fields})
        except DuplicateKeyError:
            raise Conflict("Store with this email already exists")
        return self.db["store"].find_one({"_id": store["_id"]})

    def delete_store(self, store_id, principal: Principal) -> None:
        """Delete a store and every rating that references it (admin only)."""
        if principal.role != "admin":
            raise Forbidden("Only admins can delete stores")
        store = self.db["store"].find_one({"_id": to_object_id(store_id)})
        if not store:
            raise NotFound("Store not found")
        self.delete_stores({"_id": store["_id"]})

    def delete_stores(self, query: dict) -> int:
        # Ratings go first so no rating outlives its store
        store_ids = [s["_id"] for s in self.db["store"].find(query, {"_id": 1})]
        if not store_ids:
            return 0
        removed = self.db["rating"].delete_many({"store_id": {"$in": store_ids}}).deleted_count
        self.db["store"].delete_many({"_id": {"$in": store_ids}})
        logger.info("stores_deleted", store_ids=[str(s) for s in store_ids], ratings_removed=removed)
        return len(store_ids)

    def _with_owners(self, stores: List[dict]) -> List[dict]:
        owner_ids = list({s["owner_id"] for s in stores if s.get("owner_id")})
        owners = {
            u["_id"]: u for u in self.db["user"].find({"_id": {"$in": owner_ids}}, {"name": 1, "email": 1})
        } if owner_ids else {}
        for s in stores:
            o = owners.get(s.get("owner_id"))
            s["owner"] = {"id": str(o["_id"]), "name": o.get("name"), "email": o.get("email")} if o else None
        return stores
