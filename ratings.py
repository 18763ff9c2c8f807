"""
Rating aggregation.

Keeps two things true for every store:
- at most one rating per (user, store), enforced by the unique compound index
  on ``rating(user_id, store_id)``; a second submit turns into an update.
- ``store.average_rating`` / ``store.total_ratings`` equal the mean (half-even,
  one decimal) and count of the store's current ratings, or 0/0 when it has
  none. They are recomputed from scratch after every rating write and are
  written nowhere else.

There is no multi-document transaction: the rating write commits first and the
aggregate is recomputed as the last step of the same call. A failure between
the two is repaired by re-running ``recompute_store_aggregate`` (idempotent) or
the ``recompute_all`` sweep.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Principal, can_act_on
from database import retry_transient, to_object_id
from errors import Conflict, Forbidden, InvalidInput, NotFound

logger = structlog.get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def check_rating_value(value) -> int:
    # bool is an int subclass; True must not pass as a 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput("Rating must be an integer between 1 and 5")
    if not (MIN_RATING <= value <= MAX_RATING):
        raise InvalidInput("Rating must be between 1 and 5")
    return value


def mean_rating(total: int, count: int) -> float:
    """Mean of ``count`` ratings summing to ``total``, half-even to one decimal."""
    if count == 0:
        return 0.0
    mean = Decimal(total) / Decimal(count)
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN))


class RatingService:

    def __init__(self, db: Database):
        self.db = db

    def submit_rating(self, user_id, store_id, value) -> Tuple[dict, bool]:
        """Create or overwrite the caller's rating for a store.

        Returns the stored rating and whether it was newly created.
        """
        check_rating_value(value)
        uid = to_object_id(user_id)
        sid = to_object_id(store_id)
        if not self.db["store"].find_one({"_id": sid}, {"_id": 1}):
            raise NotFound("Store not found")

        now = datetime.now(timezone.utc)
        doc = {"user_id": uid, "store_id": sid, "rating": value, "created_at": now, "updated_at": now}
        try:
            res = self.db["rating"].insert_one(doc)
            doc["_id"] = res.inserted_id
            created = True
        except DuplicateKeyError:
            # Already rated (possibly by a concurrent request): update instead
            doc = self.db["rating"].find_one_and_update(
                {"user_id": uid, "store_id": sid},
                {"$set": {"rating": value, "updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                raise Conflict("Rating changed while it was being saved, please retry")
            created = False

        logger.info("rating_submitted", rating_id=str(doc["_id"]), store_id=str(sid), created=created)
        self.recompute_store_aggregate(sid)
        return doc, created

    def update_rating(self, rating_id, requester_id, value) -> dict:
        check_rating_value(value)
        existing = self._owned_rating(rating_id, requester_id, "update")
        doc = self.db["rating"].find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": {"rating": value, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFound("Rating not found")
        logger.info("rating_updated", rating_id=str(doc["_id"]), store_id=str(doc["store_id"]))
        self.recompute_store_aggregate(doc["store_id"])
        return doc

    def delete_rating(self, rating_id, requester_id) -> None:
        existing = self._owned_rating(rating_id, requester_id, "delete")
        self.db["rating"].delete_one({"_id": existing["_id"]})
        logger.info("rating_deleted", rating_id=str(existing["_id"]), store_id=str(existing["store_id"]))
        self.recompute_store_aggregate(existing["store_id"])

    def get_user_rating_for_store(self, user_id, store_id) -> dict:
        rating = self.db["rating"].find_one({"user_id": to_object_id(user_id), "store_id": to_object_id(store_id)})
        if not rating:
            raise NotFound("Rating not found")
        return rating

    def list_user_ratings(self, user_id) -> List[dict]:
        """The user's ratings, each with a summary of the rated store."""
        ratings = list(self.db["rating"].find({"user_id": to_object_id(user_id)}).sort("updated_at", -1))
        store_ids = list({r["store_id"] for r in ratings})
        stores = {
            s["_id"]: s
            for s in self.db["store"].find({"_id": {"$in": store_ids}}, {"name": 1, "address": 1, "average_rating": 1})
        } if store_ids else {}
        for r in ratings:
            s = stores.get(r["store_id"])
            r["store"] = {
                "id": str(s["_id"]),
                "name": s.get("name"),
                "address": s.get("address"),
                "average_rating": s.get("average_rating", 0.0),
            } if s else None
        return ratings

    def list_store_ratings(self, store_id, principal: Principal) -> List[dict]:
        """All ratings of a store with their raters; store owner or admin only."""
        sid = to_object_id(store_id)
        store = self.db["store"].find_one({"_id": sid})
        if not store:
            raise NotFound("Store not found")
        if not can_act_on(principal, store.get("owner_id")):
            raise Forbidden("Not authorized")
        ratings = list(self.db["rating"].find({"store_id": sid}).sort("updated_at", -1))
        user_ids = list({r["user_id"] for r in ratings})
        users = {
            u["_id"]: u for u in self.db["user"].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1})
        } if user_ids else {}
        for r in ratings:
            u = users.get(r["user_id"])
            r["user"] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")} if u else None
        return ratings

    @retry_transient()
    def recompute_store_aggregate(self, store_id) -> dict:
        """Rebuild a store's cached average and count from its current ratings."""
        sid = to_object_id(store_id)
        agg = list(self.db["rating"].aggregate([
            {"$match": {"store_id": sid}},
            {"$group": {"_id": "$store_id", "sum": {"$sum": "$rating"}, "count": {"$sum": 1}}},
        ]))
        total = int(agg[0]["count"]) if agg else 0
        average = mean_rating(int(agg[0]["sum"]), total) if agg else 0.0
        self.db["store"].update_one(
            {"_id": sid},
            {"$set": {"average_rating": average, "total_ratings": total}},
        )
        logger.debug("store_aggregate_recomputed", store_id=str(sid), average_rating=average, total_ratings=total)
        return {"average_rating": average, "total_ratings": total}

    def recompute_all(self) -> dict:
        """Consistency sweep: drop orphaned ratings and rebuild every aggregate.

        A rating is orphaned when its store or its author no longer exists.
        """
        store_ids = [s["_id"] for s in self.db["store"].find({}, {"_id": 1})]
        user_ids = [u["_id"] for u in self.db["user"].find({}, {"_id": 1})]
        orphans = self.db["rating"].delete_many({
            "$or": [{"store_id": {"$nin": store_ids}}, {"user_id": {"$nin": user_ids}}],
        }).deleted_count
        for sid in store_ids:
            self.recompute_store_aggregate(sid)
        logger.info("store_aggregates_repaired", stores=len(store_ids), orphaned_ratings=orphans)
        return {"stores": len(store_ids), "orphaned_ratings_removed": orphans}

    def _owned_rating(self, rating_id, requester_id, action: str) -> dict:
        rating = self.db["rating"].find_one({"_id": to_object_id(rating_id)})
        if not rating:
            raise NotFound("Rating not found")
        if str(rating["user_id"]) != str(requester_id):
            raise Forbidden(f"Not authorized to {action} this rating")
        return rating
