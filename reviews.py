"""
Review aggregate.

Each review operation calls recompute_rating() before returning, so callers
never observe a product rating that disagrees with its reviews.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import Actor
from catalog import get_product, set_rating
from database import create_document, now, parse_object_id, serialize_doc
from errors import DuplicateReview, Forbidden, NotFound, ValidationFailed
from orders import has_purchased
from schemas import Review as ReviewSchema, build

logger = structlog.get_logger(__name__)


def recompute_rating(db, product_id: ObjectId) -> Tuple[float, int]:
    """Set the product's rating to the mean of its reviews (one decimal) and its review count."""
    rows = list(db["review"].aggregate([
        {"$match": {"product": product_id}},
        {"$group": {"_id": "$product", "total": {"$sum": "$rating"}, "count": {"$sum": 1}}},
    ]))
    if rows and rows[0]["count"]:
        count = rows[0]["count"]
        mean = Decimal(rows[0]["total"]) / Decimal(count)
        rating = float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
    else:
        rating, count = 0.0, 0
    set_rating(db, product_id, rating, count)
    logger.debug("Rating recomputed", product_id=str(product_id), rating=rating, num_reviews=count)
    return rating, count


def _with_user_names(db, reviews: List[dict]) -> List[Dict[str, Any]]:
    user_ids = list({r["user"] for r in reviews})
    names = {u["_id"]: u.get("name") for u in db["user"].find({"_id": {"$in": user_ids}}, {"name": 1})}
    out = []
    for r in reviews:
        data = serialize_doc(r)
        data["user"] = {"id": str(r["user"]), "name": names.get(r["user"])}
        out.append(data)
    return out


def serialize_review(db, review: dict) -> Dict[str, Any]:
    return _with_user_names(db, [review])[0]


def list_reviews(db, product_id: str) -> List[Dict[str, Any]]:
    oid = parse_object_id(product_id, "product id")
    reviews = list(db["review"].find({"product": oid}).sort("created_at", -1))
    return _with_user_names(db, reviews)


def create_review(db, actor: Actor, product_id: str, rating: int, comment: str) -> dict:
    product = get_product(db, product_id)
    if not has_purchased(db, actor.user_id, product["_id"]):
        raise Forbidden("You can only review products you have purchased")
    if db["review"].find_one({"product": product["_id"], "user": actor.user_id}):
        raise DuplicateReview()

    review = build(ReviewSchema, product=product["_id"], user=actor.user_id, rating=rating, comment=comment)
    try:
        review_id = create_document(db, "review", review)
    except DuplicateKeyError:
        raise DuplicateReview()
    recompute_rating(db, product["_id"])
    logger.info("Review created", review_id=review_id, product_id=str(product["_id"]), user_id=actor.id)
    return db["review"].find_one({"_id": ObjectId(review_id)})


def _load_review(db, review_id: str) -> dict:
    review = db["review"].find_one({"_id": parse_object_id(review_id, "review id")})
    if not review:
        raise NotFound("Review not found")
    return review


def update_review(db, actor: Actor, review_id: str, rating: Optional[int] = None, comment: Optional[str] = None) -> dict:
    review = _load_review(db, review_id)
    if not actor.owns(review):
        raise Forbidden("Not authorized")
    changes = {k: v for k, v in {"rating": rating, "comment": comment}.items() if v is not None}
    if not changes:
        raise ValidationFailed("No updates provided")
    build(ReviewSchema, **{**{k: review[k] for k in ReviewSchema.model_fields}, **changes})
    changes["updated_at"] = now()
    updated = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    recompute_rating(db, review["product"])
    return updated


def delete_review(db, actor: Actor, review_id: str) -> None:
    review = _load_review(db, review_id)
    if not actor.owns(review) and not actor.is_admin:
        raise Forbidden("Not authorized")
    db["review"].delete_one({"_id": review["_id"]})
    recompute_rating(db, review["product"])
    logger.info("Review deleted", review_id=review_id, user_id=actor.id)
