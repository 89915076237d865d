"""
Catalog store: product queries, admin product management and stock updates.

Stock only changes through reserve_stock/release_stock. reserve_stock is a
single conditional update, so stock can never be driven below zero by
concurrent checkouts.
"""
import math
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId
from pymongo import ReturnDocument

from auth import Actor, require_admin
from database import create_document, now, parse_object_id
from errors import NotFound, ValidationFailed
from money import to_cents
from schemas import Product as ProductSchema, build

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
FEATURED_LIMIT = 8

SORTS = {
    "price_asc": [("price_cents", 1)],
    "price_desc": [("price_cents", -1)],
    "rating": [("rating", -1), ("num_reviews", -1)],
    "newest": [("created_at", -1)],
}


def _with_price_cents(fields: Dict[str, Any]) -> Dict[str, Any]:
    fields = dict(fields)
    if "price" in fields:
        price = fields.pop("price")
        if price is not None:
            try:
                fields["price_cents"] = to_cents(price)
            except ValueError:
                raise ValidationFailed("price: invalid amount")
    return fields


def list_products(
    db,
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price=None,
    max_price=None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> Tuple[List[dict], int]:
    """Return one page of matching products and the total match count."""
    if page < 1:
        raise ValidationFailed("page must be at least 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if sort and sort not in SORTS:
        raise ValidationFailed(f"sort must be one of: {', '.join(SORTS)}")

    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
        ]
    if category and category.lower() != "all":
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    price_filter: Dict[str, Any] = {}
    try:
        if min_price is not None:
            price_filter["$gte"] = to_cents(min_price)
        if max_price is not None:
            price_filter["$lte"] = to_cents(max_price)
    except ValueError:
        raise ValidationFailed("price filter: invalid amount")
    if price_filter:
        query["price_cents"] = price_filter

    collection = db["product"]
    total = collection.count_documents(query)
    cursor = collection.find(query).sort(SORTS.get(sort or "newest"))
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    return list(cursor), total


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


def featured_products(db, limit: int = FEATURED_LIMIT) -> List[dict]:
    return list(db["product"].find({"featured": True}).sort("rating", -1).limit(limit))


def get_product(db, product_id: Any) -> dict:
    product = db["product"].find_one({"_id": parse_object_id(product_id, "product id")})
    if not product:
        raise NotFound("Product not found")
    return product


def products_by_id(db, product_ids: List[ObjectId]) -> Dict[ObjectId, dict]:
    return {p["_id"]: p for p in db["product"].find({"_id": {"$in": list(product_ids)}})}


def create_product(db, actor: Actor, fields: Dict[str, Any]) -> dict:
    require_admin(actor)
    product = build(ProductSchema, **_with_price_cents(fields))
    product_id = create_document(db, "product", product)
    logger.info("Product created", product_id=product_id, admin_id=actor.id)
    return db["product"].find_one({"_id": ObjectId(product_id)})


def update_product(db, actor: Actor, product_id: str, fields: Dict[str, Any]) -> dict:
    require_admin(actor)
    existing = get_product(db, product_id)
    updates = {k: v for k, v in _with_price_cents(fields).items() if v is not None}
    if not updates:
        raise ValidationFailed("No updates provided")
    # rating and review count are derived from reviews only
    updates.pop("rating", None)
    updates.pop("num_reviews", None)
    merged = {k: v for k, v in {**existing, **updates}.items() if k in ProductSchema.model_fields}
    build(ProductSchema, **merged)
    updates["updated_at"] = now()
    return db["product"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )


def delete_product(db, actor: Actor, product_id: str) -> None:
    require_admin(actor)
    result = db["product"].delete_one({"_id": parse_object_id(product_id, "product id")})
    if result.deleted_count == 0:
        raise NotFound("Product not found")
    logger.info("Product deleted", product_id=product_id, admin_id=actor.id)


def reserve_stock(db, product_id: ObjectId, quantity: int) -> bool:
    """Atomically take `quantity` units; False if fewer are in stock."""
    updated = db["product"].find_one_and_update(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return updated is not None


def release_stock(db, product_id: ObjectId, quantity: int) -> None:
    db["product"].update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": now()}},
    )


def set_rating(db, product_id: ObjectId, rating: float, num_reviews: int) -> None:
    db["product"].update_one(
        {"_id": product_id},
        {"$set": {"rating": rating, "num_reviews": num_reviews, "updated_at": now()}},
    )
