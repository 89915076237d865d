"""
Cart aggregate: one cart per user, created lazily.

Entries are changed in place with positional/array operators ($inc, $push,
$pull) so concurrent requests from the same user never overwrite each
other's items. After each mutation the cart is repriced against live catalog
prices and the derived total is stored before the populated view is returned.
"""
from typing import Any, Dict, List, Tuple

import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import Actor
from catalog import get_product, products_by_id
from database import now, parse_object_id, serialize_doc
from errors import InsufficientStock, NotFound, ValidationFailed
from schemas import Cart as CartSchema

logger = structlog.get_logger(__name__)


def get_or_create_cart(db, actor: Actor) -> dict:
    stamp = now()
    new_cart = CartSchema(user=actor.user_id).model_dump(exclude={"user"})
    try:
        return db["cart"].find_one_and_update(
            {"user": actor.user_id},
            {"$setOnInsert": {**new_cart, "created_at": stamp, "updated_at": stamp}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # a concurrent first access inserted the cart
        return db["cart"].find_one({"user": actor.user_id})


def find_cart(db, actor: Actor) -> dict:
    cart = db["cart"].find_one({"user": actor.user_id})
    if not cart:
        raise NotFound("Cart not found")
    return cart


def price_lines(db, items: List[dict]) -> Tuple[List[Tuple[dict, int]], int]:
    """
    Join cart entries with their live products.

    Returns (product, quantity) pairs plus the total in cents. Entries whose
    product no longer exists are left out.
    """
    products = products_by_id(db, [it["product"] for it in items])
    lines = []
    total = 0
    for it in items:
        product = products.get(it["product"])
        if product is None:
            continue
        lines.append((product, it["quantity"]))
        total += product["price_cents"] * it["quantity"]
    return lines, total


def _priced_view(db, cart_id: ObjectId) -> Dict[str, Any]:
    cart = db["cart"].find_one({"_id": cart_id})
    if not cart:
        raise NotFound("Cart not found")
    items = cart.get("items", [])
    lines, total = price_lines(db, items)
    kept = {p["_id"] for p, _ in lines}
    gone = [it["product"] for it in items if it["product"] not in kept]

    update: Dict[str, Any] = {"$set": {"total_cents": total, "updated_at": now()}}
    if gone:
        update["$pull"] = {"items": {"product": {"$in": gone}}}
    updated = db["cart"].find_one_and_update({"_id": cart_id}, update, return_document=ReturnDocument.AFTER)
    return cart_view(updated, lines)


def cart_view(cart: dict, lines: List[Tuple[dict, int]]) -> Dict[str, Any]:
    data = serialize_doc({k: v for k, v in cart.items() if k != "items"})
    data["items"] = [{"product": serialize_doc(p), "quantity": q} for p, q in lines]
    return data


def _quantity_in(cart: dict, product_id: ObjectId) -> int:
    return next((it["quantity"] for it in cart.get("items", []) if it["product"] == product_id), 0)


def _increment(db, cart_id: ObjectId, product_id: ObjectId, quantity: int) -> None:
    carts = db["cart"]
    # two passes: the entry may be pushed by another request between them
    for _ in range(2):
        stamp = now()
        result = carts.update_one(
            {"_id": cart_id, "items.product": product_id},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"updated_at": stamp}},
        )
        if result.matched_count:
            return
        result = carts.update_one(
            {"_id": cart_id, "items.product": {"$ne": product_id}},
            {"$push": {"items": {"product": product_id, "quantity": quantity}}, "$set": {"updated_at": stamp}},
        )
        if result.matched_count:
            return
    raise NotFound("Cart not found")


def get_cart(db, actor: Actor) -> Dict[str, Any]:
    cart = get_or_create_cart(db, actor)
    return _priced_view(db, cart["_id"])


def add_item(db, actor: Actor, product_id: str, quantity: int) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    product = get_product(db, product_id)
    cart = get_or_create_cart(db, actor)
    if product["stock"] < _quantity_in(cart, product["_id"]) + quantity:
        raise InsufficientStock(product["name"])
    _increment(db, cart["_id"], product["_id"], quantity)
    logger.debug("Cart item added", user_id=actor.id, product_id=str(product["_id"]), quantity=quantity)
    return _priced_view(db, cart["_id"])


def update_item(db, actor: Actor, product_id: str, quantity: int) -> Dict[str, Any]:
    """Set an entry's quantity; zero or less removes it."""
    oid = parse_object_id(product_id, "product id")
    cart = find_cart(db, actor)
    if not any(it["product"] == oid for it in cart.get("items", [])):
        raise NotFound("Item not found in cart")
    entry = {"_id": cart["_id"], "items.product": oid}
    if quantity <= 0:
        result = db["cart"].update_one(entry, {"$pull": {"items": {"product": oid}}, "$set": {"updated_at": now()}})
    else:
        product = get_product(db, oid)
        if product["stock"] < quantity:
            raise InsufficientStock(product["name"])
        result = db["cart"].update_one(entry, {"$set": {"items.$.quantity": quantity, "updated_at": now()}})
    if result.matched_count == 0:
        raise NotFound("Item not found in cart")
    return _priced_view(db, cart["_id"])


def remove_item(db, actor: Actor, product_id: str) -> Dict[str, Any]:
    oid = parse_object_id(product_id, "product id")
    cart = find_cart(db, actor)
    db["cart"].update_one({"_id": cart["_id"]}, {"$pull": {"items": {"product": oid}}, "$set": {"updated_at": now()}})
    return _priced_view(db, cart["_id"])


def clear_cart(db, actor: Actor) -> Dict[str, Any]:
    cart = find_cart(db, actor)
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": [], "total_cents": 0, "updated_at": now()}})
    return _priced_view(db, cart["_id"])


def empty_cart(db, cart: dict) -> bool:
    """
    Clear a cart at checkout, but only if it still holds the items that were
    priced. Returns False when the cart changed or was already checked out.
    """
    result = db["cart"].update_one(
        {"_id": cart["_id"], "items": cart["items"]},
        {"$set": {"items": [], "total_cents": 0, "updated_at": now()}},
    )
    return result.matched_count == 1
