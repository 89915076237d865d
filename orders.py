"""
Order aggregate and the checkout workflow.

Checkout turns the caller's cart into a paid order:

    cart -> stock check -> pricing -> stock reservation -> payment capture
         -> order insert -> cart clear

Every step after the pricing registers an undo action in a CompensationLog.
If a later step fails the log runs the undos in reverse order, so a failed
checkout leaves stock, cart and the order collection as they were (a captured
payment is refunded). The cart clear only succeeds if the cart still holds the
items that were priced, so one cart cannot be checked out twice.
"""
import os
from dataclasses import dataclass
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Dict, List, Tuple

import structlog
from bson import ObjectId
from pymongo import ReturnDocument

from auth import Actor, require_admin
from carts import empty_cart
from catalog import products_by_id, release_stock, reserve_stock
from database import create_document, now, parse_object_id
from errors import EmptyCart, Forbidden, InsufficientStock, NotFound, PaymentFailed, ValidationFailed
from money import percent_of, to_cents
from payments import PaymentGateway
from schemas import (
    CANCELLED,
    DELIVERED,
    ORDER_STATUSES,
    PROCESSING,
    SHIPPED,
    Order as OrderSchema,
    OrderItem,
    PaymentResult,
    ShippingAddress,
    build,
)

logger = structlog.get_logger(__name__)

TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.10"))
FREE_SHIPPING_THRESHOLD_CENTS = to_cents(os.getenv("FREE_SHIPPING_THRESHOLD", "100"))
FLAT_SHIPPING_CENTS = to_cents(os.getenv("FLAT_SHIPPING", "10"))
CURRENCY = os.getenv("CURRENCY", "usd")

# Forward-only fulfilment path; Cancelled sits outside it.
FULFILMENT_RANK = {PROCESSING: 0, SHIPPED: 1, DELIVERED: 2}

Line = Tuple[dict, int]


@dataclass(frozen=True)
class Pricing:
    items_cents: int
    tax_cents: int
    shipping_cents: int

    @property
    def total_cents(self) -> int:
        return self.items_cents + self.tax_cents + self.shipping_cents


def compute_pricing(lines: List[Line]) -> Pricing:
    items = sum(product["price_cents"] * quantity for product, quantity in lines)
    tax = percent_of(items, TAX_RATE)
    shipping = 0 if items > FREE_SHIPPING_THRESHOLD_CENTS else FLAT_SHIPPING_CENTS
    return Pricing(items_cents=items, tax_cents=tax, shipping_cents=shipping)


def ensure_in_stock(lines: List[Line]) -> None:
    """Raise InsufficientStock for the first line asking for more than is in stock."""
    for product, quantity in lines:
        if product.get("stock", 0) < quantity:
            raise InsufficientStock(product["name"])


class CompensationLog:
    """Undo actions for completed checkout steps, replayed newest first."""

    def __init__(self) -> None:
        self._steps: List[Tuple[str, Callable[[], Any]]] = []

    def add(self, step: str, undo: Callable[[], Any]) -> None:
        self._steps.append((step, undo))

    def rollback(self) -> None:
        while self._steps:
            step, undo = self._steps.pop()
            try:
                undo()
            except Exception:
                # keep undoing the remaining steps; the caller re-raises the checkout error
                logger.exception("Compensation step failed", step=step)
            else:
                logger.info("Compensation step applied", step=step)


def _refund(gateway: PaymentGateway, transaction_id: str, amount_cents: int) -> None:
    result = gateway.refund(transaction_id, amount_cents)
    if not result.success:
        raise RuntimeError(f"Refund of {transaction_id} failed: {result.failure_reason}")


def _cart_lines(db, cart: dict) -> List[Line]:
    products = products_by_id(db, [it["product"] for it in cart["items"]])
    lines = []
    for it in cart["items"]:
        product = products.get(it["product"])
        if product is None:
            raise NotFound("A product in your cart no longer exists")
        lines.append((product, it["quantity"]))
    return lines


def checkout(db, gateway: PaymentGateway, actor: Actor, shipping_address: Dict[str, Any], payment_method_id: str) -> dict:
    """Convert the actor's cart into a paid order and return the stored order."""
    address = build(ShippingAddress, **(shipping_address or {}))
    if not payment_method_id:
        raise ValidationFailed("Payment method is required")

    cart = db["cart"].find_one({"user": actor.user_id})
    if not cart or not cart.get("items"):
        raise EmptyCart()

    lines = _cart_lines(db, cart)
    ensure_in_stock(lines)
    pricing = compute_pricing(lines)

    order_id = ObjectId()
    log = logger.bind(user_id=actor.id, order_id=str(order_id))
    log.info("Checkout started", total_cents=pricing.total_cents, lines=len(lines))

    compensations = CompensationLog()
    try:
        for product, quantity in lines:
            if not reserve_stock(db, product["_id"], quantity):
                raise InsufficientStock(product["name"])
            compensations.add(f"release stock {product['_id']}", partial(release_stock, db, product["_id"], quantity))

        charge = gateway.charge(pricing.total_cents, CURRENCY, payment_method_id, idempotency_key=f"order-{order_id}")
        if not charge.success:
            log.info("Payment declined", status=charge.status, reason=charge.failure_reason)
            raise PaymentFailed(f"Payment failed: {charge.failure_reason}" if charge.failure_reason else None)
        compensations.add(f"refund {charge.transaction_id}", partial(_refund, gateway, charge.transaction_id, pricing.total_cents))

        paid_at = now()
        order = OrderSchema(
            user=actor.user_id,
            items=[
                OrderItem(product=p["_id"], name=p["name"], quantity=q, price_cents=p["price_cents"])
                for p, q in lines
            ],
            shipping_address=address,
            payment_method=gateway.name,
            payment_result=PaymentResult(id=charge.transaction_id, status=charge.status, update_time=paid_at),
            items_price_cents=pricing.items_cents,
            tax_price_cents=pricing.tax_cents,
            shipping_price_cents=pricing.shipping_cents,
            total_price_cents=pricing.total_cents,
            is_paid=True,
            paid_at=paid_at,
            status=PROCESSING,
        )
        create_document(db, "order", {"_id": order_id, **order.model_dump()})
        compensations.add("delete order", partial(db["order"].delete_one, {"_id": order_id}))

        if not empty_cart(db, cart):
            raise EmptyCart("Cart changed during checkout")
    except Exception as exc:
        log.warning("Checkout failed", error=type(exc).__name__, reason=str(exc))
        compensations.rollback()
        raise

    log.info("Checkout completed", transaction_id=charge.transaction_id)
    return db["order"].find_one({"_id": order_id})


def _load_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": parse_object_id(order_id, "order id")})
    if not order:
        raise NotFound("Order not found")
    return order


def list_orders(db, actor: Actor) -> List[dict]:
    return list(db["order"].find({"user": actor.user_id}).sort("created_at", -1))


def list_all_orders(db, actor: Actor) -> List[dict]:
    require_admin(actor)
    return list(db["order"].find({}).sort("created_at", -1))


def get_order(db, actor: Actor, order_id: str) -> dict:
    order = _load_order(db, order_id)
    if not actor.owns(order) and not actor.is_admin:
        raise Forbidden("Not authorized to view this order")
    return order


def cancel_order(db, actor: Actor, order_id: str) -> dict:
    """Cancel a Processing order owned by the actor and put its items back in stock."""
    order = _load_order(db, order_id)
    if not actor.owns(order):
        raise Forbidden("Not authorized")
    if order["status"] != PROCESSING:
        raise ValidationFailed(f"Cannot cancel an order that is {order['status']}")

    stamp = now()
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": PROCESSING},
        {"$set": {"status": CANCELLED, "cancelled_at": stamp, "updated_at": stamp}},
        return_document=ReturnDocument.AFTER,
    )
    if cancelled is None:
        raise ValidationFailed("Order status changed; it can no longer be cancelled")

    for item in cancelled["items"]:
        release_stock(db, item["product"], item["quantity"])
    logger.info("Order cancelled", order_id=str(order["_id"]), user_id=actor.id)
    return cancelled


def update_status(db, actor: Actor, order_id: str, status: str) -> dict:
    """Move an order forward along Processing -> Shipped -> Delivered."""
    require_admin(actor)
    if status not in ORDER_STATUSES:
        raise ValidationFailed(f"status must be one of: {', '.join(ORDER_STATUSES)}")
    if status == CANCELLED:
        raise ValidationFailed("Orders can only be cancelled by their owner")
    order = _load_order(db, order_id)
    current = order["status"]
    if current == CANCELLED:
        raise ValidationFailed("Cancelled orders cannot change status")
    if FULFILMENT_RANK[status] <= FULFILMENT_RANK[current]:
        raise ValidationFailed(f"Cannot move order from {current} to {status}")

    stamp = now()
    changes: Dict[str, Any] = {"status": status, "updated_at": stamp}
    if status in (SHIPPED, DELIVERED) and not order.get("shipped_at"):
        changes["shipped_at"] = stamp
    if status == DELIVERED:
        changes["delivered_at"] = stamp
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ValidationFailed("Order status changed concurrently; retry")
    logger.info("Order status changed", order_id=order_id, old=current, new=status, admin_id=actor.id)
    return updated


def has_purchased(db, user_id: ObjectId, product_id: ObjectId) -> bool:
    """True if the user holds a paid, non-cancelled order containing the product."""
    order = db["order"].find_one({
        "user": user_id,
        "items.product": product_id,
        "is_paid": True,
        "status": {"$ne": CANCELLED},
    })
    return order is not None


def revenue_cents(db) -> int:
    rows = list(db["order"].aggregate([
        {"$match": {"is_paid": True, "status": {"$ne": CANCELLED}}},
        {"$group": {"_id": None, "total": {"$sum": "$total_price_cents"}}},
    ]))
    return rows[0]["total"] if rows else 0
