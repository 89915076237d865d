"""
Database Schemas for the storefront

Each Pydantic model maps to a MongoDB collection (lowercased class name).
Money is stored as integer cents in `*_cents` fields; references to other
documents are stored as ObjectIds.

Collections:
- user
- product
- cart
- order
- review
"""
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError

from errors import ValidationFailed, describe_validation_errors

CATEGORIES = ("Electronics", "Clothing", "Books", "Home", "Sports", "Other")
Category = Literal["Electronics", "Clothing", "Books", "Home", "Sports", "Other"]

ROLES = ("user", "admin")
Role = Literal["user", "admin"]

PROCESSING = "Processing"
SHIPPED = "Shipped"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"
ORDER_STATUSES = (PROCESSING, SHIPPED, DELIVERED, CANCELLED)
OrderStatus = Literal["Processing", "Shipped", "Delivered", "Cancelled"]


class DocumentModel(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class User(DocumentModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=2, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lower-cased")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Field("user", description="user | admin")
    address: Optional[str] = None
    phone: Optional[str] = None


class Product(DocumentModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=3, max_length=100, description="Product name")
    description: str = Field(..., min_length=10, max_length=2000)
    price_cents: int = Field(..., ge=0, description="Unit price in cents")
    category: Category
    stock: int = Field(0, ge=0, description="Units in stock")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    rating: float = Field(0, ge=0, le=5, description="Mean review rating, one decimal")
    num_reviews: int = Field(0, ge=0)
    featured: bool = False
    brand: Optional[str] = None
    sku: Optional[str] = None


class CartItem(DocumentModel):
    product: ObjectId
    quantity: int = Field(..., ge=1)


class Cart(DocumentModel):
    """
    Carts collection schema, one per user
    Collection name: "cart"
    """
    user: ObjectId
    items: List[CartItem] = Field(default_factory=list)
    total_cents: int = 0


class OrderItem(DocumentModel):
    """Line item snapshot taken at checkout; independent of later catalog edits."""
    product: ObjectId
    name: str
    quantity: int = Field(..., ge=1)
    price_cents: int = Field(..., ge=0)


class ShippingAddress(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class PaymentResult(BaseModel):
    id: str
    status: str
    update_time: datetime


class Order(DocumentModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user: ObjectId
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    payment_result: PaymentResult
    items_price_cents: int
    tax_price_cents: int
    shipping_price_cents: int
    total_price_cents: int
    is_paid: bool = True
    paid_at: Optional[datetime] = None
    status: OrderStatus = PROCESSING
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Review(DocumentModel):
    """
    Reviews collection schema, unique per (product, user)
    Collection name: "review"
    """
    product: ObjectId
    user: ObjectId
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=500)


def build(model, **fields):
    """Validate fields against a collection schema, raising ValidationFailed."""
    try:
        return model(**fields)
    except ValidationError as exc:
        raise ValidationFailed(describe_validation_errors(exc.errors()))
