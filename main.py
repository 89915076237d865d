import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import carts
import catalog
import database
import orders
import reviews
from auth import Actor
from database import ensure_indexes, get_db, serialize_doc
from errors import StoreError, Unauthorized, describe_validation_errors
from logs import bind_request_context, configure_logging
from money import from_cents
from payments import PaymentGateway, get_gateway
from schemas import ShippingAddress
from seed import seed_products_if_empty

configure_logging()
logger = structlog.get_logger(__name__)

SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true").lower() in ("1", "true", "yes")

# App init
app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    bind_request_context(method=request.method, path=request.url.path)
    return await call_next(request)


# Envelopes
def ok(data: Any = None, message: Optional[str] = None, count: Optional[int] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if count is not None:
        body["count"] = count
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    body.update(extra)
    return body


def fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("Request failed", error=type(exc).__name__, reason=exc.message)
    return fail(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return fail(400, describe_validation_errors(exc.errors()))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", error=type(exc).__name__)
    return fail(500, "Internal server error")


# Dependencies
def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


def get_current_actor(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> Actor:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Not authenticated")
    token = authorization.split(" ", 1)[1].strip()
    return auth.actor_from_token(db, token)


# Request models
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class ProductCreateRequest(BaseModel):
    name: str
    description: str
    price: Decimal = Field(..., ge=0)
    category: str
    stock: int = Field(0, ge=0)
    images: List[str] = []
    featured: bool = False
    brand: Optional[str] = None
    sku: Optional[str] = None


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    featured: Optional[bool] = None
    brand: Optional[str] = None
    sku: Optional[str] = None


class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = 1


class CartQuantityRequest(BaseModel):
    quantity: int


class OrderCreateRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method_id: str


class OrderStatusRequest(BaseModel):
    status: str


class ReviewCreateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=500)


class ReviewUpdateRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=1, max_length=500)


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["database_name"] = database.db.name
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# Auth
@app.post("/api/auth/register", status_code=201)
def register(req: RegisterRequest, db=Depends(get_db)):
    return ok(auth.register(db, req.name, req.email, req.password))


@app.post("/api/auth/login")
def login(req: LoginRequest, db=Depends(get_db)):
    return ok(auth.login(db, req.email, req.password))


@app.get("/api/auth/profile")
def get_profile(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(auth.get_profile(db, actor))


@app.put("/api/auth/profile")
def update_profile(req: ProfileUpdateRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(auth.update_profile(db, actor, req.model_dump()))


# Products
@app.get("/api/products")
def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = catalog.DEFAULT_PAGE_SIZE,
    db=Depends(get_db),
):
    products, total = catalog.list_products(db, search, category, min_price, max_price, sort, page, limit)
    return ok(
        [serialize_doc(p) for p in products],
        count=len(products),
        total=total,
        page=page,
        pages=catalog.page_count(total, limit),
    )


@app.get("/api/products/featured")
def featured_products(db=Depends(get_db)):
    products = catalog.featured_products(db)
    return ok([serialize_doc(p) for p in products], count=len(products))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return ok(serialize_doc(catalog.get_product(db, product_id)))


# Cart
@app.get("/api/cart")
def get_cart(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(carts.get_cart(db, actor))


@app.post("/api/cart")
def add_to_cart(req: CartItemRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(carts.add_item(db, actor, req.product_id, req.quantity))


@app.put("/api/cart/{product_id}")
def update_cart_item(product_id: str, req: CartQuantityRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(carts.update_item(db, actor, product_id, req.quantity))


@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(carts.remove_item(db, actor, product_id))


@app.delete("/api/cart")
def clear_cart(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(carts.clear_cart(db, actor))


# Orders
@app.post("/api/orders", status_code=201)
def create_order(
    req: OrderCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    order = orders.checkout(db, gateway, actor, req.shipping_address.model_dump(), req.payment_method_id)
    return ok(serialize_doc(order))


@app.get("/api/orders")
def my_orders(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    found = orders.list_orders(db, actor)
    return ok([serialize_doc(o) for o in found], count=len(found))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(serialize_doc(orders.get_order(db, actor, order_id)))


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(serialize_doc(orders.cancel_order(db, actor, order_id)))


# Reviews
@app.get("/api/reviews/product/{product_id}")
def product_reviews(product_id: str, db=Depends(get_db)):
    found = reviews.list_reviews(db, product_id)
    return ok(found, count=len(found))


@app.post("/api/reviews/product/{product_id}", status_code=201)
def create_review(product_id: str, req: ReviewCreateRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    review = reviews.create_review(db, actor, product_id, req.rating, req.comment)
    return ok(reviews.serialize_review(db, review))


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, req: ReviewUpdateRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    review = reviews.update_review(db, actor, review_id, req.rating, req.comment)
    return ok(reviews.serialize_review(db, review))


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    reviews.delete_review(db, actor, review_id)
    return ok(message="Review deleted")


# Admin
@app.get("/api/admin/dashboard")
def admin_dashboard(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    auth.require_admin(actor)
    return ok({
        "users": db["user"].count_documents({}),
        "products": db["product"].count_documents({}),
        "orders": db["order"].count_documents({}),
        "revenue": from_cents(orders.revenue_cents(db)),
    })


@app.get("/api/admin/users")
def admin_users(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    users = auth.list_users(db, actor)
    return ok(users, count=len(users))


@app.get("/api/admin/orders")
def admin_orders(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    found = orders.list_all_orders(db, actor)
    return ok([serialize_doc(o) for o in found], count=len(found))


@app.put("/api/admin/orders/{order_id}")
def admin_update_order(order_id: str, req: OrderStatusRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(serialize_doc(orders.update_status(db, actor, order_id, req.status)))


@app.post("/api/admin/products", status_code=201)
def admin_create_product(req: ProductCreateRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(serialize_doc(catalog.create_product(db, actor, req.model_dump())))


@app.put("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, req: ProductUpdateRequest, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    return ok(serialize_doc(catalog.update_product(db, actor, product_id, req.model_dump())))


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    catalog.delete_product(db, actor, product_id)
    return ok(message="Product deleted")


# Prepare indexes and demo products on startup
@app.on_event("startup")
def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL not set; requests will fail until it is configured")
        return
    try:
        ensure_indexes(database.db)
        if SEED_DEMO_DATA:
            seed_products_if_empty(database.db)
    except Exception:
        logger.exception("Database preparation failed")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
