"""
Demo catalog and users.

    python seed.py            # replace products and users with demo data
    python seed.py --products # only insert demo products if none exist
"""
import argparse
from typing import List

import structlog

from auth import hash_password
from database import create_document, ensure_indexes, get_db
from logs import configure_logging
from money import to_cents
from schemas import Product as ProductSchema, User as UserSchema

logger = structlog.get_logger(__name__)

DEMO_USERS: List[dict] = [
    {"name": "Admin User", "email": "admin@example.com", "password": "admin123", "role": "admin"},
    {"name": "John Doe", "email": "john@example.com", "password": "password123", "role": "user"},
]

DEMO_PRODUCTS: List[dict] = [
    {
        "name": "Wireless Headphones",
        "description": "High-quality wireless headphones with noise cancellation",
        "price": "199.99",
        "category": "Electronics",
        "stock": 50,
        "brand": "AudioTech",
        "featured": True,
        "images": ["https://via.placeholder.com/300"],
    },
    {
        "name": "Smart Watch",
        "description": "Fitness tracking smartwatch with heart rate monitor",
        "price": "299.99",
        "category": "Electronics",
        "stock": 30,
        "brand": "TechWear",
        "featured": True,
        "images": ["https://via.placeholder.com/300"],
    },
    {
        "name": "Running Shoes",
        "description": "Comfortable running shoes for all terrains",
        "price": "89.99",
        "category": "Sports",
        "stock": 100,
        "brand": "SportPro",
        "images": ["https://via.placeholder.com/300"],
    },
    {
        "name": "Cotton T-Shirt",
        "description": "Premium cotton t-shirt, available in multiple colors",
        "price": "24.99",
        "category": "Clothing",
        "stock": 200,
        "brand": "FashionCo",
        "images": ["https://via.placeholder.com/300"],
    },
    {
        "name": "Coffee Maker",
        "description": "Programmable coffee maker with thermal carafe",
        "price": "79.99",
        "category": "Home",
        "stock": 40,
        "brand": "BrewMaster",
        "images": ["https://via.placeholder.com/300"],
    },
]


def insert_demo_products(db) -> int:
    for prod in DEMO_PRODUCTS:
        fields = {k: v for k, v in prod.items() if k != "price"}
        create_document(db, "product", ProductSchema(price_cents=to_cents(prod["price"]), **fields))
    return len(DEMO_PRODUCTS)


def seed_products_if_empty(db) -> int:
    if db["product"].count_documents({}) > 0:
        return 0
    inserted = insert_demo_products(db)
    logger.info("Demo products inserted", count=inserted)
    return inserted


def seed_demo_data(db) -> None:
    """Replace all products and users with the demo set."""
    db["product"].delete_many({})
    db["user"].delete_many({})
    for user in DEMO_USERS:
        create_document(db, "user", UserSchema(
            name=user["name"],
            email=user["email"],
            password_hash=hash_password(user["password"]),
            role=user["role"],
        ))
    insert_demo_products(db)
    logger.info("Demo data seeded", users=len(DEMO_USERS), products=len(DEMO_PRODUCTS))


def main():
    parser = argparse.ArgumentParser(description="Seed the storefront database with demo data")
    parser.add_argument("--products", action="store_true", help="only insert demo products if the catalog is empty")
    args = parser.parse_args()

    configure_logging()
    db = get_db()
    ensure_indexes(db)
    if args.products:
        seed_products_if_empty(db)
    else:
        seed_demo_data(db)


if __name__ == "__main__":
    main()
