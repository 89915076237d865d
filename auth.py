"""
Identity: registration, login, profile and bearer tokens.

Protected operations receive an Actor (user id + role) built from the token
rather than reading request state themselves.
"""
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

from database import create_document, now, serialize_doc
from errors import AlreadyExists, Forbidden, NotFound, Unauthorized, ValidationFailed
from schemas import User as UserSchema, build

logger = structlog.get_logger(__name__)

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation."""

    user_id: ObjectId
    role: str = "user"

    @property
    def id(self) -> str:
        return str(self.user_id)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def owns(self, doc: dict) -> bool:
        return doc.get("user") == self.user_id


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise Forbidden("Admin only")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_token(user_id: Any, expires_delta: Optional[timedelta] = None) -> str:
    payload = {
        "sub": str(user_id),
        "exp": now() + (expires_delta or timedelta(days=JWT_EXPIRE_DAYS)),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def actor_from_token(db, token: str) -> Actor:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise Unauthorized("Invalid or expired token")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise Unauthorized("Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)}, {"role": 1})
    if not user:
        raise Unauthorized("User not found")
    return Actor(user_id=user["_id"], role=user.get("role", "user"))


def public_user(user: dict) -> Dict[str, Any]:
    data = serialize_doc(user)
    data.pop("password_hash", None)
    return data


def register(db, name: str, email: str, password: str) -> Dict[str, Any]:
    email = email.lower()
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if db["user"].find_one({"email": email}):
        raise AlreadyExists()
    user = build(UserSchema, name=name, email=email, password_hash=hash_password(password))
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise AlreadyExists()
    logger.info("User registered", user_id=user_id)
    created = db["user"].find_one({"_id": ObjectId(user_id)})
    return {**public_user(created), "token": create_token(user_id)}


def login(db, email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
    if not email or not password:
        raise ValidationFailed("Please provide email and password")
    user = db["user"].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return {**public_user(user), "token": create_token(user["_id"])}


def get_profile(db, actor: Actor) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": actor.user_id})
    if not user:
        raise NotFound("User not found")
    return public_user(user)


def update_profile(db, actor: Actor, updates: Dict[str, Any]) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": actor.user_id})
    if not user:
        raise NotFound("User not found")
    changes = {k: v for k, v in updates.items() if v}
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        taken = db["user"].find_one({"email": changes["email"], "_id": {"$ne": actor.user_id}})
        if taken:
            raise AlreadyExists("Email already registered")
    merged = {k: v for k, v in {**user, **changes}.items() if k in UserSchema.model_fields}
    build(UserSchema, **merged)
    if changes:
        changes["updated_at"] = now()
        db["user"].update_one({"_id": actor.user_id}, {"$set": changes})
    return get_profile(db, actor)


def list_users(db, actor: Actor) -> List[Dict[str, Any]]:
    require_admin(actor)
    return [public_user(u) for u in db["user"].find({}).sort("created_at", -1)]
