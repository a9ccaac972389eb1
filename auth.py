import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from bson import ObjectId
from fastapi import Depends, Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from database import db
from errors import AuthError, ForbiddenError, NotFoundError, ValidationError, describe_errors
from querying import ensure_object_id, serialize_doc
from schemas import Address, User as UserSchema
from settings import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

TOKEN_COOKIE = "token"
MIN_PASSWORD_LENGTH = 6
PRIVATE_FIELDS = ("password_hash", "reset_password_token", "reset_password_expire")


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {"sub": str(user.get("id") or user.get("_id")), "role": user.get("role", "user"), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthError()


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a user document without credential fields."""
    user = serialize_doc(user)
    for field in PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def set_token_cookie(response: Response, token: str) -> None:
    max_age = settings.jwt_cookie_expire_days * 24 * 60 * 60
    response.set_cookie(
        key=TOKEN_COOKIE,
        value=token,
        max_age=max_age,
        expires=max_age,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


def clear_token_cookie(response: Response) -> None:
    response.set_cookie(key=TOKEN_COOKIE, value="none", max_age=10, expires=10, httponly=True)


# Dependencies

def _token_from_request(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    token = request.cookies.get(TOKEN_COOKIE)
    if token and token != "none":
        return token
    return None


def get_current_user(request: Request) -> Dict[str, Any]:
    token = _token_from_request(request)
    if not token:
        raise AuthError()
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise AuthError()
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise AuthError()
    return public_user(user)


def require_roles(*roles: str) -> Callable[..., Dict[str, Any]]:
    def checker(current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
        if current_user.get("role") not in roles:
            raise ForbiddenError(f"User role {current_user.get('role')} is not authorized to access this route")
        return current_user

    return checker


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


# Account operations

def _check_password(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def register_user(name: str, email: str, password: str, role: Optional[str] = None) -> Dict[str, Any]:
    """Create a user account. Admin accounts cannot be created through registration."""
    _check_password(password)
    email = (email or "").strip().lower()
    if db["user"].find_one({"email": email}):
        raise ValidationError("Email already registered")
    try:
        user_model = UserSchema(
            name=(name or "").strip(),
            email=email,
            password_hash=hash_password(password),
            role="user" if role in (None, "admin") else role,
        )
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))
    doc = user_model.model_dump()
    now = datetime.now(timezone.utc)
    doc.update({"created_at": now, "updated_at": now})
    try:
        result = db["user"].insert_one(doc)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    user = db["user"].find_one({"_id": result.inserted_id})
    logger.info("Registered user %s", result.inserted_id)
    return public_user(user)


def authenticate_user(email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
    if not email or not password:
        raise ValidationError("Please provide an email and password")
    user = db["user"].find_one({"email": email.strip().lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthError("Invalid credentials")
    return public_user(user)


def get_user(user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": ensure_object_id(user_id, "user id")})
    if not user:
        raise NotFoundError(f"User not found with id of {user_id}")
    return public_user(user)


def update_profile(current_user: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    update: Dict[str, Any] = {}
    if fields.get("name") is not None:
        name = fields["name"].strip()
        if not name or len(name) > 50:
            raise ValidationError("Name must be between 1 and 50 characters")
        update["name"] = name
    if fields.get("email") is not None:
        email = fields["email"].strip().lower()
        other = db["user"].find_one({"email": email})
        if other and str(other["_id"]) != current_user["id"]:
            raise ValidationError("Email already registered")
        update["email"] = email
    if fields.get("phone") is not None:
        update["phone"] = fields["phone"].strip()
    if fields.get("address") is not None:
        address = fields["address"]
        if isinstance(address, Address):
            address = address.model_dump()
        update["address"] = address
    if update:
        update["updated_at"] = datetime.now(timezone.utc)
        try:
            db["user"].update_one({"_id": ObjectId(current_user["id"])}, {"$set": update})
        except DuplicateKeyError:
            raise ValidationError("Email already registered")
    return get_user(current_user["id"])


def update_password(current_user: Dict[str, Any], current_password: Optional[str], new_password: Optional[str]) -> Dict[str, Any]:
    if not current_password or not new_password:
        raise ValidationError("Please provide current and new password")
    user = db["user"].find_one({"_id": ObjectId(current_user["id"])})
    if not user or not verify_password(current_password, user.get("password_hash", "")):
        raise AuthError("Current password is incorrect")
    _check_password(new_password)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": datetime.now(timezone.utc)}},
    )
    return public_user(user)


def set_photographer(user_id: str, is_photographer: bool) -> Dict[str, Any]:
    oid = ensure_object_id(user_id, "user id")
    res = db["user"].update_one(
        {"_id": oid},
        {"$set": {"is_photographer": bool(is_photographer), "updated_at": datetime.now(timezone.utc)}},
    )
    if res.matched_count == 0:
        raise NotFoundError(f"User not found with id of {user_id}")
    return get_user(user_id)
