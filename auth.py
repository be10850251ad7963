"""
Admin authentication

Bearer tokens are HS256 JWTs carrying the admin id, username and role.
Passwords are stored as bcrypt hashes and never leave the store.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, get_db, serialize, to_object_id
from errors import AuthError, ConflictError
from logging_config import get_logger
from schemas import Admin, AdminOut, AdminRegister

logger = get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def issue_token(admin: dict, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(admin["_id"]),
        "username": admin["username"],
        "role": admin.get("role", "admin"),
        "exp": expire,
    }
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def verify_token(token: Optional[str]) -> dict:
    """Return the token identity or raise AuthError(missing|invalid|expired)."""
    if not token:
        raise AuthError(AuthError.MISSING)
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except ExpiredSignatureError:
        raise AuthError(AuthError.EXPIRED)
    except JWTError:
        raise AuthError(AuthError.INVALID)
    if not payload.get("sub"):
        raise AuthError(AuthError.INVALID)
    return {"id": payload["sub"], "username": payload.get("username"), "role": payload.get("role")}


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError(AuthError.INVALID, "Malformed Authorization header")
    return token.strip()


def current_admin(db: Database, authorization: Optional[str]) -> dict:
    """Verify the bearer token and that the admin it names still exists."""
    identity = verify_token(bearer_token(authorization))
    oid = to_object_id(identity["id"])
    if oid is None or db["admin"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise AuthError(AuthError.INVALID, "Admin account no longer exists")
    return identity


def require_admin(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    db: Database = Depends(get_db),
) -> dict:
    """Dependency guarding admin-only routes."""
    return current_admin(db, authorization)


def authorize_registration(db: Database, authorization: Optional[str]) -> Optional[dict]:
    """The first admin registers anonymously, every later one needs an admin token."""
    if db["admin"].find_one({}, {"_id": 1}) is None:
        return None
    return current_admin(db, authorization)


def admin_out(doc: dict) -> AdminOut:
    doc = serialize(doc)
    return AdminOut(id=doc["id"], username=doc["username"], email=doc["email"], role=doc.get("role", "admin"))


def register_admin(db: Database, payload: AdminRegister) -> AdminOut:
    existing = db["admin"].find_one({"$or": [{"username": payload.username}, {"email": payload.email}]})
    if existing:
        raise ConflictError("Username or email already exists")
    admin = Admin(username=payload.username, email=payload.email, password_hash=get_password_hash(payload.password))
    try:
        doc = create_document(db, "admin", admin.model_dump())
    except DuplicateKeyError:
        raise ConflictError("Username or email already exists")
    logger.info("admin_registered", username=payload.username)
    return admin_out(doc)


def authenticate(db: Database, username: str, password: str) -> dict:
    admin = db["admin"].find_one({"username": username})
    if not admin or not verify_password(password, admin.get("password_hash", "")):
        logger.warning("admin_login_failed", username=username)
        raise AuthError(AuthError.INVALID, "Invalid credentials")
    return admin
