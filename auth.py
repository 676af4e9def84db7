"""
Authentication & authorization.

Passwords are hashed with bcrypt through passlib. Tokens are stateless:
``base64url(payload).base64url(hmac-sha256(payload))`` with an ``exp`` claim,
so validity is signature + expiry only and logging out is a client concern.
"""

import base64
import hmac
import json
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from hashlib import sha256
from typing import Optional

from fastapi import Header
from passlib.context import CryptContext

from config import settings
from errors import Conflict, Forbidden, InvalidInput, NotFound, Unauthorized
from schemas import ROLES, User, public_user
from store import Store

logger = logging.getLogger(__name__)

pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# -----------------------------
# Passwords
# -----------------------------

def hash_password(password: str) -> str:
    return pwd_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return pwd_ctx.verify(password, hashed)
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("placeholder-password-for-unknown-users")


# -----------------------------
# Tokens
# -----------------------------

def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _unb64(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def sign_token(payload: dict, secret: str) -> str:
    data = json.dumps(payload, separators=(",", ":")).encode()
    sig = hmac.new(secret.encode(), data, sha256).digest()
    return _b64(data) + "." + _b64(sig)


def verify_token(token: str, secret: str) -> dict:
    """Return the payload of a well-signed, unexpired token or raise Forbidden."""
    try:
        data_b64, sig_b64 = token.split(".")
        data = _unb64(data_b64)
        sig = _unb64(sig_b64)
    except ValueError as e:
        raise Forbidden("Invalid token") from e
    expected = hmac.new(secret.encode(), data, sha256).digest()
    if not hmac.compare_digest(sig, expected):
        raise Forbidden("Invalid token")
    try:
        payload = json.loads(data.decode())
    except ValueError as e:
        raise Forbidden("Invalid token") from e
    if not isinstance(payload, dict) or time.time() > payload.get("exp", 0):
        raise Forbidden("Token expired")
    return payload


def issue_token(user: dict, secret: Optional[str] = None, expiry_hours: Optional[float] = None) -> str:
    now = int(time.time())
    hours = expiry_hours if expiry_hours is not None else settings.TOKEN_EXPIRY_HOURS
    payload = {
        "userId": user["id"],
        "username": user["username"],
        "role": user.get("role", "user"),
        "iat": now,
        "exp": now + int(hours * 3600),
    }
    return sign_token(payload, secret or settings.SECRET_KEY)


def authenticate(authorization: Optional[str], secret: Optional[str] = None) -> Identity:
    """Turn an ``Authorization`` header into an Identity."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Token required")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthorized("Token required")
    payload = verify_token(token, secret or settings.SECRET_KEY)
    try:
        return Identity(
            user_id=str(payload["userId"]),
            username=payload["username"],
            role=payload.get("role", "user"),
        )
    except KeyError as e:
        raise Forbidden("Invalid token") from e


# FastAPI dependencies

def get_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    return authenticate(authorization)


def require_role(role: str):
    def dependency(authorization: Optional[str] = Header(default=None)) -> Identity:
        identity = authenticate(authorization)
        if identity.role != role:
            raise Forbidden(f"{role.capitalize()} access required")
        return identity

    return dependency


# -----------------------------
# Account flows
# -----------------------------

def register(store: Store, username: str, password: str, email: str, phone: Optional[str] = None) -> dict:
    username = (username or "").strip()
    email = (email or "").strip().lower()
    missing = [name for name, value in (("username", username), ("password", password), ("email", email)) if not value]
    if missing:
        raise InvalidInput("username, password, email required", fields=missing)
    if store.find_user_by_username(username):
        raise Conflict("Username taken")

    user = store.insert_user(User(
        username=username,
        password=hash_password(password),
        email=email,
        phone=(phone or "").strip() or None,
    ).model_dump())
    logger.info("Registered user '%s' (%s)", username, user["id"])
    return public_user(user)


def login(store: Store, username: str, password: str) -> dict:
    if not username or not password:
        raise InvalidInput("username and password required")
    user = store.find_user_by_username(username.strip())
    if user is None:
        # same amount of hashing work whether or not the user exists
        verify_password(password, _dummy_hash())
        logger.info("Failed login for unknown user '%s'", username)
        raise Unauthorized("Invalid credentials")
    if not verify_password(password, user["password"]):
        logger.info("Failed login for '%s'", username)
        raise Unauthorized("Invalid credentials")
    return {"token": issue_token(user), "user": public_user(user)}


def get_user(store: Store, user_id: str) -> dict:
    user = store.get_user(user_id)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


def update_profile(store: Store, identity: Identity, fields: dict) -> dict:
    """Apply the provided profile fields; username changes must stay unique."""
    updates = {}
    if fields.get("username"):
        updates["username"] = fields["username"].strip()
    if fields.get("email"):
        updates["email"] = fields["email"].strip().lower()
    if fields.get("phone"):
        updates["phone"] = fields["phone"].strip()
    if fields.get("image_uri"):
        updates["image_uri"] = fields["image_uri"]
    if not updates:
        raise InvalidInput("Nothing to update")

    if "username" in updates:
        other = store.find_user_by_username(updates["username"])
        if other and other["id"] != identity.user_id:
            raise Conflict("Username taken")
    user = store.update_user(identity.user_id, updates)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


def set_role(store: Store, user_id: str, role: str) -> dict:
    if role not in ROLES:
        raise InvalidInput(f"Role must be one of: {', '.join(ROLES)}")
    user = store.update_user(user_id, {"role": role})
    if not user:
        raise NotFound("User not found")
    logger.info("User %s role set to '%s'", user_id, role)
    return public_user(user)
