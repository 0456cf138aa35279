from dataclasses import dataclass
from typing import Optional

from flask import request
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import PyJWTError

from errors import ForbiddenError, NotFoundError

ADMIN_ROLE = "admin"
CUSTOMER_ROLE = "customer"
ALLOWED_USER_ROLES = {ADMIN_ROLE, CUSTOMER_ROLE}


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    role: str = CUSTOMER_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else CUSTOMER_ROLE


def identity_from_user(user_document) -> Optional[Identity]:
    if not user_document:
        return None
    return Identity(
        user_id=str(user_document.get("_id")),
        email=normalize_email(user_document.get("email")),
        role=normalize_role(user_document.get("role")),
    )


def resolve_identity(users_collection, *, optional: bool = False) -> Optional[Identity]:
    """Load the caller behind the request's access token.

    Flask-JWT-Extended answers a missing or invalid token with 401 unless
    ``optional`` is set, in which case anonymous callers resolve to ``None``.
    """
    verify_jwt_in_request(optional=optional)
    current_email = normalize_email(get_jwt_identity())
    if not current_email:
        return None
    identity = identity_from_user(users_collection.find_one({"email": current_email}))
    if identity is None and not optional:
        raise NotFoundError("Account not found.")
    return identity


def require_role(identity: Optional[Identity], *roles: str) -> Identity:
    allowed = {normalize_role(role) for role in roles if role}
    if identity is None:
        raise ForbiddenError("You need additional permissions to perform this action.")
    if identity.is_admin or not allowed or identity.role in allowed:
        return identity
    raise ForbiddenError("You need additional permissions to perform this action.")


def rate_limit_key() -> str:
    """Key rate limits by account when a valid token is present, else by address."""
    try:
        verify_jwt_in_request(optional=True)
        current_email = normalize_email(get_jwt_identity())
    except (JWTExtendedException, PyJWTError):
        current_email = ""
    if current_email:
        return f"user:{current_email}"
    return f"ip:{request.remote_addr}"
