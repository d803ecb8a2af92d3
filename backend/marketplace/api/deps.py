from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from marketplace.adapters.mock_payment import MockPaymentAdapter
from marketplace.errors import Forbidden, Unauthorized
from marketplace.models.user import User, UserRole
from marketplace.security import AuthService

security = HTTPBearer(auto_error=False)

AUTH_COOKIE = "auth_token"


@dataclass(frozen=True)
class Caller:
    id: int
    role: UserRole


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Caller:
    """Resolve the bearer token (or the auth cookie) to an existing user."""
    token = credentials.credentials if credentials else request.cookies.get(AUTH_COOKIE)
    if not token:
        raise Unauthorized("No token provided")
    payload = AuthService.verify_token(token)
    if payload is None:
        raise Unauthorized("Invalid or expired token")
    user_id = payload.get("user_id")
    if user_id is None:
        raise Unauthorized("Invalid token payload")

    # own short session: the request session must stay outside a transaction
    with request.app.state.database.session() as db:
        user = db.get(User, user_id)
        if user is None:
            raise Unauthorized("User not found")
        return Caller(id=user.id, role=user.role)


def require_roles(allowed_roles: List[UserRole]):
    """Dependency factory rejecting callers outside `allowed_roles`."""

    def role_checker(caller: Caller = Depends(get_current_user)) -> Caller:
        if caller.role not in allowed_roles:
            raise Forbidden(f"Access denied. {' or '.join(r.value for r in allowed_roles)} role required.")
        return caller

    return role_checker


def get_payment_gateway(request: Request) -> MockPaymentAdapter:
    return request.app.state.payment_gateway
