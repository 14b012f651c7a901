from dataclasses import dataclass

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .errors import AuthorizationError
from .models import Role

security = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    id: str
    role: Role


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthorizationError("Not authorized, token expired")
    except jwt.InvalidTokenError:
        raise AuthorizationError("Not authorized, token failed")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthorizationError("Not authorized, no token")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    try:
        role = Role(payload.get("role", Role.CUSTOMER.value))
    except ValueError:
        raise AuthorizationError("Not authorized, unknown role")
    if not user_id:
        raise AuthorizationError("Not authorized, invalid token payload")
    return CurrentUser(id=str(user_id), role=role)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != Role.ADMIN:
        raise AuthorizationError("Not authorized as an admin")
    return user


def require_customer(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != Role.CUSTOMER:
        raise AuthorizationError("Not authorized as a customer")
    return user
