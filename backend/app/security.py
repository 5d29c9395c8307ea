from datetime import datetime, timedelta, timezone
from typing import List, Optional, Callable

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from pydantic import BaseModel

from app.config import get_settings
from app.constants import Role
from app.errors import AuthError

settings = get_settings()

# Tokens are issued by the auth service; tokenUrl only feeds the Swagger UI.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


class CurrentUser(BaseModel):
    """Identity bound to a request or a live session."""
    user_id: str
    role: Role


# ------------------------ JWT helpers ------------------------


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token (short-lived - 1 hour by default)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, token_type: str = "access") -> dict:
    """Decode JWT token and verify its type."""
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
        if payload.get("type") != token_type:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token type. Expected {token_type}",
            )
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def user_from_token(token: str | None) -> CurrentUser:
    """Verify a token and build the identity; raises AuthError on any failure."""
    if not token:
        raise AuthError("No token provided")
    try:
        payload = decode_token(token, token_type="access")
    except HTTPException as e:
        raise AuthError(str(e.detail))
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("No user ID in token")
    try:
        role = Role(payload.get("role") or Role.CUSTOMER)
    except ValueError:
        raise AuthError("Unknown role in token")
    return CurrentUser(user_id=str(user_id), role=role)


def read_unverified_claims(token: str | None) -> dict:
    """Read claims without verifying the signature (client side, the server verifies)."""
    if not token:
        raise AuthError("No token provided")
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        raise AuthError("Malformed token")
    if not claims.get("sub"):
        raise AuthError("No user ID in token")
    return claims


def token_from_handshake(auth: dict | None, environ: dict | None) -> str | None:
    """Socket handshake: prefer auth={'token': ...}, fall back to a Bearer header."""
    token = None
    if auth:
        token = auth.get("token")
    if not token and environ:
        auth_header = environ.get("HTTP_AUTHORIZATION", "")
        if auth_header.startswith("Bearer "):
            token = auth_header.replace("Bearer ", "")
    return token


async def get_current_user(
    token: str = Depends(oauth2_scheme),
) -> CurrentUser:
    """Decode the bearer access token into the current user.
    Raises 401 if token invalid, expired, or without subject.
    """
    try:
        return user_from_token(token)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


# ------------------------ RBAC helpers ------------------------


def require_roles(allowed: List[Role]) -> Callable:
    """FastAPI dependency factory to enforce role-based access.
    Usage: Depends(require_roles([Role.ADMIN, Role.PROVIDER]))
    """

    async def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user

    return checker


async def verify_internal_secret(x_internal_secret: str | None = Header(None)) -> None:
    """Guard for server-to-server endpoints fed by the domain services."""
    if not settings.INTERNAL_API_SECRET or x_internal_secret != settings.INTERNAL_API_SECRET:
        raise HTTPException(status_code=403, detail="Invalid internal secret")
