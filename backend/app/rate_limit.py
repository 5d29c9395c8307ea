from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.errors import AuthError
from app.security import read_unverified_claims


def user_or_ip(request: Request) -> str:
    """Rate-limit per user when a bearer token is present, per IP otherwise."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            return f"user:{read_unverified_claims(auth_header[7:])['sub']}"
        except AuthError:
            pass
    return get_remote_address(request)


# Global limiter instance reused across the app
limiter = Limiter(key_func=user_or_ip)
