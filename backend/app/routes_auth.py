"""
Simple authentication routes.
Uses a single admin password from environment; login, refresh and logout are
rate limited per client.
"""

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .dependencies import client_key, get_rate_limit_store
from .services.rate_limiter import RateLimitStore, auth_limiter
from .settings import get_settings

router = APIRouter(prefix="/api/auth", tags=["auth"])
security = HTTPBearer(auto_error=False)

# In-memory token store, single API process
_tokens: dict[str, datetime] = {}

TOKEN_EXPIRY_HOURS = 24


class LoginRequest(BaseModel):
    password: str


class LoginResponse(BaseModel):
    token: str
    expires_at: str


def _generate_token() -> str:
    return secrets.token_urlsafe(32)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _cleanup_expired_tokens():
    now = _now()
    expired = [t for t, exp in _tokens.items() if exp < now]
    for t in expired:
        del _tokens[t]


def _issue_token() -> LoginResponse:
    token = _generate_token()
    expires_at = _now() + timedelta(hours=TOKEN_EXPIRY_HOURS)
    _tokens[token] = expires_at
    return LoginResponse(token=token, expires_at=expires_at.isoformat())


def _rate_limited(operation: str):
    async def _check(request: Request, store: RateLimitStore = Depends(get_rate_limit_store)) -> None:
        await auth_limiter(store, operation).check(client_key(request))
    return _check


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(_rate_limited("login"))])
async def login(request: LoginRequest):
    """
    Login with admin password.
    Returns a bearer token valid for 24 hours.
    """
    admin_password = get_settings().admin_password

    # No password configured: dev mode, any login passes
    if admin_password and not hmac.compare_digest(request.password.encode(), admin_password.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid password"
        )

    _cleanup_expired_tokens()
    return _issue_token()


@router.post("/refresh", response_model=LoginResponse, dependencies=[Depends(_rate_limited("refresh"))])
async def refresh(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Exchange a valid token for a new one; the old token stops working."""
    _cleanup_expired_tokens()
    if not credentials or credentials.credentials not in _tokens:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    del _tokens[credentials.credentials]
    return _issue_token()


@router.post("/logout", dependencies=[Depends(_rate_limited("logout"))])
async def logout(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Invalidate current token."""
    if credentials and credentials.credentials in _tokens:
        del _tokens[credentials.credentials]
    return {"status": "logged out"}


@router.get("/me")
async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Check if current token is valid."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = credentials.credentials
    _cleanup_expired_tokens()

    if token not in _tokens:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return {
        "authenticated": True,
        "expires_at": _tokens[token].isoformat()
    }


def require_auth(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> bool:
    """Dependency that requires authentication."""
    # Skip auth if no admin password configured (dev mode)
    if not get_settings().admin_password:
        return True

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    _cleanup_expired_tokens()
    if credentials.credentials not in _tokens:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return True
