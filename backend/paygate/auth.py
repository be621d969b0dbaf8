"""
Admin authentication: a static bearer token handed out by the login route.

An empty ``ADMIN_PASSWORD`` or ``ADMIN_TOKEN`` disables admin access
entirely rather than falling back to a default secret.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from .deps import get_config
from .payment.config import PaymentConfig

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    success: bool
    token: str


def _matches(given: str, expected: str) -> bool:
    return bool(expected) and secrets.compare_digest(given.encode(), expected.encode())


def require_admin(
    authorization: str = Header(default=""),
    config: PaymentConfig = Depends(get_config),
) -> None:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Access token required")
    if not _matches(token.strip(), config.admin_token):
        raise HTTPException(status_code=403, detail="Invalid token")


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest, config: PaymentConfig = Depends(get_config)) -> LoginResponse:
    username_ok = _matches(request.username, config.admin_username)
    password_ok = _matches(request.password, config.admin_password)
    if not (username_ok and password_ok and config.admin_token):
        logger.warning(f"Failed admin login for {request.username!r}")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return LoginResponse(success=True, token=config.admin_token)
