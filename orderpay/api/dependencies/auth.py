"""
Bearer-token principal dependencies

Usage:
    @router.get("/orders")
    async def list_orders(principal: Principal = Depends(get_current_principal)):
        ...
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from orderpay.core.auth import Principal, verify_token
from orderpay.core.exceptions import ForbiddenException, UnauthorizedException
from orderpay.core.logging import get_logger

logger = get_logger(__name__)

# auto_error off so a missing header is rendered in the standard envelope
security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    if credentials is None:
        raise UnauthorizedException()

    principal = verify_token(credentials.credentials)
    if principal is None:
        raise UnauthorizedException("Invalid or expired token")
    return principal


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if not principal.is_admin:
        logger.warning(
            "Admin access denied",
            extra_data={"user_id": principal.user_id, "role": principal.role.value},
        )
        raise ForbiddenException("Admin access required")
    return principal
