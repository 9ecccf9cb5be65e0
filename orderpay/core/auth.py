"""
Principal extraction from bearer JWTs.

Tokens are issued by the identity service; this module only verifies them
and turns the payload into a ``Principal``.
"""
import enum
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel, ValidationError

from orderpay.core.config import settings
from orderpay.core.logging import get_logger

logger = get_logger(__name__)


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Principal(BaseModel):
    """Authenticated caller"""
    user_id: int
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def cache_scope(self) -> str:
        """Viewer scope for cached order snapshots"""
        return "admin" if self.is_admin else str(self.user_id)

    @property
    def owner_filter(self) -> Optional[int]:
        """Owner id to scope queries by; None lets admins see everything"""
        return None if self.is_admin else self.user_id


def verify_token(token: str) -> Optional[Principal]:
    """Decode a JWT, None if invalid, expired or malformed"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return Principal(user_id=payload["user_id"], role=payload.get("role", UserRole.USER))
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValidationError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
