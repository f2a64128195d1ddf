"""
Authentication and Authorization utilities for JWT-based auth.
Tokens (and PINs) are issued by the store's login service; this module only
verifies them and turns them into an explicit TokenData identity that every
closing operation receives as an argument.
"""

from typing import Optional, Any, Dict
from dataclasses import dataclass
import enum
import jwt
from jwt.exceptions import PyJWTError, ExpiredSignatureError
from datetime import datetime, timedelta, timezone
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import config
from app.core.exceptions import UnauthorizedError, ForbiddenError


# HTTP Bearer token security scheme
security = HTTPBearer()


class Role(str, enum.Enum):
    """Store roles, lowest privilege first"""

    CASHIER = "CASHIER"
    SHIFT_MANAGER = "SHIFT_MANAGER"
    STORE_MANAGER = "STORE_MANAGER"


ROLE_RANK: Dict[str, int] = {
    Role.CASHIER.value: 1,
    Role.SHIFT_MANAGER.value: 2,
    Role.STORE_MANAGER.value: 3,
}


@dataclass(frozen=True)
class TokenData:
    """Authenticated identity passed into every closing operation"""
    user_id: str
    username: str
    role: str
    store_id: str


class AuthService:
    """
    Token helpers. Issuing is only used by tooling and tests.
    """

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """
        Create a JWT access token with user data and expiration.

        Args:
            data: Dictionary containing user data (user_id, sub, role, store_id)
            expires_delta: Optional custom expiration time, defaults to config value

        Returns:
            Encoded JWT token as string
        """
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=config.access_token_expire_minutes))
        to_encode.update({
            "exp": expire,
            "iat": now,
            "type": "access"
        })
        return jwt.encode(to_encode, config.secret_key, algorithm=config.algorithm)

    @staticmethod
    def verify_token(token: str) -> Optional[TokenData]:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string to verify

        Returns:
            TokenData object if valid, None if invalid
        """
        try:
            payload: Dict[str, Any] = jwt.decode(
                token, config.secret_key, algorithms=[config.algorithm]
            )
        except ExpiredSignatureError:
            raise UnauthorizedError("Token has expired")
        except PyJWTError:
            return None

        user_id = payload.get("user_id")
        username = payload.get("sub")
        role = payload.get("role")
        store_id = payload.get("store_id")

        if not user_id or not username or role not in ROLE_RANK or not store_id:
            return None

        return TokenData(
            user_id=str(user_id), username=username, role=role, store_id=str(store_id)
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenData:
    """
    Dependency to get the current authenticated user from JWT token.

    Raises:
        UnauthorizedError: If token is invalid
    """
    token_data = AuthService.verify_token(credentials.credentials)

    if token_data is None:
        raise UnauthorizedError("Invalid authentication credentials")

    return token_data


class RoleChecker:
    """
    Session check: the caller must be authenticated with at least `minimum_role`.
    The core trusts the returned identity and never re-derives authorization.
    """

    def __init__(self, minimum_role: Role) -> None:
        self.minimum_role = minimum_role

    async def __call__(self, current_user: TokenData = Depends(get_current_user)) -> TokenData:
        if ROLE_RANK[current_user.role] < ROLE_RANK[self.minimum_role.value]:
            raise ForbiddenError(
                f"Operation not permitted. Requires {self.minimum_role.value} or higher"
            )
        return current_user


require_cashier: RoleChecker = RoleChecker(Role.CASHIER)
require_shift_manager: RoleChecker = RoleChecker(Role.SHIFT_MANAGER)
require_store_manager: RoleChecker = RoleChecker(Role.STORE_MANAGER)
