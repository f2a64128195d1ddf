"""Auth module"""

from .auth import TokenData, Role, AuthService, RoleChecker

__all__ = ["TokenData", "Role", "AuthService", "RoleChecker"]
