"""
Simple exception classes for the application.
"""

from typing import Any, Optional

from fastapi import HTTPException, status


class ValidationError(HTTPException):
    """Raised when input validation fails."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message
        )


class NotFoundError(HTTPException):
    """Raised when a requested resource is not found."""

    def __init__(self, resource_type: str, resource_id):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"{resource_type} not found"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(HTTPException):
    """Raised when an operation is not allowed in the resource's current state."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=message)


class ExpiredError(HTTPException):
    """Raised when a time-limited operation (lottery prepare) is past its window."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_410_GONE, detail=message)


class VersionConflictError(HTTPException):
    """
    Raised by the draft session when a save still conflicts after its single retry.
    Carries the current server draft so the operator can overwrite or reload.
    """

    def __init__(
        self,
        current_version: int,
        expected_version: int,
        current_draft: Optional[Any] = None,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Version conflict: expected {expected_version}, "
                f"but current is {current_version}. Please refresh and retry."
            ),
        )
        self.current_version = current_version
        self.expected_version = expected_version
        self.current_draft = current_draft


class UnauthorizedError(HTTPException):
    """Raised when a user is not authorized to access a resource."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


class ForbiddenError(HTTPException):
    """Raised when the authenticated user lacks the required role."""

    def __init__(self, message: str):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=message)
