"""
Membership error taxonomy and its mapping to HTTP responses.

Every failing operation raises exactly one ``MembershipError`` subclass.
The ``code`` is stable and machine-readable; ``message`` is safe to show
to users and never contains storage-level text.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse


class MembershipError(Exception):
    """Base class for all errors surfaced to the boundary layer."""

    code: str = "MEMBERSHIP_ERROR"
    status_code: int = 400
    message: str = "The membership operation could not be completed."

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status_code,
        }


class RoleNotFound(MembershipError):
    code = "ROLE_NOT_FOUND"
    message = "The given role does not exist."


class NoRoleGiven(MembershipError):
    code = "NO_ROLE_GIVEN"
    message = "A role is required."


class AlreadyMember(MembershipError):
    code = "USER_ALREADY_ADDED"
    message = "The user is already a member."


class UserNotFound(MembershipError):
    code = "USER_NOT_FOUND"
    status_code = 404
    message = "No user with this email exists."


class UserAlreadyInvitedOrAdded(MembershipError):
    code = "USER_ALREADY_INVITED_OR_ADDED"
    message = "The user has already been invited or added."


class LastUserCannotLeave(MembershipError):
    code = "LAST_USER_CANT_LEAVE"
    message = "The only member cannot leave."


class LastOwnerCannotBeRemoved(MembershipError):
    code = "LAST_OWNER_CANT_BE_REMOVED"
    message = "The last owner cannot be removed."


class LastOwnerCannotChangeRole(MembershipError):
    code = "AT_LEAST_ONE_OWNER_REQUIRED"
    message = "There must always be at least one owner."


class ProjectRoleBelowOrganizationRole(MembershipError):
    code = "USER_PROJECT_ROLE_LOWER_THAN_USER_ORGANIZATION_ROLE"
    message = "A project role cannot be lower than the user's organization role."


class FeatureNotAvailable(MembershipError):
    code = "BASIC_PERMISSION_SYSTEM_FEATURE_NOT_AVAILABLE"
    message = "The permission system is not available on the current plan."


class NotFound(MembershipError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Not found."


class StorageUnavailable(MembershipError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    message = "The membership store is temporarily unavailable. Please retry."


async def _membership_error_handler(request: Request, exc: MembershipError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def install_error_handlers(app: FastAPI) -> None:
    """Register the ``MembershipError`` → JSON response mapping on an app."""
    app.add_exception_handler(MembershipError, _membership_error_handler)
