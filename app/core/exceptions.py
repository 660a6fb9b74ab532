"""Custom exception classes for the application."""

from enum import Enum
from typing import Any, ClassVar


class ErrorKind(str, Enum):
    """Closed set of failure categories surfaced to the HTTP layer."""

    CONFLICT = "conflict"
    UPSTREAM = "upstream"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    INTERNAL = "internal"


class BackupServiceError(Exception):
    """Base exception for all application errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Conflict Errors
class IdentityConflictError(BackupServiceError):
    """A provider identity is already linked to a different account."""

    kind = ErrorKind.CONFLICT

    def __init__(self, provider: str, provider_user_id: str) -> None:
        self.provider = provider
        self.provider_user_id = provider_user_id
        super().__init__(
            f"{provider} account {provider_user_id} is already linked to another account",
            {"provider": provider, "provider_user_id": provider_user_id},
        )


# Upstream Errors
class UpstreamProviderError(BackupServiceError):
    """The OAuth provider refused the request or could not be reached."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        provider: str,
        reason: str,
        *,
        status_code: int | None = None,
        description: str | None = None,
    ) -> None:
        self.provider = provider
        self.reason = reason
        self.status_code = status_code
        self.description = description
        details: dict[str, Any] = {"provider": provider, "reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        if description:
            details["description"] = description
        super().__init__(f"{provider} authentication did not succeed: {reason}", details)


# Not Found Errors
class SessionNotFoundError(BackupServiceError):
    """Session id does not correspond to a stored session."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self) -> None:
        super().__init__("No active session")


class AccountNotFoundError(BackupServiceError):
    """Account not found."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}", {"account_id": account_id})


# Invalid Input Errors
class InvalidOAuthStateError(BackupServiceError):
    """OAuth state parameter is missing, forged or expired."""

    kind = ErrorKind.INVALID

    def __init__(self, reason: str = "invalid_state") -> None:
        self.reason = reason
        super().__init__(f"OAuth state rejected: {reason}", {"reason": reason})


class UnknownProviderError(BackupServiceError):
    """Provider name is not one of the supported providers."""

    kind = ErrorKind.INVALID

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown provider: {provider}", {"provider": provider})


class DeletionConfirmationError(BackupServiceError):
    """Account deletion was requested without the confirmation phrase."""

    kind = ErrorKind.INVALID

    def __init__(self) -> None:
        super().__init__("Invalid confirmation phrase, your account is not deleted")


# Internal Errors
class InternalServiceError(BackupServiceError):
    """Database or infrastructure failure not covered by another kind."""

    kind = ErrorKind.INTERNAL

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed: {message}", {"operation": operation})
