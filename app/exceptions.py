"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
The HTTP layer maps each class to a status code; nothing here knows about HTTP.
"""

from datetime import datetime


class CoreError(Exception):
    """Base exception for all account core errors."""

    pass


class InvalidCredentialsError(CoreError):
    """Raised when email/password (or social identity) does not authenticate."""

    def __init__(self, remaining_attempts: int | None = None) -> None:
        self.remaining_attempts = remaining_attempts
        super().__init__("Invalid email or password")


class AccountLockedError(CoreError):
    """Raised when the account is inside a lockout window."""

    def __init__(self, minutes_remaining: int, locked_until: datetime | None = None) -> None:
        self.minutes_remaining = minutes_remaining
        self.locked_until = locked_until
        super().__init__(f"Account locked for {minutes_remaining} more minute(s)")


class AccountSuspendedError(CoreError):
    """Raised when an administrator has suspended the account."""

    def __init__(self, user_id: int, reason: str | None) -> None:
        self.user_id = user_id
        self.reason = reason or "Account suspended by administrator"
        super().__init__(f"Account {user_id} suspended: {self.reason}")


class InvalidOrExpiredTokenError(CoreError):
    """
    Raised for any token that cannot be trusted.

    The message is deliberately identical for malformed, expired and revoked
    tokens.
    """

    def __init__(self, message: str = "Invalid or expired token") -> None:
        self.message = message
        super().__init__(message)


class TokenRevokedError(InvalidOrExpiredTokenError):
    """Raised when a token was explicitly revoked or blacklisted."""

    def __init__(self) -> None:
        super().__init__()


class PlanNotFoundError(CoreError):
    """Raised when a required plan (normally the free plan) does not exist."""

    def __init__(self, plan_name: str) -> None:
        self.plan_name = plan_name
        super().__init__(f"Plan not found: {plan_name}")


class SubscriptionNotFoundError(CoreError):
    """Raised when a user has no active, unexpired subscription."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"No active subscription found for user {user_id}")


class StorageUnavailableError(CoreError):
    """Raised when the relational store fails during an operation that must not degrade."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Storage unavailable during {operation}")


class GoogleSignInUnavailableError(CoreError):
    """Raised when Google sign-in is requested but no client IDs are configured."""

    def __init__(self) -> None:
        super().__init__("Google sign-in is not configured")
