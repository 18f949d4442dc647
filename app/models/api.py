"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class UserRole(str, Enum):
    """User role enumeration."""

    USER = "user"
    ADMIN = "admin"


class TokenType(str, Enum):
    """Credential class enumeration."""

    ACCESS = "access"
    REFRESH = "refresh"


class SubscriptionStatus(str, Enum):
    """Persisted subscription status."""

    ACTIVE = "active"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    """Subscription billing cycle."""

    FREE = "free"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class NotificationType(str, Enum):
    """Notification types emitted by lifecycle transitions."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    DOWNGRADED_TO_FREE = "downgraded_to_free"


# ============================================================================
# Auth Request Models
# ============================================================================


class LoginRequest(BaseModel):
    """POST /api/auth/login request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Emails are case-insensitive."""
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v


class GoogleLoginRequest(BaseModel):
    """POST /api/auth/google request body."""

    id_token: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    """POST /api/auth/refresh request body."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """POST /api/auth/logout request body."""

    refresh_token: str | None = None


class ChangePasswordRequest(BaseModel):
    """POST /api/auth/change-password request body."""

    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=8, max_length=1024)


# ============================================================================
# Auth Response Models
# ============================================================================


class UserSummary(BaseModel):
    """Public view of the authenticated user."""

    id: int
    email: str
    name: str | None = None
    role: UserRole


class TokenResponse(BaseModel):
    """Token pair returned by login, google and refresh."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    user: UserSummary | None = None
    is_new: bool = False


class PlanSummary(BaseModel):
    """The plan a user is currently entitled to."""

    plan_id: int
    plan_name: str
    billing_cycle: BillingCycle
    end_date: datetime | None = None
    max_menus: int
    max_products_per_menu: int


class MeResponse(BaseModel):
    """GET /api/auth/me response body."""

    user: UserSummary
    plan: PlanSummary


class MessageResponse(BaseModel):
    """Generic acknowledgement."""

    message: str


class ErrorResponse(BaseModel):
    """Error body produced by the exception handlers."""

    error: str
    error_ar: str | None = None
    is_locked: bool = False
    minutes_remaining: int | None = None
    remaining_attempts: int | None = None
    is_suspended: bool = False
    suspended_reason: str | None = None
    retry_after_minutes: int | None = None
