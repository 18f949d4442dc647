"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.

The subscription phase is an explicit variant computed from the persisted row,
so each scheduler pass can state exactly which phase it acts on instead of
inferring it from a mix of nullable timestamps and a status string.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.models.api import SubscriptionStatus, UserRole

# Lifecycle constants
GRACE_PERIOD = timedelta(days=2)
EXPIRY_WARNING_WINDOW = timedelta(days=2)


# ============================================================================
# Identity and Tokens
# ============================================================================


@dataclass(frozen=True)
class TokenPayload:
    """Claims carried by access and refresh tokens."""

    user_id: int
    email: str
    role: UserRole

    def __post_init__(self) -> None:
        """Validate payload fields."""
        if self.user_id <= 0:
            raise ValueError(f"Invalid user_id: {self.user_id}")
        if not self.email:
            raise ValueError("email cannot be empty")


@dataclass(frozen=True)
class TokenPair:
    """Freshly minted access + refresh tokens."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class VerifiedToken:
    """A token whose signature and expiry have been checked."""

    token: str
    payload: TokenPayload
    expires_at: datetime


# ============================================================================
# Social Identity
# ============================================================================


@dataclass(frozen=True)
class GoogleIdentity:
    """Claims of a verified Google ID token."""

    google_id: str
    email: str
    name: str | None = None


# ============================================================================
# Login Attempt Guard
# ============================================================================


@dataclass(frozen=True)
class LockStatus:
    """Result of is_account_locked."""

    is_locked: bool
    locked_until: datetime | None = None
    minutes_remaining: int | None = None
    message: str | None = None
    message_ar: str | None = None


@dataclass(frozen=True)
class LockCheckResult:
    """Result of check_and_lock_account."""

    should_lock: bool
    remaining_attempts: int
    locked_until: datetime | None = None


@dataclass(frozen=True)
class LoginAttemptData:
    """Read-only view of a recorded attempt (monitoring)."""

    email: str
    ip_address: str
    success: bool
    user_agent: str | None
    attempted_at: datetime


# ============================================================================
# Plans and Enforcement
# ============================================================================


@dataclass(frozen=True)
class PlanLimits:
    """Resource limits of a plan, detached from the ORM row."""

    plan_id: int
    name: str
    max_menus: int
    max_products_per_menu: int
    has_ads: bool
    allow_branches: bool

    @property
    def unlimited_products(self) -> bool:
        """-1 means no per-menu product limit."""
        return self.max_products_per_menu == -1


@dataclass(frozen=True)
class DowngradeReport:
    """What one enforcement run changed."""

    user_id: int
    menus_deactivated: list[int] = field(default_factory=list)
    products_deleted: list[int] = field(default_factory=list)
    ads_deleted: int = 0
    branches_deleted: int = 0

    @property
    def changed(self) -> bool:
        """True if anything was trimmed."""
        return bool(
            self.menus_deactivated
            or self.products_deleted
            or self.ads_deleted
            or self.branches_deleted
        )


# ============================================================================
# Subscription Phase (tagged variant)
# ============================================================================


@dataclass(frozen=True)
class FreePlan:
    """Subscription on the free plan; never expires."""


@dataclass(frozen=True)
class Active:
    """Paid and outside the warning window."""

    end_date: datetime | None


@dataclass(frozen=True)
class ExpiringSoon:
    """Paid, ends within the warning window, warning not yet sent."""

    end_date: datetime


@dataclass(frozen=True)
class ExpiringNotified:
    """Paid, ends within the warning window, warning already sent."""

    end_date: datetime


@dataclass(frozen=True)
class Lapsed:
    """Still marked active but the end date has passed; grace not started."""

    end_date: datetime


@dataclass(frozen=True)
class Grace:
    """Expired and inside the grace window."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class GraceElapsed:
    """Expired and the grace window has passed; due for downgrade."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class Expired:
    """Expired without a grace window (expired by the request-time check)."""

    end_date: datetime | None


SubscriptionPhase = (
    FreePlan | Active | ExpiringSoon | ExpiringNotified | Lapsed | Grace | GraceElapsed | Expired
)


def classify_subscription(
    *,
    status: SubscriptionStatus | str,
    is_free_plan: bool,
    end_date: datetime | None,
    grace_period_start: datetime | None,
    grace_period_end: datetime | None,
    expiry_notification_sent: bool,
    now: datetime,
) -> SubscriptionPhase:
    """
    Compute the lifecycle phase of a subscription row.

    Raises:
        ValueError: if the row is in a combination no transition produces
            (e.g. an expired row with only one grace timestamp).
    """
    status = SubscriptionStatus(status)

    if is_free_plan:
        return FreePlan()

    if status == SubscriptionStatus.ACTIVE:
        if end_date is None:
            return Active(end_date=None)
        if end_date <= now:
            if grace_period_start is None:
                return Lapsed(end_date=end_date)
            raise ValueError("active subscription with grace period already started")
        if end_date - now <= EXPIRY_WARNING_WINDOW:
            if expiry_notification_sent:
                return ExpiringNotified(end_date=end_date)
            return ExpiringSoon(end_date=end_date)
        return Active(end_date=end_date)

    # status == EXPIRED
    if grace_period_start is None and grace_period_end is None:
        return Expired(end_date=end_date)
    if grace_period_start is None or grace_period_end is None:
        raise ValueError("expired subscription with partial grace period")
    if grace_period_end <= now:
        return GraceElapsed(start=grace_period_start, end=grace_period_end)
    return Grace(start=grace_period_start, end=grace_period_end)


@dataclass(frozen=True)
class SubscriptionUpdate:
    """Typed partial update for a subscription row; None means 'leave as is'."""

    plan_id: int | None = None
    billing_cycle: str | None = None
    status: SubscriptionStatus | None = None
    start_date: datetime | None = None
    clear_end_date: bool = False
    grace_period_start_date: datetime | None = None
    grace_period_end_date: datetime | None = None
    clear_grace_period: bool = False
    expiry_notification_sent: bool | None = None
    notification_sent: bool | None = None

    def apply(self, subscription: object) -> None:
        """Apply the set fields to an ORM row in place."""
        if self.plan_id is not None:
            subscription.plan_id = self.plan_id  # type: ignore[attr-defined]
        if self.billing_cycle is not None:
            subscription.billing_cycle = self.billing_cycle  # type: ignore[attr-defined]
        if self.status is not None:
            subscription.status = self.status.value  # type: ignore[attr-defined]
        if self.start_date is not None:
            subscription.start_date = self.start_date  # type: ignore[attr-defined]
        if self.clear_end_date:
            subscription.end_date = None  # type: ignore[attr-defined]
        if self.clear_grace_period:
            subscription.grace_period_start_date = None  # type: ignore[attr-defined]
            subscription.grace_period_end_date = None  # type: ignore[attr-defined]
        if self.grace_period_start_date is not None:
            subscription.grace_period_start_date = self.grace_period_start_date  # type: ignore[attr-defined]
        if self.grace_period_end_date is not None:
            subscription.grace_period_end_date = self.grace_period_end_date  # type: ignore[attr-defined]
        if self.expiry_notification_sent is not None:
            subscription.expiry_notification_sent = self.expiry_notification_sent  # type: ignore[attr-defined]
        if self.notification_sent is not None:
            subscription.notification_sent = self.notification_sent  # type: ignore[attr-defined]


@dataclass(frozen=True)
class PassReport:
    """Outcome of one scheduler pass."""

    name: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass(frozen=True)
class LifecycleRunReport:
    """Outcome of a full scheduler run (three passes in order)."""

    expiry_warnings: PassReport
    grace_started: PassReport
    downgraded: PassReport
    started_at: datetime
    finished_at: datetime


@dataclass(frozen=True)
class CleanupReport:
    """Rows purged by one retention cleanup run."""

    blacklist_deleted: int = 0
    refresh_tokens_deleted: int = 0
    login_attempts_deleted: int = 0
