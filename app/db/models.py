"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Only the entities the account core reasons about are modelled here; menus,
items, ads and branches carry just the columns downgrade enforcement needs.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Lockout columns are written only by the login attempt guard.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity - email is stored lower-cased
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    google_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")

    # Suspension (admin managed)
    is_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspended_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Lockout
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failed_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("role IN ('user', 'admin')", name="ck_users_role"),
        CheckConstraint("failed_login_attempts >= 0", name="ck_users_failed_attempts"),
        Index("idx_users_email", "email"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class LoginAttempt(Base):
    """
    ORM model for login_attempts table.

    Immutable audit ledger; purged after the retention window.
    """

    __tablename__ = "login_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_login_attempts_email_time", "email", "attempted_at"),
        Index("idx_login_attempts_attempted_at", "attempted_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<LoginAttempt(email={self.email}, success={self.success})>"


class RefreshToken(Base):
    """
    ORM model for refresh_tokens table.

    Tokens are identified by a SHA-256 hash; the raw token is never stored.
    replaced_by_token_hash points at the rotation successor (relation only).
    """

    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    replaced_by_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_refresh_tokens_user_active", "user_id", postgresql_where=(is_revoked.is_(False))),
        Index("idx_refresh_tokens_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<RefreshToken(hash={self.token_hash[:16]}..., "
            f"user_id={self.user_id}, revoked={self.is_revoked})>"
        )


class TokenBlacklist(Base):
    """
    ORM model for token_blacklist table.

    expires_at mirrors the token's own expiry, after which the row is inert.
    """

    __tablename__ = "token_blacklist"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_type: Mapped[str] = mapped_column(String(10), nullable=False, default="access")
    reason: Mapped[str] = mapped_column(String(255), nullable=False, default="User logout")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("token_type IN ('access', 'refresh')", name="ck_token_blacklist_type"),
        Index("idx_token_blacklist_user_id", "user_id"),
        Index("idx_token_blacklist_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<TokenBlacklist(hash={self.token_hash[:16]}..., user_id={self.user_id})>"


class Plan(Base):
    """
    ORM model for plans table.

    Read-only from the account core. max_products_per_menu = -1 means unlimited.
    """

    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name_ar: Mapped[str | None] = mapped_column(String(100), nullable=True)
    price_monthly: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    price_yearly: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    max_menus: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_products_per_menu: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    has_ads: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_branches: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_custom_domain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("max_menus >= 0", name="ck_plans_max_menus"),
        CheckConstraint("max_products_per_menu >= -1", name="ck_plans_max_products"),
    )

    @property
    def is_free(self) -> bool:
        """A plan with no monthly price is the free tier."""
        return float(self.price_monthly or 0) == 0

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Plan(id={self.id}, name={self.name})>"


class Subscription(Base):
    """
    ORM model for subscriptions table.

    Status transitions are owned by the subscription lifecycle service.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("plans.id"), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    grace_period_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expiry_notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'expired')", name="ck_subscriptions_status"),
        CheckConstraint(
            "(grace_period_start_date IS NULL) = (grace_period_end_date IS NULL)",
            name="ck_subscriptions_grace_pair",
        ),
        Index("idx_subscriptions_user_status", "user_id", "status"),
        Index("idx_subscriptions_end_date", "end_date", postgresql_where=(end_date.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan_id={self.plan_id}, status={self.status})>"
        )


class Notification(Base):
    """
    ORM model for notifications table.

    Written by lifecycle transitions; read by the user notification API.
    """

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    title_ar: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    message_ar: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "type IN ('subscription_created', 'subscription_expiring', "
            "'subscription_expired', 'downgraded_to_free')",
            name="ck_notifications_type",
        ),
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"


class Menu(Base):
    """ORM model for menus table (columns used by downgrade enforcement)."""

    __tablename__ = "menus"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_menus_user_created", "user_id", "created_at"),)


class MenuItem(Base):
    """ORM model for menu_items table."""

    __tablename__ = "menu_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    menu_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("menus.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_menu_items_menu_created", "menu_id", "created_at"),)


class Ad(Base):
    """ORM model for ads table."""

    __tablename__ = "ads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    menu_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("menus.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class Branch(Base):
    """ORM model for branches table."""

    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    menu_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("menus.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class SchedulerLock(Base):
    """
    ORM model for scheduler_locks table.

    One row per named lock; a lock is free when expires_at has passed.
    """

    __tablename__ = "scheduler_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<SchedulerLock(name={self.name}, holder={self.holder})>"
