"""initial account core schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the account core schema and seed the plan catalogue."""

    # ========================================================================
    # Users
    # ========================================================================
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("google_id", sa.String(255), nullable=True, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("is_suspended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("suspended_reason", sa.String(500), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_login_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failed_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("role IN ('user', 'admin')", name="ck_users_role"),
        sa.CheckConstraint("failed_login_attempts >= 0", name="ck_users_failed_attempts"),
    )
    op.create_index("idx_users_email", "users", ["email"])

    # ========================================================================
    # Login attempts (audit ledger)
    # ========================================================================
    op.create_table(
        "login_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_login_attempts_email_time", "login_attempts", ["email", "attempted_at"])
    op.create_index("idx_login_attempts_attempted_at", "login_attempts", ["attempted_at"])

    # ========================================================================
    # Tokens
    # ========================================================================
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(255), nullable=True),
        sa.Column("replaced_by_token_hash", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index(
        "idx_refresh_tokens_user_active",
        "refresh_tokens",
        ["user_id"],
        postgresql_where=sa.text("is_revoked = false"),
    )
    op.create_index("idx_refresh_tokens_expires_at", "refresh_tokens", ["expires_at"])

    op.create_table(
        "token_blacklist",
        sa.Column("token_hash", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_type", sa.String(10), nullable=False, server_default="access"),
        sa.Column("reason", sa.String(255), nullable=False, server_default="User logout"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("token_type IN ('access', 'refresh')", name="ck_token_blacklist_type"),
    )
    op.create_index("idx_token_blacklist_user_id", "token_blacklist", ["user_id"])
    op.create_index("idx_token_blacklist_expires_at", "token_blacklist", ["expires_at"])

    # ========================================================================
    # Plans and subscriptions
    # ========================================================================
    plans = op.create_table(
        "plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("name_ar", sa.String(100), nullable=True),
        sa.Column("price_monthly", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("price_yearly", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("max_menus", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_products_per_menu", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("has_ads", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allow_branches", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allow_custom_domain", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("max_menus >= 0", name="ck_plans_max_menus"),
        sa.CheckConstraint("max_products_per_menu >= -1", name="ck_plans_max_products"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("billing_cycle", sa.String(20), nullable=False, server_default="free"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expiry_notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("status IN ('active', 'expired')", name="ck_subscriptions_status"),
        sa.CheckConstraint(
            "(grace_period_start_date IS NULL) = (grace_period_end_date IS NULL)",
            name="ck_subscriptions_grace_pair",
        ),
    )
    op.create_index("idx_subscriptions_user_status", "subscriptions", ["user_id", "status"])
    op.create_index(
        "idx_subscriptions_end_date",
        "subscriptions",
        ["end_date"],
        postgresql_where=sa.text("end_date IS NOT NULL"),
    )

    # ========================================================================
    # Notifications
    # ========================================================================
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("title_ar", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("message_ar", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "type IN ('subscription_created', 'subscription_expiring', "
            "'subscription_expired', 'downgraded_to_free')",
            name="ck_notifications_type",
        ),
    )
    op.create_index("idx_notifications_user_created", "notifications", ["user_id", "created_at"])

    # ========================================================================
    # Menu resources touched by downgrade enforcement
    # ========================================================================
    op.create_table(
        "menus",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_menus_user_created", "menus", ["user_id", "created_at"])

    op.create_table(
        "menu_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("menu_id", sa.Integer(), sa.ForeignKey("menus.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("idx_menu_items_menu_created", "menu_items", ["menu_id", "created_at"])

    for table, label in (("ads", "title"), ("branches", "name")):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("menu_id", sa.Integer(), sa.ForeignKey("menus.id", ondelete="CASCADE"), nullable=False),
            sa.Column(label, sa.String(255), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        )
        op.create_index(f"ix_{table}_menu_id", table, ["menu_id"])

    # ========================================================================
    # Scheduler locks
    # ========================================================================
    op.create_table(
        "scheduler_locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("holder", sa.String(100), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )

    # ========================================================================
    # Plan catalogue (free plan must be id 1 with price 0)
    # ========================================================================
    op.bulk_insert(
        plans,
        [
            {
                "id": 1,
                "name": "Free",
                "name_ar": "مجاني",
                "price_monthly": 0,
                "price_yearly": 0,
                "max_menus": 1,
                "max_products_per_menu": 20,
                "has_ads": False,
                "allow_branches": False,
                "allow_custom_domain": False,
                "is_active": True,
            },
            {
                "id": 2,
                "name": "Monthly",
                "name_ar": "شهري",
                "price_monthly": 99,
                "price_yearly": 0,
                "max_menus": 3,
                "max_products_per_menu": 100,
                "has_ads": True,
                "allow_branches": True,
                "allow_custom_domain": False,
                "is_active": True,
            },
            {
                "id": 3,
                "name": "Yearly",
                "name_ar": "سنوي",
                "price_monthly": 83,
                "price_yearly": 999,
                "max_menus": 10,
                "max_products_per_menu": -1,
                "has_ads": True,
                "allow_branches": True,
                "allow_custom_domain": True,
                "is_active": True,
            },
        ],
    )
    op.execute("SELECT setval(pg_get_serial_sequence('plans', 'id'), (SELECT MAX(id) FROM plans))")


def downgrade() -> None:
    """Drop the account core schema."""
    for table in (
        "scheduler_locks",
        "branches",
        "ads",
        "menu_items",
        "menus",
        "notifications",
        "subscriptions",
        "plans",
        "token_blacklist",
        "refresh_tokens",
        "login_attempts",
        "users",
    ):
        op.drop_table(table)
