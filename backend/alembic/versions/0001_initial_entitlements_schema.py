"""initial entitlements schema

Revision ID: 3f2a9c1e7b10
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1e7b10"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "subscription_tiers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_monthly", sa.Numeric(10, 2), nullable=False),
        sa.Column("price_yearly", sa.Numeric(10, 2), nullable=False),
        sa.Column("token_limit", sa.Integer(), nullable=True),
        sa.Column("papers_limit", sa.Integer(), nullable=True),
        sa.Column("max_study_plans", sa.Integer(), nullable=True),
        sa.Column("max_subjects", sa.Integer(), nullable=True),
        sa.Column("can_select_grade", sa.Boolean(), nullable=False),
        sa.Column("can_select_subjects", sa.Boolean(), nullable=False),
        sa.Column("chapter_wise_access", sa.Boolean(), nullable=False),
        sa.Column("can_access_study_plan", sa.Boolean(), nullable=False),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("referral_points_awarded", sa.Integer(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("coming_soon", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_subscription_tiers_name"), "subscription_tiers", ["name"], unique=True)

    op.create_table(
        "user_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("tier_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("billing_cycle", sa.String(length=20), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("payment_provider", sa.String(length=50), nullable=True),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(), nullable=True),
        sa.Column("period_start_date", sa.DateTime(), nullable=False),
        sa.Column("period_end_date", sa.DateTime(), nullable=True),
        sa.Column("tokens_used_current_period", sa.Integer(), nullable=False),
        sa.Column("token_limit_override", sa.Integer(), nullable=True),
        sa.Column("papers_accessed_current_period", sa.Integer(), nullable=False),
        sa.Column("selected_grade_id", sa.String(length=255), nullable=True),
        sa.Column("selected_subject_ids", sa.JSON(), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancellation_requested_at", sa.DateTime(), nullable=True),
        sa.Column("expired_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tier_id"], ["subscription_tiers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_subscriptions_user_id"), "user_subscriptions", ["user_id"], unique=False)
    # At most one active subscription per user
    op.create_index(
        "ix_user_subscriptions_one_active",
        "user_subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "paper_accesses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("period_start_date", sa.DateTime(), nullable=False),
        sa.Column("paper_id", sa.String(length=255), nullable=False),
        sa.Column("accessed_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "period_start_date", "paper_id", name="uq_paper_access_per_period"),
    )
    op.create_index(op.f("ix_paper_accesses_subscription_id"), "paper_accesses", ["subscription_id"], unique=False)

    op.create_table(
        "referral_codes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_referral_codes_user_id"), "referral_codes", ["user_id"], unique=True)
    op.create_index(op.f("ix_referral_codes_code"), "referral_codes", ["code"], unique=True)

    op.create_table(
        "referrals",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("referrer_id", sa.String(length=255), nullable=False),
        sa.Column("referred_id", sa.String(length=255), nullable=False),
        sa.Column("referral_code", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=False),
        sa.Column("subscription_tier_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["subscription_tier_id"], ["subscription_tiers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_referrals_referrer_id"), "referrals", ["referrer_id"], unique=False)
    op.create_index(op.f("ix_referrals_referred_id"), "referrals", ["referred_id"], unique=True)

    op.create_table(
        "user_referral_points",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("points_balance", sa.Integer(), nullable=False),
        sa.Column("total_earned", sa.Integer(), nullable=False),
        sa.Column("total_spent", sa.Integer(), nullable=False),
        sa.Column("total_referrals", sa.Integer(), nullable=False),
        sa.Column("successful_referrals", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("points_balance >= 0", name="ck_points_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_referral_points_user_id"), "user_referral_points", ["user_id"], unique=True)

    op.create_table(
        "redemption_reservations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("tier_id", sa.Integer(), nullable=False),
        sa.Column("points_debited", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tier_id"], ["subscription_tiers.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_redemption_reservations_user_id"), "redemption_reservations", ["user_id"], unique=False
    )
    # At most one pending reservation per user
    op.create_index(
        "ix_redemption_reservations_one_pending",
        "redemption_reservations",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "referral_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("transaction_type", sa.String(length=20), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("referral_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["referral_id"], ["referrals.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"]),
        sa.ForeignKeyConstraint(["reservation_id"], ["redemption_reservations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_referral_transactions_user_id"), "referral_transactions", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_referral_transactions_created_at"), "referral_transactions", ["created_at"], unique=False
    )

    op.create_table(
        "study_plan_schedules",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("subject_id", sa.String(length=255), nullable=False),
        sa.Column("grade_id", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_study_plan_schedules_user_id"), "study_plan_schedules", ["user_id"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f("ix_study_plan_schedules_user_id"), table_name="study_plan_schedules")
    op.drop_table("study_plan_schedules")
    op.drop_index(op.f("ix_referral_transactions_created_at"), table_name="referral_transactions")
    op.drop_index(op.f("ix_referral_transactions_user_id"), table_name="referral_transactions")
    op.drop_table("referral_transactions")
    op.drop_index("ix_redemption_reservations_one_pending", table_name="redemption_reservations")
    op.drop_index(op.f("ix_redemption_reservations_user_id"), table_name="redemption_reservations")
    op.drop_table("redemption_reservations")
    op.drop_index(op.f("ix_user_referral_points_user_id"), table_name="user_referral_points")
    op.drop_table("user_referral_points")
    op.drop_index(op.f("ix_referrals_referred_id"), table_name="referrals")
    op.drop_index(op.f("ix_referrals_referrer_id"), table_name="referrals")
    op.drop_table("referrals")
    op.drop_index(op.f("ix_referral_codes_code"), table_name="referral_codes")
    op.drop_index(op.f("ix_referral_codes_user_id"), table_name="referral_codes")
    op.drop_table("referral_codes")
    op.drop_index(op.f("ix_paper_accesses_subscription_id"), table_name="paper_accesses")
    op.drop_table("paper_accesses")
    op.drop_index("ix_user_subscriptions_one_active", table_name="user_subscriptions")
    op.drop_index(op.f("ix_user_subscriptions_user_id"), table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_index(op.f("ix_subscription_tiers_name"), table_name="subscription_tiers")
    op.drop_table("subscription_tiers")
