"""Create ledger, arena and audit tables

Revision ID: 5c2e8a41f0b7
Revises:
Create Date: 2026-10-19 09:12:31.448120

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e8a41f0b7'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

POINTS = sa.Numeric(20, 4)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create every table the reconciliation engine reads or writes."""

    # --- profiles / user_points ---
    op.create_table(
        "profiles",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(100), nullable=True),
        _created_at(),
    )
    op.create_index("ix_profiles_username", "profiles", ["username"])

    op.create_table(
        "user_points",
        sa.Column("user_id", sa.String(36), primary_key=True),
        sa.Column("mining_points", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("task_points", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("social_points", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("referral_points", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("total_points", sa.BigInteger, nullable=False, server_default="0"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_points_total_desc", "user_points", ["total_points"])

    # --- event tables ---
    op.create_table(
        "mining_sessions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("arx_mined", POINTS, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_mining_sessions_user_active", "mining_sessions", ["user_id", "is_active"],
    )

    op.create_table(
        "user_tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("task_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("points_awarded", POINTS, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_user_tasks_user_status", "user_tasks", ["user_id", "status"])

    op.create_table(
        "daily_checkins",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("points_awarded", POINTS, server_default="0"),
        sa.Column("streak_day", sa.Integer, server_default="1"),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_daily_checkins_user", "daily_checkins", ["user_id"])

    op.create_table(
        "social_submissions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("platform", sa.String(30), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("points_awarded", POINTS, server_default="0"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_social_submissions_user_status", "social_submissions", ["user_id", "status"],
    )

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("referrer_id", sa.String(36), nullable=False),
        sa.Column("referred_id", sa.String(36), nullable=False),
        sa.Column("points_awarded", POINTS, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_referrals_referrer", "referrals", ["referrer_id"])

    op.create_table(
        "nexus_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("sender_id", sa.String(36), nullable=False),
        sa.Column("receiver_id", sa.String(36), nullable=False),
        sa.Column("amount", POINTS, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_nexus_transactions_receiver", "nexus_transactions", ["receiver_id"])
    op.create_index("ix_nexus_transactions_sender", "nexus_transactions", ["sender_id"])

    # --- arena ---
    op.create_table(
        "arena_battles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("side_a_name", sa.String(100), nullable=False),
        sa.Column("side_b_name", sa.String(100), nullable=False),
        sa.Column("side_c_name", sa.String(100), nullable=True),
        sa.Column("side_a_power", POINTS, server_default="0"),
        sa.Column("side_b_power", POINTS, server_default="0"),
        sa.Column("side_c_power", POINTS, nullable=True),
        sa.Column("prize_pool", POINTS, server_default="0"),
        sa.Column("winner_side", sa.String(1), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_arena_battles_winner_created", "arena_battles", ["winner_side", "created_at"],
    )

    op.create_table(
        "arena_votes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "battle_id", sa.String(36),
            sa.ForeignKey("arena_battles.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("side", sa.String(1), nullable=False),
        sa.Column("power_spent", POINTS, server_default="0"),
        sa.Column("early_stake_multiplier", sa.Numeric(6, 3), server_default="1"),
        _created_at(),
    )
    op.create_index("ix_arena_votes_battle_side", "arena_votes", ["battle_id", "side"])
    op.create_index("ix_arena_votes_user", "arena_votes", ["user_id"])

    op.create_table(
        "arena_earnings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "battle_id", sa.String(36),
            sa.ForeignKey("arena_battles.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("stake_amount", POINTS, server_default="0"),
        sa.Column("total_earned", POINTS, server_default="0"),
        sa.Column("pool_share_earned", POINTS, server_default="0"),
        sa.Column("bonus_earned", POINTS, server_default="0"),
        sa.Column("streak_bonus", POINTS, server_default="0"),
        sa.Column("is_winner", sa.Boolean, nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint("battle_id", "user_id", name="uq_arena_earnings_battle_user"),
    )
    op.create_index("ix_arena_earnings_user", "arena_earnings", ["user_id"])

    # --- audit ---
    diff_columns = [
        sa.Column(f"{prefix}_{category}_points", sa.BigInteger, server_default="0")
        for prefix in ("stored", "computed")
        for category in ("mining", "task", "social", "referral")
    ]
    op.create_table(
        "points_audit_log",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("battle_id", sa.String(36), nullable=True),
        sa.Column("audit_type", sa.String(30), nullable=False),
        *diff_columns,
        sa.Column("stored_total_points", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("computed_total_points", sa.BigInteger, nullable=False, server_default="0"),
        *[
            sa.Column(f"{category}_diff", sa.BigInteger, server_default="0")
            for category in ("mining", "task", "social", "referral", "total")
        ],
        sa.Column("points_restored", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("action_taken", sa.String(20), nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("details", postgresql.JSONB, nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_points_audit_log_user_time", "points_audit_log", ["user_id", "created_at"],
    )
    op.create_index(
        "ix_points_audit_log_type_time", "points_audit_log", ["audit_type", "created_at"],
    )


def downgrade() -> None:
    """Drop everything created above, dependents first."""
    op.drop_table("points_audit_log")
    op.drop_table("arena_earnings")
    op.drop_table("arena_votes")
    op.drop_table("arena_battles")
    op.drop_table("nexus_transactions")
    op.drop_table("referrals")
    op.drop_table("social_submissions")
    op.drop_table("daily_checkins")
    op.drop_table("user_tasks")
    op.drop_table("mining_sessions")
    op.drop_table("user_points")
    op.drop_table("profiles")
