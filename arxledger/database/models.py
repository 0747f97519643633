"""
arxledger.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables read or written by the reconciliation engine.

Source of truth (append-only, never written by the engine):
- mining_sessions    — Mining runs; count once ``is_active`` is false
- user_tasks         — Task completions
- daily_checkins     — Daily check-in rewards
- social_submissions — Moderated social posts
- referrals          — Referral awards (credited to the referrer)
- nexus_transactions — Peer-to-peer transfers
- arena_votes        — Battle stakes (locked once the battle starts)

Arena state:
- arena_battles      — Two- or three-sided battles with a prize pool
- arena_earnings     — One payout row per (battle, user); written by the
                       engine only when missing

Projections / audit:
- profiles           — Display names
- user_points        — Cached balance read by the app (the healed projection)
- points_audit_log   — Append-only record of every correction
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Opaque user identifiers (UUID text)
UserId = String(36)
Points = Numeric(20, 4)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all ArxLedger ORM models."""


# ---------------------------------------------------------------------------
# Profiles — display names only
# ---------------------------------------------------------------------------
class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(UserId, primary_key=True)
    username: Mapped[str | None] = mapped_column(String(100), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_profiles_username", "username"),
    )

    def __repr__(self) -> str:
        return f"<Profile user={self.user_id} username={self.username!r}>"


# ---------------------------------------------------------------------------
# UserPoints — the cached balance row
# ---------------------------------------------------------------------------
class UserPoints(Base):
    """Mutable balance the app displays.

    Only authoritative between reconciliation passes.  Invariant after every
    engine write: ``total_points == mining + task + social + referral``.
    """
    __tablename__ = "user_points"

    user_id: Mapped[str] = mapped_column(UserId, primary_key=True)
    mining_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    task_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    social_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    referral_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_user_points_total_desc", "total_points"),
    )

    def __repr__(self) -> str:
        return f"<UserPoints user={self.user_id} total={self.total_points}>"


# ---------------------------------------------------------------------------
# MiningSession — settled once is_active is false
# ---------------------------------------------------------------------------
class MiningSession(Base):
    __tablename__ = "mining_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    arx_mined: Mapped[Decimal | None] = mapped_column(Points, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        Index("ix_mining_sessions_user_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<MiningSession id={self.id} user={self.user_id} active={self.is_active}>"


# ---------------------------------------------------------------------------
# UserTask — task completions
# ---------------------------------------------------------------------------
class UserTask(Base):
    __tablename__ = "user_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(36), default=None)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    points_awarded: Mapped[Decimal | None] = mapped_column(Points, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    __table_args__ = (
        Index("ix_user_tasks_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<UserTask id={self.id} user={self.user_id} status={self.status!r}>"


# ---------------------------------------------------------------------------
# DailyCheckin
# ---------------------------------------------------------------------------
class DailyCheckin(Base):
    __tablename__ = "daily_checkins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    points_awarded: Mapped[Decimal | None] = mapped_column(Points, default=0)
    streak_day: Mapped[int] = mapped_column(Integer, default=1)
    checked_in_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_daily_checkins_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<DailyCheckin id={self.id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# SocialSubmission — moderated posts
# ---------------------------------------------------------------------------
class SocialSubmission(Base):
    __tablename__ = "social_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    platform: Mapped[str | None] = mapped_column(String(30), default=None)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    points_awarded: Mapped[Decimal | None] = mapped_column(Points, default=0)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_social_submissions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<SocialSubmission id={self.id} user={self.user_id} status={self.status!r}>"


# ---------------------------------------------------------------------------
# Referral — credited to the referrer
# ---------------------------------------------------------------------------
class Referral(Base):
    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_id: Mapped[str] = mapped_column(UserId, nullable=False)
    referred_id: Mapped[str] = mapped_column(UserId, nullable=False)
    points_awarded: Mapped[Decimal | None] = mapped_column(Points, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_referrals_referrer", "referrer_id"),
    )

    def __repr__(self) -> str:
        return f"<Referral id={self.id} referrer={self.referrer_id} referred={self.referred_id}>"


# ---------------------------------------------------------------------------
# NexusTransaction — peer-to-peer transfers
# ---------------------------------------------------------------------------
class NexusTransaction(Base):
    """A transfer between two users.

    Only the receiver's side enters the canonical balance; the sender's debit
    is offset by the send bonus paid elsewhere in the app.
    """
    __tablename__ = "nexus_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[str] = mapped_column(UserId, nullable=False)
    receiver_id: Mapped[str] = mapped_column(UserId, nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Points, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_nexus_transactions_receiver", "receiver_id"),
        Index("ix_nexus_transactions_sender", "sender_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<NexusTransaction id={self.id} {self.sender_id}→{self.receiver_id} "
            f"amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# ArenaBattle — prediction-style battles
# ---------------------------------------------------------------------------
class ArenaBattle(Base):
    __tablename__ = "arena_battles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    side_a_name: Mapped[str] = mapped_column(String(100), nullable=False)
    side_b_name: Mapped[str] = mapped_column(String(100), nullable=False)
    side_c_name: Mapped[str | None] = mapped_column(String(100), default=None)
    side_a_power: Mapped[Decimal | None] = mapped_column(Points, default=0)
    side_b_power: Mapped[Decimal | None] = mapped_column(Points, default=0)
    side_c_power: Mapped[Decimal | None] = mapped_column(Points, default=None)
    prize_pool: Mapped[Decimal | None] = mapped_column(Points, default=0)
    winner_side: Mapped[str | None] = mapped_column(String(1), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    votes: Mapped[list[ArenaVote]] = relationship(back_populates="battle")

    __table_args__ = (
        Index("ix_arena_battles_winner_created", "winner_side", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ArenaBattle id={self.id} title={self.title!r} winner={self.winner_side!r}>"


# ---------------------------------------------------------------------------
# ArenaVote — a stake on one side of a battle
# ---------------------------------------------------------------------------
class ArenaVote(Base):
    __tablename__ = "arena_votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    battle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("arena_battles.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    side: Mapped[str] = mapped_column(String(1), nullable=False)
    power_spent: Mapped[Decimal | None] = mapped_column(Points, default=0)
    early_stake_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(6, 3), default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    battle: Mapped[ArenaBattle] = relationship(back_populates="votes")

    __table_args__ = (
        Index("ix_arena_votes_battle_side", "battle_id", "side"),
        Index("ix_arena_votes_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ArenaVote id={self.id} battle={self.battle_id} user={self.user_id} "
            f"side={self.side!r}>"
        )


# ---------------------------------------------------------------------------
# ArenaEarning — one payout row per (battle, user)
# ---------------------------------------------------------------------------
class ArenaEarning(Base):
    __tablename__ = "arena_earnings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    battle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("arena_battles.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    stake_amount: Mapped[Decimal | None] = mapped_column(Points, default=0)
    total_earned: Mapped[Decimal | None] = mapped_column(Points, default=0)
    pool_share_earned: Mapped[Decimal | None] = mapped_column(Points, default=0)
    bonus_earned: Mapped[Decimal | None] = mapped_column(Points, default=0)
    streak_bonus: Mapped[Decimal | None] = mapped_column(Points, default=0)
    is_winner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # At most one earnings row per (battle, user)
        UniqueConstraint("battle_id", "user_id", name="uq_arena_earnings_battle_user"),
        Index("ix_arena_earnings_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ArenaEarning battle={self.battle_id} user={self.user_id} "
            f"earned={self.total_earned}>"
        )


# ---------------------------------------------------------------------------
# PointsAuditLog — append-only correction history
# ---------------------------------------------------------------------------
class PointsAuditLog(Base):
    """One row per correction the engine writes.

    Replayable independently of the mutable ``user_points`` row.
    """
    __tablename__ = "points_audit_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(UserId, nullable=False)
    battle_id: Mapped[str | None] = mapped_column(String(36), default=None)
    audit_type: Mapped[str] = mapped_column(String(30), nullable=False)

    stored_mining_points: Mapped[int] = mapped_column(BigInteger, default=0)
    stored_task_points: Mapped[int] = mapped_column(BigInteger, default=0)
    stored_social_points: Mapped[int] = mapped_column(BigInteger, default=0)
    stored_referral_points: Mapped[int] = mapped_column(BigInteger, default=0)
    stored_total_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    computed_mining_points: Mapped[int] = mapped_column(BigInteger, default=0)
    computed_task_points: Mapped[int] = mapped_column(BigInteger, default=0)
    computed_social_points: Mapped[int] = mapped_column(BigInteger, default=0)
    computed_referral_points: Mapped[int] = mapped_column(BigInteger, default=0)
    computed_total_points: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    mining_diff: Mapped[int] = mapped_column(BigInteger, default=0)
    task_diff: Mapped[int] = mapped_column(BigInteger, default=0)
    social_diff: Mapped[int] = mapped_column(BigInteger, default=0)
    referral_diff: Mapped[int] = mapped_column(BigInteger, default=0)
    total_diff: Mapped[int] = mapped_column(BigInteger, default=0)

    points_restored: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    action_taken: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, default=None)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_points_audit_log_user_time", "user_id", "created_at"),
        Index("ix_points_audit_log_type_time", "audit_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PointsAuditLog id={self.id} user={self.user_id} "
            f"type={self.audit_type!r} action={self.action_taken!r}>"
        )
