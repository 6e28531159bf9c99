from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, Numeric, DateTime, ForeignKey, Text, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

NUM = Numeric(18, 6)

class User(Base):
    __tablename__ = "user_profiles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    whop_user_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True, index=True)
    company_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="user", index=True)  # user, creator
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    balance: Mapped["UserBalance"] = relationship(back_populates="user", uselist=False)
    positions: Mapped[list["Position"]] = relationship(back_populates="user")
    sessions: Mapped[list["UserSession"]] = relationship(back_populates="user")

    @property
    def can_trade(self) -> bool:
        return self.role != "creator"


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    user: Mapped["User"] = relationship(back_populates="sessions")


class UserBalance(Base):
    __tablename__ = "user_balances"
    __table_args__ = (UniqueConstraint("user_id", name="uq_balance_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    balance: Mapped[float] = mapped_column(NUM, default=0)
    available_balance: Mapped[float] = mapped_column(NUM, default=0)
    total_pnl: Mapped[float] = mapped_column(NUM, default=0)
    daily_pnl: Mapped[float] = mapped_column(NUM, default=0)
    weekly_pnl: Mapped[float] = mapped_column(NUM, default=0)
    monthly_pnl: Mapped[float] = mapped_column(NUM, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    user: Mapped["User"] = relationship(back_populates="balance")


class Position(Base):
    __tablename__ = "user_portfolios"
    __table_args__ = (UniqueConstraint("user_id", "symbol", "asset_type", name="uq_user_symbol_asset"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)
    asset_type: Mapped[str] = mapped_column(String(16), default="stock")
    quantity: Mapped[float] = mapped_column(NUM, default=0)
    average_cost: Mapped[float] = mapped_column(NUM, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped["User"] = relationship(back_populates="positions")


class TradeOrder(Base):
    __tablename__ = "trading_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(16), index=True)
    asset_type: Mapped[str] = mapped_column(String(16), default="stock")
    side: Mapped[str] = mapped_column(String(8))  # buy, sell
    order_type: Mapped[str] = mapped_column(String(16), default="market")
    quantity: Mapped[float] = mapped_column(NUM, default=0)
    price: Mapped[float | None] = mapped_column(NUM, nullable=True)
    stop_price: Mapped[float | None] = mapped_column(NUM, nullable=True)
    time_in_force: Mapped[str] = mapped_column(String(8), default="day")
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)  # pending, filled, cancelled, rejected
    filled_quantity: Mapped[float] = mapped_column(NUM, default=0)
    filled_price: Mapped[float | None] = mapped_column(NUM, nullable=True)
    realized_pnl: Mapped[float | None] = mapped_column(NUM, nullable=True)
    commission: Mapped[float] = mapped_column(NUM, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    filled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Competition(Base):
    __tablename__ = "competitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(160))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    creator_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    company_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default="draft", index=True)  # draft, active, ended, cancelled
    type: Mapped[str] = mapped_column(String(16), default="invite_only", index=True)  # invite_only, public, organization
    starting_balance: Mapped[float] = mapped_column(NUM, default=100000)
    max_participants: Mapped[int] = mapped_column(Integer, default=100)
    entry_fee: Mapped[float] = mapped_column(NUM, default=0)
    prize_pool: Mapped[float] = mapped_column(NUM, default=0)
    ranking_criteria: Mapped[str] = mapped_column(String(32), default="total_pnl")
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    registration_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    creator: Mapped["User"] = relationship()
    participants: Mapped[list["CompetitionParticipant"]] = relationship(back_populates="competition")
    invitations: Mapped[list["CompetitionInvitation"]] = relationship(back_populates="competition")


class CompetitionParticipant(Base):
    __tablename__ = "competition_participants"
    __table_args__ = (UniqueConstraint("competition_id", "user_id", name="uq_competition_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competition_id: Mapped[int] = mapped_column(ForeignKey("competitions.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    whop_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)  # active, withdrawn, disqualified
    starting_balance: Mapped[float] = mapped_column(NUM, default=0)
    current_balance: Mapped[float] = mapped_column(NUM, default=0)
    total_pnl: Mapped[float] = mapped_column(NUM, default=0)
    realized_pnl: Mapped[float] = mapped_column(NUM, default=0)
    unrealized_pnl: Mapped[float] = mapped_column(NUM, default=0)
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    current_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    competition: Mapped["Competition"] = relationship(back_populates="participants")
    user: Mapped["User"] = relationship()


class CompetitionInvitation(Base):
    __tablename__ = "competition_invitations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    competition_id: Mapped[int] = mapped_column(ForeignKey("competitions.id"), index=True)
    inviter_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id"), index=True)
    invitee_whop_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    invitee_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    invitation_code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)  # pending, accepted, declined, expired
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    competition: Mapped["Competition"] = relationship(back_populates="invitations")
