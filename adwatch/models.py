from sqlalchemy import String, BigInteger, DateTime, Text, Boolean, Integer, Date, Numeric, Index, ForeignKey, text, false, true
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from adwatch.database import Base
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

# Column names below are the canonical physical names. Deployments created by
# older bot variants may use other names; adwatch.schema maps between them.

class User(Base):
    """Model for storing watcher accounts and their dual-currency balances"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    tg_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    balance_tl: Mapped[Decimal] = mapped_column(Numeric, server_default=text('0'))
    diamonds: Mapped[Decimal] = mapped_column(Numeric, server_default=text('0'))
    daily_ads_watched: Mapped[int] = mapped_column(Integer, server_default=text('0'))
    referred_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    is_vip: Mapped[bool] = mapped_column(Boolean, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class Ad(Base):
    """Model for storing ad creatives shown in watch sessions"""
    __tablename__ = "ads"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    seconds: Mapped[int] = mapped_column(Integer, server_default=text('10'))
    page_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    youtube_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    game_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    adsense_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    # NULL rewards fall back to Rewards.WATCH_REWARD_* at session start
    reward_tl: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    reward_diamonds: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    is_vip: Mapped[bool] = mapped_column(Boolean, server_default=false())
    active: Mapped[bool] = mapped_column(Boolean, server_default=true(), index=True)
    max_clicks: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    clicks: Mapped[int] = mapped_column(Integer, server_default=text('0'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class AdSession(Base):
    """Model for one watch attempt with its reward snapshot"""
    __tablename__ = "ad_sessions"
    __table_args__ = (
        Index('idx_ad_sessions_user_completed', 'tg_id', 'completed'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tg_id: Mapped[int] = mapped_column(BigInteger, index=True)
    ad_id: Mapped[int] = mapped_column(Integer, ForeignKey('ads.id', ondelete='CASCADE'), index=True)
    seconds: Mapped[int] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed: Mapped[bool] = mapped_column(Boolean, server_default=false())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reward_tl: Mapped[Decimal] = mapped_column(Numeric, server_default=text('0'))
    reward_diamonds: Mapped[Decimal] = mapped_column(Numeric, server_default=text('0'))

class DailyView(Base):
    """Model for counting session starts per user per UTC day"""
    __tablename__ = "daily_views"

    tg_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    seen: Mapped[int] = mapped_column(Integer, server_default=text('0'))

class ReferralEarning(Base):
    """Append-only audit trail of referral credits"""
    __tablename__ = "referral_earnings"
    __table_args__ = (
        Index('idx_referral_earnings_referrer_created', 'referrer_tg_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    referrer_tg_id: Mapped[int] = mapped_column(BigInteger, index=True)
    referred_tg_id: Mapped[int] = mapped_column(BigInteger, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    amount_tl: Mapped[Decimal] = mapped_column(Numeric, server_default=text('0'))
    amount_diamonds: Mapped[Decimal] = mapped_column(Numeric, server_default=text('0'))
    signup_bonus: Mapped[bool] = mapped_column(Boolean, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class WithdrawRequest(Base):
    """Model for tracking manual TL payout requests"""
    __tablename__ = "withdraw_requests"
    __table_args__ = (
        Index('idx_withdraw_user_status', 'tg_id', 'status'),
        Index('idx_withdraw_status_created', 'status', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tg_id: Mapped[int] = mapped_column(BigInteger, index=True)
    full_name: Mapped[str] = mapped_column(String(120), server_default=text("''"))
    iban: Mapped[str] = mapped_column(String(64))
    amount_tl: Mapped[Decimal] = mapped_column(Numeric)
    status: Mapped[str] = mapped_column(String(20), default='pending', index=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

class CurrencyConversion(Base):
    """Append-only log of diamond/TL conversions"""
    __tablename__ = "currency_conversions"

    id: Mapped[int] = mapped_column(primary_key=True)
    tg_id: Mapped[int] = mapped_column(BigInteger, index=True)
    direction: Mapped[str] = mapped_column(String(20))
    amount_in: Mapped[Decimal] = mapped_column(Numeric)
    amount_out: Mapped[Decimal] = mapped_column(Numeric)
    rate: Mapped[Decimal] = mapped_column(Numeric)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

class NotificationTask(Base):
    """Outbox row for a chat message delivered at-least-once by the worker"""
    __tablename__ = "notification_tasks"
    __table_args__ = (
        Index('idx_notification_status_due', 'status', 'next_attempt_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(BigInteger)
    text: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default='pending')
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

class SchemaMigration(Base):
    """Applied schema migration steps"""
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(100))
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
