from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from shortener.db import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    google_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    picture: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_login_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ShortLink(Base):
    __tablename__ = "short_links"
    __table_args__ = (Index("ix_short_links_owner_created", "owner_id", "created_at"),)

    code: Mapped[str] = mapped_column(String(32), primary_key=True)
    long_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    topic: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LinkAnalytics(Base):
    """Aggregate click record, one row per short link."""

    __tablename__ = "link_analytics"

    code: Mapped[str] = mapped_column(ForeignKey("short_links.code"), primary_key=True)
    total_clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AnalyticsVisitor(Base):
    """One row per visitor per link; OS and device are the ones seen first."""

    __tablename__ = "analytics_visitors"

    code: Mapped[str] = mapped_column(ForeignKey("short_links.code"), primary_key=True)
    visitor: Mapped[str] = mapped_column(String(80), primary_key=True)
    os_name: Mapped[str] = mapped_column(String(64), nullable=False)
    device: Mapped[str] = mapped_column(String(16), nullable=False)


class DailyClicks(Base):
    __tablename__ = "analytics_daily"

    code: Mapped[str] = mapped_column(ForeignKey("short_links.code"), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    click_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ClickBreakdown(Base):
    # dimension is "os" or "device"
    __tablename__ = "analytics_breakdowns"

    code: Mapped[str] = mapped_column(ForeignKey("short_links.code"), primary_key=True)
    dimension: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    unique_clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

