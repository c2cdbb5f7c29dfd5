from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import CheckConstraint, Enum as SqlEnum, ForeignKey, UniqueConstraint, Index
from sqlalchemy.types import Boolean, DateTime, Float, Integer, String

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

class VenueStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class Venue(Base):
    __tablename__ = "venues"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[VenueStatus] = mapped_column(SqlEnum(VenueStatus), default=VenueStatus.DRAFT, nullable=False)
    max_distance_meters: Mapped[float | None] = mapped_column(Float, nullable=True)  # None -> service default
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint("max_distance_meters IS NULL OR max_distance_meters > 0", name="ck_venue_max_distance"),
    )

class VenueSecret(Base):
    __tablename__ = "venue_secrets"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    venue_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("venues.id", ondelete="CASCADE"), nullable=False)
    secret_key: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_venue_secrets_venue", "venue_id"),
    )

class CheckinRecord(Base):
    __tablename__ = "checkin_records"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    venue_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    code_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    location_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    receipt_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    distance_meters: Mapped[int | None] = mapped_column(Integer, nullable=True)
    distance_band: Mapped[str | None] = mapped_column(String(16), nullable=True)
    accuracy_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    # rounded to ~11 m before they reach this table
    user_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    user_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    code_matched: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # advisory fraud signals, never part of the verdict
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suspicious_speed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    inconsistent_accuracy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    passed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("venue_id", "user_id", name="uq_checkin_per_user_per_venue"),
        CheckConstraint("code_score >= 0 AND code_score <= 40", name="ck_checkin_code_score"),
        CheckConstraint("location_score >= 0 AND location_score <= 40", name="ck_checkin_location_score"),
        CheckConstraint("receipt_score >= 0 AND receipt_score <= 20", name="ck_checkin_receipt_score"),
        CheckConstraint("total_score >= 0 AND total_score <= 100", name="ck_checkin_total_score"),
        Index("ix_checkin_records_user_verified", "user_id", "verified_at"),
    )
