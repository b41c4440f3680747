from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crosslister.db.session import Base
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobStatus, JobEvent, JobOperation

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")

# Rendered into the partial unique index below
_ACTIVE_JOB_CLAUSE = text("status IN ('queued', 'processing', 'pending_verification')")


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    # Caller-facing auth (X-API-Key)
    api_key: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    # Secret the extension signs its requests with
    extension_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Worker liveness
    extension_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    extension_last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    extension_version: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    listings: Mapped[list["Listing"]] = relationship("Listing", back_populates="user")


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)

    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    condition: Mapped[str] = mapped_column(String, nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    size: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    photo_urls: Mapped[list[str]] = mapped_column(JsonType, default=list)
    # Marketplace-specific fields keyed by platform, e.g. {"mercari": {"brand_id": "..."}}
    platform_metadata: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="listings")
    platform_listings: Mapped[list["PlatformListing"]] = relationship(
        "PlatformListing", back_populates="listing", cascade="all, delete-orphan"
    )


class PlatformConnection(Base):
    __tablename__ = "platform_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Credentials/session cookies live in the extension; we only track that they exist
    has_credentials: Mapped[bool] = mapped_column(Boolean, default=False)
    # OAuth access token for native platforms
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verification_confidence: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_platform_connections_user_platform"),
    )


class CrosslistingJob(Base):
    __tablename__ = "crosslisting_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    listing_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    operation: Mapped[JobOperation] = mapped_column(String, default=JobOperation.CREATE)

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    platform_listing_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    platform_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Set when this job was dispatched to retry a job blocked on verification
    resumed_from_job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan", order_by="JobEventLog.id"
    )

    __table_args__ = (
        # Claim query: oldest queued job per user
        Index("ix_crosslisting_jobs_claim", "user_id", "status", "created_at"),
        # At most one active job per (listing, platform). The dispatcher's
        # pre-check gives the friendly error; this closes the race.
        Index(
            "uq_crosslisting_jobs_active",
            "listing_id",
            "platform",
            unique=True,
            postgresql_where=_ACTIVE_JOB_CLAUSE,
            sqlite_where=_ACTIVE_JOB_CLAUSE,
        ),
    )


class PlatformListing(Base):
    __tablename__ = "platform_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)

    platform_listing_id: Mapped[str] = mapped_column(String, nullable=False)
    platform_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")

    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="platform_listings")

    __table_args__ = (
        UniqueConstraint("listing_id", "platform", name="uq_platform_listings_listing_platform"),
    )


class JobEventLog(Base):
    __tablename__ = "crosslisting_job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("crosslisting_jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (worker version, progress step, error message, ...)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["CrosslistingJob"] = relationship("CrosslistingJob", back_populates="events")
