"""ORM tables for grants, stacks, drift jobs and resource drift snapshots."""

from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC regardless of backend tz support."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime not allowed")
        return value.astimezone(datetime.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=datetime.UTC)


class Base(DeclarativeBase):
    pass


class AccountGrantRow(Base):
    __tablename__ = "account_grants"
    __table_args__ = (
        UniqueConstraint("owner_id", "account_id", name="uq_account_grants_owner_account"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    account_id: Mapped[str] = mapped_column(String(12), index=True)
    role_arn: Mapped[str] = mapped_column(String(2048))
    external_id: Mapped[str] = mapped_column(String(1224))
    region: Mapped[str] = mapped_column(String(32))
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    stacks: Mapped[list[StackRow]] = relationship(
        back_populates="grant", cascade="all, delete-orphan", passive_deletes=True
    )


class StackRow(Base):
    __tablename__ = "stacks"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "stack_name", "region", name="uq_stacks_account_stack_region"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    grant_id: Mapped[int] = mapped_column(
        ForeignKey("account_grants.id", ondelete="CASCADE"), index=True
    )
    account_id: Mapped[str] = mapped_column(String(12))
    stack_name: Mapped[str] = mapped_column(String(256))
    region: Mapped[str] = mapped_column(String(32))
    stack_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    last_known_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    drift_status: Mapped[str] = mapped_column(String(32), default="NOT_CHECKED")
    detection_time: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[dict] = mapped_column(JSON, default=dict)
    outputs: Mapped[list] = mapped_column(JSON, default=list)
    parameters: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow
    )

    grant: Mapped[AccountGrantRow] = relationship(back_populates="stacks")
    resource_drifts: Mapped[list[ResourceDriftRow]] = relationship(
        back_populates="stack", cascade="all, delete-orphan", passive_deletes=True
    )


class DriftJobRow(Base):
    __tablename__ = "drift_jobs"
    __table_args__ = (
        # At most one IN_PROGRESS job per stack.
        Index(
            "uq_drift_jobs_active_stack",
            "account_id",
            "stack_name",
            "region",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
        Index("ix_drift_jobs_status_started", "status", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    account_id: Mapped[str] = mapped_column(String(12))
    stack_name: Mapped[str] = mapped_column(String(256))
    region: Mapped[str] = mapped_column(String(32))
    remote_operation_id: Mapped[str] = mapped_column(String(256), unique=True)
    status: Mapped[str] = mapped_column(String(16), default="IN_PROGRESS")
    drift_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    details_synced: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utcnow)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ResourceDriftRow(Base):
    __tablename__ = "resource_drifts"
    __table_args__ = (
        UniqueConstraint(
            "stack_pk", "logical_resource_id", name="uq_resource_drifts_stack_logical"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stack_pk: Mapped[int] = mapped_column(ForeignKey("stacks.id", ondelete="CASCADE"), index=True)
    logical_resource_id: Mapped[str] = mapped_column(String(256))
    resource_type: Mapped[str] = mapped_column(String(256))
    physical_resource_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    drift_status: Mapped[str] = mapped_column(String(32))
    actual_properties: Mapped[dict] = mapped_column(JSON, default=dict)
    expected_properties: Mapped[dict] = mapped_column(JSON, default=dict)
    property_differences: Mapped[list] = mapped_column(JSON, default=list)
    recorded_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, default=utcnow)

    stack: Mapped[StackRow] = relationship(back_populates="resource_drifts")
