"""Core data models for cross-account drift detection."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class JobStatus(StrEnum):
    """Lifecycle status of a drift detection job."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class RemoteDetectionStatus(StrEnum):
    """Detection status values as reported by CloudFormation."""

    IN_PROGRESS = "DETECTION_IN_PROGRESS"
    COMPLETE = "DETECTION_COMPLETE"
    FAILED = "DETECTION_FAILED"

    def to_job_status(self) -> JobStatus:
        return {
            RemoteDetectionStatus.IN_PROGRESS: JobStatus.IN_PROGRESS,
            RemoteDetectionStatus.COMPLETE: JobStatus.COMPLETE,
            RemoteDetectionStatus.FAILED: JobStatus.FAILED,
        }[self]


class StackStatus(StrEnum):
    """Overall stack drift status as stored on a stack record."""

    DRIFTED = "DRIFTED"
    IN_SYNC = "IN_SYNC"
    NOT_CHECKED = "NOT_CHECKED"
    UNKNOWN = "UNKNOWN"
    DETECTION_IN_PROGRESS = "DETECTION_IN_PROGRESS"


class ResourceStatus(StrEnum):
    """Individual resource drift status."""

    IN_SYNC = "IN_SYNC"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    NOT_CHECKED = "NOT_CHECKED"
    UNKNOWN = "UNKNOWN"


class FailureReason(StrEnum):
    """Failure reasons the orchestrator records on its own behalf."""

    ACCOUNT_DISCONNECTED = "AccountDisconnected"
    SUPERSEDED = "Superseded"


@dataclass(frozen=True)
class Credentials:
    """Short-lived credentials obtained by assuming a customer role."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    account_id: str
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            f"Credentials(access_key_id={self.access_key_id!r}, "
            f"account_id={self.account_id!r}, expires_at={self.expires_at!r})"
        )


@dataclass(frozen=True)
class PropertyDifference:
    """A single property difference between expected and actual configuration."""

    property_path: str
    expected_value: Any
    actual_value: Any
    difference_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "property_path": self.property_path,
            "expected_value": self.expected_value,
            "actual_value": self.actual_value,
            "difference_type": self.difference_type,
        }


@dataclass(frozen=True)
class StackDescriptor:
    """A stack as returned by the remote listing call."""

    stack_id: str
    stack_name: str
    status: str
    description: str | None = None
    drift_status: StackStatus | None = None
    last_check_time: datetime | None = None
    tags: dict[str, str] = field(default_factory=dict)
    outputs: list[dict[str, str]] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DriftStatusReport:
    """Result of polling a remote drift detection operation."""

    remote_operation_id: str
    status: JobStatus
    drift_status: StackStatus | None = None
    failure_reason: str | None = None
    drifted_resource_count: int | None = None


@dataclass(frozen=True)
class ResourceDriftDescriptor:
    """Drift information for a single stack resource."""

    logical_resource_id: str
    resource_type: str
    drift_status: ResourceStatus
    physical_resource_id: str | None = None
    actual_properties: dict[str, Any] = field(default_factory=dict)
    expected_properties: dict[str, Any] = field(default_factory=dict)
    property_differences: list[PropertyDifference] = field(default_factory=list)


@dataclass(frozen=True)
class Grant:
    """A caller-owned cross-account role grant."""

    id: int
    owner_id: str
    account_id: str
    role_arn: str
    external_id: str
    region: str
    name: str | None
    created_at: datetime


@dataclass(frozen=True)
class StackRecord:
    """Locally stored state of a single stack."""

    id: int
    account_id: str
    stack_name: str
    region: str
    stack_id: str | None
    last_known_status: str | None
    drift_status: StackStatus
    detection_time: datetime | None
    description: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    outputs: list[dict[str, str]] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DriftJob:
    """A tracked remote drift detection operation."""

    id: int
    owner_id: str
    account_id: str
    stack_name: str
    region: str
    remote_operation_id: str
    status: JobStatus
    started_at: datetime
    drift_status: StackStatus | None = None
    details_synced: bool = False
    failure_reason: str | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class StoredResourceDrift:
    """A row of a stack's resource drift snapshot."""

    logical_resource_id: str
    resource_type: str
    physical_resource_id: str | None
    drift_status: ResourceStatus
    actual_properties: dict[str, Any]
    expected_properties: dict[str, Any]
    property_differences: list[dict[str, Any]]
    recorded_at: datetime


@dataclass(frozen=True)
class TriggerResult:
    """Synchronous answer to a drift trigger request."""

    remote_operation_id: str
    status: JobStatus
    account_id: str
    stack_name: str
    region: str


@dataclass(frozen=True)
class JobView:
    """A drift job as exposed by the read API."""

    job: DriftJob
    stale: bool


@dataclass(frozen=True)
class StackView:
    """A stack record annotated with its latest job."""

    stack: StackRecord
    latest_job: DriftJob | None
    stale: bool


@dataclass
class TickReport:
    """Summary of a single polling tick."""

    started_at: datetime
    scanned: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    reconciled: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
