"""Severity classification for stored resource drift."""

from dataclasses import dataclass
from enum import IntEnum

from driftwatch.models import ResourceStatus, StackView, StoredResourceDrift


class Severity(IntEnum):
    """Drift severity level. Higher value = more severe."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


SEVERITY_MAP: dict[str, Severity] = {
    # Critical: security boundaries
    "AWS::EC2::SecurityGroup": Severity.CRITICAL,
    "AWS::IAM::Role": Severity.CRITICAL,
    "AWS::IAM::Policy": Severity.CRITICAL,
    "AWS::IAM::ManagedPolicy": Severity.CRITICAL,
    "AWS::IAM::User": Severity.CRITICAL,
    "AWS::KMS::Key": Severity.CRITICAL,
    "AWS::EC2::NetworkAcl": Severity.CRITICAL,
    "AWS::S3::BucketPolicy": Severity.CRITICAL,
    # High: compute and databases
    "AWS::EC2::Instance": Severity.HIGH,
    "AWS::Lambda::Function": Severity.HIGH,
    "AWS::RDS::DBInstance": Severity.HIGH,
    "AWS::RDS::DBCluster": Severity.HIGH,
    "AWS::ECS::Service": Severity.HIGH,
    # Medium: storage and messaging
    "AWS::S3::Bucket": Severity.MEDIUM,
    "AWS::SQS::Queue": Severity.MEDIUM,
    "AWS::SNS::Topic": Severity.MEDIUM,
    "AWS::DynamoDB::Table": Severity.MEDIUM,
    # Low is the default for anything not listed
}


def classify(resource_type: str) -> Severity:
    return SEVERITY_MAP.get(resource_type, Severity.LOW)


@dataclass(frozen=True)
class AnalyzedStack:
    """A stack view with its stored drift rows and their severities."""

    view: StackView
    resources: list[StoredResourceDrift]
    resource_severities: dict[str, Severity]
    stack_severity: Severity | None


def analyze_stack(view: StackView, resources: list[StoredResourceDrift]) -> AnalyzedStack:
    """Classify each drifted resource by severity."""
    resource_severities = {
        rd.logical_resource_id: classify(rd.resource_type)
        for rd in resources
        if rd.drift_status in (ResourceStatus.MODIFIED, ResourceStatus.DELETED)
    }
    stack_severity = max(resource_severities.values()) if resource_severities else None
    return AnalyzedStack(
        view=view,
        resources=resources,
        resource_severities=resource_severities,
        stack_severity=stack_severity,
    )
