"""Thin boto3 wrapper for CloudFormation drift detection API calls."""

import json
import logging
from collections.abc import Callable

from botocore.exceptions import BotoCoreError, ClientError

from driftwatch.aws.session import build_client, translate_aws_error
from driftwatch.errors import InconsistentState
from driftwatch.models import (
    Credentials,
    DriftStatusReport,
    JobStatus,
    PropertyDifference,
    RemoteDetectionStatus,
    ResourceDriftDescriptor,
    ResourceStatus,
    StackDescriptor,
    StackStatus,
)

logger = logging.getLogger(__name__)

RESOURCE_DRIFT_FILTERS = ["MODIFIED", "DELETED", "NOT_CHECKED", "IN_SYNC"]


def _load_properties(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Could not decode resource properties: %.80s", raw)
        return {}


class CloudFormationGateway:
    """Wraps boto3 CloudFormation calls for one region and one set of credentials."""

    def __init__(self, credentials: Credentials, region: str, timeout: float = 20.0):
        self.region = region
        self._client = build_client("cloudformation", region, timeout, credentials)

    def list_stacks(self) -> list[StackDescriptor]:
        """List every stack in the region, following pagination."""
        paginator = self._client.get_paginator("describe_stacks")
        results = []
        try:
            for page in paginator.paginate():
                for stack in page["Stacks"]:
                    if stack.get("StackStatus") == "DELETE_COMPLETE":
                        continue
                    results.append(self._to_descriptor(stack))
        except (ClientError, BotoCoreError) as exc:
            raise translate_aws_error(exc, "DescribeStacks failed") from exc
        return results

    @staticmethod
    def _to_descriptor(stack: dict) -> StackDescriptor:
        drift_info = stack.get("DriftInformation", {})
        drift_status = drift_info.get("StackDriftStatus")
        return StackDescriptor(
            stack_id=stack["StackId"],
            stack_name=stack["StackName"],
            status=stack.get("StackStatus", ""),
            description=stack.get("Description"),
            drift_status=StackStatus(drift_status) if drift_status else None,
            last_check_time=drift_info.get("LastCheckTimestamp"),
            tags={t["Key"]: t["Value"] for t in stack.get("Tags", [])},
            outputs=[
                {
                    "output_key": o.get("OutputKey", ""),
                    "output_value": o.get("OutputValue", ""),
                    "description": o.get("Description", ""),
                }
                for o in stack.get("Outputs", [])
            ],
            parameters={
                p["ParameterKey"]: p.get("ParameterValue", "")
                for p in stack.get("Parameters", [])
            },
        )

    def trigger_drift(self, stack_name: str) -> str:
        """Start drift detection for a stack. Returns the remote operation id."""
        try:
            response = self._client.detect_stack_drift(StackName=stack_name)
        except (ClientError, BotoCoreError) as exc:
            raise translate_aws_error(exc, f"DetectStackDrift failed for {stack_name}") from exc
        return response["StackDriftDetectionId"]

    def describe_drift_status(self, remote_operation_id: str) -> DriftStatusReport:
        """Check status of a drift detection operation."""
        try:
            resp = self._client.describe_stack_drift_detection_status(
                StackDriftDetectionId=remote_operation_id
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_aws_error(
                exc, f"DescribeStackDriftDetectionStatus failed for {remote_operation_id}"
            ) from exc

        try:
            status = RemoteDetectionStatus(resp["DetectionStatus"]).to_job_status()
        except (KeyError, ValueError) as exc:
            raise InconsistentState(
                f"Unexpected detection status {resp.get('DetectionStatus')!r}"
            ) from exc

        drift_status = None
        drifted_count = None
        failure_reason = None

        if status == JobStatus.COMPLETE:
            try:
                drift_status = StackStatus(resp.get("StackDriftStatus") or StackStatus.UNKNOWN)
            except ValueError as exc:
                raise InconsistentState(
                    f"Unexpected stack drift status {resp.get('StackDriftStatus')!r}"
                ) from exc
            drifted_count = resp.get("DriftedStackResourceCount", 0)
        elif status == JobStatus.FAILED:
            failure_reason = resp.get("DetectionStatusReason") or "Drift detection failed"

        return DriftStatusReport(
            remote_operation_id=remote_operation_id,
            status=status,
            drift_status=drift_status,
            failure_reason=failure_reason,
            drifted_resource_count=drifted_count,
        )

    def describe_resource_drifts(self, stack_name: str) -> list[ResourceDriftDescriptor]:
        """Fetch resource-level drift details for a stack."""
        results = []
        next_token = None

        while True:
            kwargs: dict = {
                "StackName": stack_name,
                "StackResourceDriftStatusFilters": RESOURCE_DRIFT_FILTERS,
            }
            if next_token:
                kwargs["NextToken"] = next_token

            try:
                resp = self._client.describe_stack_resource_drifts(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise translate_aws_error(
                    exc, f"DescribeStackResourceDrifts failed for {stack_name}"
                ) from exc

            for resource in resp["StackResourceDrifts"]:
                differences = [
                    PropertyDifference(
                        property_path=pd.get("PropertyPath", ""),
                        expected_value=pd.get("ExpectedValue"),
                        actual_value=pd.get("ActualValue"),
                        difference_type=pd.get("DifferenceType", "UNKNOWN"),
                    )
                    for pd in resource.get("PropertyDifferences", [])
                ]

                try:
                    resource_status = ResourceStatus(resource["StackResourceDriftStatus"])
                except (KeyError, ValueError) as exc:
                    raise InconsistentState(
                        f"Unexpected resource drift status for "
                        f"{resource.get('LogicalResourceId')}: "
                        f"{resource.get('StackResourceDriftStatus')!r}"
                    ) from exc

                results.append(
                    ResourceDriftDescriptor(
                        logical_resource_id=resource["LogicalResourceId"],
                        resource_type=resource["ResourceType"],
                        drift_status=resource_status,
                        physical_resource_id=resource.get("PhysicalResourceId"),
                        actual_properties=_load_properties(resource.get("ActualProperties")),
                        expected_properties=_load_properties(resource.get("ExpectedProperties")),
                        property_differences=differences,
                    )
                )

            next_token = resp.get("NextToken")
            if not next_token:
                break

        return results


GatewayFactory = Callable[..., CloudFormationGateway]
