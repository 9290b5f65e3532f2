"""Applies completed drift detection results to local storage."""

import logging
from dataclasses import dataclass

from driftwatch.aws.client import CloudFormationGateway
from driftwatch.errors import InconsistentState
from driftwatch.models import DriftJob, JobStatus, StackStatus
from driftwatch.store.job_store import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    remote_operation_id: str
    drift_status: StackStatus
    resources_written: int
    superseded: bool = False


class Reconciler:
    """Re-derives a stack's drift state from its terminal job.

    For ``DRIFTED`` jobs the full resource drift snapshot is fetched and
    swapped in atomically. Safe to run any number of times for the same job.
    """

    def __init__(self, store: JobStore):
        self._store = store

    def reconcile(
        self, job: DriftJob, gateway: CloudFormationGateway | None = None
    ) -> ReconcileOutcome:
        """Apply ``job``'s outcome. ``gateway`` is only needed for drifted stacks."""
        if job.status != JobStatus.COMPLETE or job.drift_status is None:
            raise InconsistentState(
                f"Job {job.remote_operation_id} is {job.status}, not a completed detection"
            )

        if job.drift_status != StackStatus.DRIFTED:
            applied = self._store.apply_stack_drift_status(job.id)
            return ReconcileOutcome(
                job.remote_operation_id, job.drift_status, 0, superseded=not applied
            )

        if gateway is None:
            raise InconsistentState(f"No gateway to fetch drift details for {job.stack_name}")

        # Errors here leave the job COMPLETE and unsynced; the next tick retries.
        drifts = gateway.describe_resource_drifts(job.stack_name)
        written = self._store.replace_resource_drift_snapshot(job.id, drifts)
        if written is None:
            return ReconcileOutcome(
                job.remote_operation_id, job.drift_status, 0, superseded=True
            )
        logger.info(
            "Stored %d resource drifts for %s/%s (%s)",
            written,
            job.account_id,
            job.stack_name,
            job.remote_operation_id,
        )
        return ReconcileOutcome(job.remote_operation_id, job.drift_status, written)
