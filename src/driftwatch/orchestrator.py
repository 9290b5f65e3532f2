"""Drift detection job orchestration: trigger, periodic tick and read views."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from typing import NamedTuple, Protocol

from driftwatch.analyzer import AnalyzedStack, analyze_stack
from driftwatch.aws.client import CloudFormationGateway, GatewayFactory
from driftwatch.aws.credentials import CredentialBroker
from driftwatch.config import Settings
from driftwatch.errors import (
    AccountDisconnected,
    InconsistentError,
    InconsistentState,
    JobAlreadyInProgress,
    NotFound,
    PermanentError,
    TransientError,
)
from driftwatch.models import (
    DriftJob,
    Grant,
    JobStatus,
    JobView,
    StackStatus,
    StackView,
    TickReport,
    TriggerResult,
)
from driftwatch.reconciler import Reconciler
from driftwatch.store.job_store import JobStore

logger = logging.getLogger(__name__)


class DriftNotifier(Protocol):
    def notify_drift(self, analyzed: AnalyzedStack) -> None: ...


class _JobResult(NamedTuple):
    outcome: str
    error: str | None = None


PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
RECONCILED = "reconciled"
SKIPPED = "skipped"


class DriftOrchestrator:
    """Owns the drift job state machine.

    All state lives in the :class:`JobStore`. Credentials are acquired again
    for every job on every tick; nothing is cached between ticks.
    """

    def __init__(
        self,
        store: JobStore,
        broker: CredentialBroker,
        settings: Settings,
        gateway_factory: GatewayFactory = CloudFormationGateway,
        notifier: DriftNotifier | None = None,
    ):
        self._store = store
        self._broker = broker
        self._settings = settings
        self._gateway_factory = gateway_factory
        self._notifier = notifier
        self._reconciler = Reconciler(store)
        self._tick_lock = threading.Lock()

    def _stale_before(self, now: datetime) -> datetime:
        return now - self._settings.retention

    def _is_stale(self, job: DriftJob | None, now: datetime) -> bool:
        """An outstanding job the tick no longer picks up."""
        if job is None or job.started_at >= self._stale_before(now):
            return False
        return job.status == JobStatus.IN_PROGRESS or (
            job.status == JobStatus.COMPLETE and not job.details_synced
        )

    def _gateway(self, grant: Grant, region: str) -> CloudFormationGateway:
        credentials = self._broker.acquire(grant.role_arn, grant.external_id)
        return self._gateway_factory(
            credentials, region, timeout=self._settings.remote_timeout_seconds
        )

    def _require_grant(self, owner_id: str, account_id: str) -> Grant:
        grant = self._store.get_grant(owner_id, account_id)
        if grant is None:
            raise AccountDisconnected(f"No connected account {account_id} for this owner")
        return grant

    # -- trigger ------------------------------------------------------------

    def trigger(self, owner_id: str, account_id: str, stack_name: str) -> TriggerResult:
        """Start drift detection for a stack and record the job.

        Returns once the remote side has accepted the request. Raises a
        :class:`~driftwatch.errors.DriftwatchError` subclass on rejection.
        """
        grant = self._require_grant(owner_id, account_id)
        region = grant.region
        now = datetime.now(UTC)

        active = self._store.find_active_job(account_id, stack_name, region)
        if active is not None and not self._is_stale(active, now):
            raise JobAlreadyInProgress(
                f"Drift detection already in progress for {stack_name}",
                remote_operation_id=active.remote_operation_id,
            )

        gateway = self._gateway(grant, region)
        remote_operation_id = gateway.trigger_drift(stack_name)

        job = self._store.create_job(
            grant,
            stack_name,
            region,
            remote_operation_id,
            stale_before=self._stale_before(now),
            now=now,
        )
        logger.info(
            "Triggered drift detection %s for %s/%s in %s",
            remote_operation_id,
            account_id,
            stack_name,
            region,
        )
        return TriggerResult(
            remote_operation_id=job.remote_operation_id,
            status=job.status,
            account_id=account_id,
            stack_name=stack_name,
            region=region,
        )

    # -- tick ---------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> TickReport | None:
        """Poll every outstanding job once. Never raises.

        Returns None without doing anything if another tick is still running.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Previous tick still running, skipping")
            return None
        try:
            return self._run_tick(now or datetime.now(UTC))
        finally:
            self._tick_lock.release()

    def _run_tick(self, now: datetime) -> TickReport:
        report = TickReport(started_at=now)
        try:
            jobs = self._store.find_outstanding_jobs(self._stale_before(now))
        except Exception:
            logger.exception("Failed to load outstanding drift jobs")
            return report

        report.scanned = len(jobs)
        if not jobs:
            return report

        with ThreadPoolExecutor(
            max_workers=self._settings.max_workers, thread_name_prefix="drift-tick"
        ) as executor:
            futures = {executor.submit(self._process_safely, job, now): job for job in jobs}
            for future in as_completed(futures):
                job = futures[future]
                result = future.result()
                key = job.remote_operation_id
                newly_complete = job.status == JobStatus.IN_PROGRESS
                if result.outcome == COMPLETED:
                    (report.completed if newly_complete else report.pending).append(key)
                elif result.outcome == RECONCILED:
                    if newly_complete:
                        report.completed.append(key)
                    report.reconciled.append(key)
                elif result.outcome == FAILED:
                    report.failed.append(key)
                elif result.outcome == PENDING:
                    report.pending.append(key)
                if result.error:
                    report.errors[key] = result.error

        logger.info(
            "Tick done: %d scanned, %d completed, %d failed, %d pending",
            report.scanned,
            len(report.completed),
            len(report.failed),
            len(report.pending),
        )
        return report

    def _process_safely(self, job: DriftJob, now: datetime) -> _JobResult:
        """Run one job, converting every error into a per-job result."""
        try:
            return self._process_job(job, now)
        except TransientError as exc:
            logger.warning("Job %s will be retried: %s", job.remote_operation_id, exc.message)
            return _JobResult(PENDING, exc.reason)
        except InconsistentError as exc:
            logger.warning("Skipping job %s: %s", job.remote_operation_id, exc.message)
            return _JobResult(SKIPPED, exc.reason)
        except PermanentError as exc:
            return self._fail_safely(job, exc.reason, exc.message, now)
        except Exception as exc:
            logger.exception("Unexpected error processing job %s", job.remote_operation_id)
            return _JobResult(SKIPPED, type(exc).__name__)

    def _fail_safely(self, job: DriftJob, reason: str, message: str, now: datetime) -> _JobResult:
        if job.status != JobStatus.IN_PROGRESS:
            logger.warning(
                "Detail fetch for job %s failed permanently: %s", job.remote_operation_id, message
            )
            return _JobResult(SKIPPED, reason)
        logger.error("Job %s failed: %s", job.remote_operation_id, message)
        try:
            self._store.fail_job(job.id, reason, now=now)
        except Exception:
            logger.exception("Could not record failure of job %s", job.remote_operation_id)
            return _JobResult(SKIPPED, reason)
        return _JobResult(FAILED, reason)

    def _job_gateway(self, job: DriftJob) -> CloudFormationGateway:
        grant = self._store.get_grant(job.owner_id, job.account_id)
        if grant is None:
            raise AccountDisconnected(f"Account {job.account_id} is no longer connected")
        return self._gateway(grant, job.region)

    def _process_job(self, job: DriftJob, now: datetime) -> _JobResult:
        gateway = None

        if job.status == JobStatus.IN_PROGRESS:
            gateway = self._job_gateway(job)
            status = gateway.describe_drift_status(job.remote_operation_id)
            if status.status == JobStatus.IN_PROGRESS:
                return _JobResult(PENDING)
            if status.status == JobStatus.FAILED:
                logger.info(
                    "Drift detection %s failed remotely: %s",
                    job.remote_operation_id,
                    status.failure_reason,
                )
                self._store.fail_job(job.id, status.failure_reason, now=now)
                return _JobResult(FAILED, status.failure_reason)

            job = self._store.complete_job(job.id, status.drift_status, now=now)
            if job is None or job.status != JobStatus.COMPLETE:
                raise InconsistentState("Job changed state while being completed")
            logger.info(
                "Drift detection %s complete: %s", job.remote_operation_id, job.drift_status
            )

        try:
            if gateway is None and job.drift_status == StackStatus.DRIFTED:
                gateway = self._job_gateway(job)
            outcome = self._reconciler.reconcile(job, gateway)
        except (TransientError, PermanentError) as exc:
            # Job stays COMPLETE; stack keeps its previous drift status.
            logger.warning(
                "Drift details for %s not applied, retrying next tick: %s",
                job.remote_operation_id,
                exc.message,
            )
            return _JobResult(COMPLETED, exc.reason)

        if outcome.drift_status == StackStatus.DRIFTED and not outcome.superseded:
            self._notify(job)
        return _JobResult(RECONCILED)

    def _notify(self, job: DriftJob) -> None:
        if self._notifier is None:
            return
        try:
            analyzed = self.get_stack_drift(job.owner_id, job.account_id, job.stack_name)
            self._notifier.notify_drift(analyzed)
        except Exception:
            logger.exception("Drift notification for %s failed", job.stack_name)

    # -- read API -----------------------------------------------------------

    def list_stacks_with_drift_status(self, owner_id: str) -> list[StackView]:
        now = datetime.now(UTC)
        stacks = self._store.list_stacks_for_owner(owner_id)
        latest = self._store.latest_jobs(sorted({s.account_id for s in stacks}))
        views = []
        for stack in stacks:
            job = latest.get((stack.account_id, stack.stack_name, stack.region))
            views.append(StackView(stack=stack, latest_job=job, stale=self._is_stale(job, now)))
        return views

    def list_jobs(self, owner_id: str, limit: int = 100) -> list[JobView]:
        now = datetime.now(UTC)
        return [
            JobView(job=job, stale=self._is_stale(job, now))
            for job in self._store.list_jobs_for_owner(owner_id, limit=limit)
        ]

    def get_stack_drift(self, owner_id: str, account_id: str, stack_name: str) -> AnalyzedStack:
        grant = self._require_grant(owner_id, account_id)
        stack = self._store.get_stack(account_id, stack_name, grant.region)
        if stack is None:
            raise NotFound(f"Stack {stack_name} is not known for account {account_id}")
        job = self._store.latest_jobs([account_id]).get((account_id, stack_name, grant.region))
        view = StackView(stack=stack, latest_job=job, stale=self._is_stale(job, datetime.now(UTC)))
        return analyze_stack(view, self._store.list_resource_drifts(stack.id))
