"""Persistence boundary for grants, stacks, drift jobs and drift snapshots.

Every public method runs in its own transaction and returns plain dataclasses
from :mod:`driftwatch.models`; no ORM object escapes a session. The store holds
no business rules beyond the ones the schema itself enforces, plus the
conditional ``IN_PROGRESS`` guards that keep status transitions one-way.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import create_engine, delete, event, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from driftwatch.errors import AccountAlreadyConnected, AccountDisconnected, JobAlreadyInProgress
from driftwatch.models import (
    DriftJob,
    FailureReason,
    Grant,
    JobStatus,
    ResourceDriftDescriptor,
    ResourceStatus,
    StackDescriptor,
    StackRecord,
    StackStatus,
    StoredResourceDrift,
)
from driftwatch.store.tables import (
    AccountGrantRow,
    Base,
    DriftJobRow,
    ResourceDriftRow,
    StackRow,
)

logger = logging.getLogger(__name__)


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite gets foreign keys and cross-thread connections."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _grant(row: AccountGrantRow) -> Grant:
    return Grant(
        id=row.id,
        owner_id=row.owner_id,
        account_id=row.account_id,
        role_arn=row.role_arn,
        external_id=row.external_id,
        region=row.region,
        name=row.name,
        created_at=row.created_at,
    )


def _stack(row: StackRow) -> StackRecord:
    return StackRecord(
        id=row.id,
        account_id=row.account_id,
        stack_name=row.stack_name,
        region=row.region,
        stack_id=row.stack_id,
        last_known_status=row.last_known_status,
        drift_status=StackStatus(row.drift_status),
        detection_time=row.detection_time,
        description=row.description,
        tags=dict(row.tags or {}),
        outputs=list(row.outputs or []),
        parameters=dict(row.parameters or {}),
    )


def _job(row: DriftJobRow) -> DriftJob:
    return DriftJob(
        id=row.id,
        owner_id=row.owner_id,
        account_id=row.account_id,
        stack_name=row.stack_name,
        region=row.region,
        remote_operation_id=row.remote_operation_id,
        status=JobStatus(row.status),
        started_at=row.started_at,
        drift_status=StackStatus(row.drift_status) if row.drift_status else None,
        details_synced=row.details_synced,
        failure_reason=row.failure_reason,
        completed_at=row.completed_at,
    )


def _resource_drift(row: ResourceDriftRow) -> StoredResourceDrift:
    return StoredResourceDrift(
        logical_resource_id=row.logical_resource_id,
        resource_type=row.resource_type,
        physical_resource_id=row.physical_resource_id,
        drift_status=ResourceStatus(row.drift_status),
        actual_properties=row.actual_properties or {},
        expected_properties=row.expected_properties or {},
        property_differences=list(row.property_differences or []),
        recorded_at=row.recorded_at,
    )


class JobStore:
    """SQLAlchemy-backed store. Safe to share between threads."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "JobStore":
        return cls(create_store_engine(database_url, echo=echo))

    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def _begin(self):
        return self._session_factory.begin()

    # -- grants -------------------------------------------------------------

    def create_grant(
        self,
        owner_id: str,
        account_id: str,
        role_arn: str,
        external_id: str,
        region: str,
        name: str | None = None,
    ) -> Grant:
        row = AccountGrantRow(
            owner_id=owner_id,
            account_id=account_id,
            role_arn=role_arn,
            external_id=external_id,
            region=region,
            name=name,
        )
        try:
            with self._begin() as session:
                session.add(row)
                session.flush()
                return _grant(row)
        except IntegrityError as exc:
            raise AccountAlreadyConnected(
                f"Account {account_id} is already connected for this owner"
            ) from exc

    def get_grant(self, owner_id: str, account_id: str) -> Grant | None:
        with self._begin() as session:
            row = session.scalar(
                select(AccountGrantRow).where(
                    AccountGrantRow.owner_id == owner_id,
                    AccountGrantRow.account_id == account_id,
                )
            )
            return _grant(row) if row else None

    def list_grants(self, owner_id: str) -> list[Grant]:
        with self._begin() as session:
            rows = session.scalars(
                select(AccountGrantRow)
                .where(AccountGrantRow.owner_id == owner_id)
                .order_by(AccountGrantRow.created_at.desc())
            )
            return [_grant(r) for r in rows]

    def update_grant(
        self,
        owner_id: str,
        account_id: str,
        name: str | None = None,
        region: str | None = None,
    ) -> Grant:
        """Only ``name`` and ``region`` are mutable."""
        with self._begin() as session:
            row = self._grant_row(session, owner_id, account_id)
            if name is not None:
                row.name = name
            if region is not None:
                row.region = region
            session.flush()
            return _grant(row)

    def delete_grant(self, owner_id: str, account_id: str) -> None:
        """Delete a grant, cascading to its stacks unless another owner shares the account."""
        with self._begin() as session:
            row = self._grant_row(session, owner_id, account_id)
            successor = session.scalar(
                select(AccountGrantRow.id).where(
                    AccountGrantRow.account_id == account_id,
                    AccountGrantRow.id != row.id,
                )
            )
            if successor is not None:
                session.execute(
                    update(StackRow).where(StackRow.grant_id == row.id).values(grant_id=successor)
                )
            session.execute(delete(AccountGrantRow).where(AccountGrantRow.id == row.id))

    @staticmethod
    def _grant_row(session: Session, owner_id: str, account_id: str) -> AccountGrantRow:
        row = session.scalar(
            select(AccountGrantRow).where(
                AccountGrantRow.owner_id == owner_id,
                AccountGrantRow.account_id == account_id,
            )
        )
        if row is None:
            raise AccountDisconnected(f"No connected account {account_id} for this owner")
        return row

    # -- stacks -------------------------------------------------------------

    def upsert_stack(self, grant: Grant, region: str, descriptor: StackDescriptor) -> StackRecord:
        """Insert or refresh a stack from a listing.

        A ``DETECTION_IN_PROGRESS`` drift status is owned by the orchestrator
        and survives the refresh.
        """
        with self._begin() as session:
            row = self._lock_stack_row(session, grant, descriptor.stack_name, region)
            row.stack_id = descriptor.stack_id
            row.last_known_status = descriptor.status
            row.description = descriptor.description
            row.tags = descriptor.tags
            row.outputs = descriptor.outputs
            row.parameters = descriptor.parameters
            if row.drift_status != StackStatus.DETECTION_IN_PROGRESS and descriptor.drift_status:
                row.drift_status = descriptor.drift_status
                row.detection_time = descriptor.last_check_time or row.detection_time
            session.flush()
            return _stack(row)

    def _lock_stack_row(
        self, session: Session, grant: Grant, stack_name: str, region: str
    ) -> StackRow:
        """Return the stack row for the tuple, creating it if missing."""
        query = select(StackRow).where(
            StackRow.account_id == grant.account_id,
            StackRow.stack_name == stack_name,
            StackRow.region == region,
        )
        row = session.scalar(query)
        if row is not None:
            return row
        row = StackRow(
            grant_id=grant.id,
            account_id=grant.account_id,
            stack_name=stack_name,
            region=region,
            drift_status=StackStatus.NOT_CHECKED,
            tags={},
            outputs=[],
            parameters={},
        )
        try:
            with session.begin_nested():
                session.add(row)
        except IntegrityError:
            # Lost an insert race with a concurrent refresh.
            row = session.scalar(query)
        return row

    def get_stack(self, account_id: str, stack_name: str, region: str) -> StackRecord | None:
        with self._begin() as session:
            row = session.scalar(
                select(StackRow).where(
                    StackRow.account_id == account_id,
                    StackRow.stack_name == stack_name,
                    StackRow.region == region,
                )
            )
            return _stack(row) if row else None

    def list_stacks_for_owner(self, owner_id: str) -> list[StackRecord]:
        with self._begin() as session:
            accounts = select(AccountGrantRow.account_id).where(
                AccountGrantRow.owner_id == owner_id
            )
            rows = session.scalars(
                select(StackRow)
                .where(StackRow.account_id.in_(accounts))
                .order_by(StackRow.account_id, StackRow.region, StackRow.stack_name)
            )
            return [_stack(r) for r in rows]

    # -- jobs ---------------------------------------------------------------

    def find_active_job(self, account_id: str, stack_name: str, region: str) -> DriftJob | None:
        with self._begin() as session:
            row = session.scalar(self._active_job_query(account_id, stack_name, region))
            return _job(row) if row else None

    @staticmethod
    def _active_job_query(account_id: str, stack_name: str, region: str):
        return select(DriftJobRow).where(
            DriftJobRow.account_id == account_id,
            DriftJobRow.stack_name == stack_name,
            DriftJobRow.region == region,
            DriftJobRow.status == JobStatus.IN_PROGRESS,
        )

    def create_job(
        self,
        grant: Grant,
        stack_name: str,
        region: str,
        remote_operation_id: str,
        stale_before: datetime,
        now: datetime | None = None,
    ) -> DriftJob:
        """Persist a new job and flag its stack in one transaction.

        An outstanding job started after ``stale_before`` makes the call fail
        with :class:`JobAlreadyInProgress`; an older one is closed as
        ``Superseded``.
        """
        now = now or datetime.now(UTC)
        try:
            with self._begin() as session:
                existing = session.scalar(
                    self._active_job_query(grant.account_id, stack_name, region)
                )
                if existing is not None:
                    if existing.started_at >= stale_before:
                        raise JobAlreadyInProgress(
                            f"Drift detection already in progress for {stack_name}",
                            remote_operation_id=existing.remote_operation_id,
                        )
                    logger.info(
                        "Superseding stale job %s for %s", existing.remote_operation_id, stack_name
                    )
                    existing.status = JobStatus.FAILED
                    existing.failure_reason = FailureReason.SUPERSEDED
                    existing.details_synced = True
                    existing.completed_at = now
                    session.flush()

                row = DriftJobRow(
                    owner_id=grant.owner_id,
                    account_id=grant.account_id,
                    stack_name=stack_name,
                    region=region,
                    remote_operation_id=remote_operation_id,
                    status=JobStatus.IN_PROGRESS,
                    details_synced=False,
                    started_at=now,
                )
                session.add(row)

                stack = self._lock_stack_row(session, grant, stack_name, region)
                stack.drift_status = StackStatus.DETECTION_IN_PROGRESS
                stack.detection_time = now
                session.flush()
                return _job(row)
        except IntegrityError as exc:
            raise JobAlreadyInProgress(
                f"Drift detection already in progress for {stack_name}"
            ) from exc

    def get_job(self, job_id: int) -> DriftJob | None:
        with self._begin() as session:
            row = session.get(DriftJobRow, job_id)
            return _job(row) if row else None

    def find_outstanding_jobs(self, newer_than: datetime) -> list[DriftJob]:
        """Jobs the tick still has work for, started after ``newer_than``.

        That is every ``IN_PROGRESS`` job plus ``COMPLETE`` jobs whose outcome
        has not been applied to the stack yet.
        """
        with self._begin() as session:
            rows = session.scalars(
                select(DriftJobRow)
                .where(
                    DriftJobRow.started_at >= newer_than,
                    or_(
                        DriftJobRow.status == JobStatus.IN_PROGRESS,
                        (DriftJobRow.status == JobStatus.COMPLETE)
                        & DriftJobRow.details_synced.is_(False),
                    ),
                )
                .order_by(DriftJobRow.started_at)
            )
            return [_job(r) for r in rows]

    def list_jobs_for_owner(self, owner_id: str, limit: int = 100) -> list[DriftJob]:
        with self._begin() as session:
            rows = session.scalars(
                select(DriftJobRow)
                .where(DriftJobRow.owner_id == owner_id)
                .order_by(DriftJobRow.started_at.desc(), DriftJobRow.id.desc())
                .limit(limit)
            )
            return [_job(r) for r in rows]

    def latest_jobs(self, account_ids: list[str]) -> dict[tuple[str, str, str], DriftJob]:
        """Most recent job per (account, stack, region) for the given accounts."""
        latest: dict[tuple[str, str, str], DriftJob] = {}
        if not account_ids:
            return latest
        with self._begin() as session:
            rows = session.scalars(
                select(DriftJobRow)
                .where(DriftJobRow.account_id.in_(account_ids))
                .order_by(DriftJobRow.started_at.desc(), DriftJobRow.id.desc())
            )
            for row in rows:
                latest.setdefault((row.account_id, row.stack_name, row.region), _job(row))
        return latest

    def update_job_status(
        self,
        job_id: int,
        status: JobStatus,
        failure_reason: str | None = None,
        drift_status: StackStatus | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move an ``IN_PROGRESS`` job to ``status``. Returns False if it had already moved."""
        now = now or datetime.now(UTC)
        values: dict = {"status": status, "failure_reason": failure_reason}
        if status != JobStatus.IN_PROGRESS:
            values["completed_at"] = now
        if drift_status is not None:
            values["drift_status"] = drift_status
        with self._begin() as session:
            result = session.execute(
                update(DriftJobRow)
                .where(DriftJobRow.id == job_id, DriftJobRow.status == JobStatus.IN_PROGRESS)
                .values(**values)
            )
            return result.rowcount > 0

    def complete_job(
        self, job_id: int, drift_status: StackStatus, now: datetime | None = None
    ) -> DriftJob:
        """Mark a job ``COMPLETE``. Its outcome is applied later by the reconciler."""
        self.update_job_status(job_id, JobStatus.COMPLETE, drift_status=drift_status, now=now)
        return self.get_job(job_id)

    def fail_job(self, job_id: int, reason: str, now: datetime | None = None) -> bool:
        """Mark a job ``FAILED`` and reset its stack's in-progress flag together."""
        now = now or datetime.now(UTC)
        with self._begin() as session:
            row = session.get(DriftJobRow, job_id)
            if row is None or row.status != JobStatus.IN_PROGRESS:
                return False
            row.status = JobStatus.FAILED
            row.failure_reason = reason
            row.completed_at = now
            row.details_synced = True
            session.execute(
                update(StackRow)
                .where(
                    StackRow.account_id == row.account_id,
                    StackRow.stack_name == row.stack_name,
                    StackRow.region == row.region,
                    StackRow.drift_status == StackStatus.DETECTION_IN_PROGRESS,
                )
                .values(drift_status=StackStatus.UNKNOWN)
            )
            return True

    # -- drift snapshots ----------------------------------------------------

    def replace_resource_drift_snapshot(
        self, job_id: int, drifts: list[ResourceDriftDescriptor]
    ) -> int | None:
        """Swap the stack's snapshot for ``drifts`` and apply the job outcome.

        Delete-all then insert-all, the stack's drift status and the job's
        synced flag all commit together. Returns the number of rows written,
        or None when a newer job exists for the stack and nothing was applied.
        """
        return self._apply_outcome(job_id, drifts)

    def apply_stack_drift_status(self, job_id: int) -> bool:
        """Apply a non-drifted job outcome to its stack. False if a newer job superseded it."""
        return self._apply_outcome(job_id, None) is not None

    def _apply_outcome(
        self, job_id: int, drifts: list[ResourceDriftDescriptor] | None
    ) -> int | None:
        with self._begin() as session:
            job = session.get(DriftJobRow, job_id)
            if job is None:
                raise KeyError(job_id)
            newer = session.scalar(
                select(DriftJobRow.id).where(
                    DriftJobRow.account_id == job.account_id,
                    DriftJobRow.stack_name == job.stack_name,
                    DriftJobRow.region == job.region,
                    DriftJobRow.id > job.id,
                )
                .limit(1)
            )
            if newer is not None:
                logger.info(
                    "Job %s superseded by a newer detection, outcome not applied",
                    job.remote_operation_id,
                )
                job.details_synced = True
                return None
            drift_status = StackStatus(job.drift_status or StackStatus.UNKNOWN)
            stack = session.scalar(
                select(StackRow).where(
                    StackRow.account_id == job.account_id,
                    StackRow.stack_name == job.stack_name,
                    StackRow.region == job.region,
                )
            )
            written = 0
            if stack is not None:
                if drifts is not None or drift_status == StackStatus.IN_SYNC:
                    session.execute(
                        delete(ResourceDriftRow).where(ResourceDriftRow.stack_pk == stack.id)
                    )
                for drift in drifts or []:
                    session.add(
                        ResourceDriftRow(
                            stack_pk=stack.id,
                            logical_resource_id=drift.logical_resource_id,
                            resource_type=drift.resource_type,
                            physical_resource_id=drift.physical_resource_id,
                            drift_status=drift.drift_status,
                            actual_properties=drift.actual_properties,
                            expected_properties=drift.expected_properties,
                            property_differences=[
                                pd.to_dict() for pd in drift.property_differences
                            ],
                            recorded_at=job.completed_at or datetime.now(UTC),
                        )
                    )
                    written += 1
                stack.drift_status = drift_status
                stack.detection_time = job.completed_at
            else:
                logger.info(
                    "No stack record for job %s, outcome not applied", job.remote_operation_id
                )
            job.details_synced = True
            return written

    def list_resource_drifts(self, stack_pk: int) -> list[StoredResourceDrift]:
        with self._begin() as session:
            rows = session.scalars(
                select(ResourceDriftRow)
                .where(ResourceDriftRow.stack_pk == stack_pk)
                .order_by(ResourceDriftRow.logical_resource_id)
            )
            return [_resource_drift(r) for r in rows]
