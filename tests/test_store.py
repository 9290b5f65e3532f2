"""Tests for the SQLAlchemy job store."""

from datetime import UTC, datetime, timedelta

import pytest

from driftwatch.errors import AccountAlreadyConnected, AccountDisconnected, JobAlreadyInProgress
from driftwatch.models import (
    FailureReason,
    JobStatus,
    PropertyDifference,
    ResourceDriftDescriptor,
    ResourceStatus,
    StackDescriptor,
    StackStatus,
)
from driftwatch.store.job_store import JobStore
from tests.conftest import ACCOUNT_ID, EXTERNAL_ID, OWNER, ROLE_ARN

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
STALE_BEFORE = NOW - timedelta(hours=24)


def _descriptor(name="demo-stack", drift_status=None):
    return StackDescriptor(
        stack_id=f"arn:aws:cloudformation:us-east-1:{ACCOUNT_ID}:stack/{name}/1",
        stack_name=name,
        status="CREATE_COMPLETE",
        description="demo",
        drift_status=drift_status,
        last_check_time=None,
        tags={"Team": "platform"},
        outputs=[],
        parameters={"Env": "prod"},
    )


def _drift(logical_id, status=ResourceStatus.MODIFIED):
    return ResourceDriftDescriptor(
        logical_resource_id=logical_id,
        resource_type="AWS::SQS::Queue",
        drift_status=status,
        physical_resource_id=f"{logical_id}-physical",
        actual_properties={"DelaySeconds": 5},
        expected_properties={"DelaySeconds": 0},
        property_differences=[PropertyDifference("/DelaySeconds", "0", "5", "NOT_EQUAL")],
    )


def _completed_job(store, grant, drift_status, op_id="det-1", now=NOW):
    job = store.create_job(grant, "demo-stack", "us-east-1", op_id, STALE_BEFORE, now=now)
    return store.complete_job(job.id, drift_status, now=now)


def test_in_memory_store_shares_one_connection():
    store = JobStore.from_url("sqlite://")
    store.init_schema()

    grant = store.create_grant(OWNER, ACCOUNT_ID, ROLE_ARN, EXTERNAL_ID, "us-east-1")

    assert store.get_grant(OWNER, ACCOUNT_ID) == grant


def test_create_grant_duplicate_rejected(store, grant):
    with pytest.raises(AccountAlreadyConnected):
        store.create_grant(OWNER, ACCOUNT_ID, ROLE_ARN, EXTERNAL_ID, "eu-west-1")


def test_same_account_for_two_owners(store, grant):
    other = store.create_grant("user-2", ACCOUNT_ID, ROLE_ARN, EXTERNAL_ID, "us-east-1")

    assert other.id != grant.id
    assert [g.account_id for g in store.list_grants("user-2")] == [ACCOUNT_ID]


def test_update_grant_changes_only_name_and_region(store, grant):
    updated = store.update_grant(OWNER, ACCOUNT_ID, name="production", region="eu-west-1")

    assert updated.name == "production"
    assert updated.region == "eu-west-1"
    assert updated.role_arn == ROLE_ARN


def test_update_missing_grant(store):
    with pytest.raises(AccountDisconnected):
        store.update_grant(OWNER, "000000000000", name="x")


def test_upsert_stack_inserts_then_updates(store, grant):
    first = store.upsert_stack(grant, "us-east-1", _descriptor())
    second = store.upsert_stack(grant, "us-east-1", _descriptor(drift_status=StackStatus.IN_SYNC))

    assert first.id == second.id
    assert first.drift_status == StackStatus.NOT_CHECKED
    assert second.drift_status == StackStatus.IN_SYNC
    assert second.tags == {"Team": "platform"}
    assert second.parameters == {"Env": "prod"}


def test_upsert_keeps_detection_in_progress(store, grant):
    store.upsert_stack(grant, "us-east-1", _descriptor())
    store.create_job(grant, "demo-stack", "us-east-1", "det-1", STALE_BEFORE, now=NOW)

    record = store.upsert_stack(grant, "us-east-1", _descriptor(drift_status=StackStatus.DRIFTED))

    assert record.drift_status == StackStatus.DETECTION_IN_PROGRESS


def test_create_job_flags_stack_in_progress(store, grant):
    job = store.create_job(grant, "demo-stack", "us-east-1", "det-1", STALE_BEFORE, now=NOW)

    assert job.status == JobStatus.IN_PROGRESS
    assert job.started_at == NOW
    assert job.details_synced is False
    stack = store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1")
    assert stack.drift_status == StackStatus.DETECTION_IN_PROGRESS


def test_create_job_rejects_second_active_job(store, grant):
    store.create_job(grant, "demo-stack", "us-east-1", "det-1", STALE_BEFORE, now=NOW)

    with pytest.raises(JobAlreadyInProgress) as exc_info:
        store.create_job(grant, "demo-stack", "us-east-1", "det-2", STALE_BEFORE, now=NOW)

    assert exc_info.value.remote_operation_id == "det-1"
    assert store.find_active_job(ACCOUNT_ID, "demo-stack", "us-east-1").remote_operation_id == (
        "det-1"
    )


def test_create_job_supersedes_stale_job(store, grant):
    old = store.create_job(
        grant, "demo-stack", "us-east-1", "det-old", STALE_BEFORE, now=NOW - timedelta(hours=25)
    )

    new = store.create_job(grant, "demo-stack", "us-east-1", "det-new", STALE_BEFORE, now=NOW)

    superseded = store.get_job(old.id)
    assert superseded.status == JobStatus.FAILED
    assert superseded.failure_reason == FailureReason.SUPERSEDED
    assert store.find_active_job(ACCOUNT_ID, "demo-stack", "us-east-1").id == new.id


def test_remote_operation_id_unique(store, grant):
    store.create_job(grant, "a", "us-east-1", "det-1", STALE_BEFORE, now=NOW)

    with pytest.raises(JobAlreadyInProgress):
        store.create_job(grant, "b", "us-east-1", "det-1", STALE_BEFORE, now=NOW)


def test_find_outstanding_jobs_excludes_expired(store, grant):
    store.create_job(
        grant, "old-stack", "us-east-1", "det-old", STALE_BEFORE, now=NOW - timedelta(hours=25)
    )
    store.create_job(grant, "new-stack", "us-east-1", "det-new", STALE_BEFORE, now=NOW)

    outstanding = store.find_outstanding_jobs(STALE_BEFORE)

    assert [j.remote_operation_id for j in outstanding] == ["det-new"]


def test_find_outstanding_includes_unsynced_complete_jobs(store, grant):
    _completed_job(store, grant, StackStatus.DRIFTED)

    (job,) = store.find_outstanding_jobs(STALE_BEFORE)

    assert job.status == JobStatus.COMPLETE
    assert job.details_synced is False


def test_update_job_status_only_moves_in_progress(store, grant):
    job = store.create_job(grant, "demo-stack", "us-east-1", "det-1", STALE_BEFORE, now=NOW)

    assert store.update_job_status(job.id, JobStatus.COMPLETE, drift_status=StackStatus.IN_SYNC)
    assert not store.update_job_status(job.id, JobStatus.FAILED, failure_reason="late")
    assert store.get_job(job.id).status == JobStatus.COMPLETE


def test_fail_job_resets_stack_flag(store, grant):
    job = store.create_job(grant, "demo-stack", "us-east-1", "det-1", STALE_BEFORE, now=NOW)

    assert store.fail_job(job.id, "Resource not supported", now=NOW)

    failed = store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.failure_reason == "Resource not supported"
    assert failed.completed_at == NOW
    assert store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1").drift_status == (
        StackStatus.UNKNOWN
    )
    assert store.find_outstanding_jobs(STALE_BEFORE) == []


def test_replace_snapshot_replaces_previous_rows(store, grant):
    first = _completed_job(store, grant, StackStatus.DRIFTED, op_id="det-1")
    store.replace_resource_drift_snapshot(first.id, [_drift("A"), _drift("B"), _drift("C")])

    second = _completed_job(
        store, grant, StackStatus.DRIFTED, op_id="det-2", now=NOW + timedelta(hours=1)
    )
    written = store.replace_resource_drift_snapshot(second.id, [_drift("D"), _drift("E")])

    stack = store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1")
    rows = store.list_resource_drifts(stack.id)
    assert written == 2
    assert [r.logical_resource_id for r in rows] == ["D", "E"]
    assert rows[0].property_differences[0]["property_path"] == "/DelaySeconds"
    assert stack.drift_status == StackStatus.DRIFTED
    assert store.get_job(second.id).details_synced is True


def test_replace_snapshot_twice_is_idempotent(store, grant):
    job = _completed_job(store, grant, StackStatus.DRIFTED)
    drifts = [_drift("A"), _drift("B")]

    store.replace_resource_drift_snapshot(job.id, drifts)
    store.replace_resource_drift_snapshot(job.id, drifts)

    stack = store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1")
    assert len(store.list_resource_drifts(stack.id)) == 2


def test_in_sync_outcome_clears_snapshot(store, grant):
    drifted = _completed_job(store, grant, StackStatus.DRIFTED, op_id="det-1")
    store.replace_resource_drift_snapshot(drifted.id, [_drift("A")])

    in_sync = _completed_job(
        store, grant, StackStatus.IN_SYNC, op_id="det-2", now=NOW + timedelta(hours=1)
    )
    store.apply_stack_drift_status(in_sync.id)

    stack = store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1")
    assert stack.drift_status == StackStatus.IN_SYNC
    assert store.list_resource_drifts(stack.id) == []


def test_unknown_outcome_keeps_snapshot(store, grant):
    drifted = _completed_job(store, grant, StackStatus.DRIFTED, op_id="det-1")
    store.replace_resource_drift_snapshot(drifted.id, [_drift("A")])

    unknown = _completed_job(
        store, grant, StackStatus.UNKNOWN, op_id="det-2", now=NOW + timedelta(hours=1)
    )
    store.apply_stack_drift_status(unknown.id)

    stack = store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1")
    assert stack.drift_status == StackStatus.UNKNOWN
    assert len(store.list_resource_drifts(stack.id)) == 1


def test_outcome_of_older_job_is_not_applied_after_newer_trigger(store, grant):
    older = _completed_job(store, grant, StackStatus.DRIFTED, op_id="det-1")
    store.create_job(
        grant, "demo-stack", "us-east-1", "det-2", STALE_BEFORE, now=NOW + timedelta(hours=1)
    )

    written = store.replace_resource_drift_snapshot(older.id, [_drift("A")])

    stack = store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1")
    assert written is None
    assert stack.drift_status == StackStatus.DETECTION_IN_PROGRESS
    assert store.list_resource_drifts(stack.id) == []
    assert store.get_job(older.id).details_synced is True
    assert store.apply_stack_drift_status(older.id) is False


def test_delete_grant_cascades_stacks_but_keeps_jobs(store, grant):
    job = _completed_job(store, grant, StackStatus.DRIFTED)
    store.replace_resource_drift_snapshot(job.id, [_drift("A")])

    store.delete_grant(OWNER, ACCOUNT_ID)

    assert store.get_grant(OWNER, ACCOUNT_ID) is None
    assert store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1") is None
    assert store.get_job(job.id) is not None


def test_delete_grant_keeps_stacks_shared_with_other_owner(store, grant):
    store.create_grant("user-2", ACCOUNT_ID, ROLE_ARN, EXTERNAL_ID, "us-east-1")
    store.upsert_stack(grant, "us-east-1", _descriptor())

    store.delete_grant(OWNER, ACCOUNT_ID)

    assert store.get_stack(ACCOUNT_ID, "demo-stack", "us-east-1") is not None
    assert [s.stack_name for s in store.list_stacks_for_owner("user-2")] == ["demo-stack"]
    assert store.list_stacks_for_owner(OWNER) == []


def test_delete_missing_grant(store):
    with pytest.raises(AccountDisconnected):
        store.delete_grant(OWNER, ACCOUNT_ID)


def test_latest_jobs_picks_most_recent(store, grant):
    first = store.create_job(
        grant, "demo-stack", "us-east-1", "det-1", STALE_BEFORE, now=NOW - timedelta(hours=2)
    )
    store.complete_job(first.id, StackStatus.IN_SYNC, now=NOW - timedelta(hours=2))
    store.create_job(grant, "demo-stack", "us-east-1", "det-2", STALE_BEFORE, now=NOW)

    latest = store.latest_jobs([ACCOUNT_ID])

    assert latest[(ACCOUNT_ID, "demo-stack", "us-east-1")].remote_operation_id == "det-2"
    assert store.latest_jobs([]) == {}


def test_list_jobs_for_owner_newest_first(store, grant):
    store.create_job(
        grant, "a", "us-east-1", "det-1", STALE_BEFORE, now=NOW - timedelta(minutes=5)
    )
    store.create_job(grant, "b", "us-east-1", "det-2", STALE_BEFORE, now=NOW)

    jobs = store.list_jobs_for_owner(OWNER)

    assert [j.remote_operation_id for j in jobs] == ["det-2", "det-1"]
    assert store.list_jobs_for_owner("someone-else") == []
