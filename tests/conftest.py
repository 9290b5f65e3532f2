"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from driftwatch.config import Settings
from driftwatch.models import Credentials
from driftwatch.orchestrator import DriftOrchestrator
from driftwatch.store.job_store import JobStore

OWNER = "user-1"
ACCOUNT_ID = "123456789012"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT_ID}:role/DriftwatchReadOnly"
EXTERNAL_ID = "ext-0123456789"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Set dummy AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite:///{tmp_path / 'driftwatch.db'}", max_workers=4)


@pytest.fixture
def store(settings):
    job_store = JobStore.from_url(settings.database_url)
    job_store.init_schema()
    yield job_store
    job_store.engine.dispose()


@pytest.fixture
def grant(store):
    return store.create_grant(OWNER, ACCOUNT_ID, ROLE_ARN, EXTERNAL_ID, "us-east-1", "prod")


def make_credentials(account_id=ACCOUNT_ID):
    return Credentials(
        access_key_id="ASIATESTKEY",
        secret_access_key="secret",
        session_token="token",
        account_id=account_id,
        expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


@pytest.fixture
def broker():
    mock_broker = MagicMock()
    mock_broker.acquire.return_value = make_credentials()
    return mock_broker


@pytest.fixture
def gateway():
    return MagicMock()


@pytest.fixture
def gateway_factory(gateway):
    return MagicMock(return_value=gateway)


@pytest.fixture
def orchestrator(store, broker, settings, gateway_factory):
    return DriftOrchestrator(store, broker, settings, gateway_factory=gateway_factory)


SIMPLE_TEMPLATE = """{
    "AWSTemplateFormatVersion": "2010-09-09",
    "Resources": {
        "MyQueue": {
            "Type": "AWS::SQS::Queue",
            "Properties": {
                "QueueName": "my-test-queue"
            }
        }
    }
}"""

TAGGED_TEMPLATE = """{
    "AWSTemplateFormatVersion": "2010-09-09",
    "Parameters": {
        "Env": {"Type": "String", "Default": "prod"}
    },
    "Resources": {
        "MyBucket": {
            "Type": "AWS::S3::Bucket"
        }
    },
    "Outputs": {
        "BucketName": {"Value": {"Ref": "MyBucket"}}
    }
}"""
