"""Cross-account credential broker built on STS AssumeRole."""

import logging
import re
import secrets
from datetime import UTC, datetime

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from driftwatch.aws.session import build_client, client_config, translate_aws_error
from driftwatch.errors import IdentityMismatch, Malformed
from driftwatch.models import Credentials

logger = logging.getLogger(__name__)

ROLE_ARN_PATTERN = re.compile(
    r"^arn:aws(?:-[a-z]+)*:iam::(?P<account>\d{12}):role/[\w+=,.@/-]{1,512}$"
)
EXTERNAL_ID_PATTERN = re.compile(r"^[\w+=,.@:/-]{2,1224}$")
SESSION_DURATION_SECONDS = 3600


def account_from_arn(arn: str) -> str:
    """Return the account id field of an ARN, or an empty string."""
    parts = arn.split(":")
    return parts[4] if len(parts) > 5 else ""


def validate_grant_syntax(role_arn: str, external_id: str) -> str:
    """Check role ARN and external ID syntax. Returns the ARN's account id."""
    match = ROLE_ARN_PATTERN.match(role_arn or "")
    if not match:
        raise Malformed(f"Invalid role ARN: {role_arn!r}")
    if not EXTERNAL_ID_PATTERN.match(external_id or ""):
        raise Malformed("Invalid external ID format")
    return match.group("account")


class CredentialBroker:
    """Exchanges a (role ARN, external ID) pair for temporary credentials.

    Credentials are never cached. Every call assumes the role again and
    verifies the resulting identity with ``GetCallerIdentity``.
    """

    def __init__(self, region: str = "us-east-1", timeout: float = 20.0):
        self._region = region
        self._timeout = timeout
        self._client = boto3.client("sts", region_name=region, config=client_config(timeout))
        self._client_factory = build_client

    def acquire(self, role_arn: str, external_id: str) -> Credentials:
        """Assume ``role_arn`` and return verified temporary credentials."""
        validate_grant_syntax(role_arn, external_id)
        session_name = f"driftwatch-{datetime.now(UTC):%Y%m%d%H%M%S}-{secrets.token_hex(4)}"

        try:
            response = self._client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                ExternalId=external_id,
                DurationSeconds=SESSION_DURATION_SECONDS,
            )
        except (ClientError, BotoCoreError) as exc:
            error = translate_aws_error(exc, "AssumeRole failed")
            logger.warning("Failed to assume %s: %s (%s)", role_arn, error.message, error.kind)
            raise error from exc

        raw = response.get("Credentials") or {}
        if not all(raw.get(k) for k in ("AccessKeyId", "SecretAccessKey", "SessionToken")):
            raise Malformed("AssumeRole returned incomplete credentials")

        assumed_account = account_from_arn(response.get("AssumedRoleUser", {}).get("Arn", ""))
        if not assumed_account:
            raise IdentityMismatch("Could not determine account id from assumed role")

        credentials = Credentials(
            access_key_id=raw["AccessKeyId"],
            secret_access_key=raw["SecretAccessKey"],
            session_token=raw["SessionToken"],
            account_id=assumed_account,
            expires_at=raw.get("Expiration") or datetime.now(UTC),
        )

        verified_account = self._verify_identity(credentials)
        if verified_account != assumed_account:
            raise IdentityMismatch(
                f"Assumed role reports account {assumed_account} "
                f"but caller identity is {verified_account}"
            )

        logger.debug("Assumed %s for account %s", role_arn, assumed_account)
        return credentials

    def _verify_identity(self, credentials: Credentials) -> str:
        sts = self._client_factory("sts", self._region, self._timeout, credentials)
        try:
            identity = sts.get_caller_identity()
        except (ClientError, BotoCoreError) as exc:
            raise translate_aws_error(exc, "GetCallerIdentity failed") from exc
        return identity.get("Account", "")
