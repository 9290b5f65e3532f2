"""boto3 client construction and botocore error translation."""

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from driftwatch.errors import (
    AccessDenied,
    CredentialsExpired,
    DriftwatchError,
    Malformed,
    NotFound,
    Throttled,
    Unreachable,
)
from driftwatch.models import Credentials

THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RequestThrottled",
}
ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "UnauthorizedOperation",
    "RegionDisabledException",
}
EXPIRED_CODES = {"ExpiredToken", "ExpiredTokenException", "RequestExpired"}
MALFORMED_CODES = {"InvalidParameterValue", "MalformedPolicyDocument"}


def client_config(timeout: float) -> Config:
    """Bounded timeouts; retries are left to the next tick."""
    return Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"max_attempts": 2, "mode": "standard"},
    )


def build_client(service: str, region: str, timeout: float, credentials: Credentials | None = None):
    kwargs = {"region_name": region, "config": client_config(timeout)}
    if credentials is not None:
        kwargs.update(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
        )
    return boto3.client(service, **kwargs)


def translate_aws_error(exc: Exception, context: str) -> DriftwatchError:
    """Map a botocore exception onto the driftwatch error taxonomy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = f"{context}: {error.get('Message') or code}"
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)

        if code in THROTTLING_CODES:
            return Throttled(message)
        if code in EXPIRED_CODES:
            return CredentialsExpired(message)
        if code in ACCESS_DENIED_CODES:
            return AccessDenied(message)
        if code in MALFORMED_CODES:
            return Malformed(message)
        if code == "ValidationError" and "does not exist" in message:
            return NotFound(message)
        if code == "ValidationError":
            return Malformed(message)
        if status >= 500:
            return Unreachable(message)
        return AccessDenied(message)

    if isinstance(
        exc, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError, BotoConnectionError)
    ):
        return Unreachable(f"{context}: {exc}")
    if isinstance(exc, NoCredentialsError):
        return AccessDenied(f"{context}: no base AWS credentials configured")
    if isinstance(exc, BotoCoreError):
        return Unreachable(f"{context}: {exc}")
    raise TypeError(f"Not an AWS error: {exc!r}")
