"""Error taxonomy shared by the broker, gateway and orchestrator."""

from enum import StrEnum


class ErrorKind(StrEnum):
    """How an error should be treated by callers."""

    PERMANENT = "PERMANENT"
    TRANSIENT = "TRANSIENT"
    INCONSISTENT = "INCONSISTENT"


class DriftwatchError(Exception):
    """Base class for all driftwatch errors.

    ``kind`` tells the caller whether retrying makes sense and ``reason`` is a
    stable code suitable for storing as a job failure reason.
    """

    kind: ErrorKind = ErrorKind.PERMANENT
    reason: str = "Error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class PermanentError(DriftwatchError):
    kind = ErrorKind.PERMANENT


class TransientError(DriftwatchError):
    kind = ErrorKind.TRANSIENT


class InconsistentError(DriftwatchError):
    kind = ErrorKind.INCONSISTENT


class AccessDenied(PermanentError):
    """The role or external ID was rejected."""

    reason = "AccessDenied"


class Malformed(PermanentError):
    """The role ARN or external ID is syntactically invalid."""

    reason = "Malformed"


class IdentityMismatch(PermanentError):
    """The verified identity does not belong to the assumed account."""

    reason = "IdentityMismatch"


class AccountDisconnected(PermanentError):
    """No credential grant exists for the account."""

    reason = "AccountDisconnected"


class AccountAlreadyConnected(PermanentError):
    reason = "AccountAlreadyConnected"


class NotFound(PermanentError):
    """The remote stack or operation does not exist."""

    reason = "NotFound"


class JobAlreadyInProgress(PermanentError):
    """A drift detection job is already outstanding for the stack."""

    reason = "JobAlreadyInProgress"

    def __init__(self, message: str | None = None, remote_operation_id: str | None = None):
        super().__init__(message)
        self.remote_operation_id = remote_operation_id


class Throttled(TransientError):
    reason = "Throttled"


class Unreachable(TransientError):
    """Network failure or timeout talking to AWS."""

    reason = "Unreachable"


class CredentialsExpired(TransientError):
    reason = "CredentialsExpired"


class InconsistentState(InconsistentError):
    """The remote side reported something the local model does not expect."""

    reason = "InconsistentState"
