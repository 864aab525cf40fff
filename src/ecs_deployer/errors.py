"""Error taxonomy for deployment runs and mapping of AWS client errors onto it."""
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

# Error codes AWS returns for throttling, service-side faults and the
# read-after-write gaps between ECS, ELBv2 and CloudWatch Logs.
TRANSIENT_ERROR_CODES = frozenset([
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'RequestThrottled',
    'RequestThrottledException',
    'SlowDown',
    'ServiceUnavailable',
    'ServiceUnavailableException',
    'InternalError',
    'InternalFailure',
    'InternalServerError',
    'RequestTimeout',
    'RequestTimeoutException',
    'ServerException',
    'OperationAbortedException',
    'ResourceInUse',
    'ResourceInUseException',
    'PriorRequestNotComplete',
    'UpdateInProgressException',
])


class DeployerError(Exception):
    """Base class for all deployer errors."""


class ValidationError(DeployerError):
    """The deployment descriptor is missing a field or holds a malformed value."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class CloudError(DeployerError):
    """A call against the cloud control plane failed."""

    def __init__(self, message: str, operation_id: Optional[str] = None,
                 code: Optional[str] = None):
        self.operation_id = operation_id
        self.code = code
        super().__init__(message)


class TransientCloudError(CloudError):
    """Retryable failure: rate limiting, service faults, eventual consistency."""


class PermanentCloudError(CloudError):
    """Non-retryable failure, or a transient one whose retries ran out.

    When raised out of the apply engine it also carries the partial completion
    state of the plan.
    """

    def __init__(self, message: str, operation_id: Optional[str] = None,
                 code: Optional[str] = None, completed: Optional[List[str]] = None,
                 skipped: Optional[List[str]] = None, attempts: int = 0):
        super().__init__(message, operation_id=operation_id, code=code)
        self.completed = list(completed or [])
        self.skipped = list(skipped or [])
        self.attempts = attempts


class ConvergenceTimeout(DeployerError):
    """A service did not converge before the polling deadline."""

    def __init__(self, cluster: str, service: str, timeout: float,
                 observed: Optional[Dict[str, Any]] = None):
        self.cluster = cluster
        self.service = service
        self.timeout = timeout
        self.observed = dict(observed or {})
        counts = ", ".join(f"{k}={v}" for k, v in self.observed.items())
        super().__init__(
            f"Service {service} in cluster {cluster} did not converge within "
            f"{timeout:.0f}s ({counts or 'no observation'})"
        )


class LockHeldError(DeployerError):
    """Another run holds the lock for this cluster."""

    def __init__(self, cluster: str, holder: Optional[Dict[str, Any]] = None):
        self.cluster = cluster
        self.holder = holder or {}
        super().__init__(f"Cluster {cluster} is locked by another run: {self.holder}")


class InvalidTransitionError(DeployerError):
    """A run tried to move between phases that are not connected."""


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


def is_transient(error: Exception) -> bool:
    """Return True when an AWS error is worth retrying."""
    if isinstance(error, TransientCloudError):
        return True
    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError,
                          ReadTimeoutError, ConnectionClosedError)):
        return True
    if isinstance(error, ClientError):
        if _error_code(error) in TRANSIENT_ERROR_CODES:
            return True
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        return bool(status and status >= 500)
    return False


def classify_client_error(error: Exception, operation_id: Optional[str] = None) -> CloudError:
    """Wrap a botocore error in the transient or permanent deployer error."""
    if isinstance(error, CloudError):
        if operation_id and not error.operation_id:
            error.operation_id = operation_id
        return error

    code = _error_code(error) if isinstance(error, ClientError) else type(error).__name__
    message = str(error)
    if is_transient(error):
        return TransientCloudError(message, operation_id=operation_id, code=code)
    if isinstance(error, (ClientError, BotoCoreError)):
        return PermanentCloudError(message, operation_id=operation_id, code=code)
    return PermanentCloudError(f"{type(error).__name__}: {message}",
                               operation_id=operation_id, code=code)
