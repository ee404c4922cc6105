"""
Error taxonomy for the billing workflow.

Local validation failures never reach the network. Remote failures carry
the stage that produced them so a failed run can be diagnosed.
"""

from typing import Any, Optional, Tuple


class UsageBillingError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(UsageBillingError, ValueError):
    """Raised when a request fails local checks before transmission."""


class OrderingError(ValidationError):
    """Raised when a stage references an entity that is missing or not yet active."""


class RemoteRejection(UsageBillingError):
    """The remote service answered with a non-success status."""

    def __init__(self, status_code: int, reason: str, body: Optional[Any] = None):
        super().__init__(f"Remote service rejected request ({status_code}): {reason}")
        self.status_code = status_code
        self.reason = reason
        self.body = body


class RemoteTimeout(UsageBillingError):
    """No response arrived within the configured deadline."""

    def __init__(self, operation: str, timeout: Optional[float]):
        super().__init__(f"{operation} timed out after {timeout}s")
        self.operation = operation
        self.timeout = timeout


class RemoteUnavailable(UsageBillingError):
    """The remote service could not be reached or the connection broke."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"{operation} could not reach the remote service: {reason}")
        self.operation = operation
        self.reason = reason


class ConsistencyNotYetAvailable(UsageBillingError):
    """Metrics were still incomplete when the wait strategy gave up.

    Distinct from an empty result: the last partial response is attached so
    callers can decide whether to wait longer.
    """

    def __init__(self, metric: str, waited: float, last_result: Optional[Any] = None):
        super().__init__(
            f"{metric} metrics not yet available after waiting {waited:.1f}s"
        )
        self.metric = metric
        self.waited = waited
        self.last_result = last_result


class StageFailure(UsageBillingError):
    """A workflow stage failed; the remaining stages were not executed.

    ``accepted_ids`` names events the service took before an ingest stage failed.
    """

    def __init__(self, stage: Any, payload_summary: str, cause: BaseException):
        stage_name = getattr(stage, "value", stage)
        super().__init__(f"Stage '{stage_name}' failed ({payload_summary}): {cause}")
        self.stage = stage
        self.payload_summary = payload_summary
        self.cause = cause
        self.accepted_ids: Tuple[str, ...] = ()
