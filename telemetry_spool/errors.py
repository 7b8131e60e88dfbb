"""Error taxonomy for the spool.

None of these errors cross into the host application: they are raised inside
the pipeline and absorbed (logged) at the component boundary.
"""

from __future__ import annotations

from telemetry_spool.models import UploadErrorCode


class SpoolError(Exception):
    """Base exception for all spool errors."""


class DurabilityFailure(SpoolError):
    """Raised when an event could not be made durable on disk."""

    def __init__(self, message: str, batch_id: str | None = None) -> None:
        """Initialise DurabilityFailure.

        Args:
            message: Description of the failure.
            batch_id: Batch the write was targeting, if any.
        """
        super().__init__(message)
        self.batch_id = batch_id


class TransportFailure(SpoolError):
    """Raised for transient delivery failures that should be retried."""

    def __init__(
        self,
        message: str,
        error_code: UploadErrorCode = UploadErrorCode.NETWORK_ERROR,
        status_code: int | None = None,
    ) -> None:
        """Initialise TransportFailure.

        Args:
            message: Description of the failure.
            error_code: Error code describing the failure type.
            status_code: HTTP status, when the intake answered.
        """
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


class RejectionFailure(SpoolError):
    """Raised when the intake permanently rejects a batch."""

    def __init__(
        self,
        message: str,
        error_code: UploadErrorCode = UploadErrorCode.REJECTED,
        status_code: int | None = None,
    ) -> None:
        """Initialise RejectionFailure.

        Args:
            message: Description of the failure.
            error_code: Error code describing the failure type.
            status_code: HTTP status returned by the intake.
        """
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


class ConsentViolation(SpoolError):
    """Raised when a send is attempted while consent is not granted."""
