"""Batch uploader for the telemetry spool.

This module sends one batch to the intake endpoint and classifies the
answer. It keeps no state: retries and deletion are decided by the
scheduler from the returned outcome.
"""

import asyncio
import logging

import aiohttp

from telemetry_spool.const import (
    DEFAULT_API_KEY_HEADER,
    DEFAULT_CONTENT_TYPE,
    DEFAULT_UPLOAD_TIMEOUT_SECONDS,
)
from telemetry_spool.errors import RejectionFailure, TransportFailure
from telemetry_spool.models import Batch, UploadErrorCode, UploadOutcome

logger = logging.getLogger(__name__)

BATCH_ID_HEADER = "X-Spool-Batch-Id"
EVENT_COUNT_HEADER = "X-Spool-Event-Count"


class Uploader:
    """Upload a single batch with one HTTP POST."""

    RETRYABLE_STATUS_CODES = {408, 429}
    PAYLOAD_TOO_LARGE_CODE = 413

    def __init__(
        self,
        client_session: aiohttp.ClientSession,
        *,
        timeout_seconds: float = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
        content_type: str = DEFAULT_CONTENT_TYPE,
        api_key: str | None = None,
        api_key_header: str = DEFAULT_API_KEY_HEADER,
    ) -> None:
        """Initialize the uploader.

        Args:
            client_session: aiohttp ClientSession for HTTP requests
            timeout_seconds: Total timeout of one attempt
            content_type: MIME type of the request body
            api_key: Optional intake API key
            api_key_header: Header carrying the API key
        """
        self._session = client_session
        self._timeout_seconds = timeout_seconds
        self._content_type = content_type
        self._api_key = api_key
        self._api_key_header = api_key_header

    def _headers(self, batch: Batch) -> dict[str, str]:
        headers = {
            "Content-Type": self._content_type,
            BATCH_ID_HEADER: batch.batch_id,
            EVENT_COUNT_HEADER: str(len(batch.events)),
        }
        if self._api_key:
            headers[self._api_key_header] = self._api_key
        return headers

    async def _send(self, batch: Batch, endpoint: str) -> int:
        """POST the batch body.

        Args:
            batch: Batch to send.
            endpoint: Intake URL.

        Returns:
            The 2xx status code of the accepted request.

        Raises:
            TransportFailure: For transient failures worth retrying.
            RejectionFailure: When the intake will never accept the batch.
        """
        timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
        try:
            async with self._session.post(
                endpoint,
                data=batch.serialize(),
                headers=self._headers(batch),
                timeout=timeout,
                allow_redirects=False,
            ) as response:
                status_code = response.status
                if 200 <= status_code < 300:
                    return status_code
                if status_code in self.RETRYABLE_STATUS_CODES:
                    error_code = (
                        UploadErrorCode.RATE_LIMITED
                        if status_code == 429
                        else UploadErrorCode.TIMEOUT
                    )
                    raise TransportFailure(
                        f"Intake asked to retry (HTTP {status_code})",
                        error_code=error_code,
                        status_code=status_code,
                    )
                if status_code >= 500:
                    raise TransportFailure(
                        f"Intake server error (HTTP {status_code})",
                        error_code=UploadErrorCode.SERVER_ERROR,
                        status_code=status_code,
                    )
                if status_code == self.PAYLOAD_TOO_LARGE_CODE:
                    raise RejectionFailure(
                        "Batch too large for the intake (HTTP 413)",
                        error_code=UploadErrorCode.PAYLOAD_TOO_LARGE,
                        status_code=status_code,
                    )
                raise RejectionFailure(
                    f"Intake rejected the batch (HTTP {status_code})",
                    status_code=status_code,
                )
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise TransportFailure(
                f"Upload timed out after {self._timeout_seconds}s",
                error_code=UploadErrorCode.TIMEOUT,
            ) from e
        except aiohttp.ClientError as e:
            raise TransportFailure(f"Network error: {e}") from e

    async def upload(self, batch: Batch, endpoint: str) -> UploadOutcome:
        """Send a batch and classify the result.

        Args:
            batch: Batch to send.
            endpoint: Intake URL.

        Returns:
            The outcome of this single attempt.
        """
        try:
            status_code = await self._send(batch, endpoint)
        except TransportFailure as e:
            logger.debug("Upload of batch %s failed: %s", batch.batch_id, e)
            return UploadOutcome.retryable(
                str(e), error_code=e.error_code, status_code=e.status_code
            )
        except RejectionFailure as e:
            return UploadOutcome.non_retryable(
                str(e), error_code=e.error_code, status_code=e.status_code
            )

        logger.debug(
            "Uploaded batch %s (%s events, HTTP %s)",
            batch.batch_id,
            len(batch.events),
            status_code,
        )
        return UploadOutcome.success(status_code)
