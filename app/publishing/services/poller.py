"""
Status poller: drives a publish job to a terminal state.

Runs inside a Celery task, one per job. Bounded by max_attempts status
queries with ``interval`` seconds between them; the wait goes through a
threading.Event so a worker shutdown can cut it short.

Platform status mapping:
    PROCESSING_UPLOAD, PROCESSING_DOWNLOAD, SEND_TO_USER_INBOX -> PROCESSING
    PUBLISH_COMPLETE                                           -> COMPLETE
    FAILED                                                     -> FAILED
    anything else                                              -> unchanged
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.circuit_breaker import CircuitOpenError
from core.exceptions import ConflictError, NotFoundError
from core.services import BaseService

from publishing.adapters import TikTokClient, get_tiktok_client
from publishing.exceptions import (
    InvalidGrantError,
    PollingTimeoutError,
    TransientUpstreamError,
)
from publishing.models import PublishJob
from publishing.services.credentials import (
    CredentialLifecycleManager,
    get_credential_manager,
)
from publishing.state_machines import PublishJobState

if TYPE_CHECKING:
    import uuid

    from publishing.adapters import PublishStatus

PROCESSING_STATUSES = frozenset(
    {"PROCESSING_UPLOAD", "PROCESSING_DOWNLOAD", "SEND_TO_USER_INBOX"}
)
COMPLETE_STATUS = "PUBLISH_COMPLETE"
FAILED_STATUS = "FAILED"

DEFAULT_FAIL_REASON = "The platform could not publish this post."


class StatusPoller(BaseService):
    """Queries the platform for a job's status until it is terminal."""

    def __init__(
        self,
        credentials: CredentialLifecycleManager | None = None,
        client: TikTokClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._client = client

    @property
    def credentials(self) -> CredentialLifecycleManager:
        return self._credentials or get_credential_manager()

    @property
    def client(self) -> TikTokClient:
        return self._client or get_tiktok_client()

    def poll_until_terminal(
        self,
        job_id: uuid.UUID,
        interval: float | None = None,
        max_attempts: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> PublishJob:
        """
        Poll until the job is COMPLETE or FAILED.

        Returns:
            The job in its terminal state (or unchanged if already terminal)

        Raises:
            NotFoundError: Unknown job
            PollingTimeoutError: Attempts exhausted (or stopped) first; the
                persisted job state is left as it was
            ReconnectRequiredError: Credential can no longer be refreshed
        """
        interval = settings.PUBLISHING_POLL_INTERVAL_SECONDS if interval is None else interval
        max_attempts = max_attempts or settings.PUBLISHING_POLL_MAX_ATTEMPTS
        stop_event = stop_event or threading.Event()
        logger = self.get_logger()

        job = self._get_job(job_id)
        if job.is_terminal:
            return job
        if not job.external_job_id:
            raise ConflictError(
                "Publish job has no platform id to poll",
                error_code="JOB_NOT_SUBMITTED",
                details={"job_id": str(job_id)},
            )

        for attempt in range(1, max_attempts + 1):
            if attempt > 1 and stop_event.wait(interval):
                break

            status = self._query(job)
            job = self._apply(job.pk, status)
            if job.is_terminal:
                logger.info(
                    "Publish job reached terminal state",
                    extra={
                        "event_type": "publish.terminal",
                        "job_id": str(job.pk),
                        "state": job.state,
                        "attempts": job.attempts,
                    },
                )
                return job

        logger.warning(
            "Publish job still pending after polling",
            extra={
                "event_type": "publish.poll_timeout",
                "job_id": str(job.pk),
                "state": job.state,
                "attempts": job.attempts,
            },
        )
        raise PollingTimeoutError(
            "Publishing is taking longer than expected. We will keep checking.",
            details={"job_id": str(job.pk), "attempts": job.attempts},
        )

    def abandon_job(self, job_id: uuid.UUID, reason: str) -> PublishJob:
        """Give up on a non-terminal job and mark it FAILED."""
        with self.atomic():
            job = PublishJob.objects.select_for_update().filter(pk=job_id).first()
            if job is None:
                raise NotFoundError(
                    "Publish job not found", details={"job_id": str(job_id)}
                )
            if job.is_terminal:
                return job
            job.fail(reason=reason)
            job.save()

        self.get_logger().warning(
            "Publish job abandoned",
            extra={"event_type": "publish.abandoned", "job_id": str(job_id)},
        )
        return job

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_job(self, job_id: uuid.UUID) -> PublishJob:
        job = PublishJob.objects.filter(pk=job_id).first()
        if job is None:
            raise NotFoundError(
                "Publish job not found", details={"job_id": str(job_id)}
            )
        return job

    def _query(self, job: PublishJob) -> PublishStatus | None:
        """
        One status query. Returns None when the query failed transiently.

        A token refresh that fails transiently, hits an open circuit, or
        loses the refresh lock also counts as an attempt.
        ReconnectRequiredError from the credential manager propagates.
        """
        try:
            token = self.credentials.get_valid_token(job.owner_id)
        except (TransientUpstreamError, CircuitOpenError, ConflictError) as e:
            self.get_logger().warning(
                "Could not obtain access token while polling",
                extra={
                    "event_type": "publish.poll_token_unavailable",
                    "job_id": str(job.pk),
                    "error_code": e.error_code,
                },
            )
            return None

        try:
            return self.client.fetch_publish_status(token.value, job.external_job_id)
        except InvalidGrantError:
            # Token looked fresh but was rejected; retry with a refreshed one
            self.credentials.invalidate(job.owner_id)
            self.get_logger().warning(
                "Access token rejected while polling",
                extra={"event_type": "publish.poll_token_rejected", "job_id": str(job.pk)},
            )
            return None
        except (TransientUpstreamError, CircuitOpenError):
            self.get_logger().warning(
                "Transient error while polling",
                extra={"event_type": "publish.poll_transient", "job_id": str(job.pk)},
            )
            return None

    def _apply(self, job_id: uuid.UUID, status: PublishStatus | None) -> PublishJob:
        """Record the query and apply any forward transition."""
        with self.atomic():
            job = PublishJob.objects.select_for_update().get(pk=job_id)
            job.attempts += 1
            job.last_polled_at = timezone.now()

            if status is not None and not job.is_terminal:
                platform_status = status.status
                if platform_status in PROCESSING_STATUSES:
                    if job.state == PublishJobState.SUBMITTED:
                        job.start_processing()
                elif platform_status == COMPLETE_STATUS:
                    if job.state == PublishJobState.SUBMITTED:
                        job.start_processing()
                    job.complete(post_id=status.post_id)
                elif platform_status == FAILED_STATUS:
                    job.fail(reason=_sanitize_fail_reason(status.fail_reason))
            job.save()
        return job


def _sanitize_fail_reason(fail_reason: str | None) -> str:
    """Platform fail reasons are short snake_case codes; keep only those."""
    if not fail_reason:
        return DEFAULT_FAIL_REASON
    reason = fail_reason.strip()
    if len(reason) > 100 or not reason.replace("_", "").isalnum():
        return DEFAULT_FAIL_REASON
    return reason
