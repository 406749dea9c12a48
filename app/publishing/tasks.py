"""
Celery tasks for the publishing pipeline.

This module provides async tasks for:
- Merging a complete upload session
- Polling a publish job until it is terminal
- Cleaning up staged files of a finished job
- Periodic reconciliation of jobs left pending by a poll timeout
- Periodic reclaiming of expired upload sessions

Usage:
    from publishing.tasks import poll_publish_job

    # Queue polling for a freshly submitted job
    poll_publish_job.delay(str(job.id))

Periodic tasks are registered with django-celery-beat by migration
0002_add_celery_beat_schedules.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from celery.signals import worker_shutting_down
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from core.exceptions import BaseApplicationError, NotFoundError

from publishing.exceptions import (
    MergeInProgressError,
    PollingTimeoutError,
    ReconnectRequiredError,
)
from publishing.models import PublishJob, UploadSession
from publishing.state_machines import PublishJobState, UploadSessionStatus

logger = logging.getLogger(__name__)

ABANDON_REASON = "Publishing did not finish in time. Please try again."

# Set when the worker begins a warm shutdown so pollers stop waiting
_shutdown = threading.Event()


@worker_shutting_down.connect
def _stop_pollers(**kwargs) -> None:
    _shutdown.set()


# =============================================================================
# Pipeline Tasks
# =============================================================================


@shared_task(acks_late=True)
def merge_upload_session(session_id: str) -> dict:
    """
    Merge a complete upload session into an artifact.

    Safe to enqueue more than once for the same session: the merge is
    single-flight and idempotent.
    """
    from publishing.services import MergeAssembler

    try:
        artifact = MergeAssembler().merge_session(UUID(str(session_id)))
    except MergeInProgressError:
        logger.info(
            "Merge already running, skipping",
            extra={"event_type": "merge.skipped", "session_id": str(session_id)},
        )
        return {"status": "in_progress", "session_id": str(session_id)}

    return {
        "status": "merged",
        "session_id": str(session_id),
        "artifact_id": str(artifact.id),
    }


@shared_task(acks_late=True)
def poll_publish_job(job_id: str) -> dict:
    """
    Poll a publish job until it is terminal, then queue its cleanup.

    A poll timeout leaves the job as it is; reconcile_stale_publish_jobs
    picks it up again.
    """
    from publishing.services import StatusPoller

    try:
        job = StatusPoller().poll_until_terminal(
            UUID(str(job_id)), stop_event=_shutdown
        )
    except PollingTimeoutError as e:
        logger.info(
            "Polling timed out, leaving job for reconciliation",
            extra={"event_type": "publish.poll_deferred", "job_id": str(job_id), **e.details},
        )
        return {"status": "pending", "job_id": str(job_id)}
    except ReconnectRequiredError as e:
        logger.warning(
            "Polling stopped, account must be reconnected",
            extra={
                "event_type": "publish.poll_reconnect_required",
                "job_id": str(job_id),
                "error_code": e.error_code,
            },
        )
        return {"status": "reconnect_required", "job_id": str(job_id)}
    except NotFoundError:
        logger.error(
            "PublishJob not found",
            extra={"event_type": "publish.job_missing", "job_id": str(job_id)},
        )
        return {"status": "not_found", "job_id": str(job_id)}

    cleanup_publish_job.delay(str(job.id))
    return {"status": job.state, "job_id": str(job.id), "post_id": job.post_id}


@shared_task(acks_late=True)
def cleanup_publish_job(job_id: str) -> dict:
    """Remove the staged files of a terminal publish job."""
    from publishing.services import CleanupCoordinator

    try:
        result = CleanupCoordinator().cleanup_publish_job(UUID(str(job_id)))
    except BaseApplicationError as e:
        logger.warning(
            "Cleanup refused",
            extra={
                "event_type": "cleanup.refused",
                "job_id": str(job_id),
                "error_code": e.error_code,
            },
        )
        return {"status": "skipped", "job_id": str(job_id), "error_code": e.error_code}

    return {"status": "ok" if result.ok else "partial", **result.to_dict()}


# =============================================================================
# Periodic Tasks
# =============================================================================


@shared_task
def reconcile_stale_publish_jobs() -> dict:
    """
    Resume polling of jobs whose poller gave up, and abandon very old ones.

    Runs every 5 minutes via celery-beat.
    """
    from publishing.services import StatusPoller

    now = timezone.now()
    stale_before = now - timedelta(minutes=settings.PUBLISHING_RECONCILE_AFTER_MINUTES)
    abandon_before = now - timedelta(hours=settings.PUBLISHING_ABANDON_AFTER_HOURS)

    pending = PublishJob.objects.exclude(
        state__in=PublishJobState.terminal_states()
    ).filter(external_job_id__isnull=False)

    poller = StatusPoller()
    abandoned = 0
    for job_id in pending.filter(created_at__lt=abandon_before).values_list(
        "id", flat=True
    ):
        poller.abandon_job(job_id, reason=ABANDON_REASON)
        cleanup_publish_job.delay(str(job_id))
        abandoned += 1

    requeued = 0
    stale = pending.filter(created_at__gte=abandon_before).filter(
        Q(last_polled_at__lt=stale_before)
        | Q(last_polled_at__isnull=True, created_at__lt=stale_before)
    )
    for job_id in stale.values_list("id", flat=True):
        poll_publish_job.delay(str(job_id))
        requeued += 1

    if abandoned or requeued:
        logger.info(
            "Reconciled stale publish jobs",
            extra={
                "event_type": "publish.reconciled",
                "abandoned": abandoned,
                "requeued": requeued,
            },
        )
    return {"abandoned": abandoned, "requeued": requeued}


@shared_task
def cleanup_expired_upload_sessions() -> dict:
    """
    Reclaim upload sessions that stopped receiving chunks.

    Also retries cleanup of closed sessions whose chunk files could not all
    be deleted on an earlier run. Runs hourly via celery-beat.
    """
    from publishing.services import ChunkStore

    store = ChunkStore()
    expired = store.expire_stale_sessions()

    leftover_ids = (
        UploadSession.objects.filter(
            status__in=[UploadSessionStatus.EXPIRED, UploadSessionStatus.FAILED],
            chunks__isnull=False,
        )
        .values_list("id", flat=True)
        .distinct()
    )
    retried = 0
    for session_id in list(leftover_ids):
        store.cleanup.cleanup_session(session_id)
        retried += 1

    return {"expired": expired, "retried": retried}
