"""
Cleanup coordinator: removes staged files once they are no longer needed.

Deletion is best-effort and continue-on-error. Every target ends up in
exactly one of deleted, not_found, or errors; a failure to clean up is
logged but never turns a finished publish into a failed one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.utils import timezone

from core.exceptions import ConflictError, NotFoundError
from core.services import BaseService

from publishing.exceptions import PartialCleanupError
from publishing.models import Artifact, ChunkRecord, PublishJob, UploadSession
from publishing.state_machines import PublishJobState, UploadSessionStatus
from publishing.storage import get_staging_storage

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from django.core.files.storage import Storage


@dataclass
class CleanupResult:
    """
    Outcome of one cleanup run.

    Attributes:
        deleted: Refs that were removed
        not_found: Refs that were already gone
        errors: Ref -> user-safe reason for refs that could not be removed
    """

    target_id: str
    deleted: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "deleted": len(self.deleted),
            "not_found": len(self.not_found),
            "errors": len(self.errors),
        }


class CleanupCoordinator(BaseService):
    """Deletes staged chunk and artifact files."""

    def __init__(self, storage: Storage | None = None) -> None:
        self.storage = storage or get_staging_storage()

    def cleanup(self, target_id: str, paths: Iterable[str]) -> CleanupResult:
        """Delete each ref independently and report what happened to it."""
        result = CleanupResult(target_id=str(target_id))
        logger = self.get_logger()

        for path in dict.fromkeys(p for p in paths if p):
            try:
                if not self.storage.exists(path):
                    result.not_found.append(path)
                    continue
                self.storage.delete(path)
            except Exception as e:
                # Includes SuspiciousFileOperation for refs outside the root
                result.errors[path] = getattr(e, "strerror", None) or e.__class__.__name__
                continue
            result.deleted.append(path)

        if result.errors:
            error = PartialCleanupError(
                "Some staged files could not be removed",
                details={"target_id": str(target_id), "failures": result.errors},
            )
            logger.warning(
                str(error),
                extra={
                    "event_type": "cleanup.partial",
                    "target_id": str(target_id),
                    "failures": error.details["failures"],
                },
            )
        else:
            logger.info(
                "Cleanup completed",
                extra={"event_type": "cleanup.completed", **result.to_dict()},
            )
        return result

    def cleanup_publish_job(self, job_id: uuid.UUID) -> CleanupResult:
        """
        Remove the staged artifact of a terminal job.

        The artifact is kept while another non-terminal job still publishes
        it.

        Raises:
            NotFoundError: Unknown job
            ConflictError: Job is not terminal yet
        """
        job = PublishJob.objects.select_related("artifact").filter(pk=job_id).first()
        if job is None:
            raise NotFoundError("Publish job not found", details={"job_id": str(job_id)})
        if not job.is_terminal:
            raise ConflictError(
                "Publish job is still in progress",
                error_code="JOB_NOT_TERMINAL",
                details={"job_id": str(job_id), "state": job.state},
            )

        artifact = job.artifact
        if artifact is None or artifact.is_deleted:
            return CleanupResult(target_id=str(job_id))

        still_needed = (
            PublishJob.objects.filter(artifact=artifact)
            .exclude(pk=job.pk)
            .exclude(state__in=PublishJobState.terminal_states())
            .exists()
        )
        if still_needed:
            self.get_logger().info(
                "Artifact still used by another job, skipping cleanup",
                extra={
                    "event_type": "cleanup.skipped",
                    "job_id": str(job_id),
                    "artifact_id": str(artifact.id),
                },
            )
            return CleanupResult(target_id=str(job_id))

        paths = [artifact.storage_ref]
        if artifact.session_id:
            paths.extend(
                ChunkRecord.objects.filter(session_id=artifact.session_id).values_list(
                    "storage_ref", flat=True
                )
            )

        result = self.cleanup(str(job_id), paths)
        if artifact.storage_ref not in result.errors:
            Artifact.objects.filter(pk=artifact.pk).update(
                deleted_at=timezone.now(), updated_at=timezone.now()
            )
            if artifact.session_id:
                ChunkRecord.objects.filter(session_id=artifact.session_id).exclude(
                    storage_ref__in=list(result.errors)
                ).delete()
        return result

    def cleanup_session(self, session_id: uuid.UUID) -> CleanupResult:
        """
        Remove the chunks of a session that will never be merged.

        Raises:
            NotFoundError: Unknown session
            ConflictError: Session is still uploading or merging
        """
        session = UploadSession.objects.filter(pk=session_id).first()
        if session is None:
            raise NotFoundError(
                "Upload session not found", details={"session_id": str(session_id)}
            )
        if session.status in (UploadSessionStatus.UPLOADING, UploadSessionStatus.MERGING):
            raise ConflictError(
                "Upload session is still active",
                error_code="SESSION_ACTIVE",
                details={"session_id": str(session_id), "status": session.status},
            )

        records = ChunkRecord.objects.filter(session=session)
        result = self.cleanup(str(session_id), records.values_list("storage_ref", flat=True))
        records.exclude(storage_ref__in=list(result.errors)).delete()
        return result
