"""
Merge assembler: concatenates a complete upload into one artifact.

Single-flight per session. The caller that moves the session row from
UPLOADING to MERGING with a conditional UPDATE owns the merge; everyone
else either gets the existing artifact (already CONSUMED) or
MergeInProgressError. A flag left behind by a worker that died mid-merge
is reclaimed once it is older than PUBLISHING_MERGE_STALE_MINUTES.

A chunk file missing from storage is unrecoverable: the session is marked
FAILED and its remaining chunks go through the cleanup coordinator. Any
other failure releases the flag so the merge can be retried.

Chunks are streamed in ascending index order through a temporary file, so
memory use does not grow with the upload size.
"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.files import File
from django.db.models import Q
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import BaseService

from publishing.exceptions import MergeInProgressError, MergeIntegrityError
from publishing.models import Artifact, ChunkRecord, UploadSession
from publishing.services.cleanup import CleanupCoordinator
from publishing.state_machines import UploadSessionStatus
from publishing.storage import artifact_name, get_staging_storage

if TYPE_CHECKING:
    import uuid

    from django.contrib.auth.models import AbstractBaseUser
    from django.core.files.storage import Storage

COPY_BUFFER_SIZE = 1024 * 1024
SNIFF_BYTES = 32

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def sniff_content_type(head: bytes) -> tuple[str, str]:
    """
    Guess the MIME type and file extension from leading bytes.

    Only recognizes the containers the platform accepts; anything else is
    application/octet-stream with no extension.
    """
    if len(head) >= 12 and head[4:8] == b"ftyp":
        if head[8:10] == b"qt":
            return "video/quicktime", ".mov"
        return "video/mp4", ".mp4"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg", ".jpg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png", ".png"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp", ".webp"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm", ".webm"
    return DEFAULT_CONTENT_TYPE, ""


@dataclass(frozen=True)
class FinalizeResult:
    artifact_id: uuid.UUID
    artifact_url: str
    size_bytes: int
    content_type: str


class MergeAssembler(BaseService):
    """Turns a complete UploadSession into an Artifact exactly once."""

    def __init__(
        self,
        storage: Storage | None = None,
        merge_stale_after: timedelta | None = None,
    ) -> None:
        self.storage = storage or get_staging_storage()
        self.merge_stale_after = merge_stale_after or timedelta(
            minutes=settings.PUBLISHING_MERGE_STALE_MINUTES
        )

    def merge_session(self, session_id: uuid.UUID) -> Artifact:
        """
        Merge the chunks of a complete session into an artifact.

        Idempotent: a session that was already merged returns its artifact
        without touching chunk storage.

        Raises:
            ValidationError: Unknown or incomplete session
            MergeInProgressError: Another caller is merging this session
            MergeIntegrityError: Merged size differs from the recorded sizes,
                or a chunk file is missing (the session is then FAILED)
        """
        logger = self.get_logger()
        session = UploadSession.objects.filter(pk=session_id).first()
        if session is None:
            raise ValidationError(
                "Unknown upload session",
                error_code="UNKNOWN_SESSION",
                details={"session_id": str(session_id)},
            )

        if session.status == UploadSessionStatus.CONSUMED:
            return self._existing_artifact(session)
        if session.status not in (
            UploadSessionStatus.UPLOADING,
            UploadSessionStatus.MERGING,
        ):
            raise ValidationError(
                "Upload session can no longer be merged",
                error_code="SESSION_CLOSED",
                details={"session_id": str(session_id), "status": session.status},
            )
        if session.received_count != session.total_chunks:
            raise self._incomplete_error(session)

        if not self._claim(session_id):
            # Lost the race; the winner either finished or is still going
            session = UploadSession.objects.get(pk=session_id)
            if session.status == UploadSessionStatus.CONSUMED:
                return self._existing_artifact(session)
            raise MergeInProgressError(
                "Upload is already being merged",
                details={"session_id": str(session_id)},
            )

        if session.status == UploadSessionStatus.MERGING:
            logger.warning(
                "Reclaimed stale merge flag",
                extra={
                    "event_type": "merge.reclaimed",
                    "session_id": str(session_id),
                    "flagged_at": session.updated_at.isoformat(),
                },
            )
        logger.info(
            "Merge started",
            extra={"event_type": "merge.started", "session_id": str(session_id)},
        )

        try:
            records = list(
                ChunkRecord.objects.filter(session_id=session_id).order_by("index")
            )
            if [r.index for r in records] != list(range(session.total_chunks)):
                raise self._incomplete_error(session)

            artifact = self._assemble(session, records)
        except FileNotFoundError as e:
            # A staged chunk is gone; no retry can rebuild this upload
            self._fail(session_id)
            raise MergeIntegrityError(
                "Part of the upload is missing. Please start the upload again.",
                error_code="CHUNK_MISSING",
                details={"session_id": str(session_id)},
            ) from e
        except Exception:
            self._release(session_id)
            raise

        self._discard_chunks(session_id, records)
        logger.info(
            "Merge completed",
            extra={
                "event_type": "merge.completed",
                "session_id": str(session_id),
                "artifact_id": str(artifact.id),
                "size_bytes": artifact.size_bytes,
                "content_type": artifact.content_type,
            },
        )
        return artifact

    def finalize_session(
        self, session_id: uuid.UUID, owner: AbstractBaseUser
    ) -> FinalizeResult:
        """
        Explicit finalize entry point for the owner of a session.

        Raises:
            ValidationError: Unknown session (or one owned by someone else)
            plus everything merge_session raises
        """
        if not UploadSession.objects.filter(pk=session_id, owner=owner).exists():
            raise ValidationError(
                "Unknown upload session",
                error_code="UNKNOWN_SESSION",
                details={"session_id": str(session_id)},
            )

        artifact = self.merge_session(session_id)
        return FinalizeResult(
            artifact_id=artifact.id,
            artifact_url=artifact.public_url,
            size_bytes=artifact.size_bytes,
            content_type=artifact.content_type,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _claim(self, session_id: uuid.UUID) -> bool:
        """
        Take the merge flag with one conditional UPDATE.

        A MERGING row whose flag was set more than ``merge_stale_after`` ago
        is claimable again: its merger died before releasing it.
        """
        now = timezone.now()
        claimed = (
            UploadSession.objects.filter(pk=session_id)
            .filter(
                Q(status=UploadSessionStatus.UPLOADING)
                | Q(
                    status=UploadSessionStatus.MERGING,
                    updated_at__lt=now - self.merge_stale_after,
                )
            )
            .update(status=UploadSessionStatus.MERGING, updated_at=now)
        )
        return claimed == 1

    def _release(self, session_id: uuid.UUID) -> None:
        UploadSession.objects.filter(
            pk=session_id, status=UploadSessionStatus.MERGING
        ).update(status=UploadSessionStatus.UPLOADING, updated_at=timezone.now())

    def _fail(self, session_id: uuid.UUID) -> None:
        """Mark the session FAILED and hand its chunks to the cleanup coordinator."""
        failed = UploadSession.objects.filter(
            pk=session_id, status=UploadSessionStatus.MERGING
        ).update(status=UploadSessionStatus.FAILED, updated_at=timezone.now())
        if failed:
            CleanupCoordinator(storage=self.storage).cleanup_session(session_id)

    def _assemble(
        self, session: UploadSession, records: list[ChunkRecord]
    ) -> Artifact:
        expected_size = sum(r.size_bytes for r in records)
        head = b""

        with tempfile.TemporaryFile() as merged:
            for record in records:
                with self.storage.open(record.storage_ref, "rb") as chunk:
                    if not head:
                        head = chunk.read(SNIFF_BYTES)
                        merged.write(head)
                    shutil.copyfileobj(chunk, merged, COPY_BUFFER_SIZE)

            streamed = merged.tell()
            if streamed != expected_size:
                raise self._integrity_error(session, expected_size, streamed)

            content_type, extension = sniff_content_type(head)
            merged.seek(0)
            target = artifact_name(session.id, extension)
            name = self.storage.save(target, File(merged, name=target))

        stored = self.storage.size(name)
        if stored != expected_size:
            self.storage.delete(name)
            raise self._integrity_error(session, expected_size, stored)

        try:
            with self.atomic():
                artifact = Artifact.objects.create(
                    owner_id=session.owner_id,
                    session=session,
                    storage_ref=name,
                    public_url=self.storage.url(name),
                    size_bytes=stored,
                    content_type=content_type,
                )
                UploadSession.objects.filter(pk=session.id).update(
                    status=UploadSessionStatus.CONSUMED,
                    consumed_at=timezone.now(),
                    updated_at=timezone.now(),
                )
        except Exception:
            self.storage.delete(name)
            raise
        return artifact

    def _discard_chunks(
        self, session_id: uuid.UUID, records: list[ChunkRecord]
    ) -> None:
        """Best-effort removal of merged chunks; failures are only logged."""
        logger = self.get_logger()
        for record in records:
            try:
                self.storage.delete(record.storage_ref)
            except Exception:
                logger.warning(
                    "Could not delete merged chunk",
                    extra={
                        "event_type": "merge.chunk_delete_failed",
                        "session_id": str(session_id),
                        "storage_ref": record.storage_ref,
                    },
                    exc_info=True,
                )
        try:
            ChunkRecord.objects.filter(session_id=session_id).delete()
        except Exception:
            logger.warning(
                "Could not delete merged chunk records",
                extra={
                    "event_type": "merge.chunk_records_delete_failed",
                    "session_id": str(session_id),
                },
                exc_info=True,
            )

    def _existing_artifact(self, session: UploadSession) -> Artifact:
        artifact = Artifact.objects.filter(session=session).first()
        if artifact is None:
            raise ValidationError(
                "Upload session was merged but its artifact is gone",
                error_code="ARTIFACT_MISSING",
                details={"session_id": str(session.id)},
            )
        return artifact

    @staticmethod
    def _incomplete_error(session: UploadSession) -> ValidationError:
        return ValidationError(
            "Upload is not complete",
            error_code="UPLOAD_INCOMPLETE",
            details={
                "session_id": str(session.id),
                "missing": session.missing_indices()[:50],
            },
        )

    def _integrity_error(
        self, session: UploadSession, expected: int, actual: int
    ) -> MergeIntegrityError:
        self.get_logger().error(
            "Merged size mismatch",
            extra={
                "event_type": "merge.integrity_failed",
                "session_id": str(session.id),
                "expected_bytes": expected,
                "actual_bytes": actual,
            },
        )
        return MergeIntegrityError(
            "Merged upload is corrupt. Please retry the upload.",
            details={
                "session_id": str(session.id),
                "expected_bytes": expected,
                "actual_bytes": actual,
            },
        )
