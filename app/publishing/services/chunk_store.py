"""
Chunk store: accepts the chunks of a resumable upload.

Chunks may arrive out of order, in parallel, and more than once. Each
accepted chunk is written to staging storage under a unique name, then
recorded against its (session, index) slot while holding a row lock on the
session, so the completion check always sees every committed write.

Usage:
    from publishing.services import ChunkStore

    receipt = ChunkStore().receive_chunk(
        session_id=session_id,
        index=3,
        total_chunks=10,
        owner=request.user,
        data=request.FILES["chunk"].read(),
    )
    if receipt.complete:
        merge_upload_session.delay(str(session_id))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.files.base import ContentFile
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import BaseService

from publishing.exceptions import SessionExpiredError
from publishing.models import ChunkRecord, UploadSession
from publishing.services.cleanup import CleanupCoordinator
from publishing.state_machines import UploadSessionStatus
from publishing.storage import chunk_name, get_staging_storage

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from django.contrib.auth.models import AbstractBaseUser
    from django.core.files.storage import Storage


@dataclass(frozen=True)
class ChunkReceipt:
    """
    Outcome of receiving one chunk.

    Attributes:
        accepted: The chunk was stored and recorded
        complete: Every index 0..total_chunks-1 has been received
        received_count: Distinct indices received so far
        total_chunks: Chunks the upload consists of
    """

    session_id: uuid.UUID
    index: int
    accepted: bool
    complete: bool
    received_count: int
    total_chunks: int


class ChunkStore(BaseService):
    """
    Persists chunks and tracks which indices a session has received.

    Configuration defaults come from settings and can be overridden per
    instance (tests use a temporary storage).
    """

    def __init__(
        self,
        storage: Storage | None = None,
        session_ttl: timedelta | None = None,
        max_chunk_bytes: int | None = None,
        max_total_chunks: int | None = None,
        merge_stale_after: timedelta | None = None,
    ) -> None:
        self.storage = storage or get_staging_storage()
        self.session_ttl = session_ttl or timedelta(
            hours=settings.PUBLISHING_SESSION_TTL_HOURS
        )
        self.max_chunk_bytes = max_chunk_bytes or settings.PUBLISHING_MAX_CHUNK_BYTES
        self.max_total_chunks = (
            max_total_chunks or settings.PUBLISHING_MAX_TOTAL_CHUNKS
        )
        self.merge_stale_after = merge_stale_after or timedelta(
            minutes=settings.PUBLISHING_MERGE_STALE_MINUTES
        )
        self.cleanup = CleanupCoordinator(storage=self.storage)

    def receive_chunk(
        self,
        session_id: uuid.UUID,
        index: int,
        total_chunks: int,
        owner: AbstractBaseUser,
        data: bytes,
    ) -> ChunkReceipt:
        """
        Store one chunk and report whether the upload is complete.

        Re-sending an index replaces the earlier bytes; the session never
        holds two records for the same index.

        Raises:
            ValidationError: Bad index/total/payload, foreign session,
                total_chunks mismatch, or session no longer accepting chunks
            SessionExpiredError: Session expired; its chunks were deleted
        """
        self._validate(index, total_chunks, data)
        logger = self.get_logger()

        # Write outside the row lock; only the bookkeeping is serialized
        name = self.storage.save(chunk_name(session_id, index), ContentFile(data))
        superseded: str | None = None
        expired = False

        try:
            with transaction.atomic():
                session = self._lock_session(session_id, total_chunks, owner)
                now = timezone.now()

                if session.status == UploadSessionStatus.EXPIRED or (
                    session.status == UploadSessionStatus.UPLOADING
                    and session.expires_at <= now
                ):
                    expired = True
                    self._mark_expired(session)
                elif session.status != UploadSessionStatus.UPLOADING:
                    raise ValidationError(
                        "Upload session is no longer accepting chunks",
                        error_code="SESSION_CLOSED",
                        details={
                            "session_id": str(session_id),
                            "status": session.status,
                        },
                    )
                else:
                    superseded = self._record_chunk(session, index, len(data), name)
                    session.expires_at = now + self.session_ttl
                    session.save(update_fields=["expires_at", "updated_at"])
                    received = session.received_count
        except Exception:
            self._delete_quietly([name])
            raise

        if expired:
            self._delete_quietly([name])
            result = self.cleanup.cleanup_session(session_id)
            logger.info(
                "Rejected chunk for expired session",
                extra={
                    "event_type": "upload.session_expired",
                    "session_id": str(session_id),
                    "deleted_chunks": len(result.deleted),
                },
            )
            raise SessionExpiredError(
                "Upload session has expired. Please start the upload again.",
                details={"session_id": str(session_id)},
            )

        if superseded:
            self._delete_quietly([superseded])

        complete = received == total_chunks
        logger.debug(
            "Chunk accepted",
            extra={
                "event_type": "upload.chunk_accepted",
                "session_id": str(session_id),
                "index": index,
                "size_bytes": len(data),
                "received_count": received,
                "total_chunks": total_chunks,
            },
        )
        return ChunkReceipt(
            session_id=session.id,
            index=index,
            accepted=True,
            complete=complete,
            received_count=received,
            total_chunks=total_chunks,
        )

    def expire_stale_sessions(self, now: datetime | None = None) -> int:
        """
        Reclaim every session whose expiry has passed.

        Covers UPLOADING sessions and MERGING sessions whose merge flag has
        gone stale. Chunk files are removed through the cleanup coordinator;
        records of files that could not be deleted are kept for a later run.

        Returns:
            Number of sessions marked EXPIRED
        """
        now = now or timezone.now()
        reclaimable = Q(status=UploadSessionStatus.UPLOADING) | Q(
            status=UploadSessionStatus.MERGING,
            updated_at__lt=now - self.merge_stale_after,
        )
        stale_ids = list(
            UploadSession.objects.filter(reclaimable, expires_at__lte=now).values_list(
                "id", flat=True
            )
        )

        expired = 0
        failed_refs = 0
        for session_id in stale_ids:
            with transaction.atomic():
                session = (
                    UploadSession.objects.select_for_update()
                    .filter(reclaimable, pk=session_id)
                    .first()
                )
                # A chunk may have slid the expiry forward since the scan
                if session is None or session.expires_at > now:
                    continue
                self._mark_expired(session)
            result = self.cleanup.cleanup_session(session_id)
            failed_refs += len(result.errors)
            expired += 1

        if expired:
            self.get_logger().info(
                "Expired stale upload sessions",
                extra={
                    "event_type": "upload.sessions_expired",
                    "count": expired,
                    "failed_refs": failed_refs,
                },
            )
        return expired

    # =========================================================================
    # Helpers
    # =========================================================================

    def _validate(self, index: int, total_chunks: int, data: bytes) -> None:
        if total_chunks < 1 or total_chunks > self.max_total_chunks:
            raise ValidationError(
                f"total_chunks must be between 1 and {self.max_total_chunks}",
                error_code="INVALID_TOTAL_CHUNKS",
            )
        if index < 0 or index >= total_chunks:
            raise ValidationError(
                f"Chunk index must be between 0 and {total_chunks - 1}",
                error_code="INVALID_CHUNK_INDEX",
            )
        if not data:
            raise ValidationError("Chunk is empty", error_code="EMPTY_CHUNK")
        if len(data) > self.max_chunk_bytes:
            raise ValidationError(
                f"Chunk exceeds the maximum size of {self.max_chunk_bytes} bytes",
                error_code="CHUNK_TOO_LARGE",
            )

    def _lock_session(
        self,
        session_id: uuid.UUID,
        total_chunks: int,
        owner: AbstractBaseUser,
    ) -> UploadSession:
        """Fetch (or create) the session with a row lock held."""
        session = (
            UploadSession.objects.select_for_update().filter(pk=session_id).first()
        )
        if session is None:
            try:
                with transaction.atomic():
                    session = UploadSession.objects.create(
                        id=session_id,
                        owner=owner,
                        total_chunks=total_chunks,
                        expires_at=timezone.now() + self.session_ttl,
                    )
            except IntegrityError:
                # Another request created it first
                session = UploadSession.objects.select_for_update().get(pk=session_id)

        if session.owner_id != owner.pk:
            raise ValidationError(
                "Unknown upload session",
                error_code="UNKNOWN_SESSION",
                details={"session_id": str(session_id)},
            )
        if session.total_chunks != total_chunks:
            raise ValidationError(
                "total_chunks does not match the upload session",
                error_code="TOTAL_CHUNKS_MISMATCH",
                details={
                    "session_id": str(session_id),
                    "expected": session.total_chunks,
                    "received": total_chunks,
                },
            )
        return session

    def _record_chunk(
        self,
        session: UploadSession,
        index: int,
        size_bytes: int,
        name: str,
    ) -> str | None:
        """Upsert the (session, index) record. Returns the replaced storage ref."""
        existing = ChunkRecord.objects.filter(session=session, index=index).first()
        if existing is None:
            ChunkRecord.objects.create(
                session=session,
                index=index,
                size_bytes=size_bytes,
                storage_ref=name,
            )
            return None

        previous = existing.storage_ref
        existing.size_bytes = size_bytes
        existing.storage_ref = name
        existing.save(update_fields=["size_bytes", "storage_ref", "updated_at"])
        return previous if previous != name else None

    def _mark_expired(self, session: UploadSession) -> None:
        if session.status != UploadSessionStatus.EXPIRED:
            session.status = UploadSessionStatus.EXPIRED
            session.save(update_fields=["status", "updated_at"])

    def _delete_quietly(self, names: list[str]) -> None:
        for name in names:
            try:
                self.storage.delete(name)
            except Exception:
                self.get_logger().warning(
                    "Could not delete staged chunk",
                    extra={"event_type": "upload.chunk_delete_failed", "storage_ref": name},
                    exc_info=True,
                )
