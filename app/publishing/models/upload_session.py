"""
UploadSession and ChunkRecord models for resumable chunked uploads.

A session is created when its first chunk arrives and lives until it is
merged into an Artifact or reclaimed after inactivity. The set of received
indices is the set of distinct ChunkRecord.index values for the session.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from publishing.state_machines import UploadSessionStatus


class UploadSession(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks the chunks of one upload until they are merged.

    The session id is chosen by the client so that retries and parallel
    chunk uploads all land on the same session.

    Attributes:
        owner: User uploading the media
        total_chunks: Number of chunks the client announced
        status: Lifecycle status (MERGING is the single-flight merge flag)
        expires_at: Slides forward with every accepted chunk
        consumed_at: When the merge succeeded
    """

    # =========================================================================
    # Relationships
    # =========================================================================

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="upload_sessions",
        help_text="User who is uploading the media",
    )

    # =========================================================================
    # Progress
    # =========================================================================

    total_chunks = models.PositiveIntegerField(
        help_text="Number of chunks that make up the upload",
    )

    # =========================================================================
    # Status & Expiration
    # =========================================================================

    status = models.CharField(
        max_length=20,
        choices=UploadSessionStatus.choices,
        default=UploadSessionStatus.UPLOADING,
        db_index=True,
        help_text="Current session status",
    )
    expires_at = models.DateTimeField(
        help_text="Session is reclaimed if no chunk arrives before this time",
    )
    consumed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the chunks were merged into an artifact",
    )

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["status", "expires_at"],
                name="idx_pub_session_status_exp",
            ),
        ]

    def __str__(self) -> str:
        return f"UploadSession({self.id}, {self.status}, {self.total_chunks} chunks)"

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()

    @property
    def received_count(self) -> int:
        """Number of distinct chunk indices received so far."""
        return self.chunks.values("index").distinct().count()

    def received_indices(self) -> set[int]:
        return set(self.chunks.values_list("index", flat=True))

    def missing_indices(self) -> list[int]:
        return sorted(set(range(self.total_chunks)) - self.received_indices())


class ChunkRecord(BaseModel):
    """
    One accepted chunk of an upload session.

    Unique per (session, index): a re-sent chunk overwrites the existing
    record and its stored bytes.
    """

    session = models.ForeignKey(
        UploadSession,
        on_delete=models.CASCADE,
        related_name="chunks",
        help_text="Session this chunk belongs to",
    )
    index = models.PositiveIntegerField(
        help_text="Zero-based position of the chunk within the upload",
    )
    size_bytes = models.PositiveBigIntegerField(
        help_text="Size of the stored chunk in bytes",
    )
    storage_ref = models.CharField(
        max_length=500,
        help_text="Name of the chunk file in staging storage",
    )

    class Meta:
        ordering = ["session", "index"]
        constraints = [
            models.UniqueConstraint(
                fields=["session", "index"],
                name="uniq_chunk_session_index",
            ),
        ]

    def __str__(self) -> str:
        return f"ChunkRecord({self.session_id}#{self.index}, {self.size_bytes}B)"
