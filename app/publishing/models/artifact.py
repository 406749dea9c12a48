"""
Artifact model: the merged result of an upload session.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class Artifact(UUIDPrimaryKeyMixin, BaseModel):
    """
    Merged media file served from a public URL.

    Created once per session by the merge step, read when submitting to the
    platform, and removed by cleanup once every publish job using it has
    reached a terminal state.

    Fields:
        owner: User the media belongs to
        session: Upload session the artifact was merged from
        storage_ref: Name of the file in staging storage (never shown to users)
        public_url: HTTPS URL the platform pulls the media from
        size_bytes: Size of the merged file
        content_type: Sniffed MIME type
        deleted_at: When the staged file was removed
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="publish_artifacts",
        help_text="User the media belongs to",
    )
    session = models.OneToOneField(
        "publishing.UploadSession",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="artifact",
        help_text="Upload session this artifact was merged from",
    )

    storage_ref = models.CharField(
        max_length=500,
        help_text="Name of the merged file in staging storage",
    )
    public_url = models.URLField(
        max_length=1000,
        help_text="Public URL the platform fetches the media from",
    )
    size_bytes = models.PositiveBigIntegerField(
        help_text="Size of the merged file in bytes",
    )
    content_type = models.CharField(
        max_length=100,
        default="application/octet-stream",
        help_text="MIME type sniffed from the leading bytes",
    )
    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the staged file was cleaned up",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Artifact({self.id}, {self.size_bytes}B, {self.content_type})"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
