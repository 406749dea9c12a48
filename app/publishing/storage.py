"""
Staging storage for chunks and merged artifacts.

Everything the pipeline writes lives under PUBLISHING_STAGING_ROOT. The
merged artifacts must be reachable by the platform over HTTPS, so the
storage's base URL is PUBLISHING_PUBLIC_BASE_URL (served by a CDN or
reverse proxy in front of the staging root).

Layout:
    chunks/<session_id>/<index>.<token>.part
    artifacts/<session_id><extension>
"""

from __future__ import annotations

import uuid

from django.conf import settings
from django.core.files.storage import FileSystemStorage, Storage


class StagingStorage(FileSystemStorage):
    """FileSystemStorage rooted at the staging directory."""

    def __init__(self, **kwargs):
        kwargs.setdefault("location", settings.PUBLISHING_STAGING_ROOT)
        kwargs.setdefault("base_url", settings.PUBLISHING_PUBLIC_BASE_URL)
        super().__init__(**kwargs)


def get_staging_storage() -> Storage:
    """Return the storage used for chunks and artifacts."""
    return StagingStorage()


def chunk_name(session_id: uuid.UUID | str, index: int) -> str:
    """
    Storage name for a freshly received chunk.

    Each write gets a unique name so a retried chunk never races with the
    write it replaces; the superseded file is deleted afterwards.
    """
    return f"chunks/{session_id}/{index:06d}.{uuid.uuid4().hex[:12]}.part"


def artifact_name(session_id: uuid.UUID | str, extension: str = "") -> str:
    return f"artifacts/{session_id}{extension}"
