"""
Publishing models package.

Exports:
    UploadSession: Groups the chunks of one resumable upload
    ChunkRecord: One accepted chunk of a session
    Artifact: Merged, URL-retrievable result of a session
    PlatformCredential: Per-user OAuth tokens for an external platform
    PublishJob: One submission to the platform and its lifecycle
"""

from publishing.models.artifact import Artifact
from publishing.models.credential import PlatformCredential
from publishing.models.publish_job import PublishJob
from publishing.models.upload_session import ChunkRecord, UploadSession

__all__ = [
    "Artifact",
    "ChunkRecord",
    "PlatformCredential",
    "PublishJob",
    "UploadSession",
]
