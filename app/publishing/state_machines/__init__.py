"""
State enums for publishing models.
"""

from publishing.state_machines.states import (
    MediaType,
    Platform,
    PublishJobState,
    TokenStatus,
    UploadSessionStatus,
)

__all__ = [
    "MediaType",
    "Platform",
    "PublishJobState",
    "TokenStatus",
    "UploadSessionStatus",
]
