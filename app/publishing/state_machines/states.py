"""
State enums for publishing models.

These are Django TextChoices for database storage and admin integration.

State Machines Overview:

UploadSession:
    uploading → merging → consumed
    merging → uploading (merge failed, may be retried)
    uploading → expired
    uploading/merging → failed

PublishJob (django-fsm, forward only):
    submitted → processing → complete
    submitted/processing → failed
"""

from django.db import models


class UploadSessionStatus(models.TextChoices):
    """
    Status of a chunked upload session.

    MERGING doubles as the per-session merge flag: only the caller whose
    conditional update moves the row from UPLOADING to MERGING may merge.
    """

    UPLOADING = "uploading", "Uploading"
    MERGING = "merging", "Merging"
    CONSUMED = "consumed", "Consumed"
    EXPIRED = "expired", "Expired"
    FAILED = "failed", "Failed"


class PublishJobState(models.TextChoices):
    """
    States for the PublishJob lifecycle.

    Terminal states: COMPLETE, FAILED

    State Flow:
        SUBMITTED → PROCESSING → COMPLETE
        SUBMITTED → PROCESSING → FAILED
        SUBMITTED → FAILED (rejected at submission, or abandoned)
    """

    SUBMITTED = "submitted", "Submitted"
    PROCESSING = "processing", "Processing"
    COMPLETE = "complete", "Complete"
    FAILED = "failed", "Failed"

    @classmethod
    def terminal_states(cls) -> list[str]:
        return [cls.COMPLETE, cls.FAILED]


class Platform(models.TextChoices):
    """External platforms a credential can belong to."""

    TIKTOK = "tiktok", "TikTok"


class MediaType(models.TextChoices):
    """Kinds of media the platform accepts from a URL."""

    VIDEO = "video", "Video"
    PHOTO = "photo", "Photo"


class TokenStatus(models.TextChoices):
    """Health of a stored platform credential, as reported to the user."""

    VALID = "valid", "Valid"
    EXPIRING = "expiring", "Expiring soon"
    EXPIRED = "expired", "Access token expired"
    REFRESH_EXPIRED = "refresh_expired", "Reconnect required"
    NOT_FOUND = "not_found", "Not connected"
