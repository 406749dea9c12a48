"""
Publish submitter: hands an artifact URL to the platform.

Always records the outcome. A request the platform accepts becomes a
SUBMITTED job carrying the platform publish id; a request it rejects
becomes a FAILED job with a user-safe reason. Local validation errors and
missing credentials are raised before anything is recorded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

from django.conf import settings
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import BaseService

from publishing.adapters import PostSettings, TikTokClient, get_tiktok_client
from publishing.adapters.tiktok import MAX_CAPTION_LENGTH, PRIVACY_LEVELS
from publishing.exceptions import (
    InvalidGrantError,
    PlatformError,
    TransientUpstreamError,
)
from publishing.models import PublishJob
from publishing.services.credentials import (
    CredentialLifecycleManager,
    get_credential_manager,
)
from publishing.state_machines import MediaType, PublishJobState

if TYPE_CHECKING:
    from typing import Any

    from django.contrib.auth.models import AbstractBaseUser

    from publishing.models import Artifact


class PublishSubmitter(BaseService):
    """Submits pull-from-URL publish requests and records the resulting job."""

    def __init__(
        self,
        credentials: CredentialLifecycleManager | None = None,
        client: TikTokClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._client = client

    @property
    def credentials(self) -> CredentialLifecycleManager:
        return self._credentials or get_credential_manager()

    @property
    def client(self) -> TikTokClient:
        return self._client or get_tiktok_client()

    def submit_publish(
        self,
        owner: AbstractBaseUser,
        artifact_url: str,
        media_type: str,
        caption: str = "",
        post_settings: dict[str, Any] | None = None,
        artifact: Artifact | None = None,
    ) -> PublishJob:
        """
        Submit media at ``artifact_url`` for publishing.

        Returns:
            The new PublishJob, SUBMITTED on acceptance or FAILED on rejection

        Raises:
            ValidationError: Bad media type, non-https URL, caption too long,
                or invalid post settings (no job is created)
            ReconnectRequiredError: No usable credential (no job is created)
        """
        caption = caption or ""
        options = self._validate(artifact_url, media_type, caption, post_settings)
        token = self.credentials.get_valid_token(owner.pk)

        if not settings.TIKTOK_IS_PRODUCTION:
            # Unaudited apps may only post privately
            options.privacy_level = "SELF_ONLY"

        logger = self.get_logger()
        job_fields = {
            "owner": owner,
            "artifact": artifact,
            "source_url": artifact_url,
            "media_type": media_type,
            "caption": caption,
            "post_settings": options.to_dict(),
        }

        try:
            publish_id = self._init_with_retry(
                token.value, artifact_url, media_type, caption, options
            )
        except PlatformError as e:
            if isinstance(e, InvalidGrantError):
                # The cached token is no good even though it looked fresh
                self.credentials.invalidate(owner.pk)

            job = PublishJob.objects.create(
                state=PublishJobState.FAILED,
                last_error=e.message,
                terminal_at=timezone.now(),
                **job_fields,
            )
            logger.warning(
                "Publish request rejected",
                extra={
                    "event_type": "publish.rejected",
                    "job_id": str(job.id),
                    "owner_id": str(owner.pk),
                    "error_code": e.error_code,
                    "platform_code": e.platform_code,
                },
            )
            return job

        job = PublishJob.objects.create(
            state=PublishJobState.SUBMITTED,
            external_job_id=publish_id,
            **job_fields,
        )
        logger.info(
            "Publish request submitted",
            extra={
                "event_type": "publish.submitted",
                "job_id": str(job.id),
                "owner_id": str(owner.pk),
                "media_type": media_type,
            },
        )
        return job

    def _init_with_retry(
        self,
        access_token: str,
        artifact_url: str,
        media_type: str,
        caption: str,
        options: PostSettings,
    ) -> str:
        try:
            return self.client.init_publish(
                access_token, artifact_url, media_type, caption, options
            )
        except TransientUpstreamError:
            self.get_logger().warning(
                "Publish request failed transiently, retrying once",
                extra={"event_type": "publish.retry"},
            )
            return self.client.init_publish(
                access_token, artifact_url, media_type, caption, options
            )

    @staticmethod
    def _validate(
        artifact_url: str,
        media_type: str,
        caption: str,
        post_settings: dict[str, Any] | None,
    ) -> PostSettings:
        if media_type not in MediaType.values:
            raise ValidationError(
                "media_type must be 'video' or 'photo'",
                error_code="INVALID_MEDIA_TYPE",
            )

        parsed = urlparse(artifact_url or "")
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValidationError(
                "Media URL must be an https URL",
                error_code="INVALID_MEDIA_URL",
            )

        if len(caption) > MAX_CAPTION_LENGTH:
            raise ValidationError(
                f"Caption must be at most {MAX_CAPTION_LENGTH} characters",
                error_code="CAPTION_TOO_LONG",
            )

        options = PostSettings.from_dict(post_settings)
        if options.privacy_level not in PRIVACY_LEVELS:
            raise ValidationError(
                "Unknown privacy level",
                error_code="INVALID_PRIVACY_LEVEL",
            )
        return options
