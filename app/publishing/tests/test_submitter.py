"""
Tests for PublishSubmitter.
"""

import httpx
import pytest

from core.exceptions import ValidationError
from publishing.exceptions import ReconnectRequiredError
from publishing.models import PublishJob
from publishing.services import PublishSubmitter
from publishing.state_machines import MediaType, PublishJobState
from publishing.tests.conftest import (
    CONTENT_INIT,
    TOKEN,
    VIDEO_INIT,
    api_error,
    ok,
    token_grant,
)
from publishing.tests.factories import ArtifactFactory, PlatformCredentialFactory

ARTIFACT_URL = "https://media.example.com/staging/artifacts/clip.mp4"


@pytest.fixture
def submitter(tiktok_client):
    return PublishSubmitter()


@pytest.mark.django_db
class TestSubmitPublish:
    def test_accepted_request_creates_submitted_job(
        self, submitter, tiktok_api, user, credential
    ):
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~42"}))
        artifact = ArtifactFactory(owner=user, public_url=ARTIFACT_URL)

        job = submitter.submit_publish(
            user, ARTIFACT_URL, MediaType.VIDEO, "Sunset", artifact=artifact
        )

        assert job.state == PublishJobState.SUBMITTED
        assert job.external_job_id == "v_pub_url~42"
        assert job.artifact == artifact
        assert job.terminal_at is None
        request = tiktok_api.calls(VIDEO_INIT)[0]
        assert request.headers["Authorization"] == f"Bearer {credential.access_token}"

    def test_photo_goes_to_content_endpoint(self, submitter, tiktok_api, user, credential):
        tiktok_api.queue(CONTENT_INIT, ok({"publish_id": "p_pub_url~1"}))

        job = submitter.submit_publish(
            user, "https://media.example.com/a.jpg", MediaType.PHOTO, ""
        )

        assert job.state == PublishJobState.SUBMITTED
        assert job.media_type == MediaType.PHOTO

    def test_rejected_request_creates_failed_job(
        self, submitter, tiktok_api, user, credential
    ):
        tiktok_api.queue(
            VIDEO_INIT,
            api_error("url_ownership_unverified", message="domain internal.example not verified"),
        )

        job = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert job.state == PublishJobState.FAILED
        assert job.terminal_at is not None
        assert job.external_job_id is None
        assert job.last_error == "The media URL domain is not verified with the platform."
        assert "internal.example" not in job.last_error

    def test_rejection_logged_as_submission_failure(
        self, submitter, tiktok_api, user, credential, mocker
    ):
        tiktok_api.queue(VIDEO_INIT, api_error("invalid_param"))
        logger = mocker.patch.object(PublishSubmitter, "get_logger").return_value

        job = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert job.state == PublishJobState.FAILED
        extra = logger.warning.call_args.kwargs["extra"]
        assert extra["event_type"] == "publish.rejected"
        assert extra["error_code"] == "UPSTREAM_SUBMISSION_FAILED"
        assert extra["platform_code"] == "invalid_param"

    def test_transient_error_retried_once(self, submitter, tiktok_api, user, credential):
        tiktok_api.queue(
            VIDEO_INIT,
            httpx.Response(503, text="busy"),
            ok({"publish_id": "v_pub_url~7"}),
        )

        job = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert job.state == PublishJobState.SUBMITTED
        assert tiktok_api.count(VIDEO_INIT) == 2

    def test_still_transient_after_retry_fails_job(
        self, submitter, tiktok_api, user, credential
    ):
        tiktok_api.queue(VIDEO_INIT, httpx.Response(503, text="busy"))

        job = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert job.state == PublishJobState.FAILED
        assert tiktok_api.count(VIDEO_INIT) == 2

    def test_resubmitting_creates_independent_job(
        self, submitter, tiktok_api, user, credential
    ):
        tiktok_api.queue(
            VIDEO_INIT, api_error("invalid_param"), ok({"publish_id": "v_pub_url~2"})
        )

        first = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")
        second = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert first.pk != second.pk
        assert first.state == PublishJobState.FAILED
        assert second.state == PublishJobState.SUBMITTED

    def test_privacy_forced_private_outside_production(
        self, submitter, tiktok_api, user, credential, settings
    ):
        settings.TIKTOK_IS_PRODUCTION = False
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~1"}))

        job = submitter.submit_publish(
            user,
            ARTIFACT_URL,
            MediaType.VIDEO,
            "",
            post_settings={"privacy_level": "PUBLIC_TO_EVERYONE"},
        )

        assert tiktok_api.last_json(VIDEO_INIT)["post_info"]["privacy_level"] == "SELF_ONLY"
        assert job.post_settings["privacy_level"] == "SELF_ONLY"

    def test_refreshes_expiring_token_first(self, submitter, tiktok_api, user):
        PlatformCredentialFactory(owner=user, expiring=True)
        tiktok_api.queue(TOKEN, token_grant(access_token="act.refreshed"))
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~1"}))

        submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        request = tiktok_api.calls(VIDEO_INIT)[0]
        assert request.headers["Authorization"] == "Bearer act.refreshed"


@pytest.mark.django_db
class TestSubmitPublishPreconditions:
    @pytest.mark.parametrize(
        "url,media_type,caption,code",
        [
            (ARTIFACT_URL, "audio", "", "INVALID_MEDIA_TYPE"),
            ("http://media.example.com/clip.mp4", MediaType.VIDEO, "", "INVALID_MEDIA_URL"),
            ("ftp://media.example.com/clip.mp4", MediaType.VIDEO, "", "INVALID_MEDIA_URL"),
            (ARTIFACT_URL, MediaType.VIDEO, "x" * 2201, "CAPTION_TOO_LONG"),
        ],
    )
    def test_invalid_request_creates_no_job(
        self, submitter, tiktok_api, user, credential, url, media_type, caption, code
    ):
        with pytest.raises(ValidationError) as exc_info:
            submitter.submit_publish(user, url, media_type, caption)

        assert exc_info.value.error_code == code
        assert not PublishJob.objects.exists()
        assert tiktok_api.requests == []

    def test_caption_at_limit_accepted(self, submitter, tiktok_api, user, credential):
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~1"}))

        job = submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "x" * 2200)

        assert job.state == PublishJobState.SUBMITTED

    def test_expired_refresh_token_blocks_submission(self, submitter, tiktok_api, user):
        PlatformCredentialFactory(owner=user, refresh_expired=True)

        with pytest.raises(ReconnectRequiredError):
            submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert not PublishJob.objects.exists()
        assert tiktok_api.requests == []

    def test_missing_credential_blocks_submission(self, submitter, tiktok_api, user):
        with pytest.raises(ReconnectRequiredError):
            submitter.submit_publish(user, ARTIFACT_URL, MediaType.VIDEO, "")

        assert tiktok_api.requests == []
