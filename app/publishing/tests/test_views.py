"""
Tests for publishing API views.
"""

import uuid

import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from publishing import views
from publishing.models import PublishJob
from publishing.state_machines import PublishJobState, TokenStatus
from publishing.tests.conftest import VIDEO_INIT, api_error, ok
from publishing.tests.factories import (
    ArtifactFactory,
    PlatformCredentialFactory,
    PublishJobFactory,
)

CHUNKS_URL = reverse("publishing:chunk-upload")
JOBS_URL = reverse("publishing:job-create")
STATUS_URL = reverse("publishing:credential-status")


def finalize_url(session_id):
    return reverse("publishing:session-finalize", kwargs={"session_id": session_id})


def job_url(job_id):
    return reverse("publishing:job-detail", kwargs={"job_id": job_id})


@pytest.fixture
def merge_delay(mocker):
    return mocker.patch.object(views.merge_upload_session, "delay")


@pytest.fixture
def poll_delay(mocker):
    return mocker.patch.object(views.poll_publish_job, "delay")


@pytest.fixture
def cleanup_delay(mocker):
    return mocker.patch.object(views.cleanup_publish_job, "delay")


@pytest.fixture
def send_chunk(api_client):
    def _send(session_id, index, total, data=b"chunk-bytes"):
        return api_client.post(
            CHUNKS_URL,
            {
                "session_id": str(session_id),
                "index": index,
                "total_chunks": total,
                "chunk": SimpleUploadedFile(f"{index}.part", data),
            },
            format="multipart",
        )

    return _send


@pytest.mark.django_db
class TestChunkUploadView:
    def test_accepts_chunk(self, send_chunk):
        session_id = uuid.uuid4()

        response = send_chunk(session_id, 0, 2)

        assert response.status_code == status.HTTP_200_OK
        assert response.data["accepted"] is True
        assert response.data["complete"] is False
        assert response.data["received_count"] == 1

    def test_last_chunk_queues_merge(
        self, send_chunk, merge_delay, django_capture_on_commit_callbacks
    ):
        session_id = uuid.uuid4()
        send_chunk(session_id, 1, 2)

        with django_capture_on_commit_callbacks(execute=True):
            response = send_chunk(session_id, 0, 2)

        assert response.data["complete"] is True
        merge_delay.assert_called_once_with(str(session_id))

    def test_auto_merge_disabled(
        self, send_chunk, merge_delay, settings, django_capture_on_commit_callbacks
    ):
        settings.PUBLISHING_AUTO_MERGE = False

        with django_capture_on_commit_callbacks(execute=True):
            send_chunk(uuid.uuid4(), 0, 1)

        merge_delay.assert_not_called()

    def test_index_out_of_range(self, send_chunk):
        response = send_chunk(uuid.uuid4(), 3, 3)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "index" in response.data

    def test_total_chunks_mismatch(self, send_chunk):
        session_id = uuid.uuid4()
        send_chunk(session_id, 0, 3)

        response = send_chunk(session_id, 1, 4)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "TOTAL_CHUNKS_MISMATCH"
        assert "details" not in response.data

    def test_foreign_session_hidden(self, send_chunk, other_user):
        session_id = uuid.uuid4()
        send_chunk(session_id, 0, 2)
        intruder = APIClient()
        intruder.force_authenticate(user=other_user)

        response = intruder.post(
            CHUNKS_URL,
            {
                "session_id": str(session_id),
                "index": 1,
                "total_chunks": 2,
                "chunk": SimpleUploadedFile("1.part", b"x"),
            },
            format="multipart",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "UNKNOWN_SESSION"

    def test_requires_authentication(self):
        response = APIClient().post(CHUNKS_URL, {}, format="multipart")

        assert response.status_code in (
            status.HTTP_401_UNAUTHORIZED,
            status.HTTP_403_FORBIDDEN,
        )


@pytest.mark.django_db
class TestSessionFinalizeView:
    def test_merges_complete_upload(self, api_client, send_chunk):
        session_id = uuid.uuid4()
        send_chunk(session_id, 0, 2, b"\xff\xd8\xff\xe0 head ")
        send_chunk(session_id, 1, 2, b"tail")

        response = api_client.post(finalize_url(session_id))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["content_type"] == "image/jpeg"
        assert response.data["artifact_url"].startswith("https://media.example.com/staging/")
        assert response.data["size_bytes"] == len(b"\xff\xd8\xff\xe0 head tail")

    def test_finalize_twice_returns_same_artifact(self, api_client, send_chunk):
        session_id = uuid.uuid4()
        send_chunk(session_id, 0, 1)

        first = api_client.post(finalize_url(session_id))
        second = api_client.post(finalize_url(session_id))

        assert first.data["artifact_id"] == second.data["artifact_id"]

    def test_incomplete_upload(self, api_client, send_chunk):
        session_id = uuid.uuid4()
        send_chunk(session_id, 0, 2)

        response = api_client.post(finalize_url(session_id))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "UPLOAD_INCOMPLETE"


@pytest.mark.django_db
class TestPublishJobCreateView:
    def test_submits_artifact(
        self,
        api_client,
        tiktok_client,
        tiktok_api,
        user,
        credential,
        poll_delay,
        django_capture_on_commit_callbacks,
    ):
        artifact = ArtifactFactory(owner=user)
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~9"}))

        with django_capture_on_commit_callbacks(execute=True):
            response = api_client.post(
                JOBS_URL,
                {"artifact_id": str(artifact.id), "media_type": "video", "caption": "hi"},
                format="json",
            )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["state"] == PublishJobState.SUBMITTED
        assert str(response.data["artifact_id"]) == str(artifact.id)
        sent = tiktok_api.last_json(VIDEO_INIT)
        assert sent["source_info"]["video_url"] == artifact.public_url
        poll_delay.assert_called_once_with(response.data["id"])
        assert "external_job_id" not in response.data

    def test_rejected_submission_reports_safe_error(
        self,
        api_client,
        tiktok_client,
        tiktok_api,
        credential,
        cleanup_delay,
        django_capture_on_commit_callbacks,
    ):
        tiktok_api.queue(
            VIDEO_INIT,
            api_error("url_ownership_unverified", message="secret.internal not verified"),
        )

        with django_capture_on_commit_callbacks(execute=True):
            response = api_client.post(
                JOBS_URL,
                {"artifact_url": "https://cdn.example.com/a.mp4", "media_type": "video"},
                format="json",
            )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["state"] == PublishJobState.FAILED
        assert "secret.internal" not in response.data["last_error"]
        cleanup_delay.assert_called_once()

    def test_reconnect_required(self, api_client, tiktok_client, tiktok_api, user):
        PlatformCredentialFactory(owner=user, refresh_expired=True)

        response = api_client.post(
            JOBS_URL,
            {"artifact_url": "https://cdn.example.com/a.mp4", "media_type": "video"},
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["error_code"] == "REFRESH_TOKEN_EXPIRED"
        assert not PublishJob.objects.exists()

    def test_needs_exactly_one_source(self, api_client):
        response = api_client.post(JOBS_URL, {"media_type": "video"}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_other_users_artifact_not_found(self, api_client, other_user):
        artifact = ArtifactFactory(owner=other_user)

        response = api_client.post(
            JOBS_URL,
            {"artifact_id": str(artifact.id), "media_type": "video"},
            format="json",
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_invalid_privacy_level(self, api_client):
        response = api_client.post(
            JOBS_URL,
            {
                "artifact_url": "https://cdn.example.com/a.mp4",
                "media_type": "video",
                "settings": {"privacy_level": "EVERYONE_EVER"},
            },
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.django_db
class TestPublishJobDetailView:
    def test_returns_own_job(self, api_client, user):
        job = PublishJobFactory(owner=user, state=PublishJobState.COMPLETE, post_id="7312")

        response = api_client.get(job_url(job.pk))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["state"] == PublishJobState.COMPLETE
        assert response.data["post_id"] == "7312"

    def test_other_users_job_not_found(self, api_client, other_user):
        job = PublishJobFactory(owner=other_user)

        response = api_client.get(job_url(job.pk))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data["error_code"] == "NOT_FOUND"


@pytest.mark.django_db
class TestCredentialStatusView:
    def test_connected(self, api_client, credential):
        response = api_client.get(STATUS_URL)

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == TokenStatus.VALID
        assert response.data["needs_reconnect"] is False
        assert "access_token" not in response.data

    def test_not_connected(self, api_client):
        response = api_client.get(STATUS_URL)

        assert response.data["status"] == TokenStatus.NOT_FOUND
        assert response.data["needs_reconnect"] is True
