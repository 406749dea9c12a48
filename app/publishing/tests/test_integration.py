"""
End-to-end publishing journeys through the API.

Celery runs eagerly, so chunk completion, polling and cleanup all happen
inside the request that triggers them once on_commit callbacks fire. Only
the platform API is faked.
"""

import uuid

import pytest
from django.core.files.uploadedfile import SimpleUploadedFile
from django.urls import reverse
from rest_framework import status

from publishing.models import Artifact, PublishJob, UploadSession
from publishing.state_machines import PublishJobState, UploadSessionStatus
from publishing.tests.conftest import STATUS, TOKEN, VIDEO_INIT, ok, token_grant
from publishing.tests.factories import PlatformCredentialFactory

MP4 = b"\x00\x00\x00\x18ftypisom\x00\x00\x02\x00" + b"frame" * 200


def split(data, parts):
    size = -(-len(data) // parts)
    return [data[i : i + size] for i in range(0, len(data), size)]


@pytest.fixture
def upload(api_client, django_capture_on_commit_callbacks):
    """Send every chunk of ``data`` in reverse order."""

    def _upload(data, parts=4):
        session_id = uuid.uuid4()
        chunks = split(data, parts)
        for index in reversed(range(len(chunks))):
            with django_capture_on_commit_callbacks(execute=True):
                response = api_client.post(
                    reverse("publishing:chunk-upload"),
                    {
                        "session_id": str(session_id),
                        "index": index,
                        "total_chunks": len(chunks),
                        "chunk": SimpleUploadedFile(f"{index}.part", chunks[index]),
                    },
                    format="multipart",
                )
            assert response.status_code == status.HTTP_200_OK
        return session_id

    return _upload


@pytest.mark.django_db
class TestUploadToPublish:
    def test_full_journey(
        self,
        api_client,
        upload,
        storage,
        tiktok_client,
        tiktok_api,
        user,
        django_capture_on_commit_callbacks,
    ):
        PlatformCredentialFactory(owner=user, expiring=True)
        tiktok_api.queue(TOKEN, token_grant(access_token="act.fresh"))
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~100"}))
        tiktok_api.queue(
            STATUS,
            ok({"status": "PROCESSING_DOWNLOAD"}),
            ok({"status": "PUBLISH_COMPLETE", "publicaly_available_post_id": [7312]}),
        )

        session_id = upload(MP4)

        # The last chunk already queued the merge; finalize returns its result
        session = UploadSession.objects.get(pk=session_id)
        assert session.status == UploadSessionStatus.CONSUMED
        finalize = api_client.post(
            reverse("publishing:session-finalize", kwargs={"session_id": session_id})
        )
        assert finalize.status_code == status.HTTP_200_OK
        assert finalize.data["size_bytes"] == len(MP4)
        assert finalize.data["content_type"] == "video/mp4"

        artifact = Artifact.objects.get(pk=finalize.data["artifact_id"])
        with storage.open(artifact.storage_ref, "rb") as f:
            assert f.read() == MP4

        with django_capture_on_commit_callbacks(execute=True):
            created = api_client.post(
                reverse("publishing:job-create"),
                {
                    "artifact_id": finalize.data["artifact_id"],
                    "media_type": "video",
                    "caption": "First light",
                },
                format="json",
            )
        assert created.status_code == status.HTTP_201_CREATED

        job = PublishJob.objects.get(pk=created.data["id"])
        assert job.state == PublishJobState.COMPLETE
        assert job.post_id == "7312"
        assert job.attempts == 2
        assert tiktok_api.count(TOKEN) == 1
        assert tiktok_api.calls(VIDEO_INIT)[0].headers["Authorization"] == "Bearer act.fresh"

        artifact = Artifact.objects.get(pk=artifact.pk)
        assert artifact.deleted_at is not None
        assert not storage.exists(artifact.storage_ref)

        detail = api_client.get(reverse("publishing:job-detail", kwargs={"job_id": job.pk}))
        assert detail.data["state"] == PublishJobState.COMPLETE

    def test_platform_failure_still_cleans_up(
        self,
        api_client,
        upload,
        storage,
        tiktok_client,
        tiktok_api,
        credential,
        django_capture_on_commit_callbacks,
    ):
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~101"}))
        tiktok_api.queue(STATUS, ok({"status": "FAILED", "fail_reason": "file_format_check_failed"}))
        session_id = upload(MP4, parts=2)
        artifact = Artifact.objects.get(session_id=session_id)

        with django_capture_on_commit_callbacks(execute=True):
            created = api_client.post(
                reverse("publishing:job-create"),
                {"artifact_id": str(artifact.id), "media_type": "video"},
                format="json",
            )

        job = PublishJob.objects.get(pk=created.data["id"])
        assert job.state == PublishJobState.FAILED
        assert job.last_error == "file_format_check_failed"
        assert not storage.exists(artifact.storage_ref)

    def test_resent_chunk_replaces_earlier_bytes(
        self, api_client, storage, django_capture_on_commit_callbacks
    ):
        session_id = uuid.uuid4()
        url = reverse("publishing:chunk-upload")

        def send(index, data):
            with django_capture_on_commit_callbacks(execute=True):
                return api_client.post(
                    url,
                    {
                        "session_id": str(session_id),
                        "index": index,
                        "total_chunks": 2,
                        "chunk": SimpleUploadedFile("c.part", data),
                    },
                    format="multipart",
                )

        send(0, b"stale-")
        send(0, b"fresh-")
        send(1, b"end")

        artifact = Artifact.objects.get(session_id=session_id)
        with storage.open(artifact.storage_ref, "rb") as f:
            assert f.read() == b"fresh-end"
