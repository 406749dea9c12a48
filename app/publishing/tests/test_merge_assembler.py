"""
Tests for MergeAssembler.

Covers ordered concatenation, single-flight behavior, idempotency,
integrity verification, and content type sniffing.
"""

import uuid
from datetime import timedelta

import pytest
from django.core.exceptions import SuspiciousFileOperation
from django.db import DatabaseError
from django.utils import timezone

from core.exceptions import ValidationError
from publishing.exceptions import MergeInProgressError, MergeIntegrityError
from publishing.models import Artifact, ChunkRecord, UploadSession
from publishing.services import ChunkStore, MergeAssembler, sniff_content_type
from publishing.state_machines import UploadSessionStatus

MP4_HEAD = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00"


@pytest.fixture
def assembler(storage):
    return MergeAssembler(storage=storage)


@pytest.fixture
def upload(storage, user):
    """Upload three chunks out of order and return the session id."""

    def _upload(chunks=(MP4_HEAD + b"first-", b"second-", b"third")):
        session_id = uuid.uuid4()
        store = ChunkStore(storage=storage)
        for index in reversed(range(len(chunks))):
            store.receive_chunk(session_id, index, len(chunks), user, chunks[index])
        return session_id

    return _upload


@pytest.mark.django_db
class TestMergeSession:
    def test_concatenates_in_index_order(self, assembler, storage, upload):
        session_id = upload()

        artifact = assembler.merge_session(session_id)

        with storage.open(artifact.storage_ref, "rb") as f:
            assert f.read() == MP4_HEAD + b"first-second-third"
        assert artifact.size_bytes == len(MP4_HEAD) + len(b"first-second-third")
        assert artifact.content_type == "video/mp4"
        assert artifact.storage_ref.endswith(".mp4")

    def test_public_url_under_base_url(self, assembler, upload):
        session_id = upload()

        artifact = assembler.merge_session(session_id)

        assert artifact.public_url == (
            f"https://media.example.com/staging/artifacts/{session_id}.mp4"
        )

    def test_marks_session_consumed_and_drops_chunks(
        self, assembler, storage, upload
    ):
        session_id = upload()
        refs = list(
            ChunkRecord.objects.filter(session_id=session_id).values_list(
                "storage_ref", flat=True
            )
        )

        assembler.merge_session(session_id)

        session = UploadSession.objects.get(pk=session_id)
        assert session.status == UploadSessionStatus.CONSUMED
        assert session.consumed_at is not None
        assert not ChunkRecord.objects.filter(session_id=session_id).exists()
        assert not any(storage.exists(ref) for ref in refs)

    def test_second_merge_returns_same_artifact(self, assembler, upload, mocker):
        session_id = upload()
        first = assembler.merge_session(session_id)
        assemble = mocker.spy(assembler, "_assemble")

        second = assembler.merge_session(session_id)

        assert second.pk == first.pk
        assemble.assert_not_called()
        assert Artifact.objects.count() == 1

    def test_incomplete_session_rejected(self, assembler, storage, user):
        session_id = uuid.uuid4()
        ChunkStore(storage=storage).receive_chunk(session_id, 0, 2, user, b"a")

        with pytest.raises(ValidationError) as exc_info:
            assembler.merge_session(session_id)

        assert exc_info.value.error_code == "UPLOAD_INCOMPLETE"
        assert (
            UploadSession.objects.get(pk=session_id).status
            == UploadSessionStatus.UPLOADING
        )

    def test_unknown_session_rejected(self, assembler):
        with pytest.raises(ValidationError) as exc_info:
            assembler.merge_session(uuid.uuid4())

        assert exc_info.value.error_code == "UNKNOWN_SESSION"

    def test_merge_in_progress_rejected(self, assembler, upload):
        session_id = upload()
        UploadSession.objects.filter(pk=session_id).update(
            status=UploadSessionStatus.MERGING
        )

        with pytest.raises(MergeInProgressError):
            assembler.merge_session(session_id)

    def test_stale_merge_flag_is_reclaimed(self, assembler, storage, upload):
        session_id = upload()
        UploadSession.objects.filter(pk=session_id).update(
            status=UploadSessionStatus.MERGING,
            updated_at=timezone.now() - timedelta(hours=2),
        )

        artifact = assembler.merge_session(session_id)

        with storage.open(artifact.storage_ref, "rb") as f:
            assert f.read() == MP4_HEAD + b"first-second-third"
        assert (
            UploadSession.objects.get(pk=session_id).status
            == UploadSessionStatus.CONSUMED
        )

    def test_stale_threshold_is_configurable(self, storage, upload):
        session_id = upload()
        UploadSession.objects.filter(pk=session_id).update(
            status=UploadSessionStatus.MERGING,
            updated_at=timezone.now() - timedelta(minutes=5),
        )
        assembler = MergeAssembler(
            storage=storage, merge_stale_after=timedelta(hours=1)
        )

        with pytest.raises(MergeInProgressError):
            assembler.merge_session(session_id)

    def test_losing_the_claim_raises_in_progress(self, assembler, upload, mocker):
        session_id = upload()

        def _claimed_elsewhere(sid):
            UploadSession.objects.filter(pk=sid).update(
                status=UploadSessionStatus.MERGING
            )
            return False

        mocker.patch.object(assembler, "_claim", side_effect=_claimed_elsewhere)

        with pytest.raises(MergeInProgressError):
            assembler.merge_session(session_id)

    def test_size_mismatch_releases_flag(self, assembler, storage, upload):
        session_id = upload()
        # Recorded size disagrees with the bytes on disk
        ChunkRecord.objects.filter(session_id=session_id, index=1).update(size_bytes=999)

        with pytest.raises(MergeIntegrityError):
            assembler.merge_session(session_id)

        session = UploadSession.objects.get(pk=session_id)
        assert session.status == UploadSessionStatus.UPLOADING
        assert not Artifact.objects.exists()
        assert not storage.exists(f"artifacts/{session_id}.mp4")

    def test_missing_chunk_file_fails_session_and_cleans_up(
        self, assembler, storage, upload
    ):
        session_id = upload()
        refs = list(
            ChunkRecord.objects.filter(session_id=session_id)
            .order_by("index")
            .values_list("storage_ref", flat=True)
        )
        storage.delete(refs[1])

        with pytest.raises(MergeIntegrityError) as exc_info:
            assembler.merge_session(session_id)

        assert exc_info.value.error_code == "CHUNK_MISSING"
        session = UploadSession.objects.get(pk=session_id)
        assert session.status == UploadSessionStatus.FAILED
        assert not ChunkRecord.objects.filter(session_id=session_id).exists()
        assert not any(storage.exists(ref) for ref in refs)
        assert not Artifact.objects.exists()

    def test_chunk_record_delete_failure_keeps_merge(
        self, assembler, storage, upload, mocker
    ):
        session_id = upload()
        mocker.patch(
            "django.db.models.query.QuerySet.delete",
            side_effect=DatabaseError("connection lost"),
        )

        artifact = assembler.merge_session(session_id)

        assert storage.exists(artifact.storage_ref)
        assert (
            UploadSession.objects.get(pk=session_id).status
            == UploadSessionStatus.CONSUMED
        )

    def test_chunk_file_delete_error_keeps_merge(
        self, assembler, storage, upload, mocker
    ):
        session_id = upload()
        mocker.patch.object(
            storage, "delete", side_effect=SuspiciousFileOperation("outside root")
        )

        artifact = assembler.merge_session(session_id)

        assert artifact.size_bytes > 0
        assert not ChunkRecord.objects.filter(session_id=session_id).exists()

    def test_retry_after_failure_succeeds(self, assembler, upload):
        session_id = upload()
        record = ChunkRecord.objects.get(session_id=session_id, index=1)
        true_size = record.size_bytes
        ChunkRecord.objects.filter(pk=record.pk).update(size_bytes=true_size + 1)
        with pytest.raises(MergeIntegrityError):
            assembler.merge_session(session_id)

        ChunkRecord.objects.filter(pk=record.pk).update(size_bytes=true_size)
        artifact = assembler.merge_session(session_id)

        assert artifact.size_bytes > 0


@pytest.mark.django_db
class TestFinalizeSession:
    def test_returns_artifact_summary(self, assembler, upload, user):
        session_id = upload()

        result = assembler.finalize_session(session_id, user)

        artifact = Artifact.objects.get()
        assert result.artifact_id == artifact.id
        assert result.artifact_url == artifact.public_url
        assert result.content_type == "video/mp4"

    def test_foreign_owner_rejected(self, assembler, upload, other_user):
        session_id = upload()

        with pytest.raises(ValidationError):
            assembler.finalize_session(session_id, other_user)

        assert not Artifact.objects.exists()


class TestSniffContentType:
    @pytest.mark.parametrize(
        "head,expected",
        [
            (MP4_HEAD, ("video/mp4", ".mp4")),
            (b"\x00\x00\x00\x14ftypqt  \x00\x00", ("video/quicktime", ".mov")),
            (b"\xff\xd8\xff\xe0\x00\x10JFIF", ("image/jpeg", ".jpg")),
            (b"\x89PNG\r\n\x1a\n\x00\x00", ("image/png", ".png")),
            (b"RIFF\x00\x00\x00\x00WEBPVP8 ", ("image/webp", ".webp")),
            (b"plain text", ("application/octet-stream", "")),
        ],
    )
    def test_signatures(self, head, expected):
        assert sniff_content_type(head) == expected
