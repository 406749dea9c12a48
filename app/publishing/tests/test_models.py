"""
Tests for publishing models and their state transitions.
"""

from datetime import timedelta

import pytest
from django.db import IntegrityError
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from publishing.state_machines import PublishJobState, UploadSessionStatus
from publishing.tests.factories import (
    ChunkRecordFactory,
    PlatformCredentialFactory,
    PublishJobFactory,
    UploadSessionFactory,
)


@pytest.mark.django_db
class TestPublishJobTransitions:
    def test_submitted_to_processing_to_complete(self, user):
        job = PublishJobFactory(owner=user)

        job.start_processing()
        job.complete(post_id="7312")
        job.save()

        assert job.state == PublishJobState.COMPLETE
        assert job.post_id == "7312"
        assert job.terminal_at is not None
        assert job.is_terminal

    def test_fail_from_submitted(self, user):
        job = PublishJobFactory(owner=user)

        job.fail(reason="video_pull_failed")

        assert job.state == PublishJobState.FAILED
        assert job.last_error == "video_pull_failed"
        assert job.is_terminal

    def test_complete_requires_processing(self, user):
        job = PublishJobFactory(owner=user)

        with pytest.raises(TransitionNotAllowed):
            job.complete()

    @pytest.mark.parametrize("state", [PublishJobState.COMPLETE, PublishJobState.FAILED])
    def test_terminal_states_are_final(self, user, state):
        job = PublishJobFactory(owner=user, state=state)

        with pytest.raises(TransitionNotAllowed):
            job.start_processing()
        with pytest.raises(TransitionNotAllowed):
            job.fail(reason="again")

    def test_state_cannot_be_assigned_directly(self, user):
        job = PublishJobFactory(owner=user)

        with pytest.raises(AttributeError):
            job.state = PublishJobState.COMPLETE


@pytest.mark.django_db
class TestUploadSession:
    def test_received_and_missing_indices(self, user):
        session = UploadSessionFactory(owner=user, total_chunks=4)
        ChunkRecordFactory(session=session, index=0)
        ChunkRecordFactory(session=session, index=2)

        assert session.received_count == 2
        assert session.received_indices() == {0, 2}
        assert session.missing_indices() == [1, 3]

    def test_one_record_per_index(self, user):
        session = UploadSessionFactory(owner=user)
        ChunkRecordFactory(session=session, index=1)

        with pytest.raises(IntegrityError):
            ChunkRecordFactory(session=session, index=1)

    def test_is_expired(self, user):
        session = UploadSessionFactory(
            owner=user, expires_at=timezone.now() - timedelta(seconds=1)
        )

        assert session.is_expired
        assert session.status == UploadSessionStatus.UPLOADING


@pytest.mark.django_db
class TestPlatformCredential:
    def test_reported_refresh_expiry_wins(self, user):
        expires = timezone.now() + timedelta(days=30)
        credential = PlatformCredentialFactory(owner=user, refresh_expires_at=expires)

        assert credential.effective_refresh_expires_at == expires

    def test_refresh_expiry_derived_from_policy(self, user, settings):
        settings.PUBLISHING_REFRESH_TOKEN_LIFETIME_DAYS = 365
        credential = PlatformCredentialFactory(owner=user, refresh_expires_at=None)

        assert credential.effective_refresh_expires_at == (
            credential.created_at + timedelta(days=365)
        )

    def test_str_hides_tokens(self, user):
        credential = PlatformCredentialFactory(owner=user)

        assert credential.access_token not in str(credential)
        assert credential.refresh_token not in str(credential)

    def test_one_credential_per_platform(self, user):
        PlatformCredentialFactory(owner=user)

        with pytest.raises(IntegrityError):
            PlatformCredentialFactory(owner=user)
