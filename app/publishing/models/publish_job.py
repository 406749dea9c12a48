"""
PublishJob model for one submission to the external platform.

Usage:
    from publishing.models import PublishJob

    job = PublishJob.objects.create(owner=user, external_job_id="v_pub_url~123", ...)

    # State transitions using django-fsm
    job.start_processing()  # submitted -> processing
    job.save()

    job.complete(post_id="7312")  # processing -> complete
    job.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from publishing.state_machines import MediaType, PublishJobState


class PublishJob(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks one pull-from-URL submission until it reaches a terminal state.

    Created by the submitter (SUBMITTED, or directly FAILED when the
    platform rejects the request). Afterwards only the status poller moves
    it forward. Transitions never go backwards.

    A poller that runs out of attempts leaves the job untouched; the
    reconciliation sweep picks it up again later.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="publish_jobs",
        help_text="User who requested the publish",
    )
    artifact = models.ForeignKey(
        "publishing.Artifact",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="publish_jobs",
        help_text="Artifact being published (null when an external URL was given)",
    )

    # ==========================================================================
    # Submission
    # ==========================================================================

    source_url = models.URLField(
        max_length=1000,
        help_text="URL the platform was asked to pull the media from",
    )
    media_type = models.CharField(
        max_length=10,
        choices=MediaType.choices,
        default=MediaType.VIDEO,
        help_text="Kind of media submitted",
    )
    caption = models.TextField(
        blank=True,
        default="",
        help_text="Caption sent with the post",
    )
    post_settings = models.JSONField(
        default=dict,
        blank=True,
        help_text="Post settings (privacy level, interaction toggles, cover)",
    )
    external_job_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Platform publish id returned on submission",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=PublishJobState.SUBMITTED,
        choices=PublishJobState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the job (managed by FSM)",
    )
    attempts = models.PositiveIntegerField(
        default=0,
        help_text="Status queries made against the platform",
    )
    last_error = models.TextField(
        null=True,
        blank=True,
        help_text="User-safe reason for the last failure",
    )
    last_polled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the platform status was last queried",
    )
    terminal_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the job reached COMPLETE or FAILED",
    )
    post_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Public post id once the platform has published it",
    )

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["owner", "state"],
                name="idx_pub_job_owner_state",
            ),
            models.Index(
                fields=["state", "last_polled_at"],
                name="idx_pub_job_state_polled",
            ),
        ]

    def __str__(self) -> str:
        return f"PublishJob({self.id}, {self.state})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=PublishJobState.SUBMITTED,
        target=PublishJobState.PROCESSING,
    )
    def start_processing(self):
        """
        Platform acknowledged the job and is fetching or processing media.

        Transition: SUBMITTED -> PROCESSING
        """
        pass

    @transition(
        field=state,
        source=PublishJobState.PROCESSING,
        target=PublishJobState.COMPLETE,
    )
    def complete(self, post_id: str | None = None):
        """
        Platform finished publishing.

        Transition: PROCESSING -> COMPLETE
        """
        self.terminal_at = timezone.now()
        if post_id:
            self.post_id = post_id

    @transition(
        field=state,
        source=[PublishJobState.SUBMITTED, PublishJobState.PROCESSING],
        target=PublishJobState.FAILED,
    )
    def fail(self, reason: str | None = None):
        """
        Platform reported failure, or the job was abandoned.

        Transition: SUBMITTED/PROCESSING -> FAILED
        """
        self.terminal_at = timezone.now()
        if reason:
            self.last_error = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.state in PublishJobState.terminal_states()
