import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="UploadSession",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "total_chunks",
                    models.PositiveIntegerField(
                        help_text="Number of chunks that make up the upload"
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("uploading", "Uploading"),
                            ("merging", "Merging"),
                            ("consumed", "Consumed"),
                            ("expired", "Expired"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="uploading",
                        help_text="Current session status",
                        max_length=20,
                    ),
                ),
                (
                    "expires_at",
                    models.DateTimeField(
                        help_text="Session is reclaimed if no chunk arrives before this time"
                    ),
                ),
                (
                    "consumed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the chunks were merged into an artifact",
                        null=True,
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="User who is uploading the media",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="upload_sessions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "expires_at"],
                        name="idx_pub_session_status_exp",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="ChunkRecord",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "index",
                    models.PositiveIntegerField(
                        help_text="Zero-based position of the chunk within the upload"
                    ),
                ),
                (
                    "size_bytes",
                    models.PositiveBigIntegerField(
                        help_text="Size of the stored chunk in bytes"
                    ),
                ),
                (
                    "storage_ref",
                    models.CharField(
                        help_text="Name of the chunk file in staging storage",
                        max_length=500,
                    ),
                ),
                (
                    "session",
                    models.ForeignKey(
                        help_text="Session this chunk belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="chunks",
                        to="publishing.uploadsession",
                    ),
                ),
            ],
            options={
                "ordering": ["session", "index"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("session", "index"),
                        name="uniq_chunk_session_index",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Artifact",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "storage_ref",
                    models.CharField(
                        help_text="Name of the merged file in staging storage",
                        max_length=500,
                    ),
                ),
                (
                    "public_url",
                    models.URLField(
                        help_text="Public URL the platform fetches the media from",
                        max_length=1000,
                    ),
                ),
                (
                    "size_bytes",
                    models.PositiveBigIntegerField(
                        help_text="Size of the merged file in bytes"
                    ),
                ),
                (
                    "content_type",
                    models.CharField(
                        default="application/octet-stream",
                        help_text="MIME type sniffed from the leading bytes",
                        max_length=100,
                    ),
                ),
                (
                    "deleted_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the staged file was cleaned up",
                        null=True,
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="User the media belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="publish_artifacts",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "session",
                    models.OneToOneField(
                        blank=True,
                        help_text="Upload session this artifact was merged from",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="artifact",
                        to="publishing.uploadsession",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PlatformCredential",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "platform",
                    models.CharField(
                        choices=[("tiktok", "TikTok")],
                        default="tiktok",
                        help_text="External platform the tokens are for",
                        max_length=20,
                    ),
                ),
                (
                    "open_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Platform-side user identifier",
                        max_length=255,
                    ),
                ),
                (
                    "access_token",
                    models.TextField(help_text="Current access token"),
                ),
                (
                    "access_expires_at",
                    models.DateTimeField(help_text="When the access token expires"),
                ),
                (
                    "refresh_token",
                    models.TextField(
                        help_text="Current refresh token (may rotate on every refresh)"
                    ),
                ),
                (
                    "refresh_expires_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Refresh token expiry when reported by the platform",
                        null=True,
                    ),
                ),
                (
                    "scope",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Scopes granted to the application",
                        max_length=500,
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="User this credential belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="platform_credentials",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("owner", "platform"),
                        name="uniq_credential_owner_platform",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="PublishJob",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "source_url",
                    models.URLField(
                        help_text="URL the platform was asked to pull the media from",
                        max_length=1000,
                    ),
                ),
                (
                    "media_type",
                    models.CharField(
                        choices=[("video", "Video"), ("photo", "Photo")],
                        default="video",
                        help_text="Kind of media submitted",
                        max_length=10,
                    ),
                ),
                (
                    "caption",
                    models.TextField(
                        blank=True, default="", help_text="Caption sent with the post"
                    ),
                ),
                (
                    "post_settings",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Post settings (privacy level, interaction toggles, cover)",
                    ),
                ),
                (
                    "external_job_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Platform publish id returned on submission",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("submitted", "Submitted"),
                            ("processing", "Processing"),
                            ("complete", "Complete"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="submitted",
                        help_text="Current state of the job (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "attempts",
                    models.PositiveIntegerField(
                        default=0, help_text="Status queries made against the platform"
                    ),
                ),
                (
                    "last_error",
                    models.TextField(
                        blank=True,
                        help_text="User-safe reason for the last failure",
                        null=True,
                    ),
                ),
                (
                    "last_polled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the platform status was last queried",
                        null=True,
                    ),
                ),
                (
                    "terminal_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the job reached COMPLETE or FAILED",
                        null=True,
                    ),
                ),
                (
                    "post_id",
                    models.CharField(
                        blank=True,
                        help_text="Public post id once the platform has published it",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "artifact",
                    models.ForeignKey(
                        blank=True,
                        help_text="Artifact being published (null when an external URL was given)",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="publish_jobs",
                        to="publishing.artifact",
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="User who requested the publish",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="publish_jobs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["owner", "state"], name="idx_pub_job_owner_state"
                    ),
                    models.Index(
                        fields=["state", "last_polled_at"],
                        name="idx_pub_job_state_polled",
                    ),
                ],
            },
        ),
    ]
