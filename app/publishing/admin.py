"""
Publishing admin configuration.

Credential tokens are never displayed; only their expiry is.
"""

from django.contrib import admin

from publishing.models import (
    Artifact,
    ChunkRecord,
    PlatformCredential,
    PublishJob,
    UploadSession,
)


class ChunkRecordInline(admin.TabularInline):
    model = ChunkRecord
    extra = 0
    fields = ["index", "size_bytes", "storage_ref", "created_at"]
    readonly_fields = fields
    can_delete = False


@admin.register(UploadSession)
class UploadSessionAdmin(admin.ModelAdmin):
    """Visibility into in-flight and reclaimed uploads."""

    list_display = ["id", "owner", "status", "total_chunks", "expires_at", "created_at"]
    list_filter = ["status"]
    search_fields = ["id", "owner__username", "owner__email"]
    readonly_fields = ["id", "created_at", "updated_at", "consumed_at"]
    ordering = ["-created_at"]
    inlines = [ChunkRecordInline]


@admin.register(Artifact)
class ArtifactAdmin(admin.ModelAdmin):
    list_display = ["id", "owner", "content_type", "size_bytes", "deleted_at", "created_at"]
    list_filter = ["content_type"]
    search_fields = ["id", "owner__username", "storage_ref"]
    readonly_fields = ["id", "session", "created_at", "updated_at"]
    ordering = ["-created_at"]


@admin.register(PlatformCredential)
class PlatformCredentialAdmin(admin.ModelAdmin):
    """
    Admin for platform credentials.

    Token fields are excluded from the form entirely.
    """

    list_display = [
        "id",
        "owner",
        "platform",
        "open_id",
        "access_expires_at",
        "refresh_expires_at",
        "updated_at",
    ]
    list_filter = ["platform"]
    search_fields = ["owner__username", "owner__email", "open_id"]
    exclude = ["access_token", "refresh_token"]
    readonly_fields = ["created_at", "updated_at"]
    ordering = ["-updated_at"]


@admin.register(PublishJob)
class PublishJobAdmin(admin.ModelAdmin):
    """
    Admin for publish jobs.

    State is managed by django-fsm and is read-only here.
    """

    list_display = [
        "id",
        "owner",
        "media_type",
        "state",
        "attempts",
        "post_id",
        "created_at",
        "terminal_at",
    ]
    list_filter = ["state", "media_type"]
    search_fields = ["id", "external_job_id", "post_id", "owner__username"]
    readonly_fields = [
        "id",
        "state",
        "external_job_id",
        "attempts",
        "last_polled_at",
        "terminal_at",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "owner", "artifact", "state")}),
        (
            "Submission",
            {"fields": ("source_url", "media_type", "caption", "post_settings", "external_job_id")},
        ),
        (
            "Progress",
            {"fields": ("attempts", "last_polled_at", "last_error", "post_id", "terminal_at")},
        ),
        (
            "Timestamps",
            {"fields": ("created_at", "updated_at"), "classes": ("collapse",)},
        ),
    )
