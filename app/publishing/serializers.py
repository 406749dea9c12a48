"""
Serializers for the publishing API.

Provides:
- ChunkUploadSerializer: Multipart chunk upload input
- ChunkReceiptSerializer: Result of receiving a chunk
- FinalizeResultSerializer: Merged artifact summary
- PublishRequestSerializer: Publish request input
- PublishJobSerializer: Read-only job status
- TokenStatusSerializer: Credential health
- ErrorSerializer: Sanitized error body
"""

from __future__ import annotations

from typing import Any

from rest_framework import serializers

from publishing.adapters.tiktok import MAX_CAPTION_LENGTH, PRIVACY_LEVELS
from publishing.models import PublishJob
from publishing.state_machines import MediaType, TokenStatus


class ChunkUploadSerializer(serializers.Serializer):
    """Input for POST chunks/."""

    session_id = serializers.UUIDField(
        help_text="Client-chosen id shared by every chunk of one upload",
    )
    index = serializers.IntegerField(
        min_value=0,
        help_text="Zero-based chunk position",
    )
    total_chunks = serializers.IntegerField(
        min_value=1,
        help_text="Number of chunks in the upload",
    )
    chunk = serializers.FileField(
        allow_empty_file=False,
        help_text="Chunk bytes",
    )

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        if attrs["index"] >= attrs["total_chunks"]:
            raise serializers.ValidationError(
                {"index": "Chunk index must be less than total_chunks."}
            )
        return attrs


class ChunkReceiptSerializer(serializers.Serializer):
    session_id = serializers.UUIDField()
    accepted = serializers.BooleanField()
    complete = serializers.BooleanField()
    received_count = serializers.IntegerField()
    total_chunks = serializers.IntegerField()


class FinalizeResultSerializer(serializers.Serializer):
    artifact_id = serializers.UUIDField()
    artifact_url = serializers.URLField()
    size_bytes = serializers.IntegerField()
    content_type = serializers.CharField()


class PostSettingsSerializer(serializers.Serializer):
    privacy_level = serializers.ChoiceField(
        choices=PRIVACY_LEVELS,
        default="PUBLIC_TO_EVERYONE",
    )
    allow_comments = serializers.BooleanField(default=True)
    allow_duet = serializers.BooleanField(default=True)
    allow_stitch = serializers.BooleanField(default=True)
    cover_timestamp_ms = serializers.IntegerField(
        min_value=0,
        required=False,
        allow_null=True,
    )


class PublishRequestSerializer(serializers.Serializer):
    """
    Input for POST jobs/.

    Exactly one of artifact_id (a merged upload) or artifact_url (media
    already hosted elsewhere) must be given.
    """

    artifact_id = serializers.UUIDField(required=False)
    artifact_url = serializers.URLField(required=False, max_length=1000)
    media_type = serializers.ChoiceField(choices=MediaType.choices)
    caption = serializers.CharField(
        required=False,
        allow_blank=True,
        default="",
        max_length=MAX_CAPTION_LENGTH,
    )
    settings = PostSettingsSerializer(required=False)

    def validate(self, attrs: dict[str, Any]) -> dict[str, Any]:
        has_id = "artifact_id" in attrs
        has_url = "artifact_url" in attrs
        if has_id == has_url:
            raise serializers.ValidationError(
                "Provide exactly one of artifact_id or artifact_url."
            )
        return attrs


class PublishJobSerializer(serializers.ModelSerializer):
    """Read-only view of a publish job."""

    artifact_id = serializers.UUIDField(read_only=True, allow_null=True)

    class Meta:
        model = PublishJob
        fields = [
            "id",
            "artifact_id",
            "media_type",
            "caption",
            "state",
            "attempts",
            "last_error",
            "post_id",
            "created_at",
            "last_polled_at",
            "terminal_at",
        ]
        read_only_fields = fields


class TokenStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=TokenStatus.choices)
    needs_refresh = serializers.BooleanField()
    needs_reconnect = serializers.BooleanField()
    access_expires_at = serializers.DateTimeField(allow_null=True)
    refresh_expires_at = serializers.DateTimeField(allow_null=True)


class ErrorSerializer(serializers.Serializer):
    error = serializers.CharField()
    error_code = serializers.CharField()
