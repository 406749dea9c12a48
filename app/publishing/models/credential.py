"""
PlatformCredential model for per-user OAuth tokens.

Access tokens live for hours, refresh tokens for about a year. The platform
does not always report when a refresh token expires, so the effective
refresh expiry falls back to creation time plus a policy lifetime.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from django.conf import settings
from django.db import models

from core.models import BaseModel

from publishing.state_machines import Platform


class PlatformCredential(BaseModel):
    """
    OAuth credential for one user on one platform.

    Mutated in place on every refresh. The refresh token may be rotated by
    the platform; the previous value must never be reused after a
    successful refresh.

    Fields:
        owner: User the credential belongs to
        platform: External platform
        open_id: Platform-side user identifier
        access_token: Current bearer token
        access_expires_at: Access token expiry
        refresh_token: Current refresh token
        refresh_expires_at: Refresh token expiry, when the platform reported one
        scope: Granted scopes (comma separated, as returned)
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="platform_credentials",
        help_text="User this credential belongs to",
    )
    platform = models.CharField(
        max_length=20,
        choices=Platform.choices,
        default=Platform.TIKTOK,
        help_text="External platform the tokens are for",
    )
    open_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Platform-side user identifier",
    )

    # =========================================================================
    # Tokens
    # =========================================================================

    access_token = models.TextField(
        help_text="Current access token",
    )
    access_expires_at = models.DateTimeField(
        help_text="When the access token expires",
    )
    refresh_token = models.TextField(
        help_text="Current refresh token (may rotate on every refresh)",
    )
    refresh_expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Refresh token expiry when reported by the platform",
    )
    scope = models.CharField(
        max_length=500,
        blank=True,
        default="",
        help_text="Scopes granted to the application",
    )

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["owner", "platform"],
                name="uniq_credential_owner_platform",
            ),
        ]

    def __str__(self) -> str:
        # Never include token material
        return f"PlatformCredential(owner={self.owner_id}, {self.platform})"

    @property
    def effective_refresh_expires_at(self) -> datetime:
        """Refresh expiry as reported, or derived from the policy lifetime."""
        if self.refresh_expires_at is not None:
            return self.refresh_expires_at
        lifetime = timedelta(days=settings.PUBLISHING_REFRESH_TOKEN_LIFETIME_DAYS)
        return self.created_at + lifetime
