"""
TikTok Content Posting API adapter.

Wraps the three endpoints the publishing pipeline needs:

    POST /oauth/token/                    refresh an access token
    POST /post/publish/video/init/        submit a video from a URL
    POST /post/publish/content/init/      submit photos from URLs
    POST /post/publish/status/fetch/      query a publish job

Features:
- httpx client with configurable timeout
- Translation of platform errors into domain exceptions, split into
  permanent (PlatformRequestError), credential (InvalidGrantError) and
  transient (TransientUpstreamError) failures
- Shared circuit breaker so a failing platform is not hammered by every
  worker at once
- Structured logging with timing; tokens are never logged

Configuration (via settings):
- TIKTOK_CLIENT_KEY / TIKTOK_CLIENT_SECRET: App credentials
- TIKTOK_API_BASE_URL: API root (default: https://open.tiktokapis.com/v2)
- TIKTOK_API_TIMEOUT_SECONDS: Request timeout (default: 10)
- TIKTOK_CIRCUIT_FAILURE_THRESHOLD / TIKTOK_CIRCUIT_RECOVERY_TIMEOUT

Usage:
    client = get_tiktok_client()
    grant = client.refresh_access_token(refresh_token)
    publish_id = client.init_publish(token, url, MediaType.VIDEO, caption, PostSettings())
    status = client.fetch_publish_status(token, publish_id)
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING

import httpx
from django.conf import settings

from core.circuit_breaker import CircuitBreaker

from publishing.exceptions import (
    InvalidGrantError,
    PlatformRequestError,
    TransientUpstreamError,
    UpstreamSubmissionError,
)
from publishing.state_machines import MediaType

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 150
MAX_CAPTION_LENGTH = 2200

PRIVACY_LEVELS = (
    "PUBLIC_TO_EVERYONE",
    "MUTUAL_FOLLOW_FRIENDS",
    "FOLLOWER_OF_CREATOR",
    "SELF_ONLY",
)

# Content API error codes that mean the user has to authorize again
CREDENTIAL_ERROR_CODES = frozenset(
    {
        "access_token_invalid",
        "access_token_expired",
        "scope_not_authorized",
        "scope_permission_missed",
    }
)

# Content API error codes worth retrying
TRANSIENT_ERROR_CODES = frozenset(
    {
        "rate_limit_exceeded",
        "internal_error",
        "spam_risk_too_many_pending_share",
    }
)

# User-facing wording for known rejection codes. Unknown codes fall back to
# a generic message so upstream text (which may carry log ids) is not echoed.
ERROR_MESSAGES = {
    "access_token_invalid": "Access token expired. Please reconnect your account.",
    "access_token_expired": "Access token expired. Please reconnect your account.",
    "scope_not_authorized": "Missing publish permission. Please reconnect your account.",
    "scope_permission_missed": "Missing publish permission. Please reconnect your account.",
    "invalid_param": "The platform rejected the post settings.",
    "integration_guidelines_violation": (
        "Content violates the platform's integration guidelines."
    ),
    "unaudited_client_can_only_post_to_private_accounts": (
        "This app can only post to private accounts until it is audited."
    ),
    "content_policy_violation": "Content violates the platform's content policies.",
    "url_not_accessible": "The platform could not download the media.",
    "url_ownership_unverified": "The media URL domain is not verified with the platform.",
    "unsupported_media_format": "Media format is not supported by the platform.",
    "media_too_large": "Media file is too large for the platform.",
    "rate_limit_exceeded": "Rate limit exceeded. Please wait before trying again.",
    "spam_risk_too_many_posts": "Daily post limit reached on the platform.",
    "spam_risk_too_many_pending_share": "Too many posts are still processing.",
}

DEFAULT_REJECTION_MESSAGE = "The platform rejected the publish request."


# =============================================================================
# Data Transfer Objects
# =============================================================================


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful token exchange or refresh."""

    access_token: str = field(repr=False)
    expires_in: int
    refresh_token: str | None = field(default=None, repr=False)
    refresh_expires_in: int | None = None
    scope: str = ""
    open_id: str = ""


@dataclass
class PostSettings:
    """
    Post options sent alongside the media URL.

    cover_timestamp_ms only applies to videos.
    """

    privacy_level: str = "PUBLIC_TO_EVERYONE"
    allow_comments: bool = True
    allow_duet: bool = True
    allow_stitch: bool = True
    cover_timestamp_ms: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PostSettings:
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PublishStatus:
    """Status of a publish job as reported by the platform."""

    status: str
    fail_reason: str | None = None
    post_ids: tuple[str, ...] = ()

    @property
    def post_id(self) -> str | None:
        return self.post_ids[0] if self.post_ids else None


# =============================================================================
# Client
# =============================================================================


class TikTokClient:
    """
    Thin client for the TikTok v2 API.

    Instances are cheap to share; the underlying httpx.Client keeps a
    connection pool and is thread-safe.
    """

    TOKEN_PATH = "/oauth/token/"
    VIDEO_INIT_PATH = "/post/publish/video/init/"
    CONTENT_INIT_PATH = "/post/publish/content/init/"
    STATUS_PATH = "/post/publish/status/fetch/"

    def __init__(
        self,
        client_key: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
        circuit: CircuitBreaker | None = None,
    ) -> None:
        self.client_key = client_key if client_key is not None else settings.TIKTOK_CLIENT_KEY
        self.client_secret = (
            client_secret if client_secret is not None else settings.TIKTOK_CLIENT_SECRET
        )
        self._http = http_client or httpx.Client(
            base_url=base_url or settings.TIKTOK_API_BASE_URL,
            timeout=timeout or settings.TIKTOK_API_TIMEOUT_SECONDS,
        )
        self.circuit = circuit or CircuitBreaker(
            name="tiktok-api",
            failure_threshold=settings.TIKTOK_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.TIKTOK_CIRCUIT_RECOVERY_TIMEOUT,
            tracked_exceptions=(TransientUpstreamError,),
        )

    def close(self) -> None:
        self._http.close()

    # =========================================================================
    # Core Operations
    # =========================================================================

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises:
            InvalidGrantError: Refresh token invalid, expired or revoked
            PlatformRequestError: App credentials rejected or malformed request
            TransientUpstreamError: Network failure, timeout, 5xx, rate limit
        """
        form = {
            "client_key": self.client_key,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        response, payload = self._post(
            "refresh_access_token",
            self.TOKEN_PATH,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        error = payload.get("error")
        if error or not response.is_success or "access_token" not in payload:
            self._raise_token_error(response, payload)

        return TokenGrant(
            access_token=payload["access_token"],
            expires_in=int(payload.get("expires_in") or 0),
            refresh_token=payload.get("refresh_token") or None,
            refresh_expires_in=(
                int(payload["refresh_expires_in"])
                if payload.get("refresh_expires_in")
                else None
            ),
            scope=payload.get("scope") or "",
            open_id=payload.get("open_id") or "",
        )

    def init_publish(
        self,
        access_token: str,
        source_url: str,
        media_type: str,
        caption: str,
        post_settings: PostSettings,
    ) -> str:
        """
        Ask the platform to pull media from ``source_url`` and post it.

        Returns:
            The platform publish id

        Raises:
            InvalidGrantError: Access token rejected or scope missing
            UpstreamSubmissionError: Request rejected (params, URL, policy)
            TransientUpstreamError: Network failure, timeout, 5xx, rate limit
        """
        if media_type == MediaType.PHOTO:
            path = self.CONTENT_INIT_PATH
            body = self.build_photo_payload(source_url, caption, post_settings)
        else:
            path = self.VIDEO_INIT_PATH
            body = self.build_video_payload(source_url, caption, post_settings)

        try:
            _, payload = self._post_content_api(
                "init_publish", path, access_token, body
            )
        except PlatformRequestError as e:
            raise UpstreamSubmissionError(
                e.message,
                platform_code=e.platform_code,
                status_code=e.status_code,
                details=e.details,
            ) from e

        publish_id = (payload.get("data") or {}).get("publish_id")
        if not publish_id:
            raise UpstreamSubmissionError(
                DEFAULT_REJECTION_MESSAGE,
                platform_code="missing_publish_id",
            )
        return publish_id

    def fetch_publish_status(self, access_token: str, publish_id: str) -> PublishStatus:
        """
        Query the processing status of a publish job.

        Raises:
            InvalidGrantError: Access token rejected
            PlatformRequestError: Unknown publish id or malformed request
            TransientUpstreamError: Network failure, timeout, 5xx, rate limit
        """
        _, payload = self._post_content_api(
            "fetch_publish_status",
            self.STATUS_PATH,
            access_token,
            {"publish_id": publish_id},
        )
        data = payload.get("data") or {}
        # Field name is misspelled by the platform
        post_ids = data.get("publicaly_available_post_id") or []
        return PublishStatus(
            status=data.get("status") or "",
            fail_reason=data.get("fail_reason") or None,
            post_ids=tuple(str(post_id) for post_id in post_ids),
        )

    # =========================================================================
    # Payload Builders
    # =========================================================================

    @staticmethod
    def build_video_payload(
        source_url: str, caption: str, post_settings: PostSettings
    ) -> dict[str, Any]:
        post_info: dict[str, Any] = {
            "title": caption[:MAX_TITLE_LENGTH],
            "description": caption,
            "privacy_level": post_settings.privacy_level,
            "disable_comment": not post_settings.allow_comments,
            "disable_duet": not post_settings.allow_duet,
            "disable_stitch": not post_settings.allow_stitch,
            "brand_content_toggle": False,
            "brand_organic_toggle": False,
        }
        if post_settings.cover_timestamp_ms:
            post_info["video_cover_timestamp_ms"] = int(post_settings.cover_timestamp_ms)

        return {
            "post_info": post_info,
            "source_info": {"source": "PULL_FROM_URL", "video_url": source_url},
            "post_mode": "DIRECT_POST",
        }

    @staticmethod
    def build_photo_payload(
        source_url: str, caption: str, post_settings: PostSettings
    ) -> dict[str, Any]:
        return {
            "post_info": {
                "title": caption[:MAX_TITLE_LENGTH],
                "description": caption,
                "privacy_level": post_settings.privacy_level,
                "disable_comment": not post_settings.allow_comments,
                "brand_content_toggle": False,
                "brand_organic_toggle": False,
            },
            "source_info": {
                "source": "PULL_FROM_URL",
                "photo_cover_index": 0,
                "photo_images": [source_url],
            },
            "post_mode": "DIRECT_POST",
            "media_type": "PHOTO",
        }

    # =========================================================================
    # Transport & Error Handling
    # =========================================================================

    def _post_content_api(
        self,
        operation: str,
        path: str,
        access_token: str,
        body: dict[str, Any],
    ) -> tuple[httpx.Response, dict[str, Any]]:
        response, payload = self._post(
            operation,
            path,
            json=body,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json; charset=UTF-8",
            },
        )

        error = payload.get("error") or {}
        code = error.get("code") if isinstance(error, dict) else str(error)
        if response.is_success and code in (None, "", "ok"):
            return response, payload

        code = code or f"http_{response.status_code}"
        log_context = {
            "operation": operation,
            "platform_code": code,
            "status_code": response.status_code,
            "log_id": error.get("log_id") if isinstance(error, dict) else None,
            "platform_message": error.get("message") if isinstance(error, dict) else None,
        }
        message = ERROR_MESSAGES.get(code, DEFAULT_REJECTION_MESSAGE)

        if code in CREDENTIAL_ERROR_CODES or response.status_code == 401:
            logger.warning("Platform rejected credential", extra=log_context)
            raise InvalidGrantError(
                message,
                platform_code=code,
                status_code=response.status_code,
            )

        if code in TRANSIENT_ERROR_CODES:
            logger.warning("Transient platform error", extra=log_context)
            raise TransientUpstreamError(
                message,
                platform_code=code,
                status_code=response.status_code,
            )

        logger.error("Platform rejected request", extra=log_context)
        raise PlatformRequestError(
            message,
            platform_code=code,
            status_code=response.status_code,
            details={"log_id": log_context["log_id"]},
        )

    def _raise_token_error(self, response: httpx.Response, payload: dict[str, Any]) -> None:
        error = payload.get("error") or f"http_{response.status_code}"
        description = payload.get("error_description") or ""
        log_context = {
            "operation": "refresh_access_token",
            "platform_code": error,
            "status_code": response.status_code,
            "log_id": payload.get("log_id"),
        }

        # invalid_grant is the documented code; older responses only say so in
        # the description
        if error == "invalid_grant" or "refresh" in description.lower():
            logger.warning("Refresh token rejected by platform", extra=log_context)
            raise InvalidGrantError(
                "Your connection has expired. Please reconnect your account.",
                platform_code=error,
                status_code=response.status_code,
            )

        logger.error("Token refresh request rejected", extra=log_context)
        raise PlatformRequestError(
            "Could not refresh the platform connection.",
            platform_code=error,
            status_code=response.status_code,
        )

    def _post(
        self,
        operation: str,
        path: str,
        headers: dict[str, str],
        data: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> tuple[httpx.Response, dict[str, Any]]:
        """
        Send a POST through the circuit breaker and decode the JSON body.

        Network failures, 429 and 5xx responses raise TransientUpstreamError
        and count against the circuit. Other statuses are returned for the
        caller to interpret.
        """
        log_context = {"operation": operation, "path": path}
        start_time = time.monotonic()

        with self.circuit.call():
            try:
                response = self._http.post(path, data=data, json=json, headers=headers)
            except httpx.TimeoutException as e:
                logger.warning(
                    "Platform request timed out",
                    extra={**log_context, "duration_ms": _elapsed_ms(start_time)},
                )
                raise TransientUpstreamError(
                    "The platform did not respond in time. Please retry.",
                    platform_code="timeout",
                ) from e
            except httpx.TransportError as e:
                logger.warning(
                    "Could not reach platform",
                    extra={**log_context, "duration_ms": _elapsed_ms(start_time)},
                    exc_info=True,
                )
                raise TransientUpstreamError(
                    "Could not reach the platform. Please retry.",
                    platform_code="connection_error",
                ) from e

            log_context["status_code"] = response.status_code
            log_context["duration_ms"] = _elapsed_ms(start_time)

            if response.status_code == 429 or response.status_code >= 500:
                logger.warning("Platform unavailable", extra=log_context)
                raise TransientUpstreamError(
                    "The platform is temporarily unavailable. Please retry.",
                    platform_code=f"http_{response.status_code}",
                    status_code=response.status_code,
                )

        logger.info("Platform request completed", extra=log_context)
        return response, _decode_json(response)


def _decode_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _elapsed_ms(start_time: float) -> float:
    return round((time.monotonic() - start_time) * 1000, 1)


_default_client: TikTokClient | None = None


def get_tiktok_client() -> TikTokClient:
    """Return the process-wide client, creating it on first use."""
    global _default_client
    if _default_client is None:
        _default_client = TikTokClient()
    return _default_client


def reset_tiktok_client() -> None:
    """Drop the process-wide client (tests, settings changes)."""
    global _default_client
    if _default_client is not None:
        _default_client.close()
    _default_client = None
