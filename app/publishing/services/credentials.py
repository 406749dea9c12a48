"""
Credential lifecycle manager.

Hands out platform access tokens that are guaranteed to be outside the
refresh buffer, refreshing them when needed. Refreshes are single-flight
per owner:

- within a process, concurrent callers share one in-flight Future
- across processes, a DistributedLock serializes refreshes and the
  credential is re-read after acquiring it, so a refresh made by a peer
  is reused instead of spending the (single-use) refresh token again

Usage:
    from publishing.services import get_credential_manager

    token = get_credential_manager().get_valid_token(user.pk)
    client.init_publish(token.value, ...)
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from django.conf import settings
from django.utils import timezone

from core.locks import DistributedLock
from core.services import BaseService

from publishing.adapters import TikTokClient, TokenGrant, get_tiktok_client
from publishing.exceptions import (
    InvalidGrantError,
    ReconnectRequiredError,
    TransientUpstreamError,
)
from publishing.models import PlatformCredential
from publishing.state_machines import Platform, TokenStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractContextManager
    from typing import Any

EXPIRING_SOON_WINDOW = timedelta(hours=2)


# =============================================================================
# Value Objects
# =============================================================================


@dataclass
class CredentialRecord:
    """Snapshot of a stored credential, detached from the ORM."""

    owner_id: Any
    platform: str
    access_token: str = field(repr=False)
    access_expires_at: datetime
    refresh_token: str = field(repr=False)
    refresh_expires_at: datetime
    scope: str = ""
    open_id: str = ""

    @classmethod
    def from_model(cls, credential: PlatformCredential) -> CredentialRecord:
        return cls(
            owner_id=credential.owner_id,
            platform=credential.platform,
            access_token=credential.access_token,
            access_expires_at=credential.access_expires_at,
            refresh_token=credential.refresh_token,
            refresh_expires_at=credential.effective_refresh_expires_at,
            scope=credential.scope,
            open_id=credential.open_id,
        )


@dataclass(frozen=True)
class AccessToken:
    """A usable bearer token."""

    value: str = field(repr=False)
    expires_at: datetime
    scope: str = ""
    open_id: str = ""


@dataclass(frozen=True)
class TokenStatusReport:
    status: str
    needs_refresh: bool
    needs_reconnect: bool
    access_expires_at: datetime | None = None
    refresh_expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "needs_refresh": self.needs_refresh,
            "needs_reconnect": self.needs_reconnect,
            "access_expires_at": self.access_expires_at,
            "refresh_expires_at": self.refresh_expires_at,
        }


# =============================================================================
# Store
# =============================================================================


class CredentialStore(Protocol):
    """Persistence for platform credentials."""

    def get(self, owner_id: Any, platform: str) -> CredentialRecord | None: ...

    def save_refreshed(
        self, owner_id: Any, platform: str, grant: TokenGrant, now: datetime
    ) -> CredentialRecord: ...

    def upsert(
        self, owner_id: Any, platform: str, grant: TokenGrant, now: datetime
    ) -> CredentialRecord: ...


class DatabaseCredentialStore:
    """CredentialStore backed by the PlatformCredential model."""

    def get(self, owner_id: Any, platform: str) -> CredentialRecord | None:
        credential = PlatformCredential.objects.filter(
            owner_id=owner_id, platform=platform
        ).first()
        return CredentialRecord.from_model(credential) if credential else None

    def save_refreshed(
        self, owner_id: Any, platform: str, grant: TokenGrant, now: datetime
    ) -> CredentialRecord:
        """Overwrite tokens after a successful refresh, in one transaction."""
        with BaseService.atomic():
            credential = PlatformCredential.objects.select_for_update().get(
                owner_id=owner_id, platform=platform
            )
            credential.access_token = grant.access_token
            credential.access_expires_at = now + timedelta(seconds=grant.expires_in)
            if grant.refresh_token:
                credential.refresh_token = grant.refresh_token
            if grant.refresh_expires_in:
                credential.refresh_expires_at = now + timedelta(
                    seconds=grant.refresh_expires_in
                )
            if grant.scope:
                credential.scope = grant.scope
            if grant.open_id:
                credential.open_id = grant.open_id
            credential.save()
        return CredentialRecord.from_model(credential)

    def upsert(
        self, owner_id: Any, platform: str, grant: TokenGrant, now: datetime
    ) -> CredentialRecord:
        """Store a credential from a fresh authorization."""
        if grant.refresh_expires_in:
            refresh_expires_at = now + timedelta(seconds=grant.refresh_expires_in)
        else:
            refresh_expires_at = now + timedelta(
                days=settings.PUBLISHING_REFRESH_TOKEN_LIFETIME_DAYS
            )

        credential, _ = PlatformCredential.objects.update_or_create(
            owner_id=owner_id,
            platform=platform,
            defaults={
                "access_token": grant.access_token,
                "access_expires_at": now + timedelta(seconds=grant.expires_in),
                "refresh_token": grant.refresh_token or "",
                "refresh_expires_at": refresh_expires_at,
                "scope": grant.scope,
                "open_id": grant.open_id,
            },
        )
        return CredentialRecord.from_model(credential)


# =============================================================================
# Cache
# =============================================================================


class CredentialCache:
    """
    Per-owner in-process cache of credential snapshots.

    Bounded in size (least recently used entries are evicted) and in age
    (entries older than ttl_seconds are ignored).
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = (
            ttl_seconds
            if ttl_seconds is not None
            else settings.PUBLISHING_CREDENTIAL_CACHE_TTL_SECONDS
        )
        self.max_entries = max_entries or settings.PUBLISHING_CREDENTIAL_CACHE_MAX_ENTRIES
        self._clock = clock
        self._entries: OrderedDict[tuple, tuple[float, CredentialRecord]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: tuple) -> CredentialRecord | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, record = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return record

    def set(self, key: tuple, record: CredentialRecord) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), record)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: tuple) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def default_lock_factory(key: str) -> AbstractContextManager:
    """Cross-process lock when Redis is available, otherwise a no-op."""
    if settings.PUBLISHING_DISTRIBUTED_LOCKS:
        return DistributedLock(key, ttl=30, timeout=15.0)
    return nullcontext()


# =============================================================================
# Manager
# =============================================================================


class CredentialLifecycleManager(BaseService):
    """
    Returns valid access tokens, refreshing them at most once at a time.

    All collaborators are injectable so the refresh logic can be exercised
    without a database, Redis, or the network.
    """

    def __init__(
        self,
        store: CredentialStore | None = None,
        cache: CredentialCache | None = None,
        client: TikTokClient | None = None,
        platform: str = Platform.TIKTOK,
        refresh_buffer: timedelta | None = None,
        lock_factory: Callable[[str], AbstractContextManager] | None = None,
        clock: Callable[[], datetime] = timezone.now,
        retry_delay: float = 0.5,
    ) -> None:
        self.store = store or DatabaseCredentialStore()
        self.cache = cache or CredentialCache()
        self._client = client
        self.platform = platform
        self.refresh_buffer = refresh_buffer or timedelta(
            minutes=settings.PUBLISHING_TOKEN_REFRESH_BUFFER_MINUTES
        )
        self.lock_factory = lock_factory or default_lock_factory
        self.clock = clock
        self.retry_delay = retry_delay

        self._inflight: dict[tuple, Future] = {}
        self._inflight_lock = threading.Lock()

    @property
    def client(self) -> TikTokClient:
        if self._client is None:
            self._client = get_tiktok_client()
        return self._client

    def get_valid_token(self, owner_id: Any) -> AccessToken:
        """
        Return an access token that will not expire within the refresh buffer.

        Raises:
            ReconnectRequiredError: No credential, refresh token expired,
                or the platform rejected the refresh token
            TransientUpstreamError: Refresh failed twice for transient reasons
        """
        key = self._key(owner_id)
        record = self.cache.get(key) or self._load(owner_id)
        if self._is_fresh(record):
            return self._to_token(record)

        return self._to_token(self._refresh_single_flight(owner_id))

    def invalidate(self, owner_id: Any) -> None:
        """Forget the cached snapshot, e.g. after the platform rejected a token."""
        self.cache.invalidate(self._key(owner_id))

    def get_token_status(self, owner_id: Any) -> TokenStatusReport:
        """Classify the stored credential for display; never refreshes."""
        record = self.store.get(owner_id, self.platform)
        if record is None:
            return TokenStatusReport(
                status=TokenStatus.NOT_FOUND,
                needs_refresh=False,
                needs_reconnect=True,
            )

        now = self.clock()
        common = {
            "access_expires_at": record.access_expires_at,
            "refresh_expires_at": record.refresh_expires_at,
        }
        if now >= record.refresh_expires_at:
            return TokenStatusReport(
                status=TokenStatus.REFRESH_EXPIRED,
                needs_refresh=False,
                needs_reconnect=True,
                **common,
            )
        if now >= record.access_expires_at:
            return TokenStatusReport(
                status=TokenStatus.EXPIRED,
                needs_refresh=True,
                needs_reconnect=False,
                **common,
            )

        remaining = record.access_expires_at - now
        if remaining <= self.refresh_buffer:
            return TokenStatusReport(
                status=TokenStatus.EXPIRING,
                needs_refresh=True,
                needs_reconnect=False,
                **common,
            )
        if remaining <= EXPIRING_SOON_WINDOW:
            return TokenStatusReport(
                status=TokenStatus.EXPIRING,
                needs_refresh=False,
                needs_reconnect=False,
                **common,
            )
        return TokenStatusReport(
            status=TokenStatus.VALID,
            needs_refresh=False,
            needs_reconnect=False,
            **common,
        )

    def store_credential(self, owner_id: Any, grant: TokenGrant) -> CredentialRecord:
        """Save the tokens from a fresh authorization for ``owner_id``."""
        record = self.store.upsert(owner_id, self.platform, grant, self.clock())
        self.cache.set(self._key(owner_id), record)
        self.get_logger().info(
            "Platform credential stored",
            extra={
                "event_type": "credential.stored",
                "owner_id": str(owner_id),
                "platform": self.platform,
            },
        )
        return record

    # =========================================================================
    # Refresh
    # =========================================================================

    def _refresh_single_flight(self, owner_id: Any) -> CredentialRecord:
        key = self._key(owner_id)
        with self._inflight_lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            return future.result()

        try:
            record = self._refresh_locked(owner_id)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(record)
            return record
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def _refresh_locked(self, owner_id: Any) -> CredentialRecord:
        logger = self.get_logger()
        key = self._key(owner_id)

        with self.lock_factory(f"credential-refresh:{self.platform}:{owner_id}"):
            # A peer may have refreshed while we waited for the lock
            record = self._load(owner_id)
            if self._is_fresh(record):
                return record

            now = self.clock()
            if now >= record.refresh_expires_at:
                self.cache.invalidate(key)
                logger.info(
                    "Refresh token expired",
                    extra={
                        "event_type": "credential.refresh_expired",
                        "owner_id": str(owner_id),
                        "platform": self.platform,
                    },
                )
                raise ReconnectRequiredError(
                    "Your connection has expired. Please reconnect your account.",
                    error_code="REFRESH_TOKEN_EXPIRED",
                    details={"owner_id": str(owner_id), "platform": self.platform},
                )

            start_time = time.monotonic()
            try:
                grant = self._call_refresh(record.refresh_token)
            except InvalidGrantError as e:
                self.cache.invalidate(key)
                raise ReconnectRequiredError(
                    "Your connection was revoked. Please reconnect your account.",
                    error_code="REFRESH_TOKEN_REJECTED",
                    details={
                        "owner_id": str(owner_id),
                        "platform": self.platform,
                        "platform_code": e.platform_code,
                    },
                ) from e

            record = self.store.save_refreshed(
                owner_id, self.platform, grant, self.clock()
            )
            self.cache.set(key, record)

        logger.info(
            "Access token refreshed",
            extra={
                "event_type": "credential.refreshed",
                "owner_id": str(owner_id),
                "platform": self.platform,
                "rotated": bool(grant.refresh_token),
                "duration_ms": round((time.monotonic() - start_time) * 1000, 1),
            },
        )
        return record

    def _call_refresh(self, refresh_token: str) -> TokenGrant:
        """Call the token endpoint, retrying once on a transient failure."""
        try:
            return self.client.refresh_access_token(refresh_token)
        except TransientUpstreamError:
            self.get_logger().warning(
                "Token refresh failed transiently, retrying once",
                extra={"event_type": "credential.refresh_retry", "platform": self.platform},
            )
            if self.retry_delay:
                time.sleep(self.retry_delay)
            return self.client.refresh_access_token(refresh_token)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _key(self, owner_id: Any) -> tuple:
        return (self.platform, str(owner_id))

    def _load(self, owner_id: Any) -> CredentialRecord:
        record = self.store.get(owner_id, self.platform)
        if record is None:
            raise ReconnectRequiredError(
                "No connected account. Please connect your account first.",
                error_code="CREDENTIAL_NOT_FOUND",
                details={"owner_id": str(owner_id), "platform": self.platform},
            )
        self.cache.set(self._key(owner_id), record)
        return record

    def _is_fresh(self, record: CredentialRecord | None) -> bool:
        if record is None:
            return False
        return self.clock() + self.refresh_buffer < record.access_expires_at

    @staticmethod
    def _to_token(record: CredentialRecord) -> AccessToken:
        return AccessToken(
            value=record.access_token,
            expires_at=record.access_expires_at,
            scope=record.scope,
            open_id=record.open_id,
        )


_manager: CredentialLifecycleManager | None = None
_manager_lock = threading.Lock()


def get_credential_manager() -> CredentialLifecycleManager:
    """Process-wide manager so in-flight refreshes are shared between threads."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = CredentialLifecycleManager()
        return _manager


def reset_credential_manager() -> None:
    global _manager
    with _manager_lock:
        _manager = None
