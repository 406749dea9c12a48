"""
Pytest fixtures for publishing tests.

The platform API is faked with httpx.MockTransport: tests queue responses
per endpoint on ``tiktok_api`` and inspect the requests it received.

Usage:
    def test_submit(tiktok_api, credential):
        tiktok_api.queue(VIDEO_INIT, ok({"publish_id": "v_pub_url~1"}))
        ...
        assert tiktok_api.count(VIDEO_INIT) == 1
"""

from __future__ import annotations

import json
from collections import defaultdict

import httpx
import pytest
from rest_framework.test import APIClient

from publishing.adapters import tiktok
from publishing.adapters.tiktok import TikTokClient
from publishing.services import reset_credential_manager
from publishing.storage import get_staging_storage
from publishing.tests.factories import PlatformCredentialFactory, UserFactory

BASE_URL = "https://open.tiktokapis.test/v2"

TOKEN = "/oauth/token/"
VIDEO_INIT = "/post/publish/video/init/"
CONTENT_INIT = "/post/publish/content/init/"
STATUS = "/post/publish/status/fetch/"


def ok(data: dict | None = None, status_code: int = 200) -> httpx.Response:
    """Content API success envelope."""
    return httpx.Response(
        status_code,
        json={"data": data or {}, "error": {"code": "ok", "message": "", "log_id": "log-ok"}},
    )


def api_error(code: str, status_code: int = 400, message: str = "upstream said no") -> httpx.Response:
    """Content API error envelope."""
    return httpx.Response(
        status_code,
        json={"data": {}, "error": {"code": code, "message": message, "log_id": "log-err"}},
    )


def token_grant(
    access_token: str = "act.new",
    refresh_token: str | None = "rft.new",
    expires_in: int = 86400,
    refresh_expires_in: int | None = 31536000,
) -> httpx.Response:
    body = {
        "access_token": access_token,
        "expires_in": expires_in,
        "open_id": "open-id",
        "scope": "user.info.basic,video.publish",
        "token_type": "Bearer",
    }
    if refresh_token:
        body["refresh_token"] = refresh_token
    if refresh_expires_in:
        body["refresh_expires_in"] = refresh_expires_in
    return httpx.Response(200, json=body)


class FakeTikTokAPI:
    """
    Scripted responses keyed by endpoint path.

    Queued items are consumed in order; the last one keeps being returned.
    An exception instance is raised instead of returning a response.
    """

    def __init__(self) -> None:
        self._responses: dict[str, list] = defaultdict(list)
        self.requests: list[httpx.Request] = []

    def queue(self, path: str, *items) -> None:
        self._responses[path].extend(items)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v2")
        self.requests.append(request)
        items = self._responses.get(path)
        if not items:
            raise AssertionError(f"Unexpected request to {path}")
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return item

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.removeprefix("/v2") == path]

    def count(self, path: str) -> int:
        return len(self.calls(path))

    def last_json(self, path: str) -> dict:
        return json.loads(self.calls(path)[-1].content)


@pytest.fixture
def tiktok_api() -> FakeTikTokAPI:
    return FakeTikTokAPI()


@pytest.fixture
def tiktok_client(tiktok_api, monkeypatch) -> TikTokClient:
    """TikTokClient wired to the fake API and installed as the default client."""
    http_client = httpx.Client(
        base_url=BASE_URL,
        transport=httpx.MockTransport(tiktok_api.handler),
    )
    client = TikTokClient(
        client_key="test-client-key",
        client_secret="test-client-secret",
        http_client=http_client,
    )
    monkeypatch.setattr(tiktok, "_default_client", client)
    yield client
    http_client.close()


@pytest.fixture(autouse=True)
def fresh_credential_manager():
    """The manager is a process-wide singleton holding a cache."""
    reset_credential_manager()
    yield
    reset_credential_manager()


@pytest.fixture(autouse=True)
def staging_root(settings, tmp_path):
    """Point staging storage at a per-test directory."""
    root = tmp_path / "staging"
    root.mkdir()
    settings.PUBLISHING_STAGING_ROOT = str(root)
    settings.PUBLISHING_PUBLIC_BASE_URL = "https://media.example.com/staging/"
    settings.PUBLISHING_POLL_INTERVAL_SECONDS = 0
    settings.TIKTOK_IS_PRODUCTION = True
    return root


@pytest.fixture
def storage(staging_root):
    return get_staging_storage()


@pytest.fixture
def user(db):
    return UserFactory()


@pytest.fixture
def other_user(db):
    return UserFactory()


@pytest.fixture
def credential(user):
    """Fresh credential for ``user``."""
    return PlatformCredentialFactory(owner=user)


@pytest.fixture
def api_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client
