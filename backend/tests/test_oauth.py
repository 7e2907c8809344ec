from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from atlhub.clienthub.oauth import OAuthDancer, oauth_apps_from_settings
from atlhub.config import Settings
from atlhub.errors import CredentialUnavailable, RefreshFailed, UnknownProvider

from conftest import make_info

CALLBACK = "http://127.0.0.1:8000/connections/callback"


def _settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        jira_client_id="jira-id",
        jira_client_secret="jira-secret",
        bitbucket_client_id="bb-id",
        bitbucket_client_secret="bb-secret",
        callback_url=CALLBACK,
    )
    values.update(overrides)
    return Settings(**values)


class FakeAtlassian:
    """Answers the token, accessible-resources and profile endpoints."""

    def __init__(self, token_status: int = 200, rotate: bool = True):
        self.token_status = token_status
        self.rotate = rotate
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.endswith("/oauth/token") or url.endswith("/oauth2/access_token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            body = {"access_token": "new-access", "expires_in": 3600, "scope": "read:jira-work"}
            if self.rotate:
                body["refresh_token"] = "new-refresh"
            return httpx.Response(200, json=body)
        if url.endswith("/accessible-resources"):
            return httpx.Response(200, json=[
                {"id": "cloud-abc", "name": "acme", "url": "https://acme.atlassian.net",
                 "scopes": ["read:jira-work"], "avatarUrl": "https://a/x.png"},
            ])
        if url.endswith("/me"):
            return httpx.Response(200, json={"account_id": "acc-1", "name": "Pat", "email": "pat@acme.test"})
        if url.endswith("/2.0/user"):
            return httpx.Response(200, json={"account_id": "bb-1", "display_name": "Pat"})
        return httpx.Response(404)


def _dancer(backend: FakeAtlassian, **kwargs: Any) -> OAuthDancer:
    settings = kwargs.pop("settings", None) or _settings()
    return OAuthDancer.from_settings(settings, transport=httpx.MockTransport(backend), **kwargs)


class TestAuthorizeUrl:
    def test_jira_url_carries_audience_scope_and_state(self) -> None:
        dancer = _dancer(FakeAtlassian())
        url = dancer.authorize_url("jiracloud", "st-1")
        parts = urlsplit(url)
        qs = parse_qs(parts.query)

        assert parts.netloc == "auth.atlassian.com"
        assert qs["audience"] == ["api.atlassian.com"]
        assert qs["client_id"] == ["jira-id"]
        assert qs["state"] == ["st-1"]
        assert qs["redirect_uri"] == [CALLBACK]
        assert "offline_access" in qs["scope"][0].split()

    def test_bitbucket_url(self) -> None:
        url = _dancer(FakeAtlassian()).authorize_url("bitbucketcloud", "st-2")
        assert url.startswith("https://bitbucket.org/site/oauth2/authorize?")
        assert "scope" not in parse_qs(urlsplit(url).query)

    def test_unknown_provider(self) -> None:
        with pytest.raises(UnknownProvider):
            _dancer(FakeAtlassian()).authorize_url("gitlab", "st")


class TestDance:
    def test_jira_dance_exchanges_code_and_loads_profile(self) -> None:
        backend = FakeAtlassian()
        opened: List[str] = []
        dancer = _dancer(backend, open_url=lambda provider, url: opened.append(url))

        async def scenario():
            task = asyncio.create_task(dancer.do_dance("jiracloud"))
            pending = await dancer.wait_started("jiracloud", timeout=1.0)
            assert pending is not None
            assert dancer.complete_dance(pending.state, "the-code") is True
            return pending, await task

        pending, info = asyncio.run(scenario())

        assert opened == [pending.authorize_url]
        assert info.access == "new-access"
        assert info.refresh == "new-refresh"
        assert info.cloud_id == "cloud-abc"
        assert info.user is not None and info.user.email == "pat@acme.test"
        assert info.expires_at is not None

        token_body = json.loads(backend.requests[0].content)
        assert token_body["grant_type"] == "authorization_code"
        assert token_body["code"] == "the-code"
        assert token_body["client_id"] == "jira-id"
        assert dancer.pending_for("jiracloud") is None

    def test_dance_times_out(self) -> None:
        dancer = _dancer(FakeAtlassian(), dance_timeout=0.01)
        with pytest.raises(CredentialUnavailable):
            asyncio.run(dancer.do_dance("jiracloud"))
        assert dancer.pending_for("jiracloud") is None

    def test_user_declined(self) -> None:
        dancer = _dancer(FakeAtlassian())

        async def scenario():
            task = asyncio.create_task(dancer.do_dance("bitbucketcloud"))
            pending = await dancer.wait_started("bitbucketcloud", timeout=1.0)
            dancer.fail_dance(pending.state, "access_denied")
            return await task

        with pytest.raises(CredentialUnavailable):
            asyncio.run(scenario())

    def test_rejected_code(self) -> None:
        dancer = _dancer(FakeAtlassian(token_status=400))

        async def scenario():
            task = asyncio.create_task(dancer.do_dance("jiracloud"))
            pending = await dancer.wait_started("jiracloud", timeout=1.0)
            dancer.complete_dance(pending.state, "stale-code")
            return await task

        with pytest.raises(CredentialUnavailable):
            asyncio.run(scenario())

    def test_unconfigured_app(self) -> None:
        dancer = _dancer(FakeAtlassian(), settings=_settings(jira_client_id=None))
        with pytest.raises(CredentialUnavailable):
            asyncio.run(dancer.do_dance("jiracloud"))

    def test_unknown_state_is_rejected(self) -> None:
        dancer = _dancer(FakeAtlassian())
        assert dancer.complete_dance("nope", "code") is False
        assert dancer.fail_dance("nope", "denied") is False


class TestRefresh:
    def test_jira_refresh_rotates_tokens_and_keeps_resources(self) -> None:
        backend = FakeAtlassian()
        dancer = _dancer(backend)

        info = asyncio.run(dancer.refresh(make_info("jiracloud")))

        assert info.access == "new-access"
        assert info.refresh == "new-refresh"
        assert info.cloud_id == "cloud-123"
        assert len(backend.requests) == 1
        body = json.loads(backend.requests[0].content)
        assert body == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "jira-id",
            "client_secret": "jira-secret",
        }

    def test_bitbucket_refresh_uses_basic_auth_and_keeps_refresh_token(self) -> None:
        backend = FakeAtlassian(rotate=False)
        dancer = _dancer(backend)

        info = asyncio.run(dancer.refresh(make_info("bitbucketcloud", refresh="bb-refresh")))

        request = backend.requests[0]
        assert request.headers["authorization"].startswith("Basic ")
        assert parse_qs(request.content.decode()) == {
            "grant_type": ["refresh_token"],
            "refresh_token": ["bb-refresh"],
        }
        assert info.access == "new-access"
        assert info.refresh == "bb-refresh"

    def test_missing_refresh_token(self) -> None:
        with pytest.raises(RefreshFailed):
            asyncio.run(_dancer(FakeAtlassian()).refresh(make_info("jiracloud", refresh=None)))

    def test_revoked_refresh_token(self) -> None:
        with pytest.raises(RefreshFailed):
            asyncio.run(_dancer(FakeAtlassian(token_status=401)).refresh(make_info("jiracloud")))

    def test_network_error(self) -> None:
        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        dancer = OAuthDancer(oauth_apps_from_settings(_settings()), CALLBACK, transport=httpx.MockTransport(boom))
        with pytest.raises(RefreshFailed) as excinfo:
            asyncio.run(dancer.refresh(make_info("jiracloud")))
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


class TestMalformedResponses:
    def _dancer(self, handler) -> OAuthDancer:
        return OAuthDancer(oauth_apps_from_settings(_settings()), CALLBACK, transport=httpx.MockTransport(handler))

    def test_token_response_that_is_not_json(self) -> None:
        dancer = self._dancer(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(RefreshFailed):
            asyncio.run(dancer.refresh(make_info("jiracloud")))

    def test_token_response_that_is_a_list(self) -> None:
        dancer = self._dancer(lambda request: httpx.Response(200, json=["access_token"]))
        with pytest.raises(RefreshFailed):
            asyncio.run(dancer.refresh(make_info("bitbucketcloud")))

    def test_resources_object_instead_of_list(self) -> None:
        backend = FakeAtlassian()

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url).endswith("/accessible-resources"):
                return httpx.Response(200, json={"id": "cloud-abc"})
            return backend(request)

        dancer = self._dancer(handler)
        info = make_info("jiracloud").model_copy(update={"accessible_resources": []})
        with pytest.raises(RefreshFailed) as excinfo:
            asyncio.run(dancer.refresh(info))
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_profile_that_is_not_json_fails_the_dance(self) -> None:
        backend = FakeAtlassian()

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url).endswith("/2.0/user"):
                return httpx.Response(200, text="not json")
            return backend(request)

        dancer = self._dancer(handler)

        async def scenario():
            task = asyncio.create_task(dancer.do_dance("bitbucketcloud"))
            pending = await dancer.wait_started("bitbucketcloud", timeout=1.0)
            dancer.complete_dance(pending.state, "the-code")
            return await task

        with pytest.raises(CredentialUnavailable):
            asyncio.run(scenario())


def test_pending_for_returns_newest_dance() -> None:
    dancer = _dancer(FakeAtlassian())

    async def scenario():
        old = asyncio.create_task(dancer.do_dance("jiracloud"))
        first = await dancer.wait_started("jiracloud", timeout=1.0)
        new = asyncio.create_task(dancer.do_dance("jiracloud"))
        await asyncio.sleep(0)
        latest = dancer.pending_for("jiracloud")
        for task in (old, new):
            task.cancel()
        await asyncio.gather(old, new, return_exceptions=True)
        return first, latest

    first, latest = asyncio.run(scenario())

    assert latest is not None
    assert latest.state != first.state
