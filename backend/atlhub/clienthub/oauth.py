# atlhub/clienthub/oauth.py
"""
OAuth 2.0 authorization-code dance and refresh-token exchange for Jira Cloud
(auth.atlassian.com) and Bitbucket Cloud (bitbucket.org/site/oauth2).

The dancer never opens a browser itself. `do_dance` builds the authorize URL,
hands it to the `open_url` callback and waits for the redirect handler to call
`complete_dance(state, code)` (or `fail_dance`).
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol

import httpx

from atlhub.config import Settings
from atlhub.errors import CredentialUnavailable, RefreshFailed, UnknownProvider
from atlhub.schemas import BITBUCKET_CLOUD, JIRA_CLOUD, AccessibleResource, AuthInfo, UserInfo
from atlhub.services.logging import log_kv

LOG = logging.getLogger(__name__)


class TokenRefresher(Protocol):
    async def do_dance(self, provider: str) -> AuthInfo: ...

    async def refresh(self, info: AuthInfo) -> AuthInfo: ...


@dataclass(frozen=True)
class OAuthApp:
    """Registered OAuth consumer for one provider."""
    client_id: Optional[str]
    client_secret: Optional[str]
    authorize_url: str
    token_url: str
    scope: str = ""
    token_auth: Literal["body", "basic"] = "body"
    extra_params: Dict[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


def oauth_apps_from_settings(settings: Settings) -> Dict[str, OAuthApp]:
    return {
        JIRA_CLOUD: OAuthApp(
            client_id=settings.jira_client_id,
            client_secret=settings.jira_client_secret,
            authorize_url="https://auth.atlassian.com/authorize",
            token_url="https://auth.atlassian.com/oauth/token",
            scope="read:jira-user read:jira-work write:jira-work offline_access",
            extra_params={"audience": "api.atlassian.com", "prompt": "consent"},
        ),
        BITBUCKET_CLOUD: OAuthApp(
            client_id=settings.bitbucket_client_id,
            client_secret=settings.bitbucket_client_secret,
            authorize_url="https://bitbucket.org/site/oauth2/authorize",
            token_url="https://bitbucket.org/site/oauth2/access_token",
            token_auth="basic",
        ),
    }


@dataclass
class PendingDance:
    provider: str
    state: str
    authorize_url: str
    future: "asyncio.Future[str]"


def _make_state() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(24)).decode().rstrip("=")


def _json_object(resp: httpx.Response) -> Dict[str, Any]:
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _log_authorize_url(provider: str, url: str) -> None:
    log_kv(LOG, logging.INFO, "oauth.authorize_url", provider=provider, url=url)


class OAuthDancer:
    ACCESSIBLE_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
    ATLASSIAN_ME_URL = "https://api.atlassian.com/me"
    BITBUCKET_USER_URL = "https://api.bitbucket.org/2.0/user"

    def __init__(
        self,
        apps: Dict[str, OAuthApp],
        callback_url: Optional[str],
        *,
        open_url: Callable[[str, str], None] = _log_authorize_url,
        dance_timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._apps = apps
        self._callback_url = callback_url
        self._open_url = open_url
        self._dance_timeout = dance_timeout
        self._transport = transport
        self._pending: Dict[str, PendingDance] = {}
        self._started: Dict[str, asyncio.Event] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "OAuthDancer":
        kwargs.setdefault("dance_timeout", settings.dance_timeout)
        return cls(oauth_apps_from_settings(settings), settings.callback_url, **kwargs)

    def _app(self, provider: str) -> OAuthApp:
        app = self._apps.get(provider)
        if app is None:
            raise UnknownProvider(f"No OAuth app for provider {provider!r}", provider)
        return app

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=15.0, transport=self._transport)

    # ---------- Authorization-code dance ----------

    def authorize_url(self, provider: str, state: str) -> str:
        app = self._app(provider)
        params: Dict[str, str] = {
            "client_id": app.client_id or "",
            "response_type": "code",
            "state": state,
        }
        if self._callback_url:
            params["redirect_uri"] = self._callback_url
        if app.scope:
            params["scope"] = app.scope
        params.update(app.extra_params)
        return f"{app.authorize_url}?{httpx.QueryParams(params)}"

    def pending_for(self, provider: str) -> Optional[PendingDance]:
        """The most recently started dance for `provider`, if one is waiting."""
        for pending in reversed(list(self._pending.values())):
            if pending.provider == provider:
                return pending
        return None

    async def wait_started(self, provider: str, timeout: float = 5.0) -> Optional[PendingDance]:
        """Wait until a dance for `provider` has published its authorize URL."""
        pending = self.pending_for(provider)
        if pending:
            return pending
        event = self._started.setdefault(provider, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.pending_for(provider)

    def complete_dance(self, state: str, code: str) -> bool:
        pending = self._pending.get(state)
        if pending is None or pending.future.done():
            log_kv(LOG, logging.WARNING, "oauth.unknown_state")
            return False
        pending.future.set_result(code)
        return True

    def fail_dance(self, state: str, reason: str) -> bool:
        pending = self._pending.get(state)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(CredentialUnavailable(f"Authorization failed: {reason}", pending.provider))
        return True

    async def do_dance(self, provider: str) -> AuthInfo:
        app = self._app(provider)
        if not (app.configured and self._callback_url):
            raise CredentialUnavailable(f"OAuth not configured for {provider}", provider)

        state = _make_state()
        url = self.authorize_url(provider, state)
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[state] = PendingDance(provider, state, url, future)
        started = self._started.pop(provider, None)
        if started:
            started.set()

        log_kv(LOG, logging.INFO, "oauth.dance_started", provider=provider)
        try:
            self._open_url(provider, url)
            code = await asyncio.wait_for(future, self._dance_timeout)
        except asyncio.TimeoutError as e:
            raise CredentialUnavailable(f"Timed out waiting for {provider} authorization", provider) from e
        finally:
            self._pending.pop(state, None)

        data = await self._token_request(provider, {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._callback_url,
        }, CredentialUnavailable)
        info = self._auth_info_from_token(provider, data)
        info = await self._enrich(info, CredentialUnavailable)
        log_kv(LOG, logging.INFO, "oauth.dance_complete", provider=provider,
               resources=len(info.accessible_resources))
        return info

    # ---------- Silent refresh ----------

    async def refresh(self, info: AuthInfo) -> AuthInfo:
        if not info.refresh:
            raise RefreshFailed(f"No refresh token stored for {info.provider}", info.provider)
        data = await self._token_request(info.provider, {
            "grant_type": "refresh_token",
            "refresh_token": info.refresh,
        }, RefreshFailed)
        refreshed = self._auth_info_from_token(info.provider, data, previous=info)
        if not refreshed.accessible_resources and info.provider == JIRA_CLOUD:
            refreshed = await self._enrich(refreshed, RefreshFailed)
        log_kv(LOG, logging.INFO, "oauth.refreshed", provider=info.provider,
               rotated=int(refreshed.refresh != info.refresh))
        return refreshed

    # ---------- HTTP helpers ----------

    async def _token_request(self, provider: str, form: Dict[str, Any], error: type) -> Dict[str, Any]:
        app = self._app(provider)
        if not app.configured:
            raise error(f"OAuth not configured for {provider}", provider)

        try:
            async with self._http() as client:
                if app.token_auth == "basic":
                    resp = await client.post(
                        app.token_url,
                        data=form,
                        auth=(app.client_id, app.client_secret),
                        headers={"Accept": "application/json"},
                    )
                else:
                    body = dict(form, client_id=app.client_id, client_secret=app.client_secret)
                    resp = await client.post(app.token_url, json=body, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            log_kv(LOG, logging.WARNING, "oauth.token_request_failed", provider=provider, err=e.__class__.__name__)
            raise error(f"Token request to {provider} failed: {e.__class__.__name__}", provider) from e

        if resp.status_code != 200:
            log_kv(LOG, logging.WARNING, "oauth.token_rejected", provider=provider, status=resp.status_code)
            raise error(f"Token exchange failed for {provider}: HTTP {resp.status_code}", provider)

        try:
            data = _json_object(resp)
        except ValueError as e:
            log_kv(LOG, logging.WARNING, "oauth.token_unreadable", provider=provider, err=e.__class__.__name__)
            raise error(f"Unreadable token response from {provider}", provider) from e
        if not data.get("access_token"):
            raise error(f"No access token returned by {provider}", provider)
        return data

    def _auth_info_from_token(self, provider: str, data: Dict[str, Any], previous: Optional[AuthInfo] = None) -> AuthInfo:
        expires_in = int(data.get("expires_in") or 0)
        scopes = data.get("scope") or data.get("scopes") or (previous.scopes if previous else "")
        return AuthInfo(
            provider=provider,
            access=data["access_token"],
            # servers that do not rotate refresh tokens omit them from the response
            refresh=data.get("refresh_token") or (previous.refresh if previous else None),
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in) if expires_in else None,
            scopes=scopes,
            accessible_resources=list(previous.accessible_resources) if previous else [],
            user=previous.user if previous else None,
        )

    async def _enrich(self, info: AuthInfo, error: type) -> AuthInfo:
        headers = {"Authorization": f"Bearer {info.access}", "Accept": "application/json"}
        try:
            async with self._http() as client:
                if info.provider == JIRA_CLOUD:
                    r = await client.get(self.ACCESSIBLE_RESOURCES_URL, headers=headers)
                    r.raise_for_status()
                    resources = self._parse_resources(r.json())
                    r = await client.get(self.ATLASSIAN_ME_URL, headers=headers)
                    r.raise_for_status()
                    me = _json_object(r)
                    user = UserInfo(id=me.get("account_id", ""), display_name=me.get("name", ""), email=me.get("email"))
                else:
                    resources = []
                    r = await client.get(self.BITBUCKET_USER_URL, headers=headers)
                    r.raise_for_status()
                    me = _json_object(r)
                    user = UserInfo(id=me.get("account_id") or me.get("uuid", ""), display_name=me.get("display_name", ""))
        # ValueError covers bodies that are not JSON or not the expected shape
        except (httpx.HTTPError, ValueError) as e:
            log_kv(LOG, logging.WARNING, "oauth.profile_failed", provider=info.provider, err=e.__class__.__name__)
            raise error(f"Could not load {info.provider} profile: {e.__class__.__name__}", info.provider) from e
        return info.model_copy(update={"accessible_resources": resources, "user": user})

    @staticmethod
    def _parse_resources(items: Any) -> List[AccessibleResource]:
        if items is None:
            return []
        if not isinstance(items, list) or not all(isinstance(it, dict) for it in items):
            raise ValueError("accessible-resources is not a list of objects")
        return [
            AccessibleResource(
                id=it["id"],
                name=it.get("name", ""),
                url=it.get("url", ""),
                scopes=it.get("scopes", []),
                avatar_url=it.get("avatarUrl"),
            )
            for it in items
            if it.get("id")
        ]
