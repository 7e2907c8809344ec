# atlhub/clienthub/clients.py
from __future__ import annotations

import ssl
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx

from atlhub.schemas import AuthInfo

ATLASSIAN_API_URL = "https://api.atlassian.com"
BITBUCKET_API_URL = "https://api.bitbucket.org/2.0"


@dataclass(frozen=True)
class HttpOptions:
    """
    Outbound HTTP settings shared by every client built in one configuration
    generation. `proxy` is set only while the debug proxy is switched on.
    """
    proxy: Optional[str] = None
    verify: Union[ssl.SSLContext, bool] = True
    timeout: float = 10.0

    def client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(proxy=self.proxy, verify=self.verify, timeout=self.timeout, **kwargs)


DEFAULT_HTTP_OPTIONS = HttpOptions()


class _RestClient:
    """Bearer-token REST client; one short-lived AsyncClient per request."""

    def __init__(self, base_url: str, token: str, options: HttpOptions = DEFAULT_HTTP_OPTIONS):
        self.base_url = base_url.rstrip("/") + "/"
        self.options = options
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        async with self.options.client(base_url=self.base_url, headers=self.headers) as client:
            resp = await client.request(method, path.lstrip("/"), **kwargs)
        resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def get(self, path: str, **params: Any) -> Any:
        return await self.request("GET", path, params=params or None)


class JiraClient(_RestClient):
    def __init__(self, cloud_id: str, token: str, options: HttpOptions = DEFAULT_HTTP_OPTIONS):
        self.cloud_id = cloud_id
        super().__init__(f"{ATLASSIAN_API_URL}/ex/jira/{cloud_id}/rest/", token, options)

    async def myself(self) -> Dict[str, Any]:
        return await self.get("api/2/myself")

    async def search(self, jql: str, max_results: int = 50) -> Dict[str, Any]:
        return await self.get("api/2/search", jql=jql, maxResults=max_results)


class BitbucketClient(_RestClient):
    def __init__(self, token: str, options: HttpOptions = DEFAULT_HTTP_OPTIONS):
        super().__init__(BITBUCKET_API_URL, token, options)

    async def myself(self) -> Dict[str, Any]:
        return await self.get("user")

    async def pull_requests(self, workspace: str, repo_slug: str, state: str = "OPEN") -> List[Dict[str, Any]]:
        data = await self.get(f"repositories/{workspace}/{repo_slug}/pullrequests", state=state)
        return (data or {}).get("values", [])


AuthenticatedClient = Union[JiraClient, BitbucketClient]


# ---------- Factories ----------

def jira_client_factory(info: AuthInfo, options: HttpOptions = DEFAULT_HTTP_OPTIONS) -> JiraClient:
    # No accessible resources yields an empty cloud id; requests then 404 instead of failing here.
    return JiraClient(info.cloud_id, info.access, options)


def bitbucket_client_factory(info: AuthInfo, options: HttpOptions = DEFAULT_HTTP_OPTIONS) -> BitbucketClient:
    return BitbucketClient(info.access, options)
