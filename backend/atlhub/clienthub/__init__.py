# atlhub/clienthub/__init__.py
from __future__ import annotations

from atlhub.clienthub.clients import AuthenticatedClient, BitbucketClient, HttpOptions, JiraClient
from atlhub.clienthub.manager import CLIENT_TTL_SECONDS, ClientManager
from atlhub.clienthub.oauth import OAuthDancer, TokenRefresher

__all__ = [
    "AuthenticatedClient",
    "BitbucketClient",
    "CLIENT_TTL_SECONDS",
    "ClientManager",
    "HttpOptions",
    "JiraClient",
    "OAuthDancer",
    "TokenRefresher",
]
