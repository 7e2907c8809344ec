from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# ---------- Providers ----------

Provider = Literal["jiracloud", "bitbucketcloud"]

JIRA_CLOUD: Provider = "jiracloud"
BITBUCKET_CLOUD: Provider = "bitbucketcloud"
PROVIDERS: tuple[Provider, ...] = (JIRA_CLOUD, BITBUCKET_CLOUD)


# ---------- Credentials ----------

class AccessibleResource(BaseModel):
    """One Atlassian cloud site the token can address (Jira cloud id)."""
    id: str
    name: str = ""
    url: str = ""
    scopes: List[str] = Field(default_factory=list)
    avatar_url: Optional[str] = None


class UserInfo(BaseModel):
    id: str
    display_name: str = ""
    email: Optional[str] = None


class AuthInfo(BaseModel):
    """
    Per-provider credential bundle as persisted by the auth store and
    produced by the OAuth dancer.
    """
    provider: Provider
    access: str
    refresh: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: str = ""
    accessible_resources: List[AccessibleResource] = Field(default_factory=list)
    user: Optional[UserInfo] = None

    @property
    def cloud_id(self) -> str:
        return self.accessible_resources[0].id if self.accessible_resources else ""


# ---------- /connections responses ----------

class ProviderStatus(BaseModel):
    provider: Provider
    authenticated: bool
    cached: bool
    ttl_seconds: Optional[float] = None
    user: Optional[UserInfo] = None


class AuthorizeResponse(BaseModel):
    provider: Provider
    authorize_url: str
    state: str


class SettingUpdate(BaseModel):
    value: Any = None


class SettingsSnapshot(BaseModel):
    is_debugging: bool
    sections: Dict[str, Any] = Field(default_factory=dict)
