from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from atlhub.errors import RefreshFailed
from atlhub.schemas import AccessibleResource, AuthInfo, UserInfo


def make_info(provider: str = "jiracloud", access: str = "access-1", refresh: Optional[str] = "refresh-1") -> AuthInfo:
    resources = [AccessibleResource(id="cloud-123", name="acme")] if provider == "jiracloud" else []
    return AuthInfo(
        provider=provider,
        access=access,
        refresh=refresh,
        accessible_resources=resources,
        user=UserInfo(id="u-1", display_name="Pat"),
    )


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAuthStore:
    def __init__(self) -> None:
        self.infos: Dict[str, AuthInfo] = {}
        self.calls: List[Tuple[str, str]] = []

    async def get_auth_info(self, provider: str) -> Optional[AuthInfo]:
        self.calls.append(("get", provider))
        return self.infos.get(provider)

    async def save_auth_info(self, provider: str, info: AuthInfo) -> None:
        self.calls.append(("save", provider))
        self.infos[provider] = info

    async def remove_auth_info(self, provider: str) -> None:
        self.calls.append(("remove", provider))
        self.infos.pop(provider, None)


class FakeDancer:
    def __init__(self) -> None:
        self.dance_calls: List[str] = []
        self.refresh_calls: List[str] = []
        self.dance_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def do_dance(self, provider: str) -> AuthInfo:
        self.dance_calls.append(provider)
        if self.gate is not None:
            await self.gate.wait()
        if self.dance_error is not None:
            raise self.dance_error
        return make_info(provider, access=f"{provider}-dance-{len(self.dance_calls)}")

    async def refresh(self, info: AuthInfo) -> AuthInfo:
        self.refresh_calls.append(info.provider)
        if self.gate is not None:
            await self.gate.wait()
        if self.refresh_error is not None:
            raise self.refresh_error
        return info.model_copy(update={"access": info.access + "-refreshed"})


class FakeClient:
    def __init__(self, info: AuthInfo):
        self.info = info


class RecordingFactory:
    def __init__(self) -> None:
        self.built: List[AuthInfo] = []

    def __call__(self, info: AuthInfo) -> Any:
        self.built.append(info)
        return FakeClient(info)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeAuthStore:
    return FakeAuthStore()


@pytest.fixture
def dancer() -> FakeDancer:
    return FakeDancer()


@pytest.fixture
def factory() -> RecordingFactory:
    return RecordingFactory()


@pytest.fixture
def refresh_failed() -> RefreshFailed:
    return RefreshFailed("refresh token revoked", "jiracloud")
