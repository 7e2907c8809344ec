# atlhub/routers/connections.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from atlhub.clienthub.manager import ClientManager
from atlhub.clienthub.oauth import OAuthDancer
from atlhub.config import Configuration
from atlhub.deps import get_client_manager, get_configuration, get_dancer
from atlhub.schemas import PROVIDERS, AuthorizeResponse, ProviderStatus, SettingsSnapshot, SettingUpdate
from atlhub.services.logging import log_kv

LOG = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])
settings_router = APIRouter(prefix="/settings", tags=["settings"])

AUTHORIZE_WAIT_SECONDS = 5.0


# ---------- Helpers ----------
def _check_provider(provider: str) -> str:
    if provider not in PROVIDERS:
        raise HTTPException(404, f"Unknown provider {provider!r}")
    return provider


def _track(request: Request, task: asyncio.Task) -> None:
    """Keep a reference to a background client fetch until it settles."""
    tasks = request.app.state.dance_tasks
    tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            log_kv(LOG, logging.WARNING, "connections.authorize_failed", err=t.exception().__class__.__name__)

    task.add_done_callback(_done)


# ===========================
# Status
# ===========================
@router.get("", response_model=List[ProviderStatus])
async def get_connections_status(manager: ClientManager = Depends(get_client_manager)):
    return await manager.status()


# ===========================
# OAuth
# ===========================
@router.post("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: str,
    request: Request,
    manager: ClientManager = Depends(get_client_manager),
    dancer: OAuthDancer = Depends(get_dancer),
):
    """
    Forget the stored credentials and start a fresh dance. The client fetch
    keeps running in the background until the callback arrives; the response
    carries the URL the user has to open.
    """
    _check_provider(provider)
    await manager.logout(provider)

    fetch = asyncio.create_task(manager.client_for(provider))
    _track(request, fetch)
    started = asyncio.create_task(dancer.wait_started(provider, AUTHORIZE_WAIT_SECONDS))
    await asyncio.wait({fetch, started}, return_when=asyncio.FIRST_COMPLETED)

    if fetch.done() and not fetch.cancelled() and fetch.exception() is not None:
        started.cancel()
        raise fetch.exception()

    pending = await started
    if pending is None:
        raise HTTPException(504, f"{provider} authorization did not start")
    return AuthorizeResponse(provider=provider, authorize_url=pending.authorize_url, state=pending.state)


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    state: str = Query(...),
    code: Optional[str] = None,
    error: Optional[str] = None,
    dancer: OAuthDancer = Depends(get_dancer),
):
    _check_provider(provider)
    if code:
        ok = dancer.complete_dance(state, code)
    else:
        ok = dancer.fail_dance(state, error or "missing code")
    if not ok:
        raise HTTPException(400, "Invalid state parameter")
    return {"ok": bool(code), "provider": provider}


@router.post("/{provider}/logout")
async def logout(provider: str, manager: ClientManager = Depends(get_client_manager)):
    _check_provider(provider)
    await manager.logout(provider)
    return {"status": "logged_out", "provider": provider}


@router.get("/{provider}/me")
async def me(provider: str, manager: ClientManager = Depends(get_client_manager)) -> Dict[str, Any]:
    _check_provider(provider)
    client = await manager.client_for(provider)
    return await client.myself()


# ===========================
# Settings (configuration change feed)
# ===========================
@settings_router.get("", response_model=SettingsSnapshot)
async def get_settings(configuration: Configuration = Depends(get_configuration)):
    return SettingsSnapshot(is_debugging=configuration.is_debugging, sections=configuration.snapshot())


@settings_router.put("/{section}", response_model=SettingsSnapshot)
async def put_setting(
    section: str,
    payload: SettingUpdate,
    configuration: Configuration = Depends(get_configuration),
):
    configuration.update(section, payload.value)
    return SettingsSnapshot(is_debugging=configuration.is_debugging, sections=configuration.snapshot())
