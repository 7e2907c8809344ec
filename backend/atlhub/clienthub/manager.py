# atlhub/clienthub/manager.py
"""
Authenticated client cache.

One client per provider lives in an ExpiringCache for CLIENT_TTL_SECONDS. A
miss loads stored credentials, silently refreshes them (or runs the
interactive dance when nothing is stored), persists the result and builds the
client. Concurrent misses for one provider share a single in-flight task.

Configuration changes bump a generation counter. A cached client built at an
older generation is rebuilt from the stored credentials on its next access,
without a token exchange, and keeps the TTL clock of the entry it replaces.
"""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from atlhub.clienthub.clients import (
    DEFAULT_HTTP_OPTIONS,
    BitbucketClient,
    HttpOptions,
    JiraClient,
    bitbucket_client_factory,
    jira_client_factory,
)
from atlhub.clienthub.oauth import TokenRefresher
from atlhub.config import (
    DEBUG_PROXY_CA_CERT,
    DEBUG_PROXY_ENABLED,
    DEBUG_PROXY_HOST,
    DEBUG_PROXY_PORT,
    Configuration,
    ConfigurationChangeEvent,
)
from atlhub.errors import CredentialUnavailable, FactoryError, RefreshFailed, UnknownProvider
from atlhub.schemas import BITBUCKET_CLOUD, JIRA_CLOUD, PROVIDERS, AuthInfo, ProviderStatus
from atlhub.services.auth_store import AuthStore
from atlhub.services.cache import ExpiringCache
from atlhub.services.logging import log_kv

LOG = logging.getLogger(__name__)

CLIENT_TTL_SECONDS = 45 * 60  # shorter than Atlassian access-token lifetimes

T = TypeVar("T")
Factory = Callable[[AuthInfo], T]


class ClientManager:
    def __init__(
        self,
        auth_store: AuthStore,
        dancer: TokenRefresher,
        *,
        cache: Optional[ExpiringCache[Any]] = None,
        ttl_seconds: float = CLIENT_TTL_SECONDS,
        reauth_on_refresh_failure: bool = False,
    ):
        self._store = auth_store
        self._dancer = dancer
        self._clients: ExpiringCache[Any] = cache if cache is not None else ExpiringCache()
        self._ttl = ttl_seconds
        self._reauth_on_refresh_failure = reauth_on_refresh_failure
        self._generation = 0
        self._http_options: HttpOptions = DEFAULT_HTTP_OPTIONS
        self._in_flight: Dict[str, asyncio.Task] = {}
        # bumped by logout; loads started under an older value are discarded
        self._epochs: Dict[str, int] = {}
        self._configuration: Optional[Configuration] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def http_options(self) -> HttpOptions:
        return self._http_options

    @property
    def cache(self) -> ExpiringCache[Any]:
        return self._clients

    # ---------- Configuration ----------

    def configure(self, configuration: Configuration) -> None:
        """Subscribe to the configuration feed and apply the current values."""
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._configuration = configuration
        self._unsubscribe = configuration.on_did_change(self.on_configuration_changed)
        self.on_configuration_changed(configuration.initializing_change_event)

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_configuration_changed(self, event: ConfigurationChangeEvent) -> None:
        # Every change invalidates, whatever section it touched
        self._generation += 1
        if self._configuration is not None:
            self._http_options = self._build_http_options(self._configuration)
        log_kv(LOG, logging.DEBUG, "client.config_changed", generation=self._generation,
               proxy=self._http_options.proxy or "-", initializing=int(event.initializing))

    @staticmethod
    def _build_http_options(configuration: Configuration) -> HttpOptions:
        if not (configuration.is_debugging and configuration.get(DEBUG_PROXY_ENABLED)):
            return DEFAULT_HTTP_OPTIONS
        host = configuration.get(DEBUG_PROXY_HOST, "127.0.0.1")
        port = configuration.get(DEBUG_PROXY_PORT, 8888)
        ca_cert = configuration.get(DEBUG_PROXY_CA_CERT)
        verify: Any = True
        if ca_cert:
            if os.path.exists(ca_cert):
                verify = ssl.create_default_context(cafile=ca_cert)
            else:
                log_kv(LOG, logging.WARNING, "client.proxy_cert_missing", path=ca_cert)
        return HttpOptions(proxy=f"http://{host}:{port}", verify=verify)

    # ---------- Clients ----------

    async def jira_client(self) -> JiraClient:
        return await self.get_client(
            JIRA_CLOUD, lambda info: jira_client_factory(info, self._http_options), JiraClient
        )

    async def bitbucket_client(self) -> BitbucketClient:
        return await self.get_client(
            BITBUCKET_CLOUD, lambda info: bitbucket_client_factory(info, self._http_options), BitbucketClient
        )

    async def client_for(self, provider: str) -> Any:
        if provider == JIRA_CLOUD:
            return await self.jira_client()
        if provider == BITBUCKET_CLOUD:
            return await self.bitbucket_client()
        raise UnknownProvider(f"Unknown provider {provider!r}", provider)

    async def get_client(self, provider: str, factory: Factory[T], expected: Optional[Type[T]] = None) -> T:
        entry = self._clients.entry(provider)
        if entry is None:
            log_kv(LOG, logging.DEBUG, "client.cache_miss", provider=provider)
            client = await self._load_once(provider, factory)
        elif entry.generation < self._generation:
            client = await self._rebuild(provider, factory, entry.value)
        else:
            client = entry.value

        if expected is not None and not isinstance(client, expected):
            raise TypeError(f"cached client for {provider} is {type(client).__name__}, expected {expected.__name__}")
        return client

    async def _load_once(self, provider: str, factory: Factory[T]) -> T:
        """
        Run one load per provider. Callers that arrive while a load is running
        join it and receive the client built by the first caller's factory.
        The typed entry points use one factory per provider, so this only
        matters to direct `get_client` callers mixing factories for the same
        provider; their `expected` check then raises TypeError.
        """
        # no await between lookup and insert, so one task per provider
        task = self._in_flight.get(provider)
        if task is None:
            task = asyncio.create_task(self._load(provider, factory))
            self._in_flight[provider] = task
            task.add_done_callback(lambda t, p=provider: self._forget(p, t))
        else:
            log_kv(LOG, logging.DEBUG, "client.join_in_flight", provider=provider)
        # a cancelled waiter must not cancel the shared load
        return await asyncio.shield(task)

    def _forget(self, provider: str, task: asyncio.Task) -> None:
        if self._in_flight.get(provider) is task:
            self._in_flight.pop(provider, None)

    async def _load(self, provider: str, factory: Factory[T]) -> T:
        generation = self._generation
        epoch = self._epochs.get(provider, 0)
        info = await self._store.get_auth_info(provider)
        if info is None:
            info = await self._dancer.do_dance(provider)
        else:
            try:
                info = await self._dancer.refresh(info)
            except RefreshFailed:
                if not self._reauth_on_refresh_failure:
                    raise
                log_kv(LOG, logging.WARNING, "client.refresh_failed_reauth", provider=provider)
                info = await self._dancer.do_dance(provider)

        if self._logged_out_since(provider, epoch):
            raise self._discarded(provider)
        await self._store.save_auth_info(provider, info)
        if self._logged_out_since(provider, epoch):
            # logout ran while the save was pending
            await self._store.remove_auth_info(provider)
            raise self._discarded(provider)

        client = self._build(provider, factory, info)
        self._clients.set(provider, client, self._ttl, generation=generation)
        log_kv(LOG, logging.INFO, "client.cached", provider=provider, ttl_s=self._ttl, generation=generation)
        return client

    async def _rebuild(self, provider: str, factory: Factory[T], current: T) -> T:
        generation = self._generation
        epoch = self._epochs.get(provider, 0)
        info = await self._store.get_auth_info(provider)
        if self._logged_out_since(provider, epoch):
            raise self._discarded(provider)
        if info is None:
            log_kv(LOG, logging.WARNING, "client.rebuild_without_credentials", provider=provider)
            return current
        client = self._build(provider, factory, info)
        if not self._clients.update(provider, client, generation=generation):
            # expired or invalidated while the store was read: start a fresh lifetime
            self._clients.set(provider, client, self._ttl, generation=generation)
        log_kv(LOG, logging.INFO, "client.rebuilt", provider=provider, generation=generation)
        return client

    @staticmethod
    def _build(provider: str, factory: Factory[T], info: AuthInfo) -> T:
        try:
            return factory(info)
        except Exception as e:
            log_kv(LOG, logging.WARNING, "client.factory_failed", provider=provider, err=e.__class__.__name__)
            raise FactoryError(f"Could not build {provider} client: {e}", provider) from e

    def _logged_out_since(self, provider: str, epoch: int) -> bool:
        return self._epochs.get(provider, 0) != epoch

    def _discarded(self, provider: str) -> CredentialUnavailable:
        log_kv(LOG, logging.INFO, "client.load_discarded", provider=provider)
        return CredentialUnavailable(f"{provider} was logged out while its client was loading", provider)

    # ---------- Invalidation ----------

    def invalidate(self, provider: Optional[str] = None) -> None:
        if provider is None:
            self._clients.clear_all()
        else:
            self._clients.clear(provider)

    async def logout(self, provider: str) -> None:
        if provider not in PROVIDERS:
            raise UnknownProvider(f"Unknown provider {provider!r}", provider)
        # a running load must neither save nor cache, and the next miss starts afresh
        self._epochs[provider] = self._epochs.get(provider, 0) + 1
        self._in_flight.pop(provider, None)
        self.invalidate(provider)
        await self._store.remove_auth_info(provider)
        log_kv(LOG, logging.INFO, "client.logged_out", provider=provider)

    async def status(self) -> List[ProviderStatus]:
        out: List[ProviderStatus] = []
        for provider in PROVIDERS:
            info = await self._store.get_auth_info(provider)
            out.append(ProviderStatus(
                provider=provider,
                authenticated=info is not None,
                cached=provider in self._clients,
                ttl_seconds=self._clients.ttl_remaining(provider),
                user=info.user if info else None,
            ))
        return out


__all__ = ["ClientManager", "CLIENT_TTL_SECONDS"]
