# atlhub/config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from dotenv import load_dotenv

from atlhub.services.logging import log_kv

LOG = logging.getLogger(__name__)

# backend/.env relative to this file; shell env wins
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Process settings, read from the environment once at startup."""
    database_url: str = ""
    jira_client_id: Optional[str] = None
    jira_client_secret: Optional[str] = None
    bitbucket_client_id: Optional[str] = None
    bitbucket_client_secret: Optional[str] = None
    callback_url: Optional[str] = None
    debug: bool = False
    dance_timeout: float = 300.0
    reauth_on_refresh_failure: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            jira_client_id=os.getenv("JIRA_CLIENT_ID"),
            jira_client_secret=os.getenv("JIRA_CLIENT_SECRET"),
            bitbucket_client_id=os.getenv("BITBUCKET_CLIENT_ID"),
            bitbucket_client_secret=os.getenv("BITBUCKET_CLIENT_SECRET"),
            callback_url=os.getenv("OAUTH_CALLBACK_URL"),
            debug=_env_bool("ATL_DEBUG"),
            dance_timeout=float(os.getenv("ATL_DANCE_TIMEOUT", "300")),
            reauth_on_refresh_failure=_env_bool("ATL_REAUTH_ON_REFRESH_FAILURE"),
        )


# ---------- Configuration sections ----------

DEBUG_PROXY_ENABLED = "debug.proxy.enabled"
DEBUG_PROXY_HOST = "debug.proxy.host"
DEBUG_PROXY_PORT = "debug.proxy.port"
DEBUG_PROXY_CA_CERT = "debug.proxy.caCert"

DEFAULT_SECTIONS: Dict[str, Any] = {
    DEBUG_PROXY_ENABLED: False,
    DEBUG_PROXY_HOST: "127.0.0.1",
    DEBUG_PROXY_PORT: 8888,
    DEBUG_PROXY_CA_CERT: None,
}


@dataclass(frozen=True)
class ConfigurationChangeEvent:
    sections: FrozenSet[str] = frozenset()
    initializing: bool = False

    def affects(self, section: str) -> bool:
        if self.initializing:
            return True
        return any(s == section or s.startswith(section + ".") for s in self.sections)


Listener = Callable[[ConfigurationChangeEvent], None]


@dataclass
class Configuration:
    """
    Mutable user configuration plus a change feed.

    `update` stores a value and notifies every subscriber with the changed
    section. A listener that raises is logged and skipped; the remaining
    listeners still run.
    """
    is_debugging: bool = False
    _values: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SECTIONS))
    _listeners: List[Listener] = field(default_factory=list)

    initializing_change_event = ConfigurationChangeEvent(initializing=True)

    def get(self, section: str, default: Any = None) -> Any:
        return self._values.get(section, default)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def update(self, section: str, value: Any) -> None:
        self.update_many({section: value})

    def update_many(self, values: Dict[str, Any]) -> None:
        self._values.update(values)
        self._fire(ConfigurationChangeEvent(sections=frozenset(values)))

    def on_did_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def _fire(self, event: ConfigurationChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOG.exception("config.listener_failed")
        log_kv(LOG, logging.DEBUG, "config.changed", sections=",".join(sorted(event.sections)))


def load_configuration(settings: Settings, overrides: Optional[Iterable[tuple[str, Any]]] = None) -> Configuration:
    cfg = Configuration(is_debugging=settings.debug)
    if overrides:
        cfg._values.update(dict(overrides))
    return cfg
