"""Name → connector handle mapping built once at startup."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from datasourcer.config import Settings, split_csv
from datasourcer.connectors.base_connector import Connector
from datasourcer.exceptions import ConfigError, ConnectorError, InvalidInput
from datasourcer.storage.auth_store import AuthStore

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[AuthStore, Settings], Connector]


@dataclass
class ConnectorHandle:
    """A connector plus the lock that serializes calls into it."""

    connector: Connector
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def name(self) -> str:
        return self.connector.name


class ProviderRegistry:
    def __init__(self) -> None:
        self._handles: Dict[str, ConnectorHandle] = {}
        self._lock = asyncio.Lock()

    def register(self, connector: Connector) -> ConnectorHandle:
        if not connector.name:
            raise ValueError(f"{type(connector).__name__} has no name")
        if connector.name in self._handles:
            raise ValueError(f"Connector already registered: {connector.name}")
        handle = ConnectorHandle(connector)
        self._handles[connector.name] = handle
        return handle

    async def get(self, name: str) -> ConnectorHandle:
        async with self._lock:
            handle = self._handles.get(name)
        if handle is None:
            raise InvalidInput(f"Unknown connector: {name}")
        return handle

    async def handles(self) -> List[ConnectorHandle]:
        """Snapshot of all handles, sorted by name."""
        async with self._lock:
            return [self._handles[k] for k in sorted(self._handles)]

    def names(self) -> List[str]:
        return sorted(self._handles)

    def __len__(self) -> int:
        return len(self._handles)


def default_factories() -> Dict[str, ConnectorFactory]:
    from datasourcer.connectors.localfs import LocalFsConnector
    from datasourcer.connectors.microsoft_graph import MicrosoftGraphConnector
    from datasourcer.connectors.web import WebConnector

    return {
        cls.name: (lambda store, settings, cls=cls: cls(store, settings=settings))
        for cls in (LocalFsConnector, WebConnector, MicrosoftGraphConnector)
    }


async def build_registry(
    settings: Settings,
    store: AuthStore,
    *,
    factories: Optional[Dict[str, ConnectorFactory]] = None,
) -> ProviderRegistry:
    """Construct the enabled connectors and load their stored credentials."""
    factories = factories if factories is not None else default_factories()
    enabled = split_csv(settings.app.enabled_connectors)
    unknown = [n for n in enabled if n not in factories]
    if unknown:
        raise ConfigError(f"Unknown connector(s) in enabled_connectors: {', '.join(unknown)}")

    registry = ProviderRegistry()
    for name in sorted(factories):
        if enabled and name not in enabled:
            continue
        connector = factories[name](store, settings)
        registry.register(connector)
        try:
            await connector.load_auth_details()
        except ConnectorError as e:
            logger.error("Could not load stored credentials for %s: %s", name, e)
        logger.debug("Registered connector %s (auth=%s)", name, connector.auth_type.value)
    logger.info("Registry ready with %d connector(s): %s", len(registry), ", ".join(registry.names()))
    return registry
