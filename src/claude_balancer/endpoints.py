import logging
import threading
from dataclasses import dataclass

from .config import EndpointConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    index: int  # position in the registry, 0-based
    base_url: str  # always ends with "/"
    auth_token: str

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}v1/messages"


class EndpointRegistry:
    """Fixed, ordered pool of upstream endpoints."""

    def __init__(self, endpoints: list[Endpoint]):
        if not endpoints:
            raise ValueError("endpoint registry must not be empty")
        self._endpoints = tuple(endpoints)

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        return self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    def __iter__(self):
        return iter(self._endpoints)

    def __getitem__(self, index: int) -> Endpoint:
        return self._endpoints[index]


class RoundRobinSelector:
    """Round-robin cursor over a registry.

    ``next()`` never awaits, so under the event loop the read and the advance
    happen in one step. The lock keeps that true for threaded callers.
    """

    def __init__(self, registry: EndpointRegistry):
        self._registry = registry
        self._cursor = 0
        self._lock = threading.Lock()

    @property
    def cursor(self) -> int:
        return self._cursor

    def next(self) -> Endpoint:
        with self._lock:
            endpoint = self._registry[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._registry)
        return endpoint


_registry: EndpointRegistry | None = None
_selector: RoundRobinSelector | None = None


def init_endpoints(endpoints: list[EndpointConfig]) -> EndpointRegistry:
    """Build the registry from config and reset the cursor to the first endpoint."""
    global _registry, _selector

    registry = EndpointRegistry([
        Endpoint(index=i, base_url=e.base_url, auth_token=e.auth_token)
        for i, e in enumerate(endpoints)
    ])
    _registry = registry
    _selector = RoundRobinSelector(registry)

    for endpoint in registry:
        logger.info("Endpoint %d/%d: %s", endpoint.index + 1, len(registry), endpoint.base_url)
    return registry


def get_registry() -> EndpointRegistry:
    if _registry is None:
        raise RuntimeError("endpoints not initialized")
    return _registry


def get_selector() -> RoundRobinSelector:
    if _selector is None:
        raise RuntimeError("endpoints not initialized")
    return _selector
