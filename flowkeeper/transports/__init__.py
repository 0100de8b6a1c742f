"""Event transports and the factory choosing one from configuration."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import FlowkeeperConfig, load_config
from .base import BaseTransport, Lifespan
from .inmemory import InMemoryTransport


def _redis_transport(config: FlowkeeperConfig) -> BaseTransport:
    # redis is only imported when a deployment actually selects it
    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
    )


_BACKENDS: Dict[str, Callable[[FlowkeeperConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowkeeperConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``FLOWKEEPER_TRANSPORT`` or the config."""
    config = config or load_config()
    name = (backend or os.getenv("FLOWKEEPER_TRANSPORT") or config.transport.backend).lower()
    try:
        build = _BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"Unsupported transport backend: {name} (choose from {sorted(_BACKENDS)})"
        ) from None
    return build(config)


__all__ = ["BaseTransport", "InMemoryTransport", "Lifespan", "get_transport"]
