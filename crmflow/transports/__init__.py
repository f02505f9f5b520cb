"""Dispatch transports; ``get_transport`` picks one from configuration."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import CrmflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(config: CrmflowConfig) -> BaseTransport:
    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        prefix=settings.queue_prefix,
    )


_BACKENDS: Dict[str, Callable[[CrmflowConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[CrmflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend`` or, failing that, by ``config``."""

    config = config or load_config()
    name = (backend or config.transport.backend).lower()
    try:
        build = _BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"Unsupported transport backend: {name} (expected one of {', '.join(sorted(_BACKENDS))})"
        ) from None
    return build(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
