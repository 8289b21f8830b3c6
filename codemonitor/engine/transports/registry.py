"""Transport registry: maps session kinds to Transport instances."""
from __future__ import annotations

import logging

from ..errors import UnsupportedOperationError
from ..models import SessionKind
from .base import Transport

logger = logging.getLogger(__name__)


class TransportRegistry:
    """Registry of the transports available to the session registry."""

    def __init__(self) -> None:
        self._transports: dict[SessionKind, Transport] = {}

    def register(self, transport: Transport) -> None:
        """Register a transport under its own kind."""
        self._transports[transport.kind] = transport
        logger.info(
            "Transport registered: %s (available=%s)",
            transport.kind.value,
            transport.is_available(),
        )

    def get(self, kind: SessionKind) -> Transport | None:
        return self._transports.get(kind)

    def get_or_raise(self, kind: SessionKind) -> Transport:
        """Get a transport by kind, raising UnsupportedOperationError if absent."""
        transport = self._transports.get(kind)
        if transport is None:
            raise UnsupportedOperationError(kind.value, "create")
        return transport

    def list_kinds(self) -> list[SessionKind]:
        return list(self._transports.keys())

    def availability_report(self) -> dict[str, bool]:
        """Return a mapping of kind → is_available for all transports."""
        return {
            kind.value: t.is_available()
            for kind, t in self._transports.items()
        }

    async def shutdown_all(self) -> None:
        """Shut down all registered transports."""
        for kind, transport in self._transports.items():
            try:
                await transport.shutdown()
            except Exception as exc:
                logger.error(
                    "Error shutting down transport '%s': %s", kind.value, exc,
                )
