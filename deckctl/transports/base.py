"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from deckctl.core.model import DetectedDevice


class Link(Protocol):
    """One live connection to a device."""

    async def discover_service(self, service_uuid: str) -> Any:
        """Return an opaque service handle; raise TransportError if absent."""

    async def get_endpoint(self, service: Any, endpoint_uuid: str) -> Any | None:
        """Return an opaque endpoint handle, or None if the service lacks it."""

    async def write(self, endpoint: Any, data: bytes) -> None:
        """Write bytes to an endpoint."""

    async def read(self, endpoint: Any) -> bytes:
        """Read the endpoint's current value; may be empty."""

    async def disconnect(self) -> None:
        """Release the link."""


class Transport(Protocol):
    async def scan(
        self,
        *,
        timeout_s: float,
        name_contains: tuple[str, ...] = (),
        service_uuids: tuple[str, ...] = (),
    ) -> list[DetectedDevice]:
        """Discover nearby devices matching any name token or advertised service."""

    async def connect(
        self,
        address: str,
        *,
        timeout_s: float,
        on_link_lost: Callable[[], None],
    ) -> Link:
        """Open a link; ``on_link_lost`` fires if the device drops it later."""
