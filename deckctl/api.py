"""Stable public API for building tooling on top of deckctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from deckctl.core import events
from deckctl.core.actions import color_from_hex, color_to_hex
from deckctl.core.codec import decode, encode
from deckctl.core.errors import (
    ApplicationError,
    CommunicationTestError,
    DeckctlError,
    DeviceError,
    DeviceSelectionError,
    NoResponse,
    ProfileLoadError,
    ProfileValidationError,
    ProtocolError,
    RequiredEndpointMissing,
    StageError,
    StageTimeout,
    TransportError,
)
from deckctl.core.lifecycle import ConnectionManager
from deckctl.core.model import (
    ActionType,
    ButtonAction,
    ButtonConfig,
    Command,
    ConnectionState,
    DetectedDevice,
    DeviceInfo,
    DeviceProfile,
    ErrorCode,
    Frame,
)
from deckctl.core.service import DeckService
from deckctl.transports.base import Link, Transport
from deckctl.transports.ble_gatt import BLEGATTTransport

__all__ = [
    "DeckctlError",
    "ApplicationError",
    "CommunicationTestError",
    "DeviceError",
    "DeviceSelectionError",
    "NoResponse",
    "ProfileLoadError",
    "ProfileValidationError",
    "ProtocolError",
    "RequiredEndpointMissing",
    "StageError",
    "StageTimeout",
    "TransportError",
    "ActionType",
    "ButtonAction",
    "ButtonConfig",
    "Command",
    "ConnectionState",
    "DetectedDevice",
    "DeviceInfo",
    "DeviceProfile",
    "ErrorCode",
    "Frame",
    "ConnectionManager",
    "BLEGATTTransport",
    "Link",
    "Transport",
    "events",
    "encode",
    "decode",
    "color_from_hex",
    "color_to_hex",
    "Client",
]


class Client:
    """Public client for interacting with deckctl core capabilities.

    A `Client` wraps profile loading and transport selection; sessions opened
    through it are fully connected managers whose button synchronizer and
    event bus can be used directly by GUI/TUI/service frontends.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        profile_id: str | None = None,
    ) -> None:
        self._service = DeckService(transport=transport, profile_id=profile_id)

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def profile(self) -> DeviceProfile:
        return self._service.profile

    def list_profiles(self) -> list[DeviceProfile]:
        return self._service.list_profiles()

    def manager(self) -> ConnectionManager:
        """Return a disconnected manager for long-lived, event-driven use."""
        return self._service.manager()

    async def scan(self, *, timeout_s: float | None = None) -> list[DetectedDevice]:
        return await self._service.scan(timeout_s)

    @asynccontextmanager
    async def session(self, address: str | None = None) -> AsyncIterator[ConnectionManager]:
        async with self._service.open_session(address) as manager:
            yield manager

    async def get_device_info(self, address: str | None = None) -> DeviceInfo:
        return await self._service.read_info(address)
