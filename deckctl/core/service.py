"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from deckctl.core.errors import ApplicationError, ProfileLoadError
from deckctl.core.lifecycle import ConnectionManager
from deckctl.core.model import ButtonConfig, DetectedDevice, DeviceInfo, DeviceProfile
from deckctl.core.profile_loader import load_profiles
from deckctl.transports.base import Transport
from deckctl.transports.ble_gatt import BLEGATTTransport

DEFAULT_PROFILE = "armdeck"


class DeckService:
    def __init__(
        self,
        *,
        transport: Transport | None = None,
        profile_id: str | None = None,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.transport = transport or BLEGATTTransport()
        self.profile = self._resolve_profile(profile_id)

    def _resolve_profile(self, profile_id: str | None) -> DeviceProfile:
        if profile_id is None:
            if DEFAULT_PROFILE in self.profiles:
                return self.profiles[DEFAULT_PROFILE]
            if len(self.profiles) == 1:
                return next(iter(self.profiles.values()))
            raise ProfileLoadError("Several profiles loaded; use --profile to choose one.")
        profile = self.profiles.get(profile_id)
        if profile is None:
            available = ", ".join(sorted(self.profiles))
            raise ProfileLoadError(f"Unknown profile '{profile_id}'. Available: {available}")
        return profile

    def list_profiles(self) -> list[DeviceProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def manager(self) -> ConnectionManager:
        return ConnectionManager(self.profile, self.transport)

    async def scan(self, timeout_s: float | None = None) -> list[DetectedDevice]:
        return await self.manager().scan(timeout_s)

    @asynccontextmanager
    async def open_session(self, address: str | None = None) -> AsyncIterator[ConnectionManager]:
        """Yield a fully connected manager; always disconnects on exit."""
        manager = self.manager()
        try:
            await manager.connect(address)
            yield manager
        finally:
            await manager.disconnect()

    async def read_info(self, address: str | None = None) -> DeviceInfo:
        async with self.open_session(address) as manager:
            info = manager.device_info
            assert info is not None
            return info

    async def read_buttons(self, address: str | None = None) -> tuple[DeviceInfo, list[tuple[ButtonConfig, str]]]:
        async with self.open_session(address) as manager:
            info = manager.device_info
            assert info is not None
            sync = manager.buttons
            return info, [(button, sync.action_name(button.slot)) for button in sync.buttons]

    async def set_button(
        self,
        address: str | None,
        slot: int,
        *,
        label: str | None = None,
        action: str | None = None,
        color: str | None = None,
    ) -> tuple[ButtonConfig, str]:
        if label is None and action is None and color is None:
            raise ApplicationError("Nothing to change; pass a label, action or color")
        async with self.open_session(address) as manager:
            sync = manager.buttons
            sync.set_slot(slot, label=label, action=action, color=color)
            await sync.save_all()
            return sync.buttons[slot], sync.action_name(slot)

    async def reset(self, address: str | None = None) -> tuple[ButtonConfig, ...]:
        async with self.open_session(address) as manager:
            return await manager.buttons.reset()

    async def test_button(self, address: str | None, slot: int) -> None:
        async with self.open_session(address) as manager:
            await manager.test_button(slot)

    async def restart(self, address: str | None = None) -> None:
        async with self.open_session(address) as manager:
            await manager.restart_device()

    async def send_keymap(self, address: str | None, document: object) -> int:
        async with self.open_session(address) as manager:
            return await manager.send_keymap(document)
