from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import replace
from typing import Any

import pytest

from deckctl.core import codec
from deckctl.core.lifecycle import ConnectionManager
from deckctl.core.model import Command, DetectedDevice, DeviceProfile, ErrorCode, Timing
from deckctl.core.profile_loader import load_profiles

SERVICE_UUID = "7a0b1000-0000-1000-8000-00805f9b34fb"
COMMAND_UUID = "fb349b5f-8000-0080-0010-000002100b7a"
KEYMAP_UUID = "fb349b5f-8000-0080-0010-000001100b7a"
ADDRESS = "AA:BB:CC:DD:EE:FF"

FAST = Timing(
    processing_delay_s=0,
    retry_delay_s=0,
    reconnect_cooldown_s=0,
    connect_timeout_s=1,
    stabilization_delay_s=0,
    discovery_timeout_s=0.05,
    discovery_retries=2,
    endpoint_timeout_s=0.05,
    settle_delay_s=0,
    info_timeout_s=1,
    load_interval_s=0,
    save_interval_s=0,
    autosave_delay_s=0.05,
    chunk_delay_s=0,
    scan_timeout_s=0,
)


def button_payload(slot: int, kind: int = 1, code: int = 0x04, rgb: bytes = b"\x10\x20\x30", label: bytes = b"") -> bytes:
    return bytes([slot, kind, code, 0]) + rgb + b"\x00" + label.ljust(8, b"\x00")


class FakeDevice:
    """Minimal firmware model answering the command protocol."""

    def __init__(self, num_buttons: int = 4, name: bytes = b"ArmDeck") -> None:
        self.info_payload = (
            bytes([1, 1, 2, 0, num_buttons, 87])
            + (3600).to_bytes(4, "little")
            + (120000).to_bytes(4, "little")
            + b"\x00\x00"
            + name.ljust(16, b"\x00")
        )
        self.defaults = {
            slot: button_payload(slot, code=0x04 + slot, label=f"K{slot}".encode())
            for slot in range(num_buttons)
        }
        self.buttons = dict(self.defaults)
        self.outbox: deque[bytes] = deque()
        self.requests: list[Any] = []
        self.fail_slots: set[int] = set()
        self.silent = False
        self.silent_slots: set[int] = set()

    def reply(self, command: int, error: int, payload: bytes = b"") -> None:
        self.outbox.append(codec.encode(command, bytes([error]) + payload))

    def handle(self, data: bytes) -> None:
        frame = codec.decode_request(data)
        self.requests.append(frame)
        if self.silent:
            return
        command, payload = frame.command, frame.payload
        if command == Command.GET_INFO:
            self.reply(command, ErrorCode.NONE, self.info_payload)
        elif command == Command.GET_BUTTON:
            slot = payload[0]
            if slot in self.silent_slots:
                return
            if slot in self.fail_slots or slot not in self.buttons:
                self.reply(command, ErrorCode.INVALID_PARAM)
            else:
                self.reply(command, ErrorCode.NONE, self.buttons[slot])
        elif command == Command.SET_BUTTON:
            self.buttons[payload[0]] = payload
            self.reply(command, ErrorCode.NONE)
        elif command == Command.RESET_CONFIG:
            self.buttons = dict(self.defaults)
            self.reply(command, ErrorCode.NONE)
        elif command in (Command.TEST_BUTTON, Command.RESTART):
            self.reply(command, ErrorCode.NONE)
        else:
            self.reply(Command.NACK, ErrorCode.INVALID_CMD)

    def commands(self) -> list[int]:
        return [frame.command for frame in self.requests]


class FakeService:
    def __init__(self, endpoints: dict[str, str]) -> None:
        self.endpoints = endpoints

    def get_characteristic(self, uuid: str) -> str | None:
        return self.endpoints.get(uuid)


class FakeLink:
    def __init__(self, device: FakeDevice | None = None) -> None:
        self.device = device
        self.reads: deque[bytes] = deque()
        self.writes: list[tuple[Any, bytes]] = []
        self.endpoints = {COMMAND_UUID: "cmd", KEYMAP_UUID: "keymap"}
        self.discover_hangs = 0
        self.discover_calls = 0
        self.read_calls = 0
        self.disconnected = False
        self.on_link_lost: Any = None

    async def discover_service(self, service_uuid: str) -> FakeService:
        self.discover_calls += 1
        if self.discover_hangs > 0:
            self.discover_hangs -= 1
            await asyncio.sleep(3600)
        assert service_uuid == SERVICE_UUID
        return FakeService(self.endpoints)

    async def get_endpoint(self, service: FakeService, endpoint_uuid: str) -> str | None:
        return service.get_characteristic(endpoint_uuid)

    async def write(self, endpoint: Any, data: bytes) -> None:
        self.writes.append((endpoint, bytes(data)))
        if self.device is not None and endpoint == "cmd":
            self.device.handle(bytes(data))

    async def read(self, endpoint: Any) -> bytes:
        self.read_calls += 1
        await asyncio.sleep(0)
        if self.reads:
            return self.reads.popleft()
        if self.device is not None and self.device.outbox:
            return self.device.outbox.popleft()
        return b""

    async def disconnect(self) -> None:
        self.disconnected = True

    def drop(self) -> None:
        self.on_link_lost()

    def command_writes(self) -> list[bytes]:
        return [data for endpoint, data in self.writes if endpoint == "cmd"]


class FakeTransport:
    def __init__(self, device: FakeDevice | None = None) -> None:
        self.device = device or FakeDevice()
        self.devices = [DetectedDevice(address=ADDRESS, name="ArmDeck", rssi=-50)]
        self.links: list[FakeLink] = []
        self.connect_calls: list[str] = []
        self.prepare_link: Any = None

    async def scan(self, *, timeout_s: float, name_contains=(), service_uuids=()) -> list[DetectedDevice]:
        return list(self.devices)

    async def connect(self, address: str, *, timeout_s: float, on_link_lost) -> FakeLink:
        self.connect_calls.append(address)
        link = FakeLink(self.device)
        link.on_link_lost = on_link_lost
        if self.prepare_link is not None:
            self.prepare_link(link)
        self.links.append(link)
        return link


@pytest.fixture
def isolated_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return tmp_path


@pytest.fixture
def profile(isolated_xdg) -> DeviceProfile:
    return replace(load_profiles().profiles["armdeck"], timing=FAST)


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def transport(device: FakeDevice) -> FakeTransport:
    return FakeTransport(device)


async def connect_manager(profile: DeviceProfile, transport: FakeTransport) -> ConnectionManager:
    manager = ConnectionManager(profile, transport)
    await manager.connect(ADDRESS)
    return manager
