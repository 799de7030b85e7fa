"""Core data models used across codec, lifecycle, synchronizer, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class Command(IntEnum):
    GET_INFO = 0x10
    GET_CONFIG = 0x20
    SET_CONFIG = 0x21
    RESET_CONFIG = 0x22
    GET_BUTTON = 0x30
    SET_BUTTON = 0x31
    TEST_BUTTON = 0x40
    RESTART = 0x50
    ACK = 0xA0
    NACK = 0xA1


class ErrorCode(IntEnum):
    NONE = 0x00
    INVALID_CMD = 0x01
    INVALID_PARAM = 0x02
    CHECKSUM = 0x03
    LENGTH = 0x04
    BUSY = 0x05
    MEMORY = 0x06


class ActionType(IntEnum):
    NONE = 0x00
    KEY = 0x01
    MEDIA = 0x02
    MACRO = 0x03
    CUSTOM = 0x04


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    SCANNING = "Scanning"
    CONNECTING_TRANSPORT = "ConnectingTransport"
    AWAITING_STABILIZATION = "AwaitingStabilization"
    DISCOVERING_SERVICE = "DiscoveringService"
    ACQUIRING_ENDPOINTS = "AcquiringEndpoints"
    MINIMALLY_CONNECTED = "MinimallyConnected"
    TESTING_COMMUNICATION = "TestingCommunication"
    LOADING_CONFIGURATION = "LoadingConfiguration"
    FULLY_CONNECTED = "FullyConnected"
    CONNECTION_FAILED = "ConnectionFailed"


# States in which the command endpoint has been acquired.
LINKED_STATES = frozenset(
    {
        ConnectionState.MINIMALLY_CONNECTED,
        ConnectionState.TESTING_COMMUNICATION,
        ConnectionState.LOADING_CONFIGURATION,
        ConnectionState.FULLY_CONNECTED,
    }
)


@dataclass(frozen=True)
class Frame:
    """A decoded frame.

    For replies ``error`` is the first body byte and ``payload`` the rest.
    For requests decoded with ``decode_request`` ``error`` is always zero and
    ``payload`` is the whole body.
    """

    command: int
    error: int
    payload: bytes = b""

    @property
    def ok(self) -> bool:
        return self.error == ErrorCode.NONE


@dataclass(frozen=True)
class FirmwareVersion:
    major: int = 0
    minor: int = 0
    patch: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class DeviceInfo:
    protocol_version: int
    firmware: FirmwareVersion
    num_buttons: int
    battery_level: int
    uptime_seconds: int
    free_heap_bytes: int
    device_name: str


@dataclass(frozen=True)
class ButtonAction:
    kind: ActionType = ActionType.NONE
    code: int = 0


@dataclass(frozen=True)
class ButtonConfig:
    slot: int
    label: str
    action: ButtonAction = field(default_factory=ButtonAction)
    color: tuple[int, int, int] = (0x60, 0x7D, 0x8B)
    dirty: bool = False


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str
    rssi: int | None = None


@dataclass(frozen=True)
class MatchRules:
    name_contains: tuple[str, ...]
    service_uuids: tuple[str, ...] = ()


@dataclass(frozen=True)
class GattSpec:
    service_uuid: str
    command_char_uuid: str
    keymap_char_uuid: str | None = None


@dataclass(frozen=True)
class ProtocolSpec:
    reset_opcode: int = Command.RESET_CONFIG
    default_button_count: int = 15
    max_chunk_bytes: int = 500
    fallback_key_code: int = 0x04
    fallback_media_code: int = 0xCD


@dataclass(frozen=True)
class Timing:
    processing_delay_s: float = 0.1
    retry_delay_s: float = 0.1
    reconnect_cooldown_s: float = 3.0
    connect_timeout_s: float = 10.0
    stabilization_delay_s: float = 2.0
    discovery_timeout_s: float = 5.0
    discovery_retries: int = 2
    endpoint_timeout_s: float = 5.0
    settle_delay_s: float = 1.0
    info_timeout_s: float = 5.0
    load_interval_s: float = 0.05
    save_interval_s: float = 0.1
    autosave_delay_s: float = 1.5
    chunk_delay_s: float = 0.05
    scan_timeout_s: float = 5.0


@dataclass(frozen=True)
class DeviceProfile:
    id: str
    name: str
    match: MatchRules
    gatt: GattSpec
    protocol: ProtocolSpec = field(default_factory=ProtocolSpec)
    timing: Timing = field(default_factory=Timing)
    keys: dict[str, int] = field(default_factory=dict)
    media: dict[str, int] = field(default_factory=dict)
