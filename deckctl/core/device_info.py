"""GET_INFO request and device metadata decoding."""

from __future__ import annotations

import logging

from deckctl.core.exchanger import CommandExchanger
from deckctl.core.model import Command, DeviceInfo, FirmwareVersion

LOGGER = logging.getLogger(__name__)

_UPTIME_OFFSET = 6
_HEAP_OFFSET = 10
_NAME_OFFSET = 16
_NAME_LEN = 16


def _u32_le(payload: bytes, offset: int) -> int:
    if len(payload) < offset + 4:
        return 0
    return int.from_bytes(payload[offset : offset + 4], "little")


def _byte(payload: bytes, offset: int) -> int:
    return payload[offset] if len(payload) > offset else 0


def decode_device_info(
    payload: bytes,
    *,
    default_button_count: int = 15,
    default_name: str = "",
) -> DeviceInfo:
    """Decode a GET_INFO payload.

    Older firmware sends shorter payloads; every field missing from the
    payload decodes as zero, and the name as ``default_name``.
    """
    raw_name = payload[_NAME_OFFSET : _NAME_OFFSET + _NAME_LEN].split(b"\x00", 1)[0]
    name = raw_name.decode("ascii", errors="replace").strip()
    return DeviceInfo(
        protocol_version=_byte(payload, 0),
        firmware=FirmwareVersion(_byte(payload, 1), _byte(payload, 2), _byte(payload, 3)),
        num_buttons=_byte(payload, 4) or default_button_count,
        battery_level=min(_byte(payload, 5), 100),
        uptime_seconds=_u32_le(payload, _UPTIME_OFFSET),
        free_heap_bytes=_u32_le(payload, _HEAP_OFFSET),
        device_name=name or default_name,
    )


class DeviceInfoService:
    def __init__(
        self,
        exchanger: CommandExchanger,
        *,
        default_button_count: int = 15,
        default_name: str = "",
    ) -> None:
        self._exchanger = exchanger
        self._default_button_count = default_button_count
        self._default_name = default_name

    async def fetch(self) -> DeviceInfo:
        payload = await self._exchanger.request(Command.GET_INFO)
        info = decode_device_info(
            payload,
            default_button_count=self._default_button_count,
            default_name=self._default_name,
        )
        LOGGER.info(
            "Device %s fw %s, %d buttons, battery %d%%",
            info.device_name or "<unnamed>",
            info.firmware,
            info.num_buttons,
            info.battery_level,
        )
        return info
