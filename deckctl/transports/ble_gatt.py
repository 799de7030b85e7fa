"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from deckctl.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from deckctl.core.model import DetectedDevice

LOGGER = logging.getLogger(__name__)


def _bleak() -> Any:
    try:
        import bleak  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportConnectError(
            "BLE transport requires 'bleak'. Install dependency and retry."
        ) from exc
    return bleak


class BLEGATTLink:
    def __init__(self, client: Any) -> None:
        self._client = client

    @property
    def address(self) -> str:
        return self._client.address

    async def discover_service(self, service_uuid: str) -> Any:
        try:
            service = self._client.services.get_service(service_uuid)
        except Exception as exc:
            raise TransportSendError(f"BLE service lookup failed: {exc}") from exc
        if service is None:
            raise TransportConnectError(
                f"Service {service_uuid} not exposed by {self._client.address}"
            )
        return service

    async def get_endpoint(self, service: Any, endpoint_uuid: str) -> Any | None:
        return service.get_characteristic(endpoint_uuid)

    async def write(self, endpoint: Any, data: bytes) -> None:
        try:
            await self._client.write_gatt_char(endpoint, data, response=True)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE write to {endpoint.uuid} timed out") from exc
        except Exception as exc:
            raise TransportSendError(f"BLE GATT write failed: {exc}") from exc

    async def read(self, endpoint: Any) -> bytes:
        try:
            data = await self._client.read_gatt_char(endpoint)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE read from {endpoint.uuid} timed out") from exc
        except Exception as exc:
            raise TransportSendError(f"BLE GATT read failed: {exc}") from exc
        return bytes(data) if data else b""

    async def disconnect(self) -> None:
        try:
            await self._client.disconnect()
        except Exception as exc:
            raise TransportSendError(f"BLE disconnect failed: {exc}") from exc


class BLEGATTTransport:
    async def scan(
        self,
        *,
        timeout_s: float,
        name_contains: tuple[str, ...] = (),
        service_uuids: tuple[str, ...] = (),
    ) -> list[DetectedDevice]:
        bleak = _bleak()
        try:
            found = await bleak.BleakScanner.discover(timeout=timeout_s, return_adv=True)
        except Exception as exc:
            raise TransportConnectError(f"BLE scan failed: {exc}") from exc

        tokens = tuple(token.lower() for token in name_contains)
        wanted = {uuid.lower() for uuid in service_uuids}
        devices: list[DetectedDevice] = []
        for device, adv in found.values():
            name = device.name or adv.local_name or ""
            advertised = {uuid.lower() for uuid in adv.service_uuids or ()}
            if tokens or wanted:
                name_match = any(token in name.lower() for token in tokens)
                if not name_match and not (wanted & advertised):
                    continue
            devices.append(
                DetectedDevice(address=device.address, name=name or "<unknown-device>", rssi=adv.rssi)
            )
        return sorted(devices, key=lambda d: -(d.rssi or -999))

    async def connect(
        self,
        address: str,
        *,
        timeout_s: float,
        on_link_lost: Callable[[], None],
    ) -> BLEGATTLink:
        bleak = _bleak()

        def _disconnected(_: Any) -> None:
            LOGGER.debug("BLE link to %s reported disconnected", address)
            on_link_lost()

        client = bleak.BleakClient(address, disconnected_callback=_disconnected, timeout=timeout_s)
        try:
            await client.connect()
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE connect timed out for {address}") from exc
        except Exception as exc:
            raise TransportConnectError(f"BLE connect failed for {address}: {exc}") from exc

        if not client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {address}")
        return BLEGATTLink(client)
