"""Connection lifecycle: from device selection to a fully usable session."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from deckctl.core import events
from deckctl.core.actions import ActionCodec
from deckctl.core.buttons import ButtonSynchronizer
from deckctl.core.device_info import DeviceInfoService
from deckctl.core.errors import (
    ApplicationError,
    CommunicationTestError,
    DeckctlError,
    DeviceError,
    DeviceSelectionError,
    LinkLostError,
    ProtocolError,
    RequiredEndpointMissing,
    SessionClosedError,
    StageTimeout,
    TransportError,
)
from deckctl.core.events import EventBus
from deckctl.core.exchanger import CommandExchanger
from deckctl.core.model import (
    LINKED_STATES,
    Command,
    ConnectionState,
    DetectedDevice,
    DeviceInfo,
    DeviceProfile,
)
from deckctl.core.stages import run_stage
from deckctl.transports.base import Link, Transport

LOGGER = logging.getLogger(__name__)


class Session:
    """Resources held by a single connection attempt; never reused."""

    def __init__(self, address: str | None) -> None:
        self.address = address
        self.state = ConnectionState.DISCONNECTED
        self.link: Link | None = None
        self.keymap_endpoint: Any = None
        self.exchanger: CommandExchanger | None = None
        self.link_lost = False
        self.closed = False


class ConnectionManager:
    def __init__(
        self,
        profile: DeviceProfile,
        transport: Transport,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.profile = profile
        self.bus = bus or EventBus()
        self._transport = transport
        self._timing = profile.timing
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._session: Session | None = None
        self._device_info: DeviceInfo | None = None
        self._connect_task: asyncio.Task[DeviceInfo] | None = None
        self._teardown_task: asyncio.Task[None] | None = None
        self._abort_reason: TransportError | None = None
        self._last_disconnect: float | None = None
        codec = ActionCodec(
            profile.keys,
            profile.media,
            fallback_key_code=profile.protocol.fallback_key_code,
            fallback_media_code=profile.protocol.fallback_media_code,
        )
        self.buttons = ButtonSynchronizer(
            self,
            codec,
            timing=profile.timing,
            protocol=profile.protocol,
            bus=self.bus,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state in LINKED_STATES

    @property
    def fully_connected(self) -> bool:
        return self._state is ConnectionState.FULLY_CONNECTED

    @property
    def scanning(self) -> bool:
        return self._state is ConnectionState.SCANNING

    @property
    def device_info(self) -> DeviceInfo | None:
        return self._device_info

    @property
    def address(self) -> str | None:
        return self._session.address if self._session else None

    @property
    def has_keymap_endpoint(self) -> bool:
        return self._session is not None and self._session.keymap_endpoint is not None

    @property
    def exchanger(self) -> CommandExchanger | None:
        session = self._session
        if session is None or session.closed or not self.connected:
            return None
        return session.exchanger

    def _set_state(self, state: ConnectionState, session: Session | None = None) -> None:
        if session is not None:
            session.state = state
        if state is self._state:
            return
        LOGGER.info("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        self.bus.publish(events.STATE, state)

    def _set_device_info(self, info: DeviceInfo | None) -> None:
        self._device_info = info
        self.bus.publish(events.DEVICE_INFO, info)

    async def scan(self, timeout_s: float | None = None) -> list[DetectedDevice]:
        if self._session is not None:
            raise ApplicationError("Cannot scan while a session is active")
        self._set_state(ConnectionState.SCANNING)
        try:
            return await self._scan(timeout_s)
        finally:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _scan(self, timeout_s: float | None) -> list[DetectedDevice]:
        return await self._transport.scan(
            timeout_s=timeout_s if timeout_s is not None else self._timing.scan_timeout_s,
            name_contains=self.profile.match.name_contains,
            service_uuids=self.profile.match.service_uuids,
        )

    async def connect(self, address: str | None = None) -> DeviceInfo:
        """Run the whole lifecycle and return the device's info.

        Without ``address`` the best scan result is used. Raises
        :class:`CommunicationTestError` if the link comes up but the device
        does not answer; the session then stays connected but unusable.
        """
        if self._session is not None:
            raise ApplicationError(
                f"Connection already active ({self._state.value}); disconnect first"
            )
        session = Session(address)
        self._session = session
        self._abort_reason = None
        task = asyncio.get_running_loop().create_task(self._establish(session))
        self._connect_task = task
        try:
            return await task
        except asyncio.CancelledError:
            reason = self._abort_reason
            if reason is not None and task.cancelled():
                raise reason from None
            raise
        finally:
            self._connect_task = None

    async def _establish(self, session: Session) -> DeviceInfo:
        try:
            if session.address is None:
                self._set_state(ConnectionState.SCANNING, session)
                devices = await self._scan(None)
                if not devices:
                    raise DeviceSelectionError(
                        f"No device matching profile '{self.profile.id}' found"
                    )
                session.address = devices[0].address
                LOGGER.info("Selected %s (%s)", devices[0].address, devices[0].name)

            await self._wait_cooldown()
            await self._open_link(session)
            return await self._test_and_load(session)
        except asyncio.CancelledError:
            await self._teardown(session, ConnectionState.DISCONNECTED)
            raise
        except CommunicationTestError:
            raise
        except (SessionClosedError, LinkLostError):
            await self._teardown(session, ConnectionState.DISCONNECTED)
            raise
        except DeckctlError as exc:
            LOGGER.warning("Connection failed in %s: %s", session.state.value, exc)
            self.bus.publish(events.ERROR, exc)
            await self._teardown(session, ConnectionState.CONNECTION_FAILED)
            raise

    async def _wait_cooldown(self) -> None:
        if self._last_disconnect is None:
            return
        remaining = self._timing.reconnect_cooldown_s - (self._clock() - self._last_disconnect)
        if remaining > 0:
            LOGGER.info("Waiting %.1fs for the device to release the previous session", remaining)
            await asyncio.sleep(remaining)

    async def _open_link(self, session: Session) -> None:
        timing = self._timing
        gatt = self.profile.gatt
        address = session.address
        assert address is not None

        stage = ConnectionState.CONNECTING_TRANSPORT
        self._set_state(stage, session)
        link = await run_stage(
            stage.value,
            lambda: self._transport.connect(
                address,
                timeout_s=timing.connect_timeout_s,
                on_link_lost=lambda: self._link_lost(session),
            ),
            timeout_s=timing.connect_timeout_s,
        )
        session.link = link
        if session.closed:
            raise self._abort_reason or SessionClosedError("Session closed during connect")

        self._set_state(ConnectionState.AWAITING_STABILIZATION, session)
        await asyncio.sleep(timing.stabilization_delay_s)

        stage = ConnectionState.DISCOVERING_SERVICE
        self._set_state(stage, session)
        service = await run_stage(
            stage.value,
            lambda: link.discover_service(gatt.service_uuid),
            timeout_s=timing.discovery_timeout_s,
            retries=timing.discovery_retries,
        )

        stage = ConnectionState.ACQUIRING_ENDPOINTS
        self._set_state(stage, session)
        command = await run_stage(
            stage.value,
            lambda: link.get_endpoint(service, gatt.command_char_uuid),
            timeout_s=timing.endpoint_timeout_s,
        )
        if command is None:
            raise RequiredEndpointMissing(stage.value, gatt.command_char_uuid)

        keymap = None
        if gatt.keymap_char_uuid:
            try:
                keymap = await run_stage(
                    stage.value,
                    lambda: link.get_endpoint(service, gatt.keymap_char_uuid),
                    timeout_s=timing.endpoint_timeout_s,
                )
            except StageTimeout as exc:
                LOGGER.warning("Keymap endpoint lookup failed: %s", exc)
            if keymap is None:
                LOGGER.warning("Keymap endpoint not found; bulk keymap transfer unavailable")

        session.keymap_endpoint = keymap
        session.exchanger = CommandExchanger(link, command, timing)
        self._set_state(ConnectionState.MINIMALLY_CONNECTED, session)

    async def _test_and_load(self, session: Session) -> DeviceInfo:
        assert session.exchanger is not None
        await asyncio.sleep(self._timing.settle_delay_s)

        stage = ConnectionState.TESTING_COMMUNICATION
        self._set_state(stage, session)
        info_service = DeviceInfoService(
            session.exchanger,
            default_button_count=self.profile.protocol.default_button_count,
            default_name=self.profile.name,
        )
        try:
            info = await run_stage(stage.value, info_service.fetch, timeout_s=self._timing.info_timeout_s)
        except (ProtocolError, DeviceError, StageTimeout) as exc:
            error = CommunicationTestError(stage.value, exc)
            LOGGER.warning("%s", error)
            self.bus.publish(events.ERROR, error)
            raise error from exc
        self._set_device_info(info)

        self._set_state(ConnectionState.LOADING_CONFIGURATION, session)
        await self.buttons.bulk_load(session.exchanger, info.num_buttons)
        self._set_state(ConnectionState.FULLY_CONNECTED, session)
        return info

    async def retry_communication(self) -> DeviceInfo:
        """Re-run the communication test for a session stuck after a failed test."""
        session = self._session
        if session is None or self._state is not ConnectionState.TESTING_COMMUNICATION:
            raise ApplicationError("No session awaiting a communication test")
        if self._connect_task is not None:
            raise ApplicationError("Connection already in progress")
        self._abort_reason = None
        task = asyncio.get_running_loop().create_task(self._retest(session))
        self._connect_task = task
        try:
            return await task
        except asyncio.CancelledError:
            reason = self._abort_reason
            if reason is not None and task.cancelled():
                raise reason from None
            raise
        finally:
            self._connect_task = None

    async def _retest(self, session: Session) -> DeviceInfo:
        try:
            return await self._test_and_load(session)
        except asyncio.CancelledError:
            await self._teardown(session, ConnectionState.DISCONNECTED)
            raise
        except (SessionClosedError, LinkLostError):
            await self._teardown(session, ConnectionState.DISCONNECTED)
            raise

    def _link_lost(self, session: Session) -> None:
        if session.closed:
            return
        LOGGER.warning("Link to %s lost during %s", session.address, session.state.value)
        session.link_lost = True
        self._abort_reason = LinkLostError(f"Link to {session.address} lost")
        if session.exchanger is not None:
            session.exchanger.close()
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
        self._teardown_task = asyncio.get_running_loop().create_task(
            self._teardown(session, ConnectionState.DISCONNECTED)
        )

    async def _teardown(
        self,
        session: Session,
        final_state: ConnectionState,
    ) -> None:
        if session.closed:
            return
        session.closed = True
        if session.exchanger is not None:
            session.exchanger.close()
        self.buttons.clear()
        if self._device_info is not None:
            self._set_device_info(None)
        link = session.link
        session.link = None
        session.keymap_endpoint = None
        if self._session is session:
            self._session = None
        self._last_disconnect = self._clock()
        self._set_state(final_state, session)

        if link is not None and not session.link_lost:
            try:
                await link.disconnect()
            except TransportError as exc:
                LOGGER.warning("Error while releasing link to %s: %s", session.address, exc)

    async def disconnect(self) -> None:
        session = self._session
        if session is None:
            if self._state is not ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.DISCONNECTED)
            return

        LOGGER.info("Disconnect requested for %s", session.address)
        self._abort_reason = SessionClosedError("Disconnected by request")
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
        await self._teardown(session, ConnectionState.DISCONNECTED)
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})

    def _require_usable(self) -> Session:
        session = self._session
        if session is None or not self.fully_connected or session.exchanger is None:
            raise ApplicationError("Device not fully connected")
        return session

    async def refresh_info(self) -> DeviceInfo:
        session = self._require_usable()
        assert session.exchanger is not None
        service = DeviceInfoService(
            session.exchanger,
            default_button_count=self.profile.protocol.default_button_count,
            default_name=self.profile.name,
        )
        async with session.exchanger.operation():
            info = await service.fetch()
        self._set_device_info(info)
        return info

    async def test_button(self, slot: int) -> None:
        """Ask the device to simulate a press of ``slot``."""
        session = self._require_usable()
        assert session.exchanger is not None
        count = len(self.buttons.buttons)
        if not 0 <= slot < count:
            raise ApplicationError(f"Invalid button index {slot}; device has {count} buttons")
        async with session.exchanger.operation():
            await session.exchanger.request(Command.TEST_BUTTON, bytes([slot]))

    async def restart_device(self) -> None:
        """Request a device reboot; the link is expected to drop afterwards."""
        session = self._require_usable()
        assert session.exchanger is not None
        async with session.exchanger.operation():
            await session.exchanger.request(Command.RESTART)
        LOGGER.info("Restart acknowledged by %s", session.address)

    async def send_keymap(self, document: Any) -> int:
        """Write a JSON keymap to the bulk endpoint; returns the chunk count."""
        session = self._require_usable()
        assert session.exchanger is not None
        if session.keymap_endpoint is None:
            raise ApplicationError("Keymap endpoint not available on this device")
        text = document if isinstance(document, str) else json.dumps(document, separators=(",", ":"))
        data = text.encode("utf-8")
        async with session.exchanger.operation():
            chunks = await session.exchanger.stream(
                session.keymap_endpoint,
                data,
                chunk_size=self.profile.protocol.max_chunk_bytes,
                delay_s=self._timing.chunk_delay_s,
            )
        LOGGER.info("Sent %d byte keymap in %d chunk(s)", len(data), chunks)
        return chunks
