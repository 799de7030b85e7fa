"""Button slot configuration: wire layout, bulk load, dirty tracking and saves."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

from deckctl.core import events
from deckctl.core.actions import ActionCodec, color_from_hex
from deckctl.core.errors import (
    ApplicationError,
    DeckctlError,
    LinkLostError,
    SessionClosedError,
    TooShort,
)
from deckctl.core.events import EventBus
from deckctl.core.exchanger import CommandExchanger
from deckctl.core.model import (
    ActionType,
    ButtonAction,
    ButtonConfig,
    Command,
    ProtocolSpec,
    Timing,
)

BUTTON_PAYLOAD_LEN = 16
LABEL_OFFSET = 8
MAX_LABEL_LEN = 7
LOGGER = logging.getLogger(__name__)


def default_button(slot: int) -> ButtonConfig:
    return ButtonConfig(slot=slot, label=f"Btn {slot + 1}")


def clean_label(label: str) -> str:
    printable = "".join(ch if " " <= ch <= "~" else "?" for ch in label)
    return printable[:MAX_LABEL_LEN]


def encode_button(config: ButtonConfig) -> bytes:
    """Build the 16-byte SET_BUTTON payload for ``config``."""
    r, g, b = config.color
    head = bytes(
        [
            config.slot & 0xFF,
            int(config.action.kind),
            config.action.code & 0xFF,
            0,  # modifier, reserved
            r & 0xFF,
            g & 0xFF,
            b & 0xFF,
            0,
        ]
    )
    label = clean_label(config.label).encode("ascii")
    return head + label.ljust(BUTTON_PAYLOAD_LEN - LABEL_OFFSET, b"\x00")


def decode_button(payload: bytes, slot: int) -> ButtonConfig:
    """Decode a GET_BUTTON payload; the requested ``slot`` wins over the echo."""
    if len(payload) < BUTTON_PAYLOAD_LEN:
        raise TooShort(f"button {slot} payload is {len(payload)} bytes, need {BUTTON_PAYLOAD_LEN}")
    if payload[0] != slot:
        LOGGER.warning("Device echoed slot %d for request %d", payload[0], slot)

    try:
        kind = ActionType(payload[1])
    except ValueError:
        LOGGER.warning("Button %d has unknown action type 0x%02X, treating as none", slot, payload[1])
        kind = ActionType.NONE
    code = payload[2] if kind in (ActionType.KEY, ActionType.MEDIA) else 0

    raw_label = payload[LABEL_OFFSET:BUTTON_PAYLOAD_LEN].split(b"\x00", 1)[0]
    label = clean_label(raw_label.decode("ascii", errors="replace"))
    return ButtonConfig(
        slot=slot,
        label=label,
        action=ButtonAction(kind, code),
        color=(payload[4], payload[5], payload[6]),
    )


class CommandChannel(Protocol):
    @property
    def fully_connected(self) -> bool: ...

    @property
    def exchanger(self) -> CommandExchanger | None: ...


class ButtonSynchronizer:
    """Owns the in-memory button collection for the current session.

    Mutate slots only through :meth:`set_slot`; everything else reads
    snapshots from :attr:`buttons`.
    """

    def __init__(
        self,
        channel: CommandChannel,
        codec: ActionCodec,
        *,
        timing: Timing,
        protocol: ProtocolSpec,
        bus: EventBus | None = None,
    ) -> None:
        self._channel = channel
        self.codec = codec
        self._timing = timing
        self._protocol = protocol
        self._bus = bus or EventBus()
        self._buttons: list[ButtonConfig] = []
        self._dirty = False
        self._last_saved: datetime | None = None
        self._pending: set[int] = set()
        self._debounce: asyncio.Task[None] | None = None
        self._reloading = False

    @property
    def buttons(self) -> tuple[ButtonConfig, ...]:
        return tuple(self._buttons)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def last_saved(self) -> datetime | None:
        return self._last_saved

    @property
    def autosave_pending(self) -> bool:
        return self._debounce is not None and not self._debounce.done()

    @property
    def reloading(self) -> bool:
        return self._reloading

    def action_name(self, index: int) -> str:
        return self.codec.to_name(self._slot(index).action)

    def _slot(self, index: int) -> ButtonConfig:
        if not 0 <= index < len(self._buttons):
            raise ApplicationError(
                f"Invalid button index {index}; device has {len(self._buttons)} buttons loaded"
            )
        return self._buttons[index]

    def _require_usable(self) -> CommandExchanger:
        exchanger = self._channel.exchanger
        if not self._channel.fully_connected or exchanger is None:
            raise ApplicationError("Device not fully connected")
        return exchanger

    def _publish(self) -> None:
        self._bus.publish(events.BUTTONS, self.buttons)

    async def bulk_load(self, exchanger: CommandExchanger, count: int) -> tuple[ButtonConfig, ...]:
        """Read every slot; a slot that fails to load gets a default entry."""
        self._reloading = True
        try:
            async with exchanger.operation():
                return await self._load(exchanger, count)
        finally:
            self._reloading = False

    async def _load(self, exchanger: CommandExchanger, count: int) -> tuple[ButtonConfig, ...]:
        count = count or self._protocol.default_button_count
        LOGGER.info("Loading %d button slots", count)
        entries: list[ButtonConfig] = []
        for slot in range(count):
            try:
                payload = await exchanger.request(Command.GET_BUTTON, bytes([slot]))
                entries.append(decode_button(payload, slot))
            except (SessionClosedError, LinkLostError):
                raise
            except DeckctlError as exc:
                LOGGER.warning("Button %d failed to load, using default: %s", slot, exc)
                entries.append(default_button(slot))
            if slot < count - 1:
                await asyncio.sleep(self._timing.load_interval_s)

        self._buttons = entries
        self._dirty = False
        self._last_saved = datetime.now(timezone.utc)
        self._publish()
        return self.buttons

    def set_slot(
        self,
        index: int,
        *,
        label: str | None = None,
        action: ButtonAction | str | None = None,
        color: tuple[int, int, int] | str | None = None,
    ) -> ButtonConfig:
        if self._reloading:
            raise ApplicationError("Button configuration is being reloaded from the device")
        current = self._slot(index)
        changes: dict[str, object] = {"dirty": True}
        if label is not None:
            changes["label"] = clean_label(label)
        if action is not None:
            changes["action"] = self.codec.from_name(action) if isinstance(action, str) else action
        if color is not None:
            if isinstance(color, str):
                try:
                    color = color_from_hex(color)
                except ValueError as exc:
                    raise ApplicationError(str(exc)) from exc
            changes["color"] = color

        updated = replace(current, **changes)
        self._buttons[index] = updated
        self._dirty = True
        self._publish()

        if self._channel.fully_connected:
            self._arm_autosave(index)
        return updated

    def _arm_autosave(self, index: int) -> None:
        self._pending.add(index)
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = asyncio.get_running_loop().create_task(self._autosave())

    async def _autosave(self) -> None:
        await asyncio.sleep(self._timing.autosave_delay_s)
        slots = sorted(self._pending)
        self._pending.clear()
        self._debounce = None
        exchanger = self._channel.exchanger
        if not self._channel.fully_connected or exchanger is None:
            LOGGER.info("Autosave skipped, device no longer fully connected")
            return
        try:
            async with exchanger.operation():
                for slot in slots:
                    if slot >= len(self._buttons) or not self._buttons[slot].dirty:
                        continue
                    try:
                        await self._write_slot(exchanger, slot)
                    except (SessionClosedError, LinkLostError):
                        raise
                    except DeckctlError as exc:
                        LOGGER.warning("Autosave of button %d failed: %s", slot, exc)
                        self._bus.publish(events.ERROR, exc)
        except (SessionClosedError, LinkLostError) as exc:
            LOGGER.info("Autosave abandoned: %s", exc)

    def cancel_autosave(self) -> None:
        self._pending.clear()
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    async def _write_slot(self, exchanger: CommandExchanger, index: int) -> None:
        config = self._slot(index)
        await exchanger.request(Command.SET_BUTTON, encode_button(config))

        # An edit made while the write was in flight stays dirty.
        if index < len(self._buttons) and self._buttons[index] is config:
            self._buttons[index] = replace(config, dirty=False)
        self._last_saved = datetime.now(timezone.utc)
        if not any(button.dirty for button in self._buttons):
            self._dirty = False
        LOGGER.info("Saved button %d", index)
        self._publish()

    async def save_slot(self, index: int) -> None:
        exchanger = self._require_usable()
        async with exchanger.operation():
            await self._write_slot(exchanger, index)

    async def save_all(self) -> int:
        """Save dirty slots only; returns how many were written."""
        exchanger = self._require_usable()
        self.cancel_autosave()
        async with exchanger.operation():
            dirty = [button.slot for button in self._buttons if button.dirty]
            if not dirty:
                LOGGER.info("No changes to save")
                return 0

            for position, slot in enumerate(dirty):
                await self._write_slot(exchanger, slot)
                if position < len(dirty) - 1:
                    await asyncio.sleep(self._timing.save_interval_s)
        return len(dirty)

    async def reset(self) -> tuple[ButtonConfig, ...]:
        """Restore factory defaults on the device and reload them.

        Edits are rejected from the moment the reset is requested until the
        reload finishes; the device's configuration replaces the local one.
        """
        exchanger = self._require_usable()
        self.cancel_autosave()
        self._reloading = True
        try:
            async with exchanger.operation():
                await exchanger.request(self._protocol.reset_opcode)
                LOGGER.info("Device configuration reset, reloading")
                return await self._load(exchanger, len(self._buttons))
        finally:
            self._reloading = False

    def clear(self) -> None:
        self.cancel_autosave()
        self._buttons = []
        self._dirty = False
        self._last_saved = None
        self._publish()
