from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from conftest import FAST, FakeDevice, FakeTransport, button_payload, connect_manager

from deckctl.core import events
from deckctl.core.buttons import clean_label, decode_button, default_button, encode_button
from deckctl.core.errors import ApplicationError, NoResponse, TooShort
from deckctl.core.lifecycle import ConnectionManager
from deckctl.core.model import ActionType, ButtonAction, ButtonConfig, Command


def _set_button_slots(device) -> list[int]:
    return [frame.payload[0] for frame in device.requests if frame.command == Command.SET_BUTTON]


def test_encode_button_layout() -> None:
    config = ButtonConfig(
        slot=3,
        label="Play",
        action=ButtonAction(ActionType.MEDIA, 0xCD),
        color=(1, 2, 3),
    )
    assert encode_button(config) == bytes.fromhex("0302cd0001020300") + b"Play\x00\x00\x00\x00"


def test_decode_button_reads_payload() -> None:
    button = decode_button(button_payload(5, kind=2, code=0xE9, label=b"Vol+"), 5)
    assert button == ButtonConfig(
        slot=5,
        label="Vol+",
        action=ButtonAction(ActionType.MEDIA, 0xE9),
        color=(0x10, 0x20, 0x30),
    )


def test_decode_button_unknown_type_has_no_action() -> None:
    button = decode_button(button_payload(0, kind=9, code=0x44), 0)
    assert button.action == ButtonAction()


def test_decode_button_short_payload() -> None:
    with pytest.raises(TooShort):
        decode_button(b"\x00\x01\x04", 0)


def test_clean_label() -> None:
    assert clean_label("Volume Up") == "Volume "
    assert clean_label("Café") == "Caf?"


@pytest.mark.parametrize(
    ("failing", "silent"),
    [
        (set(), set()),
        ({0, 1, 2, 3, 4, 5}, set()),
        ({0}, set()),
        ({5}, set()),
        ({0, 2, 4}, set()),
        (set(), {3}),
        ({1}, {4, 5}),
    ],
)
def test_bulk_load_fills_failed_slots_with_defaults(profile, failing, silent) -> None:
    device = FakeDevice(num_buttons=6)
    device.fail_slots = failing
    device.silent_slots = silent
    transport = FakeTransport(device)

    async def scenario() -> ConnectionManager:
        return await connect_manager(profile, transport)

    manager = asyncio.run(scenario())
    buttons = manager.buttons.buttons
    assert len(buttons) == 6
    assert [button.slot for button in buttons] == list(range(6))
    for slot, button in enumerate(buttons):
        if slot in failing | silent:
            assert button == default_button(slot)
        else:
            assert button.label == f"K{slot}"
            assert button.action == ButtonAction(ActionType.KEY, 0x04 + slot)
    assert not manager.buttons.dirty
    assert manager.buttons.last_saved is not None


def test_set_slot_marks_dirty_and_publishes(profile, transport) -> None:
    published: list[tuple[ButtonConfig, ...]] = []

    async def scenario() -> ConnectionManager:
        manager = await connect_manager(profile, transport)
        manager.bus.subscribe(events.BUTTONS, published.append)
        manager.buttons.set_slot(1, label="Copy", action="KEY_C", color="#ff0000")
        manager.buttons.cancel_autosave()
        return manager

    manager = asyncio.run(scenario())
    sync = manager.buttons
    assert sync.dirty
    assert sync.buttons[1] == ButtonConfig(
        slot=1,
        label="Copy",
        action=ButtonAction(ActionType.KEY, 0x06),
        color=(0xFF, 0, 0),
        dirty=True,
    )
    assert not sync.buttons[0].dirty
    assert sync.action_name(1) == "KEY_C"
    assert published[-1] == sync.buttons


def test_save_all_writes_only_dirty_slots(profile, device, transport) -> None:
    async def scenario() -> tuple[ConnectionManager, int]:
        manager = await connect_manager(profile, transport)
        manager.buttons.set_slot(1, label="Copy")
        manager.buttons.set_slot(3, action="VOLUME_DOWN")
        saved = await manager.buttons.save_all()
        return manager, saved

    manager, saved = asyncio.run(scenario())
    assert saved == 2
    assert _set_button_slots(device) == [1, 3]
    assert device.buttons[1] == encode_button(manager.buttons.buttons[1])
    assert not manager.buttons.dirty
    assert not any(button.dirty for button in manager.buttons.buttons)


def test_save_without_changes_touches_nothing(profile, device, transport) -> None:
    async def scenario() -> None:
        manager = await connect_manager(profile, transport)
        link = transport.links[-1]
        writes_before = len(link.writes)
        saved_before = manager.buttons.last_saved

        assert await manager.buttons.save_all() == 0

        assert len(link.writes) == writes_before
        assert manager.buttons.last_saved == saved_before

    asyncio.run(scenario())
    assert Command.SET_BUTTON not in device.commands()


def test_failed_save_keeps_slot_dirty(profile, device, transport) -> None:
    async def scenario() -> ConnectionManager:
        manager = await connect_manager(profile, transport)
        manager.buttons.set_slot(0, label="Oops")
        device.silent = True
        with pytest.raises(NoResponse):
            await manager.buttons.save_all()
        return manager

    manager = asyncio.run(scenario())
    assert manager.buttons.buttons[0].dirty
    assert manager.buttons.dirty


def test_edit_during_save_stays_dirty(profile, transport) -> None:
    slow = replace(profile, timing=replace(FAST, processing_delay_s=0.05, autosave_delay_s=10))

    async def scenario() -> ConnectionManager:
        manager = await connect_manager(slow, transport)
        manager.buttons.set_slot(0, label="First")
        saving = asyncio.create_task(manager.buttons.save_slot(0))
        await asyncio.sleep(0.01)
        manager.buttons.set_slot(0, label="Second")
        await saving
        manager.buttons.cancel_autosave()
        return manager

    manager = asyncio.run(scenario())
    assert manager.buttons.buttons[0].label == "Second"
    assert manager.buttons.buttons[0].dirty
    assert manager.buttons.dirty


def test_reset_is_idempotent(profile, device, transport) -> None:
    async def scenario() -> tuple[tuple[ButtonConfig, ...], tuple[ButtonConfig, ...]]:
        manager = await connect_manager(profile, transport)
        manager.buttons.set_slot(0, label="Changed")
        await manager.buttons.save_all()
        first = await manager.buttons.reset()
        second = await manager.buttons.reset()
        return first, second

    first, second = asyncio.run(scenario())
    expected = tuple(decode_button(device.defaults[slot], slot) for slot in range(4))
    assert first == expected
    assert second == expected
    assert device.commands().count(Command.RESET_CONFIG) == 2


def test_disconnect_cancels_pending_autosave(profile, device, transport) -> None:
    async def scenario() -> None:
        manager = await connect_manager(profile, transport)
        manager.buttons.set_slot(2, label="Late")
        assert manager.buttons.autosave_pending
        await manager.disconnect()
        assert not manager.buttons.autosave_pending
        await asyncio.sleep(FAST.autosave_delay_s * 3)

    asyncio.run(scenario())
    assert Command.SET_BUTTON not in device.commands()


def test_autosave_saves_every_pending_slot(profile, device, transport) -> None:
    async def scenario() -> ConnectionManager:
        manager = await connect_manager(profile, transport)
        manager.buttons.set_slot(0, label="One")
        manager.buttons.set_slot(2, label="Two")
        assert Command.SET_BUTTON not in device.commands()
        await asyncio.sleep(FAST.autosave_delay_s * 4)
        return manager

    manager = asyncio.run(scenario())
    assert _set_button_slots(device) == [0, 2]
    assert not manager.buttons.dirty


def test_operations_rejected_when_not_connected(profile, transport) -> None:
    manager = ConnectionManager(profile, transport)

    with pytest.raises(ApplicationError):
        manager.buttons.set_slot(0, label="Nope")
    with pytest.raises(ApplicationError):
        asyncio.run(manager.buttons.save_all())
    with pytest.raises(ApplicationError):
        asyncio.run(manager.buttons.reset())
    assert transport.links == []


def test_set_slot_rejects_bad_index_and_color(profile, transport) -> None:
    async def scenario() -> None:
        manager = await connect_manager(profile, transport)
        with pytest.raises(ApplicationError):
            manager.buttons.set_slot(4, label="Out")
        with pytest.raises(ApplicationError):
            manager.buttons.set_slot(0, color="blue")
        assert not manager.buttons.dirty
        await manager.disconnect()

    asyncio.run(scenario())


def test_reset_runs_alone_while_saves_and_tests_wait(profile, device, transport) -> None:
    slow = replace(profile, timing=replace(FAST, load_interval_s=0.02, autosave_delay_s=10))

    async def scenario() -> tuple[ConnectionManager, int, tuple[ButtonConfig, ...], int]:
        manager = await connect_manager(slow, transport)
        manager.buttons.set_slot(3, label="Mine")
        manager.buttons.cancel_autosave()
        before = len(device.requests)

        resetting = asyncio.create_task(manager.buttons.reset())
        await asyncio.sleep(0)
        saved, _ = await asyncio.gather(manager.buttons.save_all(), manager.test_button(1))
        reloaded = await resetting
        return manager, saved, reloaded, before

    manager, saved, reloaded, before = asyncio.run(scenario())
    assert device.commands()[before:] == [Command.RESET_CONFIG] + [Command.GET_BUTTON] * 4 + [Command.TEST_BUTTON]
    assert saved == 0
    assert not manager.buttons.dirty
    expected = tuple(decode_button(device.defaults[slot], slot) for slot in range(4))
    assert reloaded == expected
    assert manager.buttons.buttons == expected


def test_set_slot_rejected_while_reset_reloads(profile, device, transport) -> None:
    slow = replace(profile, timing=replace(FAST, load_interval_s=0.02, autosave_delay_s=10))

    async def scenario() -> ConnectionManager:
        manager = await connect_manager(slow, transport)
        resetting = asyncio.create_task(manager.buttons.reset())
        await asyncio.sleep(0.01)
        assert manager.buttons.reloading
        with pytest.raises(ApplicationError):
            manager.buttons.set_slot(0, label="Lost")
        await resetting
        assert not manager.buttons.reloading
        return manager

    manager = asyncio.run(scenario())
    assert manager.buttons.buttons[0].label == "K0"
    assert not manager.buttons.dirty
    assert not manager.buttons.autosave_pending
    assert Command.SET_BUTTON not in device.commands()
