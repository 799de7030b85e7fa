"""Request/response exchange over the command endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from deckctl.core import codec
from deckctl.core.errors import (
    DecodeError,
    DeviceError,
    NoResponse,
    SessionClosedError,
    describe_command,
)
from deckctl.core.model import Frame, Timing
from deckctl.transports.base import Link

LOGGER = logging.getLogger(__name__)


class CommandExchanger:
    """Serialises write/wait/read cycles for a single session.

    The device has no transaction IDs, so every exchange holds the session's
    lane for its whole duration. Multi-exchange operations (bulk load, saves,
    reset) additionally hold :meth:`operation` so that no other operation's
    frames land between theirs. Once :meth:`close` is called any waiting or
    in-flight exchange fails with :class:`SessionClosedError` at its next
    suspension point.
    """

    def __init__(self, link: Link, endpoint: Any, timing: Timing) -> None:
        self._link = link
        self._endpoint = endpoint
        self._timing = timing
        self._lane = asyncio.Lock()
        self._operation_lane = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._lane.locked()

    def close(self) -> None:
        self._closed = True

    @asynccontextmanager
    async def operation(self) -> AsyncIterator[None]:
        """Hold the session for an operation made of several exchanges."""
        async with self._operation_lane:
            self._ensure_open()
            yield

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Session closed while exchange was pending")

    async def _pause(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self._ensure_open()

    async def _read(self) -> bytes:
        data = await self._link.read(self._endpoint)
        self._ensure_open()
        LOGGER.debug("<- %s", data.hex(" ") if data else "<empty>")
        return data

    async def execute(self, command: int, payload: bytes = b"") -> Frame:
        """Send one command and return the decoded reply frame.

        An empty read is retried exactly once. A non-empty reply that does not
        decode is raised as-is, without retry.
        """
        request = codec.encode(command, payload)
        async with self._lane:
            self._ensure_open()
            LOGGER.debug("-> %s", request.hex(" "))
            await self._link.write(self._endpoint, request)
            self._ensure_open()
            await self._pause(self._timing.processing_delay_s)

            response = await self._read()
            if response:
                frame = codec.decode(response)
            else:
                LOGGER.debug("Empty reply to %s, retrying read once", describe_command(command))
                await self._pause(self._timing.retry_delay_s)
                response = await self._read()
                if not response:
                    raise NoResponse(f"No reply to {describe_command(command)} after retry")
                try:
                    frame = codec.decode(response)
                except DecodeError as exc:
                    raise NoResponse(
                        f"No valid reply to {describe_command(command)} after retry: {exc}"
                    ) from exc

        if frame.command != command:
            LOGGER.debug(
                "Reply command %s differs from request %s",
                describe_command(frame.command),
                describe_command(command),
            )
        return frame

    async def request(self, command: int, payload: bytes = b"") -> bytes:
        """Execute ``command`` and return its payload, raising DeviceError on a non-NONE code."""
        frame = await self.execute(command, payload)
        if not frame.ok:
            raise DeviceError(command, frame.error)
        return frame.payload

    async def stream(self, endpoint: Any, data: bytes, *, chunk_size: int, delay_s: float) -> int:
        """Write ``data`` to ``endpoint`` in chunks while holding the lane; returns chunk count."""
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        chunks = [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]
        async with self._lane:
            for index, chunk in enumerate(chunks):
                self._ensure_open()
                await self._link.write(endpoint, chunk)
                if index < len(chunks) - 1:
                    await self._pause(delay_s)
        return len(chunks)
