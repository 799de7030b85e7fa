"""Supervised execution of lifecycle stages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from deckctl.core.errors import StageTimeout

T = TypeVar("T")
LOGGER = logging.getLogger(__name__)


async def run_stage(
    stage: str,
    operation: Callable[[], Awaitable[T]],
    *,
    timeout_s: float,
    retries: int = 0,
) -> T:
    """Run ``operation`` under a timeout, retrying only on timeout.

    ``operation`` is a factory so every attempt gets a fresh awaitable.
    Other exceptions propagate on the first failure. Cancelling the caller
    cancels the attempt in progress.
    """
    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_s)
        except asyncio.TimeoutError:
            LOGGER.warning("%s timed out (attempt %d/%d)", stage, attempt, attempts)
    raise StageTimeout(stage, attempts, timeout_s)
