"""Pause/resume handshake between cart scraping and SKU acquisition.

An acquisition run announces itself with `mark_acquisition_start`. The
scraper asks it to step aside with `request_pause`, which resolves once
the run reaches a safe point (between two SKUs) or the timeout expires.
After scraping, `resume` lets the run continue. Pausing is cooperative:
the acquisition side checks `is_pause_requested` at SKU boundaries only.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _PauseState:
    add_in_progress: bool = False
    pause_requested: bool = False
    paused: bool = False
    pause_waiters: list[asyncio.Future] = field(default_factory=list)
    resume_waiters: list[asyncio.Future] = field(default_factory=list)


def _resolve(waiters: list[asyncio.Future], value) -> None:
    for waiter in waiters:
        if not waiter.done():
            waiter.set_result(value)
    waiters.clear()


class PauseCoordinator:
    """Per-account pause state shared by the scraper and acquisition engine."""

    def __init__(self):
        self._states: dict[int, _PauseState] = {}

    def _state(self, account_id: int) -> _PauseState:
        state = self._states.get(account_id)
        if state is None:
            state = _PauseState()
            self._states[account_id] = state
        return state

    # ------------------------------------------------------------------
    # Acquisition side
    # ------------------------------------------------------------------

    def mark_acquisition_start(self, account_id: int) -> None:
        state = self._state(account_id)
        state.add_in_progress = True
        state.pause_requested = False
        state.paused = False

    def mark_acquisition_end(self, account_id: int) -> None:
        """Run finished: release anyone waiting on a pause or a resume."""
        state = self._state(account_id)
        state.add_in_progress = False
        state.pause_requested = False
        state.paused = False
        _resolve(state.pause_waiters, True)
        _resolve(state.resume_waiters, None)

    def is_acquisition_in_progress(self, account_id: int) -> bool:
        state = self._states.get(account_id)
        return bool(state and state.add_in_progress)

    def is_pause_requested(self, account_id: int) -> bool:
        state = self._states.get(account_id)
        return bool(state and state.pause_requested)

    def is_paused(self, account_id: int) -> bool:
        state = self._states.get(account_id)
        return bool(state and state.paused)

    def notify_paused_at_safe_point(self, account_id: int) -> bool:
        """Acknowledge a pending pause request. No-op when none is pending."""
        state = self._states.get(account_id)
        if not state or not state.add_in_progress or not state.pause_requested or state.paused:
            return False
        state.paused = True
        _resolve(state.pause_waiters, True)
        logger.info(f"Acquisition for account {account_id} paused at safe point")
        return True

    async def wait_until_resumed(
        self,
        account_id: int,
        poll_interval: Optional[float] = None,
        on_waiting: Optional[Callable[[], None]] = None,
    ) -> None:
        """Block until the pause is lifted.

        With a poll interval, `on_waiting` is invoked every interval so the
        caller can keep its progress stream alive.
        """
        state = self._states.get(account_id)
        if not state or not state.pause_requested:
            return

        waiter = asyncio.get_running_loop().create_future()
        state.resume_waiters.append(waiter)
        try:
            while not waiter.done():
                done, _ = await asyncio.wait({waiter}, timeout=poll_interval)
                if not done and on_waiting is not None:
                    on_waiting()
        finally:
            if not waiter.done():
                waiter.cancel()
            if waiter in state.resume_waiters:
                state.resume_waiters.remove(waiter)

    # ------------------------------------------------------------------
    # Scraper side
    # ------------------------------------------------------------------

    async def request_pause(self, account_id: int, timeout: Optional[float] = None) -> bool:
        """Ask a running acquisition to pause.

        Returns:
            True once the run is paused (or has finished), False when no run
            is in progress or the timeout expired first
        """
        state = self._state(account_id)
        if not state.add_in_progress:
            return False

        state.pause_requested = True
        if state.paused:
            return True

        waiter = asyncio.get_running_loop().create_future()
        state.pause_waiters.append(waiter)
        try:
            if timeout is None or timeout <= 0:
                return await waiter
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            if waiter in state.pause_waiters:
                state.pause_waiters.remove(waiter)
            if state.add_in_progress and not state.paused and not state.pause_waiters:
                state.pause_requested = False
            logger.warning(f"Acquisition for account {account_id} did not pause within {timeout}s")
            return False

    def resume(self, account_id: int) -> bool:
        """Lift a pause. Returns True if a pause was pending or active."""
        state = self._states.get(account_id)
        if not state:
            return False
        was_requested = state.pause_requested or state.paused
        state.pause_requested = False
        state.paused = False
        _resolve(state.resume_waiters, None)
        return was_requested

    @asynccontextmanager
    async def paused(self, account_id: int, timeout: Optional[float] = None) -> AsyncIterator[bool]:
        """Pause any acquisition for the block, resuming it on exit."""
        was_paused = await self.request_pause(account_id, timeout)
        try:
            yield was_paused
        finally:
            self.resume(account_id)


pause_coordinator = PauseCoordinator()
