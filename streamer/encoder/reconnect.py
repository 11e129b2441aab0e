"""
Reconnect controller for the transcoder pipe.

The controller owns the single authoritative TranscoderProcess reference and the
reconnect state machine:

    IDLE --failure--> RECONNECTING --close old, backoff, launch--> IDLE
    IDLE --failure past the ceiling--> ABORTED (terminal)

Every failure pushes a rolling cooldown deadline forward by a fixed penalty,
starting from whichever is later: now, or the current deadline. Failures in quick
succession accumulate; once the deadline sits more than the ceiling beyond now
the session aborts. Quiet periods let the deadline fall behind the clock, which
resets the budget.

Eligibility (single-flight guard, deadline arithmetic, abort decision) is decided
under the state lock in begin_reconnect() and takes constant time. The slow part
(close, backoff, launch) runs in complete_reconnect(), normally on a background
thread. A second failure while a reconnect is in flight is rejected immediately
with AlreadyReconnectingError.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from typing import Callable, Optional

from streamer.encoder.process_handle import TranscoderProcess
from streamer.errors import (
    AlreadyReconnectingError,
    CloseError,
    SessionClosedError,
    StreamAborted,
)

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SEC = 2.0
DEFAULT_COOLDOWN_PENALTY_SEC = 60.0
DEFAULT_RECONNECT_CEILING_SEC = 300.0


class ControllerState(enum.Enum):
    IDLE = "idle"
    RECONNECTING = "reconnecting"
    ABORTED = "aborted"


Launcher = Callable[[int], TranscoderProcess]


class ReconnectController:
    """
    Single-flight reconnect state machine guarding one transcoder handle.

    Args:
        launcher: Callable taking a generation number and returning a new
            TranscoderProcess; raises LaunchError on failure
        backoff_sec: Sleep between closing the old process and launching the new one
        penalty_sec: Amount each failure pushes the cooldown deadline forward
        ceiling_sec: Maximum distance of the deadline beyond now before aborting
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (injectable for tests)
        on_state_change: Optional callback, invoked outside the lock
    """

    def __init__(
        self,
        launcher: Launcher,
        backoff_sec: float = DEFAULT_BACKOFF_SEC,
        penalty_sec: float = DEFAULT_COOLDOWN_PENALTY_SEC,
        ceiling_sec: float = DEFAULT_RECONNECT_CEILING_SEC,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_state_change: Optional[Callable[[ControllerState], None]] = None,
    ) -> None:
        self._launcher = launcher
        self._backoff_sec = backoff_sec
        self._penalty_sec = penalty_sec
        self._ceiling_sec = ceiling_sec
        self._clock = clock
        self._sleep = sleep
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = ControllerState.IDLE
        self._handle: Optional[TranscoderProcess] = None
        self._closed = False
        self._cooldown_deadline = clock()
        self._generation = 0
        self._reconnects = 0
        self._failed_attempts = 0
        # Set while no reconnect holds a claimed handle
        self._idle = threading.Event()
        self._idle.set()

    def start(self) -> TranscoderProcess:
        """
        Launch the first transcoder generation.

        Raises:
            LaunchError: Propagated from the launcher, no retry
        """
        handle = self._launcher(0)
        with self._lock:
            self._handle = handle
            self._generation = 0
        return handle

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return self._state

    @property
    def handle(self) -> Optional[TranscoderProcess]:
        with self._lock:
            return self._handle

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def reconnects(self) -> int:
        with self._lock:
            return self._reconnects

    @property
    def failed_attempts(self) -> int:
        with self._lock:
            return self._failed_attempts

    @property
    def cooldown_deadline(self) -> float:
        with self._lock:
            return self._cooldown_deadline

    def cooldown_remaining(self) -> float:
        """Seconds until the accumulated error budget has fully decayed."""
        with self._lock:
            deadline = self._cooldown_deadline
        return max(0.0, deadline - self._clock())

    def accumulated_errors(self) -> int:
        """Failures still counted against the ceiling (penalty-sized units)."""
        return math.ceil(self.cooldown_remaining() / self._penalty_sec)

    def begin_reconnect(self) -> Optional[TranscoderProcess]:
        """
        Decide whether a reconnect may start and claim the old handle.

        On success the state is RECONNECTING and the caller owns the returned
        handle (may be None) and must pass it to complete_reconnect().

        Raises:
            StreamAborted: Session is aborted, or this failure exceeded the ceiling
            AlreadyReconnectingError: A reconnect is already in flight
            SessionClosedError: Session was closed
        """
        with self._lock:
            if self._state == ControllerState.ABORTED:
                raise StreamAborted()
            if self._closed:
                raise SessionClosedError("session closed")
            if self._state == ControllerState.RECONNECTING:
                raise AlreadyReconnectingError("already reconnecting")

            now = self._clock()
            self._cooldown_deadline = max(now, self._cooldown_deadline) + self._penalty_sec
            old = self._handle
            self._handle = None
            self._idle.clear()

            if self._cooldown_deadline > now + self._ceiling_sec:
                self._state = ControllerState.ABORTED
            else:
                self._state = ControllerState.RECONNECTING
            new_state = self._state
            remaining = self._cooldown_deadline - now

        self._notify(new_state)

        if new_state == ControllerState.ABORTED:
            logger.error(
                f"Reconnect ceiling exceeded (cooldown {remaining:.0f}s > {self._ceiling_sec:.0f}s), aborting stream"
            )
            self._close_quietly(old)
            self._idle.set()
            raise StreamAborted()

        logger.info(f"Attempting to reconnect (cooldown {remaining:.0f}s)")
        return old

    def complete_reconnect(self, old: Optional[TranscoderProcess]) -> Optional[TranscoderProcess]:
        """
        Tear down the old handle, back off, launch the next generation.

        Returns:
            The new handle, or None if the session was closed meanwhile

        Raises:
            LaunchError: The new process could not be launched. The controller
                returns to IDLE and waits for the next failure to trigger again.
                Other launcher exceptions propagate the same way.
        """
        try:
            return self._relaunch(old)
        finally:
            self._idle.set()

    def _relaunch(self, old: Optional[TranscoderProcess]) -> Optional[TranscoderProcess]:
        logger.info("Closing the transcoder process")
        self._close_quietly(old)

        logger.info(f"Waiting {self._backoff_sec:.1f}s before relaunching the transcoder")
        self._sleep(self._backoff_sec)

        with self._lock:
            closed = self._closed
            if closed:
                self._state = ControllerState.IDLE
            generation = self._generation + 1

        if closed:
            logger.info("Session closed during reconnect, not relaunching")
            self._notify(ControllerState.IDLE)
            return None

        try:
            new = self._launcher(generation)
        except Exception as e:
            with self._lock:
                self._failed_attempts += 1
                self._state = ControllerState.IDLE
            logger.error(f"Failed to reconnect: {e}")
            self._notify(ControllerState.IDLE)
            raise

        stale: Optional[TranscoderProcess] = None
        with self._lock:
            if self._closed:
                stale = new
            else:
                self._handle = new
                self._generation = generation
                self._reconnects += 1
            self._state = ControllerState.IDLE

        self._notify(ControllerState.IDLE)

        if stale is not None:
            logger.info("Session closed while relaunching, discarding new transcoder")
            self._close_quietly(stale)
            return None

        logger.info(f"Transcoder generation {generation} is running")
        return new

    def reconnect(self) -> Optional[TranscoderProcess]:
        """Run a whole reconnect sequence on the calling thread."""
        old = self.begin_reconnect()
        return self.complete_reconnect(old)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no reconnect holds a claimed handle, i.e. every generation
        taken out of service has been closed. Returns False on timeout.
        """
        return self._idle.wait(timeout)

    def close(self) -> None:
        """
        Close the current handle and refuse further reconnects.

        The handle reference is taken under the lock, so a handle claimed by an
        in-flight reconnect is closed by that reconnect and never twice; use
        wait_idle() to wait for it.

        Raises:
            CloseError: Propagated from the handle
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handle = self._handle
            self._handle = None

        if handle is not None:
            handle.close()

    def _close_quietly(self, handle: Optional[TranscoderProcess]) -> None:
        if handle is None:
            return
        try:
            handle.close()
        except CloseError as e:
            logger.warning(f"Error closing transcoder generation {handle.generation}: {e}")

    def _notify(self, state: ControllerState) -> None:
        if self._on_state_change:
            self._on_state_change(state)
