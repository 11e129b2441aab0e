"""
Frame sink: the streaming session a frame producer talks to.

FrameSink.stream() is called once per producer tick. It validates the bitmap,
writes its raw RGBA bytes to the current transcoder and, when the pipe turns out
to be broken, hands the failure to the ReconnectController and returns at once.
The reconnect itself (close, backoff, relaunch) runs on a background thread;
frames arriving meanwhile are dropped, never queued.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np

from streamer.config import StreamerConfig
from streamer.encoder.base import FrameStreamer
from streamer.encoder.process_handle import DEFAULT_CLOSE_TIMEOUT_SEC, TranscoderProcess
from streamer.encoder.reconnect import ControllerState, Launcher, ReconnectController
from streamer.errors import (
    AlreadyReconnectingError,
    FormatError,
    LaunchError,
    PipeBrokenError,
    SessionClosedError,
    StreamAborted,
)

logger = logging.getLogger(__name__)


@dataclass
class SinkStatus:
    """Point-in-time view of a session, for operators deciding whether to restart."""

    state: str
    reconnecting: bool
    aborted: bool
    accumulated_errors: int
    cooldown_remaining_sec: float
    reconnects: int
    failed_attempts: int
    generation: int
    pid: Optional[int]
    frames_written: int
    frames_dropped: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FrameSink(FrameStreamer):
    """
    Resilient streaming session over a transcoder subprocess.

    Construction launches the first transcoder and fails fast with LaunchError.

    Args:
        config: Session configuration
        launcher: Optional replacement for TranscoderProcess.launch, taking a
            generation number (used by tests to supply stub transcoders)
        clock: Monotonic clock for the cooldown window
        sleep: Sleep used for the reconnect backoff
    """

    def __init__(
        self,
        config: StreamerConfig,
        launcher: Optional[Launcher] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._width = config.width
        self._height = config.height

        if launcher is None:
            def launcher(generation: int) -> TranscoderProcess:
                return TranscoderProcess.launch(config, generation=generation)

        self._controller = ReconnectController(
            launcher,
            backoff_sec=config.reconnect_backoff_sec,
            penalty_sec=config.cooldown_penalty_sec,
            ceiling_sec=config.reconnect_ceiling_sec,
            clock=clock,
            sleep=sleep,
            on_state_change=self._on_state_change,
        )

        self._stats_lock = threading.Lock()
        self._frames_written = 0
        self._frames_dropped = 0
        self._reconnect_thread: Optional[threading.Thread] = None

        self._controller.start()
        logger.info(f"Connected to the streaming service ({self._width}x{self._height} @ {config.fps}fps)")

    @property
    def controller(self) -> ReconnectController:
        return self._controller

    @property
    def reconnecting(self) -> bool:
        return self._controller.state == ControllerState.RECONNECTING

    @property
    def aborted(self) -> bool:
        return self._controller.state == ControllerState.ABORTED

    def stream(self, frame: np.ndarray) -> None:
        """
        Send one RGBA frame to the transcoder.

        Returns normally when the frame was written, when it was dropped because a
        reconnect is in flight, and when a broken pipe was detected (the reconnect
        is then scheduled in the background).

        Raises:
            StreamAborted: Session is permanently aborted; stop producing
            SessionClosedError: Session was closed
            FormatError: Frame is not a (height, width, 4) uint8 array
            WriteError: Pipe write failed for another reason
        """
        state = self._controller.state
        if state == ControllerState.ABORTED:
            raise StreamAborted()
        if self._controller.closed:
            raise SessionClosedError("session closed")
        if state == ControllerState.RECONNECTING:
            with self._stats_lock:
                self._frames_dropped += 1
            return

        data = self._frame_to_bytes(frame)

        handle = self._controller.handle
        if handle is None:
            # Last relaunch failed; the next frame is the retry trigger
            with self._stats_lock:
                self._frames_dropped += 1
            self._trigger_reconnect()
            return

        try:
            handle.write_frame(data)
        except PipeBrokenError as e:
            logger.warning(f"Broken pipe detected, attempting to reconnect... ({e})")
            with self._stats_lock:
                self._frames_dropped += 1
            self._trigger_reconnect()
            return

        with self._stats_lock:
            self._frames_written += 1

    def close(self) -> None:
        """
        Close the current transcoder and wait for any in-flight reconnect.

        Raises:
            CloseError: Propagated from the transcoder handle
        """
        logger.info("Closing the frame sink")
        try:
            self._controller.close()
        finally:
            # A reconnect may have claimed the old generation before close() ran
            if not self.wait_reconnected(timeout=self._config.reconnect_backoff_sec + DEFAULT_CLOSE_TIMEOUT_SEC):
                logger.warning("Reconnect did not finish within timeout")

    def status(self) -> SinkStatus:
        controller = self._controller
        state = controller.state
        handle = controller.handle
        with self._stats_lock:
            frames_written = self._frames_written
            frames_dropped = self._frames_dropped
        return SinkStatus(
            state="closed" if controller.closed and state != ControllerState.ABORTED else state.value,
            reconnecting=state == ControllerState.RECONNECTING,
            aborted=state == ControllerState.ABORTED,
            accumulated_errors=controller.accumulated_errors(),
            cooldown_remaining_sec=round(controller.cooldown_remaining(), 3),
            reconnects=controller.reconnects,
            failed_attempts=controller.failed_attempts,
            generation=controller.generation,
            pid=handle.pid if handle is not None else None,
            frames_written=frames_written,
            frames_dropped=frames_dropped,
        )

    def wait_reconnected(self, timeout: Optional[float] = None) -> bool:
        """Block until no reconnect is in flight. Returns False on timeout."""
        if not self._controller.wait_idle(timeout):
            return False
        # The worker is published before it can finish, so it is visible here
        with self._stats_lock:
            thread = self._reconnect_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            return not thread.is_alive()
        return True

    def _on_state_change(self, state: ControllerState) -> None:
        logger.info(f"Stream state -> {state.value}")

    def _frame_to_bytes(self, frame: np.ndarray) -> bytes:
        if not isinstance(frame, np.ndarray):
            raise FormatError(f"frame is not an RGBA image (got {type(frame).__name__})")
        if frame.dtype != np.uint8 or frame.ndim != 3 or frame.shape[2] != 4:
            raise FormatError(
                f"frame is not an RGBA image (dtype={frame.dtype}, shape={frame.shape})"
            )
        if frame.shape[0] != self._height or frame.shape[1] != self._width:
            raise FormatError(
                f"frame is {frame.shape[1]}x{frame.shape[0]}, expected {self._width}x{self._height}"
            )
        return frame.tobytes()

    def _trigger_reconnect(self) -> None:
        """Claim the reconnect and run the slow part on a background thread."""
        try:
            old = self._controller.begin_reconnect()
        except AlreadyReconnectingError:
            logger.debug("Reconnect already in progress, dropping trigger")
            return
        except StreamAborted:
            logger.error("Giving up on the stream: too many reconnects")
            return
        except SessionClosedError:
            return

        thread = threading.Thread(
            target=self._reconnect_worker,
            args=(old,),
            daemon=True,
            name="StreamReconnect",
        )
        with self._stats_lock:
            self._reconnect_thread = thread
        thread.start()

    def _reconnect_worker(self, old: Optional[TranscoderProcess]) -> None:
        try:
            new = self._controller.complete_reconnect(old)
        except LaunchError:
            # Already logged by the controller; the next failing frame retries
            return
        except Exception as e:
            logger.error(f"Unexpected error during reconnect: {e}", exc_info=True)
            return
        if new is not None:
            logger.info("Reconnected successfully")
