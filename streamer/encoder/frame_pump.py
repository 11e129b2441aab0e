import logging
import threading
import time
from typing import Callable, Optional

import numpy as np

from streamer.encoder.base import FrameStreamer
from streamer.errors import StreamAborted, StreamerError

logger = logging.getLogger(__name__)

DEFAULT_FPS = 30
DEFAULT_MAX_FRAME_ERRORS = 5
DEFAULT_ERROR_WINDOW_FRAMES = 100


class FramePump:
    """
    Fixed-cadence frame producer loop.

    Each tick: render a frame, hand it to the sink, then apply at most one
    pending command. The pump is the only clock in the system and never waits on the sink's
    reconnect; the sink drops frames while reconnecting.

    The pump stops on StreamAborted, or when more than max_frame_errors sink
    errors land within one window of error_window_frames frames. Either way
    on_abort fires once.
    """

    def __init__(
        self,
        sink: FrameStreamer,
        render: Callable[[int], np.ndarray],
        fps: int = DEFAULT_FPS,
        next_command: Optional[Callable[[], None]] = None,
        is_paused: Optional[Callable[[], bool]] = None,
        on_abort: Optional[Callable[[str], None]] = None,
        max_frame_errors: int = DEFAULT_MAX_FRAME_ERRORS,
        error_window_frames: int = DEFAULT_ERROR_WINDOW_FRAMES,
    ):
        """
        Args:
            sink: Frame sink receiving one frame per tick
            render: Callable producing the RGBA frame for a frame number
            fps: Tick rate
            next_command: Optional callable applying one pending command per tick
            is_paused: Optional callable; while True frames are rendered but not streamed
            on_abort: Optional callback with the stop reason
            max_frame_errors: Tolerated sink errors per window
            error_window_frames: Window length in frames
        """
        self.sink = sink
        self.render = render
        self.period = 1.0 / fps
        self.next_command = next_command
        self.is_paused = is_paused
        self.on_abort = on_abort
        self.max_frame_errors = max_frame_errors
        self.error_window_frames = error_window_frames

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.stop_reason: Optional[str] = None

        self._stats_lock = threading.Lock()
        self.frame_num = 0
        self.errors_in_window = 0
        self._frame_durations = 0.0
        self._frame_counts = 0
        self.last_frame: Optional[np.ndarray] = None

    def start(self):
        if self.running:
            return
        self.running = True
        self.stop_reason = None
        self.thread = threading.Thread(target=self._run, daemon=True, name="FramePump")
        self.thread.start()
        logger.info(f"FramePump started ({1.0 / self.period:.0f}fps)")

    def stop(self):
        self.running = False
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=1)
        logger.info("FramePump stopped")

    def avg_frame_time(self) -> float:
        """Average render+stream duration in seconds over the current window."""
        with self._stats_lock:
            if self._frame_counts == 0:
                return self._frame_durations
            return self._frame_durations / self._frame_counts

    def stats(self) -> dict:
        avg = self.avg_frame_time()
        with self._stats_lock:
            return {
                "frame": self.frame_num,
                "avg_frame_duration": f"{avg * 1000:.3f}ms",
                "errors_in_window": self.errors_in_window,
                "running": self.running,
                "stop_reason": self.stop_reason,
            }

    def tick(self) -> bool:
        """
        Run one tick. Returns False when the pump must stop.
        """
        with self._stats_lock:
            self.frame_num += 1
            frame_num = self.frame_num
            if frame_num % self.error_window_frames == 0:
                # Roll the window: keep the average as the seed of the next one
                self.errors_in_window = 0
                self._frame_durations = (
                    self._frame_durations / self._frame_counts if self._frame_counts else self._frame_durations
                )
                self._frame_counts = 1

        started = time.monotonic()
        frame = self.render(frame_num)
        self.last_frame = frame

        if not (self.is_paused and self.is_paused()):
            try:
                self.sink.stream(frame)
            except StreamAborted:
                self._abort("stream aborted")
                return False
            except StreamerError as e:
                logger.error(f"Error happened while streaming frame {frame_num}: {e}")
                with self._stats_lock:
                    self.errors_in_window += 1
                    too_many = self.errors_in_window > self.max_frame_errors
                if too_many:
                    logger.error("Too many errors!")
                    self._abort("too many errors")
                    return False

        with self._stats_lock:
            self._frame_durations += time.monotonic() - started
            self._frame_counts += 1

        if self.next_command is not None:
            try:
                self.next_command()
            except Exception as e:
                logger.error(f"Command handling error: {e}", exc_info=True)

        return True

    def _abort(self, reason: str) -> None:
        self.running = False
        self.stop_reason = reason
        logger.error(f"FramePump stopping: {reason}")
        if self.on_abort:
            self.on_abort(reason)

    def _run(self):
        # Absolute clock timing prevents cumulative drift
        next_tick = time.monotonic()

        while self.running:
            try:
                if not self.tick():
                    break
            except Exception as e:
                # Renderer failures never stop the cadence
                logger.error(f"FramePump tick error: {e}", exc_info=True)

            next_tick += self.period
            sleep_time = next_tick - time.monotonic()
            if sleep_time > 0:
                time.sleep(sleep_time)
            else:
                logger.debug("FramePump behind schedule, resyncing")
                next_tick = time.monotonic()
