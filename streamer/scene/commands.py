"""
Interactive commands for the running scene.

Commands arrive as text lines from the control surface and are applied by the
frame pump, at most one per tick:

    info              log frame statistics
    capture           save the last rendered frame to <output_dir>/capture.png
    setText <words>   replace the title
    toggle            pause / resume streaming
    bang              flash the background
"""

import logging
import os
import queue
from pathlib import Path
from typing import Callable, Dict, Optional

import numpy as np
from PIL import Image

from streamer.scene.renderer import SceneState

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100
CAPTURE_FILE_NAME = "capture.png"


class CommandQueue:
    """Bounded command queue. Producers never block; a full queue drops the command."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: "queue.Queue[str]" = queue.Queue(maxsize=maxsize)

    def submit(self, line: str) -> bool:
        try:
            self._queue.put_nowait(line)
        except queue.Full:
            logger.warning(f"Command queue full, dropping: {line!r}")
            return False
        return True

    def poll(self) -> Optional[str]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class CommandHandler:
    """
    Applies queued commands to the scene.

    Args:
        state: Scene state to mutate
        commands: Queue to read from
        output_dir: Directory for captures
        stats: Optional callable returning frame pump statistics (for "info")
        last_frame: Optional callable returning the last rendered frame (for "capture")
    """

    def __init__(
        self,
        state: SceneState,
        commands: CommandQueue,
        output_dir: str,
        stats: Optional[Callable[[], Dict]] = None,
        last_frame: Optional[Callable[[], Optional[np.ndarray]]] = None,
    ):
        self.state = state
        self.commands = commands
        self.output_dir = Path(output_dir)
        self.stats = stats
        self.last_frame = last_frame

    def apply_next(self) -> Optional[str]:
        """Apply one pending command, if any. Returns the command name applied."""
        line = self.commands.poll()
        if line is None:
            return None
        return self.apply(line)

    def apply(self, line: str) -> Optional[str]:
        args = line.split()
        if not args:
            return None

        name = args[0]
        logger.info(f"Result for {name}")

        if name == "info":
            stats = self.stats() if self.stats else {}
            logger.info(
                f"# {stats.get('frame')}, average frame duration: {stats.get('avg_frame_duration')}, "
                f"errors in window: {stats.get('errors_in_window')}"
            )
        elif name == "capture":
            self._capture()
        elif name == "setText":
            if len(args) == 1:
                return None
            self.state.set_title(" ".join(args[1:]))
        elif name == "toggle":
            paused = self.state.toggle_paused()
            logger.info(f"Streaming {'paused' if paused else 'resumed'}")
        elif name == "bang":
            self.state.bang()
        else:
            logger.debug(f"Ignoring unknown command: {name}")
            return None

        return name

    def _capture(self) -> None:
        frame = self.last_frame() if self.last_frame else None
        if frame is None:
            logger.warning("No frame rendered yet, nothing to capture")
            return
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            Image.fromarray(frame).save(self.output_dir / CAPTURE_FILE_NAME)
        except (OSError, ValueError) as e:
            logger.error(f"Error happened while capturing: {e}")
            return
        logger.info("Captured successfully")
