# streamer/service.py

import logging
import signal
import threading
from typing import Optional

from streamer.config import StreamerConfig
from streamer.encoder.frame_pump import FramePump
from streamer.encoder.frame_sink import FrameSink
from streamer.errors import CloseError
from streamer.http.server import ControlServer
from streamer.scene.commands import CommandHandler, CommandQueue
from streamer.scene.renderer import SceneRenderer, SceneState

logger = logging.getLogger(__name__)


class StreamerService:
    """
    Wires the streaming session, scene, frame pump and control server together.

    Construction launches the transcoder; a LaunchError propagates so the process
    fails fast when the transcoder cannot start.
    """

    def __init__(self, config: StreamerConfig, sink: Optional[FrameSink] = None):
        self.config = config
        self.sink = sink if sink is not None else FrameSink(config)

        self.scene = SceneState()
        self.renderer = SceneRenderer(config.width, config.height, self.scene)
        self.commands = CommandQueue()

        self.pump = FramePump(
            sink=self.sink,
            render=self.renderer.render,
            fps=config.fps,
            is_paused=lambda: self.scene.paused,
            on_abort=self._on_abort,
            max_frame_errors=config.max_frame_errors,
            error_window_frames=config.error_window_frames,
        )
        self.command_handler = CommandHandler(
            self.scene,
            self.commands,
            config.output_dir,
            stats=self.pump.stats,
            last_frame=lambda: self.pump.last_frame,
        )
        self.pump.next_command = self.command_handler.apply_next
        self.renderer.stats = self.pump.stats

        self.http_server = ControlServer(
            host=config.host,
            port=config.port,
            commands=self.commands,
            pump_stats=self.pump.stats,
            sink_status=lambda: self.sink.status().to_dict(),
        )

        self._stop_event = threading.Event()
        self.abort_reason: Optional[str] = None
        self.running = False

    def start(self):
        """Start frame pump and control server threads."""
        logger.info("=== Streamer starting ===")
        self.running = True
        self.pump.start()
        self.http_server.start()

    def _on_abort(self, reason: str) -> None:
        self.abort_reason = reason
        self._stop_event.set()

    def request_stop(self, *_args) -> None:
        self._stop_event.set()

    def run_forever(self) -> None:
        """Block until SIGINT/SIGTERM or the stream aborts, then shut down."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self.request_stop)
            signal.signal(signal.SIGTERM, self.request_stop)
        try:
            while not self._stop_event.wait(timeout=1.0):
                pass
        finally:
            logger.info("> closing application")
            self.stop()

    def stop(self) -> None:
        """Stop pump, then control server, then close the session."""
        if not self.running:
            return
        self.running = False
        self.pump.stop()
        self.http_server.stop()
        try:
            self.sink.close()
        except CloseError as e:
            logger.warning(f"Error closing the frame sink: {e}")
        logger.info("=== Streamer stopped ===")
