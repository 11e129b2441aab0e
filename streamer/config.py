"""
Configuration management for the frame streamer.

Reads configuration from a .env file and environment variables with sensible
defaults. The resulting StreamerConfig is passed explicitly to the session; nothing
reads the environment after startup.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Default .env file location
DEFAULT_ENV_FILE = Path(".env")

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(os.getenv("STREAMER_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


def _parse_port(value: str) -> int:
    """
    Parse a listen port. Accepts the ":8081" form used by older deployments.

    Raises:
        ValueError: If the value is not an integer port
    """
    try:
        return int(value.strip().lstrip(":"))
    except ValueError:
        raise ValueError(f"Invalid PORT: {value} (must be an integer, optionally prefixed with ':')")


def _parse_bitrate_kbps(bitrate: str) -> int:
    if not bitrate.endswith("k"):
        raise ValueError(f"Invalid bitrate format: {bitrate} (must end with 'k', e.g., '3000k')")
    try:
        value = int(bitrate[:-1])
    except ValueError:
        raise ValueError(f"Invalid bitrate: {bitrate}")
    if value <= 0:
        raise ValueError(f"Invalid bitrate value: {value}")
    return value


@dataclass
class StreamerConfig:
    """Session configuration. Fixed at construction, no hot reload."""

    # Output
    output_dir: str = "./debug"
    stream_url: str = ""

    # Frame geometry (RGBA, 4 bytes per pixel - not configurable)
    width: int = 1280
    height: int = 720
    fps: int = 30

    # Transcoder invocation
    video_bitrate: str = "3000k"
    audio_bitrate: str = "128k"
    keyframe_interval: int = 60
    ffmpeg_bin: str = "ffmpeg"
    transcoder_cmd: Optional[List[str]] = None

    # Reconnect policy
    reconnect_backoff_ms: int = 2000
    cooldown_penalty_sec: float = 60.0
    reconnect_ceiling_sec: float = 300.0

    # Producer error budget
    max_frame_errors: int = 5
    error_window_frames: int = 100

    # Control surface
    host: str = "0.0.0.0"
    port: int = 8081

    # Logging
    log_level: str = "INFO"

    bytes_per_pixel: int = 4

    @property
    def frame_bytes(self) -> int:
        """Size of one raw RGBA frame in bytes."""
        return self.width * self.height * self.bytes_per_pixel

    @property
    def frame_period_sec(self) -> float:
        return 1.0 / self.fps

    @property
    def reconnect_backoff_sec(self) -> float:
        return self.reconnect_backoff_ms / 1000.0

    @classmethod
    def load_config(cls) -> "StreamerConfig":
        """
        Load configuration from environment variables.

        Returns:
            StreamerConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        transcoder_cmd_str = os.getenv("STREAMER_TRANSCODER_CMD", "").strip()
        transcoder_cmd = transcoder_cmd_str.split() if transcoder_cmd_str else None

        config = cls(
            output_dir=os.getenv("STREAMER_OUTPUT_DIR", "./debug"),
            stream_url=os.getenv("STREAM_URL", ""),
            width=_env_int("STREAMER_WIDTH", "1280"),
            height=_env_int("STREAMER_HEIGHT", "720"),
            fps=_env_int("STREAMER_FPS", "30"),
            video_bitrate=os.getenv("STREAMER_VIDEO_BITRATE", "3000k"),
            audio_bitrate=os.getenv("STREAMER_AUDIO_BITRATE", "128k"),
            keyframe_interval=_env_int("STREAMER_KEYFRAME_INTERVAL", "60"),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            transcoder_cmd=transcoder_cmd,
            reconnect_backoff_ms=_env_int("STREAMER_RECONNECT_BACKOFF_MS", "2000"),
            cooldown_penalty_sec=_env_float("STREAMER_COOLDOWN_PENALTY_SEC", "60"),
            reconnect_ceiling_sec=_env_float("STREAMER_RECONNECT_CEILING_SEC", "300"),
            max_frame_errors=_env_int("STREAMER_MAX_FRAME_ERRORS", "5"),
            error_window_frames=_env_int("STREAMER_ERROR_WINDOW_FRAMES", "100"),
            host=os.getenv("STREAMER_HOST", "0.0.0.0"),
            port=_parse_port(os.getenv("PORT", "8081")),
            log_level=os.getenv("STREAMER_LOG_LEVEL", "INFO"),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.stream_url and not self.transcoder_cmd:
            raise ValueError("STREAM_URL is required unless a transcoder command override is set")

        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid frame size: {self.width}x{self.height} (must be positive)")

        if self.fps <= 0:
            raise ValueError(f"Invalid fps: {self.fps} (must be > 0)")

        _parse_bitrate_kbps(self.video_bitrate)
        _parse_bitrate_kbps(self.audio_bitrate)

        if self.keyframe_interval <= 0:
            raise ValueError(f"Invalid keyframe interval: {self.keyframe_interval} (must be > 0)")

        if self.reconnect_backoff_ms <= 0:
            raise ValueError(f"Invalid reconnect backoff: {self.reconnect_backoff_ms}ms (must be > 0)")

        if self.cooldown_penalty_sec <= 0:
            raise ValueError(f"Invalid cooldown penalty: {self.cooldown_penalty_sec}s (must be > 0)")

        if self.reconnect_ceiling_sec < self.cooldown_penalty_sec:
            raise ValueError(
                f"Invalid reconnect ceiling: {self.reconnect_ceiling_sec}s "
                f"(must be >= cooldown penalty {self.cooldown_penalty_sec}s)"
            )

        if self.max_frame_errors < 0:
            raise ValueError(f"Invalid max frame errors: {self.max_frame_errors} (must be >= 0)")

        if self.error_window_frames <= 0:
            raise ValueError(f"Invalid error window: {self.error_window_frames} (must be > 0)")

        if self.port < 1 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port} (must be 1-65535)")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )


def load_config() -> StreamerConfig:
    """
    Load and validate streamer configuration from environment variables.

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return StreamerConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
