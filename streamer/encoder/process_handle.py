"""
Transcoder process handle.

A TranscoderProcess owns exactly one live transcoder (ffmpeg) process and the
write end of its stdin pipe. Raw RGBA frames are written unframed: the transcoder
is launched for a fixed resolution and frame rate, so every write must be exactly
width * height * 4 bytes.

A handle is single-use. Once closed it is never reopened; reconnecting means
launching a new handle (a new process generation).
"""

from __future__ import annotations

import errno
import logging
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import BinaryIO, List, Optional

from streamer.config import StreamerConfig
from streamer.errors import CloseError, FormatError, LaunchError, PipeBrokenError, WriteError

logger = logging.getLogger(__name__)

# Seconds to wait for the transcoder to exit after stdin is closed before killing it
DEFAULT_CLOSE_TIMEOUT_SEC = 10.0

STDOUT_LOG_NAME = "std.txt"


def build_transcoder_cmd(config: StreamerConfig) -> List[str]:
    """
    Build the transcoder argv for a session.

    Input is raw RGBA on stdin at the configured size and rate, mixed with a silent
    stereo track (ingest endpoints reject video-only streams), encoded to
    H.264/MP3 in FLV and pushed to the stream URL.

    A transcoder_cmd override on the config is returned verbatim.
    """
    if config.transcoder_cmd:
        return list(config.transcoder_cmd)

    video_kbps = int(config.video_bitrate[:-1])
    keyint = str(config.keyframe_interval)
    return [
        config.ffmpeg_bin,
        "-hide_banner",
        "-y",
        "-f", "rawvideo",
        "-pixel_format", "rgba",
        "-video_size", f"{config.width}x{config.height}",
        "-r", str(config.fps),
        "-i", "pipe:0",
        "-f", "lavfi",
        "-i", "anullsrc=r=44100:cl=stereo",
        "-g", keyint,
        "-pix_fmt", "yuv420p",
        "-vcodec", "libx264",
        "-preset", "ultrafast",
        "-crf", "23",
        "-threads", "2",
        "-b:v", config.video_bitrate,
        "-maxrate", config.video_bitrate,
        "-bufsize", f"{video_kbps // 2}k",
        "-b:a", config.audio_bitrate,
        "-c:a", "mp3",
        "-async", "1",
        "-vsync", "vfr",
        "-ac", "2",
        "-ar", "44100",
        "-x264-params", f"scenecut=0:open_gop=0:min-keyint={keyint}:keyint={keyint}",
        "-x264opts", "cabac=1:ref=1:bframes=2",
        "-tune", "zerolatency",
        "-f", "flv",
        "-reconnect", "1",
        "-reconnect_at_eof", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", "10",
        config.stream_url,
    ]


class TranscoderProcess:
    """
    Handle for one transcoder process generation.

    Use TranscoderProcess.launch() (or the module-level launch()) to create one.
    write_frame() is called from the producer thread only; close() may be called
    from any thread and is safe to call more than once.
    """

    def __init__(
        self,
        process: Optional[subprocess.Popen],
        stdin: Optional[BinaryIO],
        frame_bytes: int,
        generation: int = 0,
        stderr_path: Optional[Path] = None,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT_SEC,
    ) -> None:
        self._process = process
        self._stdin = stdin
        self._frame_bytes = frame_bytes
        self._generation = generation
        self._stderr_path = stderr_path
        self._close_timeout = close_timeout

        self._lock = threading.Lock()  # Protects _closed
        self._closed = False
        self._frames_written = 0

    @classmethod
    def launch(
        cls,
        config: StreamerConfig,
        generation: int = 0,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT_SEC,
    ) -> "TranscoderProcess":
        """
        Spawn the transcoder and wire its stdin pipe.

        Child stdout goes to <output_dir>/std.txt and child stderr to
        <output_dir>/err.<unix start time>.txt.

        Raises:
            LaunchError: If the output directory, log files, process or pipe
                cannot be created
        """
        cmd = build_transcoder_cmd(config)
        output_dir = Path(config.output_dir)

        if not cmd:
            raise LaunchError("transcoder command is empty")
        logger.debug(f"Launching transcoder {cmd[0]} (generation {generation})")

        try:
            os.makedirs(output_dir, exist_ok=True)
            stderr_path = output_dir / f"err.{int(time.time())}.txt"
            with open(output_dir / STDOUT_LOG_NAME, "wb") as stdout_log, open(stderr_path, "ab") as stderr_log:
                # Child inherits the log descriptors; our copies close on exit of this block
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.PIPE,
                    stdout=stdout_log,
                    stderr=stderr_log,
                    bufsize=0,
                )
        except OSError as e:
            raise LaunchError(f"failed to start transcoder {cmd[0]}: {e}") from e

        if process.stdin is None:
            process.kill()
            process.wait()
            raise LaunchError("transcoder started without a stdin pipe")

        logger.info(f"Started transcoder PID={process.pid} (generation {generation})")
        return cls(
            process,
            process.stdin,
            config.frame_bytes,
            generation=generation,
            stderr_path=stderr_path,
            close_timeout=close_timeout,
        )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def frame_bytes(self) -> int:
        return self._frame_bytes

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def stderr_path(self) -> Optional[Path]:
        return self._stderr_path

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def is_alive(self) -> bool:
        """True while the process is running and the handle is open."""
        if self.closed or self._process is None:
            return False
        return self._process.poll() is None

    def write_frame(self, data: bytes) -> None:
        """
        Write one raw RGBA frame to the transcoder's stdin.

        Args:
            data: Exactly frame_bytes bytes of RGBA pixels

        Raises:
            FormatError: Buffer length is not width * height * 4
            PipeBrokenError: Downstream pipe is broken or already closed
            WriteError: Any other write failure
        """
        if len(data) != self._frame_bytes:
            raise FormatError(f"frame is {len(data)} bytes, expected {self._frame_bytes}")

        if self.closed or self._stdin is None:
            raise PipeBrokenError("write on a closed transcoder pipe")

        view = memoryview(data)
        try:
            # Raw pipe writes may be partial; keep writing until the frame is out
            while view:
                written = self._stdin.write(view)
                if written is None:
                    raise WriteError("transcoder pipe would block")
                view = view[written:]
        except (BrokenPipeError, ConnectionResetError) as e:
            raise PipeBrokenError(f"broken pipe: {e}") from e
        except ValueError as e:
            # Raised by the file object when stdin was closed underneath us
            raise PipeBrokenError(f"pipe closed: {e}") from e
        except OSError as e:
            if e.errno == errno.EPIPE:
                raise PipeBrokenError(f"broken pipe: {e}") from e
            raise WriteError(f"failed to write raw frame data: {e}") from e
        finally:
            view.release()

        self._frames_written += 1

    def close(self) -> None:
        """
        Close stdin (end of stream for the transcoder), then wait for it to exit.

        Missing resources are skipped. Calling close() again is a no-op. A process
        that does not exit within the close timeout is killed.

        Raises:
            CloseError: stdin could not be closed or the process exited non-zero
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        failure: Optional[str] = None

        if self._stdin is not None:
            logger.debug(f"Closing transcoder stdin (generation {self._generation})")
            try:
                self._stdin.close()
            except OSError as e:
                failure = f"failed to close transcoder stdin: {e}"

        if self._process is not None:
            logger.debug(f"Waiting for transcoder PID={self._process.pid} to exit")
            try:
                returncode = self._process.wait(timeout=self._close_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Transcoder PID={self._process.pid} did not exit, killing")
                self._process.kill()
                returncode = self._process.wait()

            if returncode != 0 and failure is None:
                failure = f"transcoder PID={self._process.pid} exited with code {returncode}"

        if failure is not None:
            raise CloseError(failure)

        logger.info(f"Transcoder generation {self._generation} closed")


def launch(config: StreamerConfig, generation: int = 0) -> TranscoderProcess:
    """Launch a new transcoder process handle for config."""
    return TranscoderProcess.launch(config, generation=generation)
