"""
Shared pytest fixtures for streamer tests.
"""
import sys
import threading
from typing import List, Optional

import numpy as np
import pytest

from streamer.config import StreamerConfig
from streamer.errors import FormatError, LaunchError, PipeBrokenError

FRAME_WIDTH = 8
FRAME_HEIGHT = 4

# Stub transcoder: reads fixed-size frames from stdin and records "<pid> <first byte>"
# per frame until EOF.
STUB_TRANSCODER = """
import os
import sys

record_path, frame_bytes = sys.argv[1], int(sys.argv[2])
stdin = sys.stdin.buffer
with open(record_path, "a") as record:
    while True:
        frame = stdin.read(frame_bytes)
        if len(frame) < frame_bytes:
            break
        record.write(f"{os.getpid()} {frame[0]}\\n")
        record.flush()
"""


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTranscoder:
    """In-memory stand-in for TranscoderProcess."""

    def __init__(self, generation: int = 0, frame_bytes: int = FRAME_WIDTH * FRAME_HEIGHT * 4):
        self.generation = generation
        self.frame_bytes = frame_bytes
        self.pid = 1000 + generation
        self.frames: List[bytes] = []
        self.close_calls = 0
        self.broken = False
        self.write_error: Optional[Exception] = None

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    @property
    def frames_written(self) -> int:
        return len(self.frames)

    def write_frame(self, data: bytes) -> None:
        if len(data) != self.frame_bytes:
            raise FormatError("wrong frame size")
        if self.broken or self.closed:
            raise PipeBrokenError("broken pipe")
        if self.write_error is not None:
            raise self.write_error
        self.frames.append(bytes(data))

    def close(self) -> None:
        self.close_calls += 1


class FakeLauncher:
    """
    Launcher producing FakeTranscoders.

    Set fail=True to make launches raise LaunchError, or gate to an Event to hold
    launches until the test releases them.
    """

    def __init__(self, frame_bytes: int = FRAME_WIDTH * FRAME_HEIGHT * 4):
        self.frame_bytes = frame_bytes
        self.handles: List[FakeTranscoder] = []
        self.fail = False
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()
        self.calls = 0

    def __call__(self, generation: int) -> FakeTranscoder:
        with self._lock:
            self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.fail:
            raise LaunchError("transcoder binary not found")
        handle = FakeTranscoder(generation, self.frame_bytes)
        with self._lock:
            self.handles.append(handle)
        return handle


class GatedSleep:
    """Sleep replacement that blocks until released, recording requested durations."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.entered.set()
        self.release.wait(timeout=5.0)


@pytest.fixture
def config(tmp_path):
    """Small-frame session config writing diagnostics into a temp dir."""
    return StreamerConfig(
        output_dir=str(tmp_path / "debug"),
        stream_url="rtmp://127.0.0.1/live/test",
        width=FRAME_WIDTH,
        height=FRAME_HEIGHT,
        fps=30,
        reconnect_backoff_ms=10,
        port=8081,
    )


@pytest.fixture
def stub_config(config, tmp_path):
    """Config whose transcoder is the stub script run by the current interpreter."""
    record_path = tmp_path / "frames.log"
    config.transcoder_cmd = [
        sys.executable,
        "-c",
        STUB_TRANSCODER,
        str(record_path),
        str(config.frame_bytes),
    ]
    config.reconnect_backoff_ms = 50
    return config


@pytest.fixture
def record_path(tmp_path):
    return tmp_path / "frames.log"


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def clock():
    return FakeClock()


def make_frame(value: int = 0, width: int = FRAME_WIDTH, height: int = FRAME_HEIGHT) -> np.ndarray:
    """RGBA frame filled with a single byte value."""
    return np.full((height, width, 4), value, dtype=np.uint8)


@pytest.fixture(autouse=False)  # Request explicitly in tests that spawn threads
def thread_leak_guard():
    """
    Detect thread leaks between tests.

    Ensures shutdown paths actually join the threads they start.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate() if t.is_alive())
    leaked = after - before
    if leaked:
        leaked_threads = [t for t in threading.enumerate() if t.ident in leaked]
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
