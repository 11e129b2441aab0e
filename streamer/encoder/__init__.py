"""
Encoder subsystem: transcoder process handle, reconnect controller, frame sink
and the fixed-cadence frame pump.
"""

from streamer.encoder.base import FrameStreamer
from streamer.encoder.frame_pump import FramePump
from streamer.encoder.frame_sink import FrameSink, SinkStatus
from streamer.encoder.process_handle import TranscoderProcess, build_transcoder_cmd, launch
from streamer.encoder.reconnect import ControllerState, ReconnectController

__all__ = [
    "ControllerState",
    "FramePump",
    "FrameSink",
    "FrameStreamer",
    "ReconnectController",
    "SinkStatus",
    "TranscoderProcess",
    "build_transcoder_cmd",
    "launch",
]
