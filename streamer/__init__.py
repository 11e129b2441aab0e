"""
Frame streamer.

Streams procedurally rendered RGBA frames to a remote ingest endpoint through an
ffmpeg subprocess, reconnecting transparently when the pipe breaks.
"""

__version__ = "0.1.0"
