"""
Error taxonomy for the frame streamer.

Transient conditions (FormatError, WriteError) are raised to the caller of
FrameSink.stream(). Connection loss (PipeBrokenError) is recovered internally by
the ReconnectController. Sustained failure ends in StreamAborted, which is
terminal for the session.
"""


class StreamerError(Exception):
    """Base class for all streamer errors."""


class LaunchError(StreamerError):
    """Transcoder process or its stdin pipe could not be created."""


class FormatError(StreamerError):
    """Bitmap or raw buffer does not match the pipe's expected RGBA layout."""


class WriteError(StreamerError):
    """Pipe write failed for a reason other than a broken downstream connection."""


class PipeBrokenError(StreamerError):
    """Downstream connection is closed or broken. Triggers a reconnect."""


class AlreadyReconnectingError(StreamerError):
    """A reconnect was requested while another one is in flight."""


class StreamAborted(StreamerError):
    """Reconnect ceiling exceeded. The session is dead and must be recreated."""

    def __init__(self, message: str = "stream aborted: reconnect ceiling exceeded") -> None:
        super().__init__(message)


class CloseError(StreamerError):
    """Closing the stdin pipe or reaping the transcoder process failed."""


class SessionClosedError(StreamerError):
    """The session was closed explicitly and no longer accepts frames."""
