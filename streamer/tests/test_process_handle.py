"""
Tests for the transcoder process handle.

Covers: argv construction, raw frame writes (size check, broken pipe mapping,
partial writes), close ordering and idempotence, launch failures.
"""

import errno
import subprocess
from unittest.mock import MagicMock, Mock, call, patch

import pytest

from streamer.encoder.process_handle import TranscoderProcess, build_transcoder_cmd, launch
from streamer.errors import CloseError, FormatError, LaunchError, PipeBrokenError, WriteError

FRAME_BYTES = 8 * 4 * 4


def make_handle(stdin=None, process=None, frame_bytes=FRAME_BYTES, close_timeout=1.0):
    if process is None:
        process = MagicMock()
        process.pid = 4242
        process.wait.return_value = 0
        process.poll.return_value = None
    if stdin is None:
        stdin = MagicMock()
        stdin.write.side_effect = lambda view: len(view)
    return TranscoderProcess(process, stdin, frame_bytes, generation=3, close_timeout=close_timeout)


class TestBuildTranscoderCmd:
    """Argv for the transcoder."""

    def test_raw_rgba_input_at_configured_geometry(self, config):
        cmd = build_transcoder_cmd(config)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-pixel_format") + 1] == "rgba"
        assert cmd[cmd.index("-video_size") + 1] == "8x4"
        assert cmd[cmd.index("-r") + 1] == "30"
        assert cmd[cmd.index("-f") + 1] == "rawvideo"
        assert "pipe:0" in cmd

    def test_output_is_flv_to_stream_url(self, config):
        cmd = build_transcoder_cmd(config)
        assert cmd[-1] == config.stream_url
        assert cmd[cmd.index("flv") - 1] == "-f"

    def test_bitrate_and_keyframe_parameters(self, config):
        config.video_bitrate = "3000k"
        config.keyframe_interval = 60
        cmd = build_transcoder_cmd(config)
        assert cmd[cmd.index("-b:v") + 1] == "3000k"
        assert cmd[cmd.index("-maxrate") + 1] == "3000k"
        assert cmd[cmd.index("-bufsize") + 1] == "1500k"
        assert cmd[cmd.index("-g") + 1] == "60"
        assert "keyint=60" in cmd[cmd.index("-x264-params") + 1]

    def test_ffmpeg_bin_is_configurable(self, config):
        config.ffmpeg_bin = "/opt/ffmpeg/bin/ffmpeg"
        assert build_transcoder_cmd(config)[0] == "/opt/ffmpeg/bin/ffmpeg"

    def test_override_is_used_verbatim(self, config):
        config.transcoder_cmd = ["cat"]
        cmd = build_transcoder_cmd(config)
        assert cmd == ["cat"]
        cmd.append("mutated")
        assert config.transcoder_cmd == ["cat"]


class TestWriteFrame:
    """Raw frame writes and failure classification."""

    def test_writes_whole_frame(self):
        handle = make_handle()
        handle.write_frame(b"\x01" * FRAME_BYTES)
        assert handle.frames_written == 1

    def test_short_buffer_is_format_error_without_write(self):
        stdin = MagicMock()
        handle = make_handle(stdin=stdin)
        with pytest.raises(FormatError):
            handle.write_frame(b"\x00" * (FRAME_BYTES - 1))
        stdin.write.assert_not_called()

    def test_oversized_buffer_is_format_error(self):
        handle = make_handle()
        with pytest.raises(FormatError):
            handle.write_frame(b"\x00" * (FRAME_BYTES + 4))

    def test_partial_writes_are_continued(self):
        chunks = []

        def write(view):
            n = min(len(view), 100)
            chunks.append(bytes(view[:n]))
            return n

        stdin = MagicMock()
        stdin.write.side_effect = write
        handle = make_handle(stdin=stdin)
        data = bytes(range(FRAME_BYTES))
        handle.write_frame(data)
        assert b"".join(chunks) == data
        assert stdin.write.call_count == 2

    def test_broken_pipe_maps_to_pipe_broken(self):
        stdin = MagicMock()
        stdin.write.side_effect = BrokenPipeError(errno.EPIPE, "Broken pipe")
        handle = make_handle(stdin=stdin)
        with pytest.raises(PipeBrokenError):
            handle.write_frame(b"\x00" * FRAME_BYTES)

    def test_connection_reset_maps_to_pipe_broken(self):
        stdin = MagicMock()
        stdin.write.side_effect = ConnectionResetError()
        handle = make_handle(stdin=stdin)
        with pytest.raises(PipeBrokenError):
            handle.write_frame(b"\x00" * FRAME_BYTES)

    def test_closed_file_maps_to_pipe_broken(self):
        stdin = MagicMock()
        stdin.write.side_effect = ValueError("write to closed file")
        handle = make_handle(stdin=stdin)
        with pytest.raises(PipeBrokenError):
            handle.write_frame(b"\x00" * FRAME_BYTES)

    def test_other_os_error_is_write_error(self):
        stdin = MagicMock()
        stdin.write.side_effect = OSError(errno.EIO, "I/O error")
        handle = make_handle(stdin=stdin)
        with pytest.raises(WriteError):
            handle.write_frame(b"\x00" * FRAME_BYTES)

    def test_write_after_close_is_pipe_broken(self):
        handle = make_handle()
        handle.close()
        with pytest.raises(PipeBrokenError):
            handle.write_frame(b"\x00" * FRAME_BYTES)


class TestClose:
    """Close ordering, idempotence and failure reporting."""

    def test_closes_stdin_before_waiting_for_exit(self):
        manager = Mock()
        process = manager.process
        process.pid = 1
        process.wait.return_value = 0
        stdin = manager.stdin
        handle = make_handle(stdin=stdin, process=process)

        handle.close()

        assert manager.mock_calls[:2] == [call.stdin.close(), call.process.wait(timeout=1.0)]
        assert handle.closed

    def test_second_close_is_noop(self):
        handle = make_handle()
        handle.close()
        handle.close()
        handle._stdin.close.assert_called_once()
        handle._process.wait.assert_called_once()

    def test_missing_resources_are_skipped(self):
        handle = TranscoderProcess(None, None, FRAME_BYTES)
        handle.close()
        assert handle.closed
        assert handle.pid is None
        assert not handle.is_alive()

    def test_nonzero_exit_raises_close_error(self):
        process = MagicMock()
        process.wait.return_value = 1
        handle = make_handle(process=process)
        with pytest.raises(CloseError):
            handle.close()
        assert handle.closed

    def test_stdin_close_failure_still_reaps_process(self):
        stdin = MagicMock()
        stdin.close.side_effect = OSError(errno.EBADF, "Bad file descriptor")
        process = MagicMock()
        process.wait.return_value = 0
        handle = make_handle(stdin=stdin, process=process)
        with pytest.raises(CloseError):
            handle.close()
        process.wait.assert_called_once()

    def test_process_that_does_not_exit_is_killed(self):
        process = MagicMock()
        process.wait.side_effect = [subprocess.TimeoutExpired("ffmpeg", 1.0), -9]
        handle = make_handle(process=process)
        with pytest.raises(CloseError):
            handle.close()
        process.kill.assert_called_once()


class TestLaunch:
    """Process spawning."""

    def test_missing_binary_raises_launch_error(self, config):
        config.ffmpeg_bin = "/nonexistent/ffmpeg-binary"
        with pytest.raises(LaunchError):
            launch(config)

    def test_popen_os_error_is_wrapped(self, config):
        with patch("streamer.encoder.process_handle.subprocess.Popen", side_effect=PermissionError("denied")):
            with pytest.raises(LaunchError) as excinfo:
                TranscoderProcess.launch(config)
        assert isinstance(excinfo.value.__cause__, PermissionError)

    def test_empty_command_raises_launch_error_without_spawning(self, config):
        with patch("streamer.encoder.process_handle.build_transcoder_cmd", return_value=[]), \
                patch("streamer.encoder.process_handle.subprocess.Popen") as popen:
            with pytest.raises(LaunchError, match="empty"):
                TranscoderProcess.launch(config)
        popen.assert_not_called()

    def test_launch_error_names_the_binary(self, config):
        config.ffmpeg_bin = "/nonexistent/ffmpeg-binary"
        with pytest.raises(LaunchError, match="/nonexistent/ffmpeg-binary"):
            launch(config)

    def test_launch_wires_stdin_and_log_files(self, config):
        mock_process = MagicMock()
        mock_process.pid = 12345
        mock_process.stdin = MagicMock()
        with patch("streamer.encoder.process_handle.subprocess.Popen", return_value=mock_process) as popen:
            handle = TranscoderProcess.launch(config, generation=2)

        args, kwargs = popen.call_args
        assert args[0] == build_transcoder_cmd(config)
        assert kwargs["stdin"] == subprocess.PIPE
        assert handle.pid == 12345
        assert handle.generation == 2
        assert handle.frame_bytes == config.frame_bytes
        assert handle.stderr_path.name.startswith("err.")
        assert handle.stderr_path.exists()

    def test_real_process_round_trip(self, stub_config, record_path):
        handle = launch(stub_config)
        try:
            assert handle.is_alive()
            handle.write_frame(b"\x05" * stub_config.frame_bytes)
        finally:
            handle.close()
        assert not handle.is_alive()
        lines = record_path.read_text().splitlines()
        assert lines == [f"{handle.pid} 5"]
