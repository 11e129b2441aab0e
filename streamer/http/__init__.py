from streamer.http.server import ControlServer

__all__ = ["ControlServer"]
