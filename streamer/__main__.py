#!/usr/bin/env python3
"""
Streamer main entry point.

Allows the streamer to be run as a module: python3 -m streamer
"""

import logging
import logging.handlers
import os
import sys

# Set default log level from environment, or INFO if not set
log_level = os.getenv("STREAMER_LOG_LEVEL", "INFO").upper()
log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format=log_format,
)

# WatchedFileHandler tolerates external rotation
log_file = os.getenv("STREAMER_LOG_FILE")
if log_file:
    file_handler = logging.handlers.WatchedFileHandler(log_file, mode="a")
    file_handler.setFormatter(logging.Formatter(log_format))
    logging.getLogger().addHandler(file_handler)

from streamer.config import load_config
from streamer.errors import StreamerError
from streamer.service import StreamerService


def main() -> int:
    service = None
    try:
        config = load_config()
        service = StreamerService(config)
        logging.info("> connected to the streaming service")
        service.start()
    except (ValueError, StreamerError, OSError) as e:
        logging.error(f"Streamer failed to start: {e}")
        if service is not None:
            service.stop()
        return 1

    service.run_forever()
    if service.abort_reason:
        logging.error(f"Streamer stopped: {service.abort_reason}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
