from abc import ABC, abstractmethod

import numpy as np


class FrameStreamer(ABC):
    """
    Abstract base class for frame outputs.

    All streamers must implement stream() and close().
    """

    @abstractmethod
    def stream(self, frame: np.ndarray) -> None:
        """
        Send one RGBA frame to the output.

        Args:
            frame: uint8 array of shape (height, width, 4)
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """
        Close the output and release resources.
        """
        ...
