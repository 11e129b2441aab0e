"""
Demo scene renderer.

Produces one RGBA bitmap per tick for the frame pump: a slowly pulsing grey
background, a white flash after "bang", a disc sweeping across the frame, the
wrapped title and a frame counter overlay drawn with Pillow.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from PIL import Image, ImageDraw, ImageFont

DEFAULT_TITLE = "YouTube Live Based Game Engine!"
BANG_FLASH_SEC = 5.0
DISC_RADIUS = 50
TITLE_FONT_SIZE = 30
STATS_FONT_SIZE = 12
TITLE_LINE_SPACING = 1.5


class SceneState:
    """Mutable scene state shared between the frame pump and command handlers."""

    def __init__(self, title: str = DEFAULT_TITLE, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._clock = clock
        self._title = title
        self._paused = False
        self._last_bang: Optional[float] = None

    @property
    def title(self) -> str:
        with self._lock:
            return self._title

    def set_title(self, title: str) -> None:
        with self._lock:
            self._title = title

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def toggle_paused(self) -> bool:
        with self._lock:
            self._paused = not self._paused
            return self._paused

    def bang(self) -> None:
        with self._lock:
            self._last_bang = self._clock()

    def since_bang(self) -> Optional[float]:
        with self._lock:
            last_bang = self._last_bang
        if last_bang is None:
            return None
        return self._clock() - last_bang


class SceneRenderer:
    """Renders (height, width, 4) uint8 RGBA frames."""

    def __init__(
        self,
        width: int,
        height: int,
        state: Optional[SceneState] = None,
        stats: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.width = width
        self.height = height
        self.state = state or SceneState()
        # Frame pump statistics for the overlay; wired after the pump exists
        self.stats = stats
        self.title_font = ImageFont.load_default(size=TITLE_FONT_SIZE)
        self.stats_font = ImageFont.load_default(size=STATS_FONT_SIZE)

    def background_level(self, frame_num: int) -> float:
        """Background brightness in [0, 1]."""
        level = (frame_num % 200) / 1000.0
        since_bang = self.state.since_bang()
        if since_bang is not None and since_bang < BANG_FLASH_SEC:
            level = since_bang * 5.0
        return min(max(level, 0.0), 1.0)

    def disc_center(self, frame_num: int):
        return (frame_num * 2) % self.width, int(self.height * 600 / 720)

    def render(self, frame_num: int) -> np.ndarray:
        frame = np.empty((self.height, self.width, 4), dtype=np.uint8)
        frame[..., :3] = int(round(self.background_level(frame_num) * 255))
        frame[..., 3] = 255

        cx, cy = self.disc_center(frame_num)
        y0, y1 = max(0, cy - DISC_RADIUS), min(self.height, cy + DISC_RADIUS + 1)
        x0, x1 = max(0, cx - DISC_RADIUS), min(self.width, cx + DISC_RADIUS + 1)
        if y0 < y1 and x0 < x1:
            yy, xx = np.ogrid[y0:y1, x0:x1]
            mask = (yy - cy) ** 2 + (xx - cx) ** 2 <= DISC_RADIUS * DISC_RADIUS
            frame[y0:y1, x0:x1][mask] = 255

        return self._draw_text(frame, frame_num)

    def _draw_text(self, frame: np.ndarray, frame_num: int) -> np.ndarray:
        image = Image.fromarray(frame)
        draw = ImageDraw.Draw(image)

        y = 100
        for line in self.wrap_title(draw):
            draw.text((50, y), line, font=self.title_font, fill=(255, 255, 255, 255))
            y += int(TITLE_FONT_SIZE * TITLE_LINE_SPACING)

        draw.text((10, 10), f"frame: {frame_num}", font=self.stats_font, fill=(255, 255, 255, 255))
        stats = self.stats() if self.stats else None
        if stats and stats.get("avg_frame_duration"):
            draw.text(
                (10, 30),
                f"avg frame time: {stats['avg_frame_duration']}",
                font=self.stats_font,
                fill=(255, 255, 255, 255),
            )

        return np.array(image)

    def wrap_title(self, draw: ImageDraw.ImageDraw) -> List[str]:
        """Greedy word wrap of the title to the frame width minus the margins."""
        max_width = max(1, self.width - 100)
        lines: List[str] = []
        current = ""
        for word in self.state.title.split():
            candidate = f"{current} {word}" if current else word
            if current and draw.textlength(candidate, font=self.title_font) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        if current:
            lines.append(current)
        return lines
