"""Live terminal spinners.

``LineSpinner`` repaints a fixed block of lines in place until every line
is resolved. Producers on other threads call ``set_line``/``resolve``; the
mutex only guards single-slot updates. Repaints restore a saved cursor
position and clear below it rather than moving the cursor up.

On a stream that is not a terminal nothing is animated: each spinner
writes its final lines once, without escape sequences.
"""

import sys
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import TextIO, TypeVar

from cbox.config import settings
from cbox.output.theme import PLAIN_THEME, RenderTheme

T = TypeVar("T")

FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
STATUS = "{status}"

HIDE_CURSOR = "\033[?25l"
SHOW_CURSOR = "\033[?25h"
SAVE_CURSOR = "\0337"
RESTORE_CURSOR = "\0338"
CLEAR_BELOW = "\033[J"
CLEAR_LINE = "\r\033[2K"


def is_terminal(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return isatty is not None and isatty()


@dataclass
class _Line:
    text: str = STATUS
    status: str = ""
    resolved: bool = False


class LineSpinner:
    """A block of lines, each spinning until resolved.

    Each line's text holds a ``{status}`` placeholder that shows the
    animation frame while pending and the resolved value afterwards.

    Args:
        count: Number of lines.
        stream: Destination (defaults to stdout).
        theme: Styling for the animation glyph.
        interval: Seconds between repaints.
        animate: Repaint in place; defaults to whether ``stream`` is a
            terminal. Otherwise ``run`` waits and paints the block once.
    """

    def __init__(
        self,
        count: int,
        stream: TextIO | None = None,
        theme: RenderTheme = PLAIN_THEME,
        interval: float | None = None,
        animate: bool | None = None,
    ) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.theme = theme
        self.interval = interval if interval is not None else settings.spinner_interval_seconds
        self.animate = animate if animate is not None else is_terminal(self.stream)
        self._lines = [_Line() for _ in range(count)]
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._frame = 0
        self._dirty = True
        if count == 0:
            self._done.set()

    def __len__(self) -> int:
        return len(self._lines)

    def set_line(self, index: int, text: str) -> None:
        """Set the text of a line; it should contain one ``{status}``."""
        with self._lock:
            self._lines[index].text = text
            self._dirty = True

    def resolve(self, index: int, status: str) -> None:
        """Replace the spinner on a line with its final status."""
        with self._lock:
            line = self._lines[index]
            line.status = status
            line.resolved = True
            self._dirty = True
            if all(l.resolved for l in self._lines):
                self._done.set()

    def stop(self) -> None:
        """Make ``run`` return at its next tick even with unresolved lines."""
        self._done.set()

    def run(self) -> None:
        """Paint the block and repaint it every tick until all lines resolve.

        Returns immediately, writing nothing, when there are no lines. When
        animating, the cursor is always made visible again on exit.
        """
        if not self._lines:
            return
        if not self.animate:
            self._done.wait()
            with self._lock:
                self._paint_locked()
            return
        try:
            with self._lock:
                self.stream.write(HIDE_CURSOR + SAVE_CURSOR)
                self._paint_locked()
            while not self._done.wait(self.interval):
                with self._lock:
                    self._frame += 1
                    self.stream.write(RESTORE_CURSOR + CLEAR_BELOW)
                    self._paint_locked()
            with self._lock:
                if self._dirty:
                    self.stream.write(RESTORE_CURSOR + CLEAR_BELOW)
                    self._paint_locked()
        finally:
            self.stream.write(SHOW_CURSOR)
            self.stream.flush()

    def _paint_locked(self) -> None:
        frame = FRAMES[self._frame % len(FRAMES)] if self.animate else self.theme.progress_glyph
        glyph = self.theme.paint(self.theme.progress, frame)
        for line in self._lines:
            status = line.status if line.resolved else glyph
            self.stream.write(line.text.replace(STATUS, status, 1) + "\n")
        self.stream.flush()
        self._dirty = False


def spin(
    message: str,
    fn: Callable[[], T],
    stream: TextIO | None = None,
    theme: RenderTheme = PLAIN_THEME,
    interval: float | None = None,
    animate: bool | None = None,
) -> T:
    """Show a one-line spinner next to ``message`` while ``fn`` runs.

    The line ends as ``✓ message`` on success or ``› message`` on failure,
    in which case the exception propagates. Without animation only that
    final line is written.
    """
    stream = stream if stream is not None else sys.stdout
    interval = interval if interval is not None else settings.spinner_interval_seconds
    animate = animate if animate is not None else is_terminal(stream)
    frame = 0

    if not animate:
        try:
            result = fn()
        except BaseException:
            stream.write(f"{theme.paint(theme.progress, theme.progress_glyph)} {message}\n")
            raise
        stream.write(f"{theme.paint(theme.success, theme.success_glyph)} {message}\n")
        return result

    def paint(glyph: str) -> None:
        stream.write(f"{CLEAR_LINE}{glyph} {message}")
        stream.flush()

    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(fn)
        paint(theme.paint(theme.progress, FRAMES[0]))
        while not wait([future], timeout=interval).done:
            frame += 1
            paint(theme.paint(theme.progress, FRAMES[frame % len(FRAMES)]))
        try:
            result = future.result()
        except BaseException:
            paint(theme.paint(theme.progress, theme.progress_glyph))
            stream.write("\n")
            raise
        paint(theme.paint(theme.success, theme.success_glyph))
        stream.write("\n")
        return result
