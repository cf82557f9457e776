"""Immutable terminal styling passed to the renderer and spinner."""

from dataclasses import dataclass

from rich.color import ColorSystem
from rich.style import Style


@dataclass(frozen=True)
class RenderTheme:
    """Glyphs and styles for every output block kind.

    ``color=False`` renders plain text, which is what tests and
    non-terminal output use.
    """

    progress_glyph: str = "›"
    success_glyph: str = "✓"
    warning_glyph: str = "!"
    error_glyph: str = "✗"
    border_glyph: str = "│"

    progress: Style = Style(bold=True, color="blue")
    success: Style = Style(bold=True, color="green")
    warning: Style = Style(bold=True, color="yellow")
    error: Style = Style(bold=True, color="red")
    tool_header: Style = Style(bold=True, color="blue")
    muted: Style = Style(color="bright_black")

    color: bool = True

    def paint(self, style: Style, text: str) -> str:
        """``text`` wrapped in the ANSI codes for ``style`` (or bare, without color)."""
        if not self.color:
            return text
        return style.render(text, color_system=ColorSystem.STANDARD)


DEFAULT_THEME = RenderTheme()
PLAIN_THEME = RenderTheme(color=False)
