"""Renderer for output blocks."""

import json
import sys
from collections.abc import Callable, Iterable
from typing import TextIO, TypeVar

from cbox.output import blocks
from cbox.output.blocks import Block, BlockKind
from cbox.output.spinner import is_terminal, spin
from cbox.output.theme import DEFAULT_THEME, PLAIN_THEME, RenderTheme

T = TypeVar("T")


class Renderer:
    """Writes blocks to a stream using an injected theme.

    Args:
        stream: Destination (defaults to stdout).
        theme: Styling; defaults to colored output on a terminal and plain
            output otherwise.
    """

    def __init__(self, stream: TextIO | None = None, theme: RenderTheme | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        if theme is None:
            theme = DEFAULT_THEME if is_terminal(self.stream) else PLAIN_THEME
        self.theme = theme

    def render(self, items: Iterable[Block]) -> None:
        """Render blocks in order with a blank line between them."""
        for i, block in enumerate(items):
            if i:
                self.stream.write("\n")
            self.render_block(block)

    def render_block(self, block: Block) -> None:
        self.stream.write(self.format_block(block) + "\n")
        self.stream.flush()

    def format_block(self, block: Block) -> str:
        theme = self.theme
        match block.kind:
            case BlockKind.TEXT:
                return block.text
            case BlockKind.TOOL_USE:
                return self._format_tool_use(block)
            case BlockKind.PROGRESS:
                return f"{theme.paint(theme.progress, theme.progress_glyph)} {block.text}"
            case BlockKind.SUCCESS:
                return f"{theme.paint(theme.success, theme.success_glyph)} {block.text}"
            case BlockKind.WARNING:
                return f"{theme.paint(theme.warning, theme.warning_glyph)} {block.text}"
            case BlockKind.ERROR:
                return f"{theme.paint(theme.error, theme.error_glyph)} {block.text}"

    def _format_tool_use(self, block: Block) -> str:
        theme = self.theme
        header = theme.paint(theme.tool_header, block.text)
        if block.tool_id:
            header += f" {block.tool_id}"
        lines = [header]
        if block.tool_input is not None:
            body = json.dumps(block.tool_input, indent=2)
            lines.extend(theme.paint(theme.muted, line) for line in body.splitlines())
        border = theme.paint(theme.tool_header, theme.border_glyph)
        return "\n".join(f"{border} {line}" for line in lines)

    # Convenience wrappers

    def text(self, message: str) -> None:
        self.render_block(blocks.text(message))

    def progress(self, message: str) -> None:
        self.render_block(blocks.progress(message))

    def success(self, message: str) -> None:
        self.render_block(blocks.success(message))

    def warning(self, message: str) -> None:
        self.render_block(blocks.warning(message))

    def error(self, message: str) -> None:
        self.render_block(blocks.error(message))

    def spin(self, message: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` behind a one-line spinner; see ``spinner.spin``."""
        return spin(message, fn, stream=self.stream, theme=self.theme)
