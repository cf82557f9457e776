"""Terminal output for cbox.

- blocks: the closed set of output block kinds and Claude output parsing
- theme: immutable glyph/style configuration
- render: ``Renderer`` writing blocks with an injected theme
- spinner: ``LineSpinner`` multi-line live display and one-line ``spin``
"""

from cbox.output.blocks import Block, BlockKind, parse_claude_blocks, parse_claude_output
from cbox.output.render import Renderer
from cbox.output.spinner import LineSpinner, spin
from cbox.output.theme import DEFAULT_THEME, PLAIN_THEME, RenderTheme

__all__ = [
    "DEFAULT_THEME",
    "PLAIN_THEME",
    "Block",
    "BlockKind",
    "LineSpinner",
    "RenderTheme",
    "Renderer",
    "parse_claude_blocks",
    "parse_claude_output",
    "spin",
]
