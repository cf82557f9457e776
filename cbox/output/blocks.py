"""Output blocks: a closed set of message kinds rendered by ``Renderer``.

``Block`` is a tagged union: ``kind`` selects the variant and the renderer
matches on it exhaustively.
"""

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class BlockKind(StrEnum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    PROGRESS = "progress"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Block:
    """One unit of output.

    Attributes:
        kind: Which variant this is.
        text: Message text (tool name for ``TOOL_USE``).
        tool_id: Tool call id, ``TOOL_USE`` only.
        tool_input: Decoded tool input, ``TOOL_USE`` only.
    """

    kind: BlockKind
    text: str = ""
    tool_id: str = ""
    tool_input: Any = None


def text(message: str) -> Block:
    return Block(BlockKind.TEXT, message)


def tool_use(name: str, tool_id: str = "", tool_input: Any = None) -> Block:
    return Block(BlockKind.TOOL_USE, name, tool_id=tool_id, tool_input=tool_input)


def progress(message: str) -> Block:
    return Block(BlockKind.PROGRESS, message)


def success(message: str) -> Block:
    return Block(BlockKind.SUCCESS, message)


def warning(message: str) -> Block:
    return Block(BlockKind.WARNING, message)


def error(message: str) -> Block:
    return Block(BlockKind.ERROR, message)


def parse_claude_blocks(items: list[dict[str, Any]]) -> list[Block]:
    """Convert Claude content blocks into output blocks.

    Unknown block types become text blocks annotated with their type.
    """
    blocks: list[Block] = []
    for item in items:
        match item.get("type"):
            case "text":
                blocks.append(text(item.get("text", "")))
            case "tool_use":
                blocks.append(tool_use(item.get("name", ""), item.get("id", ""), item.get("input")))
            case other:
                blocks.append(text(f"[{other}] {item.get('text', '')}"))
    return blocks


def parse_claude_output(raw: str) -> list[Block]:
    """Blocks for the output of ``claude -p --output-format json``.

    Accepts either a list of content blocks or a result envelope
    (``{"type": "result", "result": ..., "is_error": ...}``). Output that is
    not JSON is shown verbatim.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return [text(raw.strip())] if raw.strip() else []
    if isinstance(data, list):
        return parse_claude_blocks([d for d in data if isinstance(d, dict)])
    if isinstance(data, dict):
        if isinstance(data.get("content"), list):
            return parse_claude_blocks(data["content"])
        result = str(data.get("result", ""))
        if data.get("is_error"):
            return [error(result or "agent reported an error")]
        return [text(result)] if result else []
    return [text(str(data))]
