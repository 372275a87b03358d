"""
Tool-call argument assembly for streamed completions.

Providers stream tool arguments as fragments of a JSON document. Each tool
block moves through open -> accumulate -> close, and its buffer is parsed
exactly once, on close. Fragments are never parsed on their own.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional, Tuple

from formula_engine.models.provider import ToolCall

logger = logging.getLogger(__name__)


class StreamProtocolError(ValueError):
    """A stream event arrived that does not fit the block lifecycle."""
    pass


def parse_tool_arguments(raw: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Parse a complete tool-argument buffer.

    Returns:
        Tuple: (arguments, None) on success, (None, error message) otherwise.
        An empty buffer means a call with no arguments.
    """
    if raw is None or not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        return None, f"Tool arguments are not valid JSON: {e.msg} at position {e.pos}"
    if not isinstance(parsed, dict):
        return None, f"Tool arguments must be a JSON object, got {type(parsed).__name__}"
    return parsed, None


@dataclass
class _ToolBlock:
    name: Optional[str] = None
    call_id: Optional[str] = None
    fragments: List[str] = field(default_factory=list)


class ToolCallAssembler:
    """
    Accumulates partial tool-call arguments keyed by content block.

    Keys are whatever the provider uses to identify a block (Anthropic's
    content block index, OpenAI's tool_calls index). A key may be reused
    after its block has closed.
    """

    def __init__(self):
        self._open: Dict[Hashable, _ToolBlock] = {}
        self._order: List[Hashable] = []

    def open(self, key: Hashable, name: Optional[str] = None, call_id: Optional[str] = None) -> None:
        if key in self._open:
            raise StreamProtocolError(f"Tool block {key!r} opened twice")
        self._open[key] = _ToolBlock(name=name, call_id=call_id)
        self._order.append(key)

    def update(self, key: Hashable, name: Optional[str] = None, call_id: Optional[str] = None) -> None:
        """Fill in identity fields that arrive after the block opened."""
        block = self._require(key)
        if name and not block.name:
            block.name = name
        if call_id and not block.call_id:
            block.call_id = call_id

    def append(self, key: Hashable, fragment: str) -> None:
        self._require(key).fragments.append(fragment)

    def is_open(self, key: Hashable) -> bool:
        return key in self._open

    @property
    def open_keys(self) -> List[Hashable]:
        return list(self._order)

    def close(self, key: Hashable) -> ToolCall:
        """Close a block and parse its accumulated arguments once."""
        block = self._require(key)
        del self._open[key]
        self._order.remove(key)

        raw = "".join(block.fragments)
        arguments, error = parse_tool_arguments(raw)
        if error:
            logger.warning(f"Tool call '{block.name}' closed with unparseable arguments: {error}")
        return ToolCall(
            id=block.call_id,
            name=block.name,
            input=arguments,
            raw_arguments=raw,
            error=error,
        )

    def close_all(self) -> List[ToolCall]:
        """Close every open block in the order they were opened."""
        return [self.close(key) for key in list(self._order)]

    def _require(self, key: Hashable) -> _ToolBlock:
        block = self._open.get(key)
        if block is None:
            raise StreamProtocolError(f"No open tool block {key!r}")
        return block
