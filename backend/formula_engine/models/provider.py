"""
Pydantic models shared by the LLM provider adapters.

Both backends are translated to and from these types so that no caller
needs to know which provider is active.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional


class ChatMessage(BaseModel):
    """A role-tagged conversation message."""
    role: Literal["user", "assistant"] = Field(..., description="Message author")
    content: str = Field(..., description="Message text")


class CompletionOptions(BaseModel):
    """
    Per-call overrides. Unset values fall back to configuration.

    Attributes:
        model: Requested model (aliases are normalized per provider)
        temperature: Sampling temperature
        max_tokens: Response token cap
        use_tools: Declare the create_formula tool
        force_tool: Require the model to answer through the tool
    """
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    use_tools: bool = True
    force_tool: bool = False


class ToolCall(BaseModel):
    """A completed tool invocation; ``input`` is None when arguments failed to parse."""
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    raw_arguments: str = ""
    error: Optional[str] = None


class CompletionResult(BaseModel):
    """Buffered completion, normalized across providers."""
    provider: str
    model: str
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    attempts: int = 1

    def find_tool_call(self, name: str) -> Optional[ToolCall]:
        for call in self.tool_calls:
            if call.name == name:
                return call
        return None

    def formula_payload(self) -> Optional[ToolCall]:
        """The create_formula call, if the model used the tool."""
        return self.find_tool_call("create_formula")


class StreamChunk(BaseModel):
    """
    One streamed increment.

    ``text`` chunks are forwarded as they arrive; ``tool_use`` chunks carry a
    tool call whose argument buffer has been closed and parsed.
    """
    type: Literal["text", "tool_use"]
    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None
