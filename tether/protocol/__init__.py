"""Protocol layer: canonical messages and their OpenAI/Anthropic wire forms.

Public API: message model types, argument parsing, the sequence sanitizer,
stream aggregators and the two wire adapters.
"""

from tether.protocol.adapter import ParsedResponse, WireAdapter, WireRequest
from tether.protocol.anthropic_adapter import AnthropicAdapter
from tether.protocol.args import (
    ImplicitToolCallExtractor,
    NullToolCallExtractor,
    make_extractor,
    parse_args,
)
from tether.protocol.models import (
    Content,
    ImagePart,
    Message,
    Part,
    Role,
    TextPart,
    ToolCall,
    ToolResultPart,
    ToolUsePart,
    Usage,
    normalize_history,
    normalize_role,
    normalize_tool_calls,
)
from tether.protocol.openai_adapter import OpenAIAdapter
from tether.protocol.sanitizer import (
    PLACEHOLDER_RESULT,
    SequenceSanitizer,
    enforce_alternation,
    strip_tool_interactions,
)
from tether.protocol.streaming import (
    AnthropicStreamAggregator,
    OpenAIStreamAggregator,
    ReasoningDelta,
    StreamDone,
    StreamError,
    StreamStarted,
    TextDelta,
    parse_sse_line,
)

__all__ = [
    # Model
    "Content",
    "ImagePart",
    "Message",
    "Part",
    "Role",
    "TextPart",
    "ToolCall",
    "ToolResultPart",
    "ToolUsePart",
    "Usage",
    "normalize_history",
    "normalize_role",
    "normalize_tool_calls",
    # Arguments
    "ImplicitToolCallExtractor",
    "NullToolCallExtractor",
    "make_extractor",
    "parse_args",
    # Sanitizer
    "PLACEHOLDER_RESULT",
    "SequenceSanitizer",
    "enforce_alternation",
    "strip_tool_interactions",
    # Streaming
    "AnthropicStreamAggregator",
    "OpenAIStreamAggregator",
    "ReasoningDelta",
    "StreamDone",
    "StreamError",
    "StreamStarted",
    "TextDelta",
    "parse_sse_line",
    # Adapters
    "AnthropicAdapter",
    "OpenAIAdapter",
    "ParsedResponse",
    "WireAdapter",
    "WireRequest",
]
