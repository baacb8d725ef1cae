"""Multi-tab terminal client for streamed agent conversations with local tool execution."""

from .api import ApiClient, ApiError
from .config import Config, ConfigStore
from .items import parse_item
from .sandbox import ToolResult, ToolSandbox
from .session import ChatSession, ToolLoopLimitError
from .stream import StreamError, consume_stream, iter_frames
from .supervisor import Supervisor, Tab

__version__ = "0.1.0"
__all__ = [
    "ApiClient",
    "ApiError",
    "Config",
    "ConfigStore",
    "parse_item",
    "ToolResult",
    "ToolSandbox",
    "ChatSession",
    "ToolLoopLimitError",
    "StreamError",
    "consume_stream",
    "iter_frames",
    "Supervisor",
    "Tab",
]
