"""tern: a terminal coding assistant with a bounded conversation context."""

from .agent import Agent
from .context import ContextWindow, Message
from .errors import AgentError
from .state import SessionState, SessionStore
from .tools import Tool, ToolRegistry

__all__ = [
    "Agent",
    "AgentError",
    "ContextWindow",
    "Message",
    "SessionState",
    "SessionStore",
    "Tool",
    "ToolRegistry",
]
