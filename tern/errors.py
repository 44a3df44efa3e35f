"""Exception types shared across tern."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, missing API key, etc.)."""


class ContextOverflowError(AgentError):
    """Raised when the LLM call fails due to context window overflow."""


class CommandError(AgentError):
    """Raised for malformed slash-command input."""


class SessionLoadError(AgentError):
    """Raised when a saved session cannot be read or decoded."""
