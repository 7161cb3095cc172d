"""Exception types shared across dongshan."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid or unreadable configuration."""


class SessionError(AgentError):
    """Raised when a persisted session cannot be read or written."""


class NetworkFailure(AgentError):
    """Raised when the chat-completion endpoint is unreachable or returns an error.

    ``status`` holds the HTTP status code when the provider reported one.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
