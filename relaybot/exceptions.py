"""
Exception hierarchy for relaybot.

All exceptions inherit from RelayError for easy catching.
"""


class RelayError(Exception):
    """Base exception for relaybot.

    Everything raised on purpose by this package inherits from it,
    so the poll loop can catch any relay failure with a single except.
    """
    pass


class ConfigurationError(RelayError):
    """Error in configuration.

    Raised when:
    - Config file not found or not valid YAML
    - Transport credential is missing
    - A setting is out of range
    """
    pass


class TransportError(RelayError):
    """Error talking to the chat platform.

    Raised when:
    - Network failure or timeout on fetch/send
    - The API answers with ok=false
    - The response is not valid JSON
    """
    pass


class ExecutorError(RelayError):
    """Error executing a task on the AI backend.

    Raised when:
    - The backend CLI is not installed
    - The backend process exits non-zero
    - The stream ends without a result event
    """
    pass


class ExecutorTimeoutError(ExecutorError):
    """Task execution exceeded the configured timeout."""
    pass


class PersistenceError(RelayError):
    """Error writing or reading a state file.

    Never fatal: callers log it and keep their in-memory state.
    """
    pass
