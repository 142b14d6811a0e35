"""
Error types for the terminal manager and the execution services it drives.
"""

from typing import Any, Dict, Optional


class TerminalError(Exception):
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class CreationError(TerminalError):
    """The execution service could not allocate a session. No local state exists."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("creation_error", message, details)


class UsageError(TerminalError):
    """An operation referenced a session id the manager does not know."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("usage_error", message, details)


class TeardownError(TerminalError):
    """Remote close failed. Local state was already removed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("teardown_error", message, details)


class TransportError(TerminalError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("transport_error", message, details)
