"""
Interface to the command-execution backend the terminal manager drives.

Every call is addressed by a project key plus the backend's own session id
and may raise TransportError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_status: int


@dataclass(frozen=True)
class RemoteSession:
    id: str
    path: str
    name: str = ""


class ExecutionService(ABC):
    @abstractmethod
    def create_session(self, key: str, path: str, name: str = "") -> str:
        """Allocate a session whose shell starts in ``path`` and return its id."""

    @abstractmethod
    def execute_command(self, key: str, session_id: str, command: str) -> Optional[ExecResult]:
        """Send ``command`` to the session.

        Returns None when output is only observable through
        get_session_content, or an ExecResult when the backend runs the
        command to completion itself.
        """

    @abstractmethod
    def get_session_content(self, key: str, session_id: str) -> str:
        """Full text the session has produced so far."""

    @abstractmethod
    def list_sessions(self, key: str) -> List[RemoteSession]:
        ...

    @abstractmethod
    def close_session(self, key: str, session_id: str) -> None:
        ...

    @abstractmethod
    def get_working_directory(self, key: str, session_id: str) -> str:
        """Directory the session's shell reports from ``pwd``, trimmed."""
