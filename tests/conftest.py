"""Shared pytest fixtures: an in-memory execution service and a manager wired to it."""

import threading
import uuid

import pytest

from remote_terminal.errors import TransportError
from remote_terminal.manager import TerminalManager
from remote_terminal.service import ExecutionService, RemoteSession


class FakeService(ExecutionService):
    """Execution service whose output is written by the test itself."""

    def __init__(self):
        self.sessions = {}
        self.content = {}
        self.sent = []
        self.closed = []
        self.fail_create = False
        self.fail_execute = None
        self.fail_fetch = False
        self.fail_close = False
        self.fail_list = False
        self.exec_result = None
        self.fetch_calls = 0
        self.cwd = {}
        self.fail_pwd = None
        self.lock = threading.Lock()

    def create_session(self, key, path, name=""):
        if self.fail_create:
            raise TransportError("SSH connection failed - host unreachable")
        session_id = str(uuid.uuid4())
        with self.lock:
            self.sessions[session_id] = RemoteSession(id=session_id, path=path, name=name)
            self.content[session_id] = ""
        return session_id

    def execute_command(self, key, session_id, command):
        if self.fail_execute:
            raise TransportError(self.fail_execute)
        with self.lock:
            self.sent.append((session_id, command))
        return self.exec_result

    def get_session_content(self, key, session_id):
        with self.lock:
            self.fetch_calls += 1
        if self.fail_fetch:
            raise TransportError("connection reset")
        with self.lock:
            if session_id not in self.content:
                raise TransportError(f"Terminal not found: {session_id}")
            return self.content[session_id]

    def get_working_directory(self, key, session_id):
        if self.fail_pwd:
            raise TransportError(self.fail_pwd)
        with self.lock:
            if session_id not in self.sessions:
                raise TransportError(f"Terminal not found: {session_id}")
            return self.cwd.get(session_id, self.sessions[session_id].path)

    def list_sessions(self, key):
        if self.fail_list:
            raise TransportError("listing unavailable")
        with self.lock:
            return list(self.sessions.values())

    def close_session(self, key, session_id):
        with self.lock:
            self.closed.append(session_id)
            self.sessions.pop(session_id, None)
            self.content.pop(session_id, None)
        if self.fail_close:
            raise TransportError("channel already gone")

    # test helpers

    def add_remote(self, path, name="", content=""):
        session_id = str(uuid.uuid4())
        with self.lock:
            self.sessions[session_id] = RemoteSession(id=session_id, path=path, name=name)
            self.content[session_id] = content
        return session_id

    def emit(self, session_id, text):
        with self.lock:
            self.content[session_id] += text


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def manager(service):
    # pollers never wake on their own; tests drive poll_once directly
    manager = TerminalManager(service, project_key="proj", poll_interval=3600, echo_poll_delay=0)
    yield manager
    manager.clear_all()
