import threading
from typing import Any, Callable, Dict, List, Optional

from remote_terminal.config import DEFAULT_PROJECT_KEY, config
from remote_terminal.errors import TeardownError, UsageError
from remote_terminal.models import LINE_COMMAND, LINE_ERROR, LINE_OUTPUT, Session
from remote_terminal.poller import Poller
from remote_terminal.reconstructor import reconstruct
from remote_terminal.registry import SessionRegistry
from remote_terminal.service import ExecResult, ExecutionService
from remote_terminal.utils import log_debug, log_error

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_CLOSED = "closed"

Listener = Callable[[str, str], None]

class TerminalManager:
    """Facade over the session registry, the pollers and the reconstructor.

    Command failures end up in the session's own transcript. Only unknown
    session ids, failed creation and failed remote teardown are raised.
    """

    def __init__(
        self,
        service: ExecutionService,
        project_key: str = DEFAULT_PROJECT_KEY,
        poll_interval: Optional[float] = None,
        echo_poll_delay: Optional[float] = None,
    ):
        self.service = service
        self.poll_interval = config.POLL_INTERVAL if poll_interval is None else poll_interval
        # <= 0 turns the post-command poll off
        self.echo_poll_delay = config.ECHO_POLL_DELAY if echo_poll_delay is None else echo_poll_delay
        self.registry = SessionRegistry(service, project_key, self._make_poller)
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    @property
    def project_key(self) -> str:
        return self.registry.key

    def set_project_key(self, key: str) -> None:
        if key == self.registry.key:
            return
        self.clear_all()
        self.registry.key = key

    def _make_poller(self, session_id: str) -> Poller:
        return Poller(session_id, self.poll_once, self.poll_interval)

    # ---- change notification ----

    def subscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: str, session_id: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, session_id)
            except Exception as exc:
                log_error(f"listener error ({event} {session_id}): {exc}")

    # ---- lifecycle ----

    def create_terminal(self, path: str, name: str = "") -> Session:
        session = self.registry.create(path, name)
        log_debug(f"terminal {session.id} created at {path}")
        self._notify(EVENT_CREATED, session.id)
        return session

    def close_terminal(self, session_id: str) -> None:
        try:
            removed = self.registry.remove(session_id)
        except TeardownError as exc:
            log_error(str(exc))
            self._notify(EVENT_CLOSED, session_id)
            raise
        if removed:
            log_debug(f"terminal {session_id} closed")
            self._notify(EVENT_CLOSED, session_id)

    def load_terminals(self) -> List[Session]:
        try:
            remote_sessions = self.service.list_sessions(self.project_key)
        except Exception as exc:
            log_error(f"Failed to load terminals: {exc}")
            return []

        adopted: List[Session] = []
        for remote in remote_sessions:
            if remote.id in self.registry:
                continue
            session = self.registry.adopt(remote.id, remote.path, remote.name)
            # offset is 0, so this first pass rebuilds the whole transcript
            self.poll_once(session.id)
            adopted.append(session)
            self._notify(EVENT_CREATED, session.id)
        if adopted:
            log_debug(f"adopted {len(adopted)} remote terminal(s)")
        return adopted

    def clear_all(self) -> None:
        for session in self.registry.discard_all():
            self._notify(EVENT_CLOSED, session.id)

    def close_all(self) -> None:
        for session in self.registry.list():
            try:
                self.close_terminal(session.id)
            except TeardownError:
                pass  # already logged by close_terminal

    # ---- commands and output ----

    def _require(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise UsageError(f"Terminal not found: {session_id}", details={"session_id": session_id})
        return session

    def execute_command(self, session_id: str, command: str) -> None:
        session = self._require(session_id)
        failed = False
        result = None
        with session.op_lock:
            with session.lock:
                session.append_line(LINE_COMMAND, command)
            try:
                result = self.service.execute_command(self.project_key, session_id, command)
            except Exception as exc:
                failed = True
                with session.lock:
                    session.append_line(LINE_ERROR, f"Error: {exc}")
            if result is not None:
                self._record_result(session, result)
        self._notify(EVENT_UPDATED, session_id)
        if failed or result is not None:
            return

        poller = self.registry.poller(session_id)
        if poller is not None and self.echo_poll_delay > 0:
            poller.poll_soon(self.echo_poll_delay)

    def _record_result(self, session: Session, result: ExecResult) -> None:
        with session.lock:
            if result.stdout.strip():
                session.append_line(LINE_OUTPUT, result.stdout)
            if result.stderr.strip():
                session.append_line(LINE_ERROR, result.stderr)
            if result.exit_status != 0 and not result.stderr.strip():
                session.append_line(LINE_ERROR, f"Command exited with status {result.exit_status}")

    def poll_once(self, session_id: str) -> bool:
        """Fetch and apply new output for one session.

        Returns False when the session is no longer registered, which stops
        its poller.
        """
        session = self.registry.get(session_id)
        if session is None:
            return False
        # a command appended between fetch and apply would misplace the fetched output
        with session.op_lock:
            try:
                content = self.service.get_session_content(self.project_key, session_id)
            except Exception as exc:
                log_debug(f"poll failed for session {session_id}: {exc}")
                return True

            if session_id not in self.registry:
                log_debug(f"session {session_id} closed during poll, result discarded")
                return False
            with session.lock:
                appended = reconstruct(session, content)
        if appended:
            self._notify(EVENT_UPDATED, session_id)
        return True

    # ---- queries ----

    def list_terminals(self) -> List[Session]:
        return self.registry.list()

    def get_terminal(self, session_id: str) -> Optional[Session]:
        return self.registry.get(session_id)

    def get_terminals_for_path(self, path: str) -> List[Session]:
        return [session for session in self.registry.list() if session.path == path]

    def get_transcript(self, session_id: str, since: int = 0) -> List[Dict[str, Any]]:
        return self._require(session_id).transcript(since)

    def get_terminal_pwd(self, session_id: str) -> str:
        """Ask the backend for the session's working directory.

        Unlike ``Session.path`` this is looked up remotely on every call.
        """
        self._require(session_id)
        return self.service.get_working_directory(self.project_key, session_id)
