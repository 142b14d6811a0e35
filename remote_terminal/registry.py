import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from remote_terminal.errors import CreationError, TeardownError
from remote_terminal.models import Session
from remote_terminal.poller import Poller
from remote_terminal.service import ExecutionService
from remote_terminal.utils import log_debug

PollerFactory = Callable[[str], Poller]

@dataclass
class RegistryEntry:
    session: Session
    poller: Poller

class SessionRegistry:
    """Table of live sessions and their pollers, keyed by session id."""

    def __init__(self, service: ExecutionService, key: str, poller_factory: PollerFactory):
        self.service = service
        self.key = key
        self._poller_factory = poller_factory
        self._entries: Dict[str, RegistryEntry] = {}
        self.lock = threading.Lock()

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        with self.lock:
            return session_id in self._entries

    def create(self, path: str, name: str = "") -> Session:
        try:
            session_id = self.service.create_session(self.key, path, name)
        except Exception as exc:
            raise CreationError(
                f"Failed to create terminal: {exc}", details={"path": path, "name": name}
            ) from exc
        return self._install(Session(id=session_id, path=path, name=name))

    def adopt(self, session_id: str, path: str, name: str = "") -> Session:
        with self.lock:
            entry = self._entries.get(session_id)
        if entry is not None:
            return entry.session
        return self._install(Session(id=session_id, path=path, name=name))

    def _install(self, session: Session) -> Session:
        poller = self._poller_factory(session.id)
        with self.lock:
            self._entries[session.id] = RegistryEntry(session=session, poller=poller)
        poller.start()
        log_debug(f"session {session.id} registered (path={session.path})")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self.lock:
            entry = self._entries.get(session_id)
        return entry.session if entry else None

    def poller(self, session_id: str) -> Optional[Poller]:
        with self.lock:
            entry = self._entries.get(session_id)
        return entry.poller if entry else None

    def list(self) -> List[Session]:
        with self.lock:
            return [entry.session for entry in self._entries.values()]

    def remove(self, session_id: str) -> bool:
        """Drop a session and close it remotely.

        Unknown ids are ignored. The record is gone even when the remote
        close fails; the failure is raised afterwards as TeardownError.
        """
        with self.lock:
            entry = self._entries.pop(session_id, None)
        if entry is None:
            return False

        entry.poller.cancel()
        try:
            self.service.close_session(self.key, session_id)
        except Exception as exc:
            raise TeardownError(
                f"Failed to close terminal {session_id}: {exc}", details={"session_id": session_id}
            ) from exc
        return True

    def discard_all(self) -> List[Session]:
        with self.lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            entry.poller.cancel()
        return [entry.session for entry in entries]
