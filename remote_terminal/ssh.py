import codecs
import os
import shlex
import time
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, List, Tuple
import paramiko

from remote_terminal.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, SHELL_SETTLE_DELAY, READER_IDLE_SLEEP,
    AUTH_METHODS, DEFAULT_SSH_USER,
)
from remote_terminal.errors import TransportError
from remote_terminal.service import ExecutionService, RemoteSession
from remote_terminal.utils import (
    log_debug, log_error, iso_now, json_line, safe_name, strip_terminal_noise,
    parse_host_port, split_user_host, split_partial_escape,
)

@dataclass
class ConnectionSettings:
    host: str
    user: Optional[str] = None
    auth_method: str = "password"
    password: Optional[str] = None
    key_file: Optional[str] = None
    key_passphrase: Optional[str] = None
    verify_host_key: bool = True

def build_connect_kwargs(settings: ConnectionSettings) -> Dict[str, Any]:
    """Translate connection settings into paramiko ``SSHClient.connect`` arguments."""
    user, host = split_user_host(settings.host, settings.user or DEFAULT_SSH_USER)
    hostname, port = parse_host_port(host)
    method = (settings.auth_method or "").strip().lower()
    if method not in AUTH_METHODS:
        raise TransportError(f"Unknown authentication method: {settings.auth_method}")

    connect_kwargs: Dict[str, Any] = {
        "hostname": hostname,
        "port": port,
        "username": user,
        "timeout": CONNECT_TIMEOUT,
        "allow_agent": method == "agent",
        "look_for_keys": method == "agent",
    }
    if method == "password":
        if not settings.password:
            raise TransportError("Password not provided")
        connect_kwargs["password"] = settings.password
    elif method == "key":
        if not settings.key_file:
            raise TransportError("Key file path not provided")
        key_path = os.path.expanduser(settings.key_file)
        if not os.path.exists(key_path):
            raise TransportError(f"Key file not found: {key_path}")
        connect_kwargs["key_filename"] = key_path
        if settings.key_passphrase:
            connect_kwargs["passphrase"] = settings.key_passphrase
    return connect_kwargs

class RemoteShell:
    """One interactive shell channel and everything it has printed so far."""

    def __init__(
        self,
        session_id: str,
        key: str,
        path: str,
        name: str,
        client: paramiko.SSHClient,
        channel: paramiko.Channel,
        log_path: Optional[str] = None,
    ):
        self.id = session_id
        self.key = key
        self.path = path
        self.name = name
        self.client = client
        self.channel = channel
        self.log_path = log_path

        self.created_at = datetime.now()
        self.is_dead = False
        self.death_reason = ""
        self.content = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._held = ""
        self.lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reader: Optional[threading.Thread] = None

    def log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.log_path, data)

    def start_reader(self) -> None:
        self._reader = threading.Thread(target=self._reader_loop, name=f"shell-{self.id}", daemon=True)
        self._reader.start()

    def _mark_dead(self, reason: str) -> None:
        if self.is_dead:
            return
        self.is_dead = True
        self.death_reason = reason
        self.log("SYS", {"event": "session_dead", "reason": reason})
        log_debug(f"shell {self.id} dead: {reason}")

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        with self.lock:
            self.content += chunk

    def text(self) -> str:
        with self.lock:
            return self.content

    def _clean(self, raw: bytes) -> str:
        # multibyte characters and escape sequences may straddle recv boundaries
        text = self._held + self._decoder.decode(raw)
        text, self._held = split_partial_escape(text)
        return strip_terminal_noise(text)

    def _reader_loop(self) -> None:
        self.log("SYS", {"event": "reader_started"})
        try:
            while not self._stop_event.is_set():
                if self.channel.closed:
                    self._mark_dead("channel closed")
                    break
                if self.channel.recv_ready():
                    raw = self.channel.recv(BUFFER_SIZE)
                    if not raw:
                        self._mark_dead("channel closed by remote")
                        break
                    chunk = self._clean(raw)
                    if chunk:
                        self.append(chunk)
                        self.log("OUT", {"chunk": chunk})
                else:
                    time.sleep(READER_IDLE_SLEEP)
        except Exception as exc:
            self._mark_dead(f"reader failed: {exc}")
        finally:
            self.log("SYS", {"event": "reader_finished", "reason": self.death_reason})

    def send(self, command: str) -> None:
        if self.is_dead:
            raise TransportError(f"Session {self.id} is DEAD: {self.death_reason}")
        try:
            self.channel.send(command + "\n")
        except Exception as exc:
            self._mark_dead(f"send failed: {exc}")
            raise TransportError(f"Failed to execute command: {exc}") from exc
        self.log("IN", {"event": "command_sent", "command": command})

    def close(self) -> None:
        self._stop_event.set()
        try:
            self.channel.close()
        except Exception as exc:
            log_debug(f"channel close error ({self.id}): {exc}")
        try:
            self.client.close()
        except Exception as exc:
            log_debug(f"client close error ({self.id}): {exc}")
        self.log("SYS", {"event": "session_closed"})

class SSHShellService(ExecutionService):
    """ExecutionService that gives every session its own SSH connection and shell."""

    def __init__(self, cache_dirs: Optional[Dict[str, str]] = None, project_tag: str = ""):
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.projects: Dict[str, ConnectionSettings] = {}
        self.shells: Dict[str, RemoteShell] = {}
        self.lock = threading.Lock()

    def add_project(self, key: str, settings: ConnectionSettings) -> None:
        with self.lock:
            self.projects[key] = settings

    def remove_project(self, key: str) -> None:
        with self.lock:
            self.projects.pop(key, None)
            shells = [shell for shell in self.shells.values() if shell.key == key]
            for shell in shells:
                del self.shells[shell.id]
        for shell in shells:
            shell.close()

    def _settings(self, key: str) -> ConnectionSettings:
        with self.lock:
            settings = self.projects.get(key)
        if settings is None:
            raise TransportError(f"Project not found: {key}")
        return settings

    def _shell(self, key: str, session_id: str) -> RemoteShell:
        with self.lock:
            shell = self.shells.get(session_id)
        if shell is None or shell.key != key:
            raise TransportError(f"Terminal not found: {session_id}")
        return shell

    def _build_log_path(self, session_id: str, name: str) -> Optional[str]:
        sessions_dir = self.cache_dirs.get("sessions_dir")
        if not sessions_dir:
            return None
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{self.project_tag}__{session_id[:8]}__{safe_name(name)}__{stamp}.log"
        return os.path.join(sessions_dir, filename)

    def _connect(self, settings: ConnectionSettings) -> paramiko.SSHClient:
        connect_kwargs = build_connect_kwargs(settings)
        client = paramiko.SSHClient()
        if settings.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**connect_kwargs)
        except Exception as exc:
            client.close()
            raise TransportError(f"SSH connection failed - {exc}") from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return client

    def _run_in_path(self, client: paramiko.SSHClient, path: str, command: str) -> Tuple[int, str, str]:
        """Run ``command`` on a one-off exec channel after cd-ing into ``path``."""
        _, stdout, stderr = client.exec_command(f"cd {shlex.quote(path)} && {command}", timeout=CONNECT_TIMEOUT)
        exit_status = stdout.channel.recv_exit_status()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        return exit_status, out, err

    def _check_path(self, client: paramiko.SSHClient, path: str) -> None:
        try:
            exit_status, _, _ = self._run_in_path(client, path, "pwd")
        except Exception as exc:
            raise TransportError(f"Failed to change directory: {exc}") from exc
        if exit_status != 0:
            raise TransportError(f"Failed to navigate to path: {path}")

    def _open_shell(self, client: paramiko.SSHClient, path: str) -> paramiko.Channel:
        channel = client.invoke_shell()
        channel.settimeout(1.0)
        time.sleep(SHELL_SETTLE_DELAY)
        while channel.recv_ready():
            channel.recv(BUFFER_SIZE)

        # an empty prompt makes the shell echo exactly the command text
        channel.send(f"export PS1='' PS2='' 2>/dev/null; cd {shlex.quote(path)}\n")
        time.sleep(SHELL_SETTLE_DELAY / 2)
        while channel.recv_ready():
            channel.recv(BUFFER_SIZE)
        return channel

    def create_session(self, key: str, path: str, name: str = "") -> str:
        settings = self._settings(key)
        client = self._connect(settings)
        try:
            self._check_path(client, path)
            channel = self._open_shell(client, path)
        except TransportError:
            client.close()
            raise
        except Exception as exc:
            client.close()
            raise TransportError(f"Failed to open shell: {exc}") from exc

        session_id = str(uuid.uuid4())
        shell = RemoteShell(
            session_id, key, path, name, client, channel,
            log_path=self._build_log_path(session_id, name),
        )
        shell.log("SYS", {"event": "session_created", "name": name, "path": path, "host": settings.host})
        with self.lock:
            self.shells[session_id] = shell
        shell.start_reader()
        return session_id

    def execute_command(self, key: str, session_id: str, command: str) -> None:
        self._shell(key, session_id).send(command)

    def get_session_content(self, key: str, session_id: str) -> str:
        return self._shell(key, session_id).text()

    def get_working_directory(self, key: str, session_id: str) -> str:
        shell = self._shell(key, session_id)
        try:
            exit_status, out, err = self._run_in_path(shell.client, shell.path, "pwd")
        except Exception as exc:
            raise TransportError(f"Failed to execute pwd: {exc}") from exc
        if exit_status != 0:
            raise TransportError(f"Command failed: {err.strip()}")
        return out.strip()

    def list_sessions(self, key: str) -> List[RemoteSession]:
        with self.lock:
            shells = [shell for shell in self.shells.values() if shell.key == key]
        return [RemoteSession(id=shell.id, path=shell.path, name=shell.name) for shell in shells]

    def close_session(self, key: str, session_id: str) -> None:
        shell = self._shell(key, session_id)
        with self.lock:
            self.shells.pop(session_id, None)
        shell.close()

    def close_all(self) -> None:
        with self.lock:
            shells = list(self.shells.values())
            self.shells.clear()
        for shell in shells:
            try:
                shell.close()
            except Exception as exc:
                log_error(f"shell close error ({shell.id}): {exc}")
