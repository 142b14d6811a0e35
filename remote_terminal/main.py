import sys
import io
import json
import argparse
from remote_terminal.config import (
    AUTH_METHODS, DEFAULT_POLL_INTERVAL, DEFAULT_PROJECT_KEY, MAX_POLL_INTERVAL, MIN_POLL_INTERVAL,
    ServerConfig, config,
)
from remote_terminal.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs, clamp_float
)
from remote_terminal.server import handle_request

manager = None

_stdin = None
_stdout = None


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Remote terminal MCP server (polled SSH shells with reconstructed transcripts)"
    )
    parser.add_argument("--host", help="SSH host, optionally user@host:port (overrides SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--auth", choices=list(AUTH_METHODS), help="Authentication method (overrides SSH_AUTH_METHOD env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--poll-interval", type=float, help="Seconds between output polls per terminal")
    parser.add_argument("--project-key", default=DEFAULT_PROJECT_KEY, help="Key the terminals are registered under")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    parser.add_argument("--debug", action="store_true", help="Log poll failures and lifecycle details to stderr")
    return parser


def apply_args(args: argparse.Namespace, cfg: ServerConfig) -> None:
    """Apply command-line flags over values already loaded from env vars."""
    if args.host: cfg.SSH_HOST = args.host
    if args.user: cfg.SSH_USER = args.user
    if args.password: cfg.SSH_PASSWORD = args.password
    if args.key: cfg.SSH_KEY_PATH = args.key
    if args.passphrase: cfg.SSH_KEY_PASSPHRASE = args.passphrase
    if args.auth: cfg.SSH_AUTH_METHOD = args.auth
    if args.port: cfg.SSH_PORT = args.port
    if args.poll_interval is not None:
        cfg.POLL_INTERVAL = clamp_float(args.poll_interval, DEFAULT_POLL_INTERVAL, MIN_POLL_INTERVAL, MAX_POLL_INTERVAL)
    if args.no_verify_host: cfg.SSH_VERIFY_HOST_KEY = False
    if args.debug: cfg.DEBUG = True


def main() -> None:
    global manager, _stdin, _stdout
    from remote_terminal.manager import TerminalManager
    from remote_terminal.ssh import ConnectionSettings, SSHShellService

    # Force UTF-8 I/O to avoid charmap encoding errors on Windows
    _stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    config.load_from_env()
    parser = build_parser()
    args = parser.parse_args()
    apply_args(args, config)

    if not config.SSH_HOST:
        parser.error("SSH host is required (via --host or SSH_HOST env)")
    if config.SSH_AUTH_METHOD == "password" and not config.SSH_PASSWORD:
        if config.SSH_KEY_PATH:
            config.SSH_AUTH_METHOD = "key"
        else:
            parser.error("Either password or key must be provided (via args or env)")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    host = config.SSH_HOST
    if config.SSH_PORT and ":" not in host:
        host = f"{host}:{config.SSH_PORT}"

    service = SSHShellService(config.CACHE_DIRS, config.PROJECT_TAG)
    service.add_project(args.project_key, ConnectionSettings(
        host=host,
        user=config.SSH_USER,
        auth_method=config.SSH_AUTH_METHOD,
        password=config.SSH_PASSWORD,
        key_file=config.SSH_KEY_PATH,
        key_passphrase=config.SSH_KEY_PASSPHRASE,
        verify_host_key=config.SSH_VERIFY_HOST_KEY,
    ))
    manager = TerminalManager(service, project_key=args.project_key)

    log_error(
        f"remote terminal MCP started for {host} (auth={config.SSH_AUTH_METHOD}). "
        f"project_root={config.PROJECT_ROOT} cache={config.CACHE_DIRS['cache_root']} "
        f"poll_interval={config.POLL_INTERVAL}s verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        try:
            response = handle_request(request, manager)
            if response is not None:
                _write_response(response)
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Send an error response back so the client doesn't hang
            _write_response({
                "jsonrpc": "2.0",
                "id": request.get("id") if isinstance(request, dict) else None,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })

    log_error("shutting down...")
    manager.close_all()
    service.close_all()

if __name__ == "__main__":
    main()
