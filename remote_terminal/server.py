import json
from typing import Any, Dict, Optional
from remote_terminal.config import DEFAULT_READ_MAX_LINES, MAX_READ_MAX_LINES
from remote_terminal.errors import TerminalError
from remote_terminal.manager import TerminalManager
from remote_terminal.models import Session
from remote_terminal.utils import (
    log_error, clamp_int, apply_text_filters
)

SERVER_NAME = "remote-terminal-mcp"
SERVER_VERSION = "0.1.0"

def project_tool_result(tool_name: str, result: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"success": False, "error": "tool returned non-object result"}

    if not result.get("success", False):
        projected = {"error": result.get("error", "unknown error"), "success": False}
        if result.get("code"):
            projected["code"] = result["code"]
        if result.get("session_id") is not None:
            projected["session_id"] = result["session_id"]
        return projected

    projected: Dict[str, Any] = {}
    if tool_name == "terminal_read":
        projected["lines"] = result.get("lines", [])
        projected["next_line"] = result.get("next_line")
    elif tool_name in {"terminal_list", "terminal_load"}:
        projected["terminals"] = result.get("terminals", [])
    elif tool_name == "terminal_pwd":
        projected["pwd"] = result.get("pwd", "")
    else:
        projected["message"] = result.get("message", "OK")

    if result.get("session_id") is not None:
        projected["session_id"] = result["session_id"]
    if "status" in result:
        projected["status"] = result["status"]
    return projected

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def tools_list() -> Dict[str, Any]:
    session_id_param = {"type": "string", "description": "Terminal id returned by terminal_create or terminal_list."}
    tools = [
        {
            "name": "terminal_list",
            "description": "List open terminals with id, name, start path and transcript size.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "terminal_load",
            "description": (
                "Reconcile with the remote host: adopt terminals that exist remotely but are not tracked "
                "locally and rebuild their transcripts. Returns only the newly adopted terminals."
            ),
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "terminal_create",
            "description": (
                "Open a new terminal whose shell starts in 'path'. The path is a label: "
                "it is not updated when the shell changes directory."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Remote working directory."},
                    "name": {"type": "string", "description": "Optional display name."},
                },
                "required": ["path"],
            },
        },
        {
            "name": "terminal_exec",
            "description": (
                "Send a command to a terminal. Returns immediately; output arrives in the transcript "
                "as the terminal is polled. Use terminal_read to fetch it. Failures are recorded "
                "in the transcript as error lines."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "command": {"type": "string", "description": "Command line to send (e.g., 'ls -la')."},
                },
                "required": ["session_id", "command"],
            },
        },
        {
            "name": "terminal_read",
            "description": (
                "Read transcript lines (type command|output|error). Paginate with 'since' "
                "using next_line from the previous call. Supports filtering and tailing."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "session_id": session_id_param,
                    "since": {"type": "number", "description": "First line index to return. Default 0."},
                    "max_lines": {"type": "number", "description": "Max lines per page."},
                    "contains": {"type": "string", "description": "Filter: only lines containing this string."},
                    "regex": {"type": "string", "description": "Filter: only lines matching this regex."},
                    "tail_lines": {"type": "number", "description": "Filter: only the last N lines of the page."},
                },
                "required": ["session_id"],
            },
        },
        {
            "name": "terminal_pwd",
            "description": (
                "Current working directory of a terminal, asked from the remote host. "
                "Use this instead of the start path shown by terminal_list."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": session_id_param},
                "required": ["session_id"],
            },
        },
        {
            "name": "terminal_close",
            "description": "Close a terminal and remove it. Closing an unknown id is a no-op.",
            "inputSchema": {
                "type": "object",
                "properties": {"session_id": session_id_param},
                "required": ["session_id"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}

def _terminal_row(session: Session) -> Dict[str, Any]:
    info = session.info()
    return {"id": info["id"], "name": info["name"], "path": info["path"], "lines": info["lines"]}

def create_dispatch(args: Dict[str, Any], manager: TerminalManager) -> Dict[str, Any]:
    path = (args.get("path") or "").strip()
    if not path:
        return {"success": False, "error": "path is required"}
    session = manager.create_terminal(path, args.get("name", "") or "")
    return {
        "success": True,
        "session_id": session.id,
        "message": f"Terminal {session.id} started at {path}",
        "status": "completed",
    }

def exec_dispatch(args: Dict[str, Any], manager: TerminalManager) -> Dict[str, Any]:
    session_id = args.get("session_id")
    command = args.get("command", "")
    if not session_id:
        return {"success": False, "error": "session_id is required"}
    if not command or not command.strip():
        return {"success": False, "error": "command is required", "session_id": session_id}
    manager.execute_command(str(session_id), command)
    return {"success": True, "session_id": session_id, "message": "Command sent", "status": "running"}

def read_dispatch(args: Dict[str, Any], manager: TerminalManager) -> Dict[str, Any]:
    session_id = args.get("session_id")
    if not session_id:
        return {"success": False, "error": "session_id is required"}
    since = clamp_int(args.get("since", 0), 0, 0, 10**9)
    max_lines = clamp_int(args.get("max_lines", DEFAULT_READ_MAX_LINES), DEFAULT_READ_MAX_LINES, 1, MAX_READ_MAX_LINES)

    lines = manager.get_transcript(str(session_id), since=since)[:max_lines]
    filtered = apply_text_filters(
        lines, contains=args.get("contains"), regex=args.get("regex"), tail_lines=args.get("tail_lines")
    )
    if not filtered.get("success"):
        return {"success": False, "error": filtered.get("error", "filtering error"), "session_id": session_id}
    return {
        "success": True,
        "session_id": session_id,
        "lines": filtered["lines"],
        "next_line": since + len(lines),
        "filtered": filtered["filtered"],
        "matched_lines": filtered["matched_lines"],
    }

def close_dispatch(args: Dict[str, Any], manager: TerminalManager) -> Dict[str, Any]:
    session_id = args.get("session_id")
    if not session_id:
        return {"success": False, "error": "session_id is required"}
    manager.close_terminal(str(session_id))
    return {"success": True, "session_id": session_id, "message": f"Terminal {session_id} closed", "status": "completed"}

def pwd_dispatch(args: Dict[str, Any], manager: TerminalManager) -> Dict[str, Any]:
    session_id = args.get("session_id")
    if not session_id:
        return {"success": False, "error": "session_id is required"}
    return {"success": True, "session_id": session_id, "pwd": manager.get_terminal_pwd(str(session_id))}

def handle_request(request: Dict[str, Any], manager: TerminalManager) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        manager.load_terminals()
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if method == "notifications/initialized": return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        try:
            if tool_name == "terminal_list":
                rows = [_terminal_row(session) for session in manager.list_terminals()]
                result = {"success": True, "terminals": rows, "total": len(rows)}
            elif tool_name == "terminal_load":
                rows = [_terminal_row(session) for session in manager.load_terminals()]
                result = {"success": True, "terminals": rows, "total": len(rows)}
            elif tool_name == "terminal_create":
                result = create_dispatch(args, manager)
            elif tool_name == "terminal_exec":
                result = exec_dispatch(args, manager)
            elif tool_name == "terminal_read":
                result = read_dispatch(args, manager)
            elif tool_name == "terminal_close":
                result = close_dispatch(args, manager)
            elif tool_name == "terminal_pwd":
                result = pwd_dispatch(args, manager)
            else:
                return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        except TerminalError as exc:
            result = {"success": False, "error": exc.message, "code": exc.code, "session_id": args.get("session_id")}
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, {"error": str(exc)}, is_error=True)

        projected = project_tool_result(tool_name=str(tool_name), result=result)
        return make_response(req_id, projected, is_error=not result.get("success", False))

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
