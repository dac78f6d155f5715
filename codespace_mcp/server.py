import json
from typing import Any, Dict, Optional

from codespace_mcp import __version__
from codespace_mcp.config import PROTOCOL_VERSION, SERVER_NAME
from codespace_mcp.errors import LocalClientError, RemoteError
from codespace_mcp.tools import TOOLS, TOOLS_BY_NAME, Runtime
from codespace_mcp.utils import log_error


def negotiate_protocol(requested: Optional[str]) -> str:
    if not isinstance(requested, str) or not requested:
        return PROTOCOL_VERSION
    if not (len(requested) == 10 and requested[4] == "-" and requested[7] == "-"):
        return PROTOCOL_VERSION
    if not requested.replace("-", "").isdigit():
        return PROTOCOL_VERSION
    return min(requested, PROTOCOL_VERSION)


def format_tool_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def error_result(message: str) -> Dict[str, Any]:
    text = json.dumps({"error": True, "message": message}, ensure_ascii=False)
    return format_tool_result(text, is_error=True)


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def tools_list() -> Dict[str, Any]:
    return {"tools": [tool.describe() for tool in TOOLS]}


def call_tool(name: str, args: Dict[str, Any], runtime: Runtime) -> Dict[str, Any]:
    tool = TOOLS_BY_NAME[name]
    try:
        request = tool.request.from_args(args)
        return format_tool_result(tool.handler(runtime, request))
    except RemoteError as exc:
        log_error(f"tool {name} failed: {exc.message}")
        return error_result(exc.message)


def handle_request(request: Dict[str, Any], runtime: Runtime) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params") or {}
    req_id = request.get("id")

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": negotiate_protocol(params.get("protocolVersion")),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
            },
        }

    if method == "notifications/initialized": return None
    if method == "ping":
        return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": req_id, "result": tools_list()}

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments") or {}
        if tool_name not in TOOLS_BY_NAME:
            return make_error(req_id, -32601, f"Unknown tool: {tool_name}")
        if not isinstance(args, dict):
            return {"jsonrpc": "2.0", "id": req_id, "result": error_result("arguments must be an object")}
        try:
            result = call_tool(tool_name, args, runtime)
        except LocalClientError:
            raise
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_error(req_id, -32603, f"Internal error: {exc}")
        return {"jsonrpc": "2.0", "id": req_id, "result": result}

    if isinstance(method, str) and method.startswith("notifications/"):
        return None

    return make_error(req_id, -32601, f"Unknown method: {method}")
