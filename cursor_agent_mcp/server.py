import json
from typing import Any, Dict, Optional
from cursor_agent_mcp.config import (
    DEFAULT_TIMEOUT_SECONDS, PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
)
from cursor_agent_mcp.queries import QueryNotFound
from cursor_agent_mcp.utils import log_error, to_bool

START_TOOL = "cursor_agent_start"
STATUS_TOOL = "cursor_agent_status"
RESULT_TOOL = "cursor_agent_result"


def project_tool_result(result: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"error": "tool returned non-object result"}
    if not result.get("success", False):
        return {"error": result.get("error", "unknown error")}
    return {key: value for key, value in result.items() if key != "success"}

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}

def tools_list(req_id: Any = None) -> Dict[str, Any]:
    query_id_param = {
        "type": "string",
        "description": f"The query ID returned from {START_TOOL}",
    }
    tools = [
        {
            "name": START_TOOL,
            "description": (
                "Start a cursor-agent query in the background. Automatically uses --model auto -f "
                "(company pays, unlimited usage). Use for token-expensive codebase exploration."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The query to send to cursor-agent"},
                    "timeout_seconds": {
                        "type": "number",
                        "description": "Timeout in seconds (default: 7200 = 120 minutes)",
                        "default": int(DEFAULT_TIMEOUT_SECONDS),
                    },
                },
                "required": ["query"],
            },
        },
        {
            "name": STATUS_TOOL,
            "description": "Check the status of a running cursor-agent query",
            "inputSchema": {
                "type": "object",
                "properties": {"query_id": query_id_param},
                "required": ["query_id"],
            },
        },
        {
            "name": RESULT_TOOL,
            "description": (
                "Get the final results of a cursor-agent query "
                "(blocks until complete if still running)"
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "query_id": query_id_param,
                    "wait": {
                        "type": "boolean",
                        "description": "Wait for completion if still running (default: true)",
                        "default": True,
                    },
                },
                "required": ["query_id"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "id": req_id, "result": {"tools": tools}}

def start_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    query = args.get("query")
    if not isinstance(query, str) or not query.strip():
        return {"success": False, "error": "query is required"}
    return manager.start(query, args.get("timeout_seconds"))

def _query_id_arg(args: Dict[str, Any]) -> Optional[str]:
    query_id = args.get("query_id")
    if query_id is None or query_id == "":
        return None
    return str(query_id)

def status_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    query_id = _query_id_arg(args)
    if query_id is None:
        return {"success": False, "error": "query_id is required"}
    return manager.status(query_id)

def result_dispatch(args: Dict[str, Any], manager) -> Dict[str, Any]:
    query_id = _query_id_arg(args)
    if query_id is None:
        return {"success": False, "error": "query_id is required"}
    return manager.result(query_id, wait=to_bool(args.get("wait", True), default=True))

TOOL_DISPATCH = {
    START_TOOL: start_dispatch,
    STATUS_TOOL: status_dispatch,
    RESULT_TOOL: result_dispatch,
}

def call_tool(req_id: Any, params: Dict[str, Any], manager) -> Dict[str, Any]:
    tool_name = params.get("name")
    args = params.get("arguments", {}) or {}
    try:
        dispatch = TOOL_DISPATCH.get(tool_name)
        if dispatch is None:
            return make_response(req_id, {"error": f"Unknown tool: {tool_name}"}, is_error=True)
        result = dispatch(args, manager)
        is_error = not result.get("success", False)
        return make_response(req_id, project_tool_result(result), is_error=is_error)
    except QueryNotFound as exc:
        return make_response(req_id, {"error": str(exc)}, is_error=True)
    except Exception as exc:
        log_error(f"tool execution error ({tool_name}): {exc}")
        return make_response(req_id, {"error": str(exc)}, is_error=True)

def is_blocking_call(request: Dict[str, Any]) -> bool:
    return request.get("method") == "tools/call"

def handle_request(request: Dict[str, Any], manager) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id")

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if isinstance(method, str) and method.startswith("notifications/"): return None
    if method == "ping": return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        return tools_list(req_id)

    if method == "tools/call":
        return call_tool(req_id, params, manager)

    return make_error(req_id, -32601, f"Unknown method: {method}")
