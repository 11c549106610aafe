"""Tests for the MCP request handling and the stdio loop."""

import io
import json

from cursor_agent_mcp.main import serve
from cursor_agent_mcp.server import handle_request, project_tool_result, tools_list


def call(manager, name, arguments=None, req_id=7):
    request = {
        "jsonrpc": "2.0", "id": req_id, "method": "tools/call",
        "params": {"name": name, "arguments": arguments or {}},
    }
    return handle_request(request, manager)


def payload(response):
    content = response["result"]["content"]
    assert len(content) == 1
    assert content[0]["type"] == "text"
    return json.loads(content[0]["text"])


class TestProtocol:
    """Tests for the non-tool JSON-RPC methods."""

    def test_initialize(self, manager):
        response = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}, manager)

        assert response["id"] == 1
        assert response["result"]["serverInfo"] == {"name": "cursor-agent-server", "version": "1.0.0"}
        assert response["result"]["capabilities"] == {"tools": {}}

    def test_notifications_get_no_response(self, manager):
        assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, manager) is None

    def test_ping(self, manager):
        assert handle_request({"jsonrpc": "2.0", "id": 3, "method": "ping"}, manager) == {
            "jsonrpc": "2.0", "id": 3, "result": {},
        }

    def test_tools_list(self, manager):
        response = handle_request({"jsonrpc": "2.0", "id": 4, "method": "tools/list"}, manager)
        tools = {tool["name"]: tool for tool in response["result"]["tools"]}

        assert response["id"] == 4
        assert set(tools) == {"cursor_agent_start", "cursor_agent_status", "cursor_agent_result"}
        start_schema = tools["cursor_agent_start"]["inputSchema"]
        assert start_schema["required"] == ["query"]
        assert start_schema["properties"]["timeout_seconds"]["default"] == 7200
        assert tools["cursor_agent_result"]["inputSchema"]["properties"]["wait"]["default"] is True

    def test_tools_list_echoes_missing_id(self, manager):
        """A tools/list request without an id is answered with a null id, not an invented one."""
        response = handle_request({"jsonrpc": "2.0", "method": "tools/list"}, manager)

        assert response["id"] is None
        assert tools_list(9)["id"] == 9

    def test_unknown_method(self, manager):
        response = handle_request({"jsonrpc": "2.0", "id": 5, "method": "resources/list"}, manager)

        assert response["error"]["code"] == -32601
        assert "resources/list" in response["error"]["message"]


class TestToolCalls:
    """Tests for the three cursor-agent tools."""

    def test_start_then_result(self, manager):
        started = call(manager, "cursor_agent_start", {"query": "print('hello', end='')", "timeout_seconds": 30})
        start_payload = payload(started)

        assert "isError" not in started["result"]
        assert set(start_payload) == {"query_id", "status", "command", "started_at"}
        assert start_payload["status"] == "started"

        finished = call(manager, "cursor_agent_result", {"query_id": start_payload["query_id"]})

        assert payload(finished) == {
            "query_id": start_payload["query_id"],
            "status": "completed",
            "output": "hello",
            "duration_seconds": payload(finished)["duration_seconds"],
            "exit_code": 0,
        }

    def test_status_payload_while_running(self, manager):
        query_id = payload(call(manager, "cursor_agent_start", {"query": "import time; time.sleep(5)"}))["query_id"]

        status = payload(call(manager, "cursor_agent_status", {"query_id": query_id}))

        assert set(status) == {"query_id", "status", "output_preview", "duration_seconds"}
        assert status["status"] == "running"

    def test_result_without_wait(self, manager):
        query_id = payload(call(manager, "cursor_agent_start", {"query": "import time; time.sleep(5)"}))["query_id"]

        result = payload(call(manager, "cursor_agent_result", {"query_id": query_id, "wait": False}))

        assert result["status"] == "running"
        assert "exit_code" not in result

    def test_unknown_query_id(self, manager):
        for tool in ("cursor_agent_status", "cursor_agent_result"):
            response = call(manager, tool, {"query_id": "abc"})

            assert response["result"]["isError"] is True
            assert payload(response) == {"error": "Query ID abc not found"}

    def test_unknown_tool(self, manager):
        response = call(manager, "cursor_agent_cancel", {"query_id": "abc"})

        assert response["result"]["isError"] is True
        assert payload(response) == {"error": "Unknown tool: cursor_agent_cancel"}

    def test_missing_query(self, manager):
        response = call(manager, "cursor_agent_start", {"query": "   "})

        assert response["result"]["isError"] is True
        assert payload(response) == {"error": "query is required"}

    def test_missing_query_id(self, manager):
        response = call(manager, "cursor_agent_status", {})

        assert response["result"]["isError"] is True
        assert payload(response) == {"error": "query_id is required"}

    def test_unexpected_exception_becomes_error_result(self, manager):
        class BrokenManager:
            def status(self, query_id):
                raise RuntimeError("boom")

        response = call(BrokenManager(), "cursor_agent_status", {"query_id": "x"})

        assert response["result"]["isError"] is True
        assert payload(response) == {"error": "boom"}


class TestProjection:
    def test_success_flag_removed(self):
        assert project_tool_result({"success": True, "status": "running"}) == {"status": "running"}

    def test_failure_keeps_only_error(self):
        assert project_tool_result({"success": False, "error": "nope", "extra": 1}) == {"error": "nope"}

    def test_non_dict_result(self):
        assert project_tool_result(None) == {"error": "tool returned non-object result"}


class TestServeLoop:
    """Tests for the line-oriented stdio loop."""

    def test_serves_each_request_line(self, manager):
        lines = [
            json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}),
            "",
            "{not json",
            json.dumps(["not", "an", "object"]),
            json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
            json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}),
            json.dumps({
                "jsonrpc": "2.0", "id": 3, "method": "tools/call",
                "params": {"name": "cursor_agent_status", "arguments": {"query_id": "missing"}},
            }),
        ]
        stdin = io.StringIO("\n".join(lines) + "\n")
        stdout = io.StringIO()

        serve(manager, stdin, stdout)

        responses = {item["id"]: item for item in map(json.loads, stdout.getvalue().splitlines())}
        assert set(responses) == {1, 2, 3}
        assert responses[3]["result"]["isError"] is True

    def test_shutdown_stops_running_queries(self, manager):
        query_id = manager.start("import time; time.sleep(5)", 30)["query_id"]

        serve(manager, io.StringIO(""), io.StringIO())

        assert manager.status(query_id)["status"] == "failed"
