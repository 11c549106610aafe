import sys
import io
import json
import argparse
import threading
from typing import Any, Dict, List, TextIO
from cursor_agent_mcp.config import (
    config, DEFAULT_MODEL, DEFAULT_TIMEOUT_SECONDS, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS
)
from cursor_agent_mcp.utils import (
    log_error, clamp_float, resolve_runtime_paths, make_cache_dirs
)
from cursor_agent_mcp.queries import QueryManager
from cursor_agent_mcp.resolver import CommandBuilder, ExecutableResolver
from cursor_agent_mcp.server import handle_request, is_blocking_call, make_error

SHUTDOWN_JOIN_TIMEOUT = 5.0

manager = None
_write_lock = threading.Lock()


def _write_response(stream: TextIO, response: Dict[str, Any]) -> None:
    """Write one JSON-RPC response line. Worker threads share the stream, so writes are serialized."""
    with _write_lock:
        try:
            stream.write(json.dumps(response, ensure_ascii=False) + "\n")
            stream.flush()
        except Exception as exc:
            log_error(f"response write error: {exc}")
            # Fallback: escape all non-ASCII to guarantee safe output
            try:
                stream.write(json.dumps(response, ensure_ascii=True) + "\n")
                stream.flush()
            except Exception as exc2:
                log_error(f"response write fallback error: {exc2}")


def _serve_request(request: Dict[str, Any], query_manager: QueryManager, stream: TextIO) -> None:
    try:
        response = handle_request(request, query_manager)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        # Send an error back so the client doesn't hang
        response = make_error(request.get("id"), -32603, f"Internal error: {exc}")
    if response is not None:
        _write_response(stream, response)


def serve(query_manager: QueryManager, stdin: TextIO, stdout: TextIO) -> None:
    workers: List[threading.Thread] = []
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        if not isinstance(request, dict):
            log_error("invalid request: expected a JSON object")
            continue

        if is_blocking_call(request):
            # tool calls may block in cursor_agent_result; keep reading meanwhile
            worker = threading.Thread(
                target=_serve_request, args=(request, query_manager, stdout), daemon=True
            )
            workers = [w for w in workers if w.is_alive()]
            workers.append(worker)
            worker.start()
        else:
            _serve_request(request, query_manager, stdout)

    stopped = query_manager.close_all()
    if stopped:
        log_error(f"stopped {stopped} running queries")
    for worker in workers:
        worker.join(SHUTDOWN_JOIN_TIMEOUT)


def main() -> None:
    global manager

    # Pre-load from environment
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="cursor-agent MCP server (background queries, timeouts, status polling)"
    )
    parser.add_argument("--agent-path", help="Path to the cursor-agent executable (overrides CURSOR_AGENT_PATH env)")
    parser.add_argument("--model", help=f"Model passed to cursor-agent (default: {DEFAULT_MODEL}, overrides CURSOR_AGENT_MODEL env)")
    parser.add_argument("--no-force", action="store_true", help="Do not pass -f to cursor-agent")
    parser.add_argument("--default-timeout", type=float, help=f"Default query timeout in seconds (default: {DEFAULT_TIMEOUT_SECONDS:g})")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    parser.add_argument("--no-query-logs", action="store_true", help="Disable per-query JSON-lines event logs")

    args = parser.parse_args()

    # Apply args over env vars
    if args.agent_path: config.AGENT_PATH = args.agent_path
    if args.model: config.MODEL = args.model
    if args.no_force: config.FORCE = False
    if args.default_timeout is not None: config.DEFAULT_TIMEOUT = args.default_timeout
    if args.no_query_logs: config.QUERY_LOGS = False

    config.DEFAULT_TIMEOUT = clamp_float(
        config.DEFAULT_TIMEOUT, DEFAULT_TIMEOUT_SECONDS, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS
    )

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    if config.QUERY_LOGS:
        try:
            config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])
        except OSError as exc:
            log_error(f"query logs disabled, cannot create {runtime_paths['cache_root']}: {exc}")
            config.CACHE_DIRS = {}

    builder = CommandBuilder(
        resolver=ExecutableResolver(override=config.AGENT_PATH),
        model=config.MODEL,
        force=config.FORCE,
    )
    manager = QueryManager(
        builder,
        queries_dir=config.CACHE_DIRS.get("queries_dir", ""),
        default_timeout=config.DEFAULT_TIMEOUT,
    )

    # Force UTF-8 I/O; a failure here is fatal
    try:
        stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
        stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
    except (AttributeError, OSError, ValueError) as exc:
        log_error(f"Fatal error: {exc}")
        sys.exit(1)

    log_error(
        f"cursor-agent MCP server running on stdio. "
        f"project_root={config.PROJECT_ROOT} cache={config.CACHE_DIRS.get('cache_root', '-')} "
        f"model={config.MODEL} default_timeout={config.DEFAULT_TIMEOUT:g}"
    )

    serve(manager, stdin, stdout)
    log_error("shutting down...")

if __name__ == "__main__":
    main()
