import os
import time
import uuid
import codecs
import signal
import threading
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, IO, List, Optional

from cursor_agent_mcp.config import (
    BUFFER_SIZE, DEFAULT_TIMEOUT_SECONDS, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS,
    OUTPUT_PREVIEW_CHARS, RESULT_POLL_INTERVAL, KILL_GRACE_SECONDS, OUTPUT_DRAIN_SECONDS,
    STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED, STATUS_TIMEOUT,
)
from cursor_agent_mcp.resolver import CommandBuilder
from cursor_agent_mcp.utils import (
    log_error, clamp_float, iso_now, iso_utc, json_line, round_half_up, safe_name
)


class QueryNotFound(KeyError):
    def __init__(self, query_id: Any):
        super().__init__(query_id)
        self.query_id = query_id

    def __str__(self) -> str:
        return f"Query ID {self.query_id} not found"


@dataclass
class QueryRecord:
    query_id: str
    query: str
    command: str
    started_at: float = field(default_factory=time.time)
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    log_path: str = ""

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)
    status: str = STATUS_RUNNING
    output: str = ""
    completed_at: Optional[float] = None
    exit_code: Optional[int] = None
    error: str = ""

    def append_output(self, chunk: str) -> bool:
        if not chunk:
            return False
        with self.lock:
            if self.status != STATUS_RUNNING:
                return False
            self.output += chunk
            return True

    def finish(self, status: str, exit_code: Optional[int] = None, error: str = "") -> bool:
        """Move to a terminal status. Only the first caller wins."""
        with self.lock:
            if self.status != STATUS_RUNNING:
                return False
            self.status = status
            self.exit_code = exit_code
            self.error = error
            self.completed_at = time.time()
            self.done_event.set()
            return True

    def is_done(self) -> bool:
        return self.done_event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done_event.wait(timeout)

    def snapshot(self, max_chars: Optional[int] = None) -> Dict[str, Any]:
        with self.lock:
            end = self.completed_at if self.completed_at is not None else time.time()
            output = self.output if max_chars is None else self.output[:max_chars]
            return {
                "status": self.status,
                "output": output,
                "duration": max(0.0, end - self.started_at),
                "exit_code": self.exit_code,
                "completed_at": self.completed_at,
                "error": self.error,
            }


class QueryRegistry:
    """Table of every query started by one server instance. Entries are never removed."""

    def __init__(self):
        self.lock = threading.Lock()
        self.records: Dict[str, QueryRecord] = {}
        self.issued_ids = set()

    def new_id(self) -> str:
        with self.lock:
            while True:
                query_id = str(uuid.uuid4())
                if query_id not in self.issued_ids:
                    self.issued_ids.add(query_id)
                    return query_id

    def add(self, record: QueryRecord) -> None:
        with self.lock:
            if record.query_id in self.records:
                raise ValueError(f"duplicate query id {record.query_id}")
            self.issued_ids.add(record.query_id)
            self.records[record.query_id] = record

    def get(self, query_id: Any) -> Optional[QueryRecord]:
        with self.lock:
            return self.records.get(query_id)

    def require(self, query_id: Any) -> QueryRecord:
        record = self.get(query_id)
        if record is None:
            raise QueryNotFound(query_id)
        return record

    def update(self, query_id: Any, mutator: Callable[[QueryRecord], Any]) -> Any:
        record = self.require(query_id)
        with record.lock:
            return mutator(record)

    def list_records(self) -> List[QueryRecord]:
        with self.lock:
            return list(self.records.values())

    def __len__(self) -> int:
        with self.lock:
            return len(self.records)


def launch_process(argv: List[str]) -> subprocess.Popen:
    kwargs: Dict[str, Any] = {}
    if os.name == "posix":
        # own process group, so a kill also reaches the agent's children
        kwargs["start_new_session"] = True
    return subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=dict(os.environ),
        **kwargs,
    )


class QueryRunner:
    """Owns the process, the timeout timer and the collector threads of one query."""

    def __init__(
        self,
        record: QueryRecord,
        argv: List[str],
        launcher: Callable[[List[str]], subprocess.Popen] = launch_process,
        kill_grace: float = KILL_GRACE_SECONDS,
        drain_timeout: float = OUTPUT_DRAIN_SECONDS,
    ):
        self.record = record
        self.argv = argv
        self.launcher = launcher
        self.kill_grace = kill_grace
        self.drain_timeout = drain_timeout

        self.process: Optional[subprocess.Popen] = None
        self.timer: Optional[threading.Timer] = None
        self.reader_threads: List[threading.Thread] = []
        self.watcher_thread: Optional[threading.Thread] = None

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.record.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "query_id": self.record.query_id}
        data.update(payload)
        json_line(self.record.log_path, data)

    def start(self) -> bool:
        record = self.record
        self._log(
            "IN",
            {
                "event": "query_started",
                "query": record.query,
                "command": record.command,
                "timeout_seconds": record.timeout_seconds,
            },
        )
        try:
            self.process = self.launcher(self.argv)
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            message = f"failed to start {self.argv[0] if self.argv else '<empty command>'}: {exc}"
            record.append_output(message)
            record.finish(STATUS_FAILED, error=message)
            self._log("SYS", {"event": "spawn_failed", "error": str(exc)})
            log_error(f"query {record.query_id}: {message}")
            return False

        self.timer = threading.Timer(record.timeout_seconds, self._on_timeout)
        self.timer.daemon = True
        short_id = record.query_id[:8]
        for name, stream in (("stdout", self.process.stdout), ("stderr", self.process.stderr)):
            thread = threading.Thread(
                target=self._collect, args=(name, stream), daemon=True, name=f"query-{short_id}-{name}"
            )
            self.reader_threads.append(thread)
        self.watcher_thread = threading.Thread(target=self._watch, daemon=True, name=f"query-{short_id}-watch")

        # Timer first: the watcher must always find an armed timer to cancel.
        self.timer.start()
        for thread in self.reader_threads:
            thread.start()
        self.watcher_thread.start()
        self._log("SYS", {"event": "process_started", "pid": self.process.pid})
        return True

    def _collect(self, name: str, stream: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = stream.read1(BUFFER_SIZE)
                if not data:
                    break
                self._append(name, decoder.decode(data))
            self._append(name, decoder.decode(b"", final=True))
        except (OSError, ValueError) as exc:
            self._log("SYS", {"event": "reader_error", "stream": name, "error": str(exc)})
        finally:
            stream.close()

    def _append(self, name: str, text: str) -> None:
        if self.record.append_output(text):
            self._log("OUT", {"stream": name, "chunk": text})

    def _watch(self) -> None:
        try:
            returncode = self.process.wait()
            # descendants may keep the pipes open: drain for a bounded time only
            deadline = time.time() + self.drain_timeout
            for thread in self.reader_threads:
                thread.join(max(0.0, deadline - time.time()))
            if returncode < 0:
                # killed by a signal: there is no exit code to report
                self._finish(STATUS_FAILED, error=f"terminated by signal {-returncode}")
            else:
                status = STATUS_COMPLETED if returncode == 0 else STATUS_FAILED
                self._finish(status, exit_code=returncode)
        except Exception as exc:
            self._finish(STATUS_FAILED, error=f"watcher error: {exc}")
            log_error(f"query {self.record.query_id} watcher error: {exc}")

    def _finish(self, status: str, exit_code: Optional[int] = None, error: str = "") -> bool:
        if not self.record.finish(status, exit_code=exit_code, error=error):
            return False
        if self.timer is not None:
            self.timer.cancel()
        self._log("SYS", {"event": "finished", "status": status, "exit_code": exit_code, "error": error})
        return True

    def _on_timeout(self) -> None:
        process = self.process
        if process is not None and process.returncode is not None:
            # already exited; the watcher records the exit once output is drained
            return
        seconds = self.record.timeout_seconds
        if not self.record.finish(STATUS_TIMEOUT, error=f"timed out after {seconds:g}s"):
            return
        self._log("SYS", {"event": "timeout", "seconds": seconds})
        self.kill()

    def _signal(self, force: bool = False) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                process.kill()
            else:
                process.terminate()
        except OSError:
            # exited between the check and the signal
            pass

    def kill(self) -> None:
        self._signal()
        if self.kill_grace <= 0:
            self._signal(force=True)
            return
        follow_up = threading.Timer(self.kill_grace, self._signal, kwargs={"force": True})
        follow_up.daemon = True
        follow_up.start()

    def stop(self, reason: str) -> bool:
        if not self._finish(STATUS_FAILED, error=reason):
            return False
        self._signal(force=True)
        return True


class QueryManager:
    def __init__(
        self,
        command_builder: Optional[CommandBuilder] = None,
        registry: Optional[QueryRegistry] = None,
        launcher: Callable[[List[str]], subprocess.Popen] = launch_process,
        queries_dir: str = "",
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        preview_chars: int = OUTPUT_PREVIEW_CHARS,
        poll_interval: float = RESULT_POLL_INTERVAL,
        kill_grace: float = KILL_GRACE_SECONDS,
        drain_timeout: float = OUTPUT_DRAIN_SECONDS,
    ):
        self.command_builder = command_builder or CommandBuilder()
        self.registry = registry if registry is not None else QueryRegistry()
        self.launcher = launcher
        self.queries_dir = queries_dir
        self.default_timeout = clamp_float(
            default_timeout, DEFAULT_TIMEOUT_SECONDS, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS
        )
        self.preview_chars = preview_chars
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self.drain_timeout = drain_timeout

        self.runners: Dict[str, QueryRunner] = {}
        self.lock = threading.Lock()

    def _build_log_path(self, query_id: str) -> str:
        if not self.queries_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return os.path.join(self.queries_dir, f"{stamp}__{safe_name(query_id)}.log")

    def start(self, query: str, timeout_seconds: Any = None) -> Dict[str, Any]:
        timeout = clamp_float(timeout_seconds, self.default_timeout, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS)
        query_id = self.registry.new_id()
        command = self.command_builder.build(query)
        record = QueryRecord(
            query_id=query_id,
            query=query,
            command=command.display,
            timeout_seconds=timeout,
            log_path=self._build_log_path(query_id),
        )
        self.registry.add(record)

        runner = QueryRunner(
            record, command.argv, launcher=self.launcher,
            kill_grace=self.kill_grace, drain_timeout=self.drain_timeout,
        )
        with self.lock:
            self.runners[query_id] = runner
        runner.start()

        return {
            "success": True,
            "query_id": query_id,
            "status": "started",
            "command": record.command,
            "started_at": iso_utc(record.started_at),
        }

    def status(self, query_id: Any) -> Dict[str, Any]:
        record = self.registry.require(query_id)
        snapshot = record.snapshot(max_chars=self.preview_chars)
        result = {
            "success": True,
            "query_id": query_id,
            "status": snapshot["status"],
            "output_preview": snapshot["output"],
            "duration_seconds": round_half_up(snapshot["duration"]),
        }
        if snapshot["exit_code"] is not None:
            result["exit_code"] = snapshot["exit_code"]
        return result

    def result(self, query_id: Any, wait: bool = True) -> Dict[str, Any]:
        record = self.registry.require(query_id)
        if wait:
            # the event wakes us at once; the tick only bounds each wait
            while not record.wait(self.poll_interval):
                continue
        snapshot = record.snapshot()
        result = {
            "success": True,
            "query_id": query_id,
            "status": snapshot["status"],
            "output": snapshot["output"],
            "duration_seconds": round_half_up(snapshot["duration"]),
        }
        if snapshot["exit_code"] is not None:
            result["exit_code"] = snapshot["exit_code"]
        return result

    def get_runner(self, query_id: Any) -> Optional[QueryRunner]:
        with self.lock:
            return self.runners.get(query_id)

    def close_all(self, reason: str = "server shutting down") -> int:
        with self.lock:
            runners = list(self.runners.values())
        stopped = 0
        for runner in runners:
            if runner.stop(reason):
                stopped += 1
        return stopped
