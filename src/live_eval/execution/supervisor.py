from __future__ import annotations

import itertools
import logging
import queue
import re
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from ..errors import CommunicationError, ProcessSpawnError
from .protocol import encode_request, parse_line
from .types import (
    ErrorOutput,
    EvaluationOutcome,
    EvaluationRequest,
    ProcessError,
    ProcessExit,
    Result,
    outcome_priority,
)

logger = logging.getLogger(__name__)

OutcomeHandler = Callable[[EvaluationOutcome], None]

SHUTDOWN_GRACE_SECONDS = 2.0
VERSION_CHECK_TIMEOUT_SECONDS = 10
_SENTINEL_PRIORITY = 99
_VERSION_PATTERN = re.compile(r"Python (\d+)\.(\d+)")


def _worker_path() -> Path:
    """Return the absolute path to the worker script file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def check_python_version(python_path: str, env: Mapping[str, str] | None = None) -> str | None:
    """Return a warning if the interpreter is not Python 3, else None.

    Example:
        ```python
        warning = check_python_version("/usr/bin/python3")
        ```
    """
    try:
        probe = subprocess.run(
            [python_path, "--version"],
            capture_output=True,
            text=True,
            check=False,
            timeout=VERSION_CHECK_TIMEOUT_SECONDS,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        raise ProcessSpawnError(f"Error running python with command: {python_path}\n{exc}") from exc
    except subprocess.TimeoutExpired:
        return f"Timed out asking {python_path} for its version"
    # Python 2 prints its version on stderr.
    match = _VERSION_PATTERN.search(probe.stdout + probe.stderr)
    if match is None:
        return f"Could not determine the Python version of {python_path}"
    if match.group(1) != "3":
        return f"live_eval does not support python {match.group(1)}! ({python_path})"
    return None


class _InterpreterProcess:
    """One spawned interpreter with its reader and dispatcher threads.

    Example:
        ```python
        proc = _InterpreterProcess(popen, deliver)
        proc.start_threads()
        ```
    """

    def __init__(
        self,
        popen: subprocess.Popen[str],
        deliver: Callable[["_InterpreterProcess", EvaluationOutcome], None],
    ) -> None:
        """Wrap a running process; threads start with `start_threads`.

        Example:
            ```python
            proc = _InterpreterProcess(popen, supervisor._deliver)
            ```
        """
        self.popen = popen
        self.expected_shutdown = False
        self._deliver = deliver
        self._queue: queue.PriorityQueue[tuple[int, int, Any]] = queue.PriorityQueue()
        self._seq = itertools.count()
        self._write_lock = threading.Lock()
        self._readers = [
            threading.Thread(target=self._read_stdout, name="live-eval-stdout", daemon=True),
            threading.Thread(target=self._read_stderr, name="live-eval-stderr", daemon=True),
        ]
        self._waiter = threading.Thread(
            target=self._wait_for_exit, name="live-eval-exit", daemon=True
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch, name="live-eval-dispatch", daemon=True
        )

    @property
    def alive(self) -> bool:
        """Whether the process is still running.

        Example:
            ```python
            assert proc.alive
            ```
        """
        return self.popen.poll() is None

    def start_threads(self) -> None:
        """Start reading the process pipes and dispatching outcomes.

        Example:
            ```python
            proc.start_threads()
            ```
        """
        self._dispatcher.start()
        for reader in self._readers:
            reader.start()
        self._waiter.start()

    def post(self, outcome: EvaluationOutcome) -> None:
        """Queue an outcome for delivery in priority order.

        Example:
            ```python
            proc.post(ErrorOutput(text="warning\\n"))
            ```
        """
        self._queue.put((outcome_priority(outcome), next(self._seq), outcome))

    def send(self, line: str) -> None:
        """Write one request line to the process stdin.

        Example:
            ```python
            proc.send('{"id": 1, "code": "x = 1"}\\n')
            ```
        """
        stdin = self.popen.stdin
        if stdin is None:
            raise BrokenPipeError("interpreter stdin is closed")
        with self._write_lock:
            stdin.write(line)
            stdin.flush()

    def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop the process without reporting the exit as a crash.

        Example:
            ```python
            proc.shutdown()
            ```
        """
        self.expected_shutdown = True
        try:
            if self.popen.stdin is not None:
                self.popen.stdin.close()
        except OSError:
            pass
        if self.popen.poll() is None:
            self.popen.terminate()
            try:
                self.popen.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                logger.warning("Interpreter %s ignored terminate, killing it", self.popen.pid)
                self.popen.kill()
                self.popen.wait()

    def _read_stdout(self) -> None:
        """Turn protocol lines into outcomes until the pipe closes.

        Example:
            ```python
            threading.Thread(target=proc._read_stdout).start()
            ```
        """
        stdout = self.popen.stdout
        if stdout is None:
            return
        for line in stdout:
            if not line.strip():
                continue
            try:
                self.post(parse_line(line))
            except CommunicationError as exc:
                logger.warning("Ignoring interpreter output: %s", exc)

    def _read_stderr(self) -> None:
        """Forward stderr text line by line until the pipe closes.

        Example:
            ```python
            threading.Thread(target=proc._read_stderr).start()
            ```
        """
        stderr = self.popen.stderr
        if stderr is None:
            return
        for line in stderr:
            self.post(ErrorOutput(text=line))

    def _wait_for_exit(self) -> None:
        """Report an unexpected exit once the pipes are drained, then stop dispatching.

        Example:
            ```python
            threading.Thread(target=proc._wait_for_exit).start()
            ```
        """
        code = self.popen.wait()
        for reader in self._readers:
            reader.join()
        for pipe in (self.popen.stdout, self.popen.stderr):
            if pipe is not None:
                pipe.close()
        if not self.expected_shutdown:
            logger.warning("Interpreter %s exited unexpectedly with code %s", self.popen.pid, code)
            self.post(ProcessExit(code=code))
        self._queue.put((_SENTINEL_PRIORITY, next(self._seq), None))

    def _dispatch(self) -> None:
        """Deliver queued outcomes one at a time on this thread.

        Example:
            ```python
            threading.Thread(target=proc._dispatch).start()
            ```
        """
        while True:
            _, _, outcome = self._queue.get()
            if outcome is None:
                return
            try:
                self._deliver(self, outcome)
            except Exception:
                logger.exception("Outcome handler failed for %s", type(outcome).__name__)


class InterpreterSupervisor:
    """Own one persistent interpreter process and report what it does.

    Example:
        ```python
        supervisor = InterpreterSupervisor(on_outcome=print)
        supervisor.start(sys.executable, ["-u"])
        supervisor.execute(EvaluationRequest(code="x = 1"))
        ```
    """

    def __init__(self, on_outcome: OutcomeHandler) -> None:
        """Create a stopped supervisor delivering outcomes to `on_outcome`.

        Example:
            ```python
            supervisor = InterpreterSupervisor(on_outcome=renderer_dispatch)
            ```
        """
        self._on_outcome = on_outcome
        self._lock = threading.Lock()
        self._process: _InterpreterProcess | None = None
        self._evaling = False
        self._request_counter = 0
        self._latest_request_id = 0
        self._interrupted_runs = 0
        self._checked_python: str | None = None
        self._launch: tuple[str, tuple[str, ...], dict[str, str] | None, str | None] | None = None

    @property
    def running(self) -> bool:
        """Whether an interpreter process is currently alive.

        Example:
            ```python
            if not supervisor.running:
                supervisor.restart()
            ```
        """
        with self._lock:
            return self._process is not None and self._process.alive

    @property
    def evaling(self) -> bool:
        """Whether the latest request has not produced its result yet.

        Example:
            ```python
            busy = supervisor.evaling
            ```
        """
        with self._lock:
            return self._evaling

    @property
    def interrupted_runs(self) -> int:
        """Number of requests sent while a previous one was still running.

        Example:
            ```python
            count = supervisor.interrupted_runs
            ```
        """
        with self._lock:
            return self._interrupted_runs

    @property
    def latest_request_id(self) -> int:
        """Id of the most recently sent request, 0 before the first one.

        Example:
            ```python
            rid = supervisor.latest_request_id
            ```
        """
        with self._lock:
            return self._latest_request_id

    @property
    def pid(self) -> int | None:
        """Process id of the interpreter, if one is running.

        Example:
            ```python
            pid = supervisor.pid
            ```
        """
        with self._lock:
            return self._process.popen.pid if self._process is not None else None

    def start(
        self,
        python_path: str,
        options: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> str | None:
        """Spawn the interpreter; return a compatibility warning or None.

        Example:
            ```python
            warning = supervisor.start("/usr/bin/python3", ["-u"], env=os.environ)
            ```
        """
        env_dict = dict(env) if env is not None else None
        self._launch = (python_path, tuple(options), env_dict, cwd)
        self.stop()

        warning = None
        if self._checked_python != python_path:
            warning = check_python_version(python_path, env_dict)
            self._checked_python = python_path
            if warning:
                logger.warning(warning)

        cmd = [python_path, *options, str(_worker_path())]
        try:
            popen = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env_dict,
                cwd=cwd or None,
            )
        except OSError as exc:
            raise ProcessSpawnError(
                f"Error running python with command: {' '.join(cmd)}\n{exc}"
            ) from exc

        process = _InterpreterProcess(popen, self._deliver)
        with self._lock:
            self._process = process
            self._evaling = False
        process.start_threads()
        logger.info("Started interpreter %s (pid %s)", python_path, popen.pid)
        return warning

    def restart(
        self,
        python_path: str | None = None,
        options: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> str | None:
        """Replace the interpreter process, reusing the last launch arguments by default.

        Example:
            ```python
            supervisor.restart()
            ```
        """
        if self._launch is None and python_path is None:
            raise ProcessSpawnError("Interpreter was never started")
        last_path, last_options, last_env, last_cwd = self._launch or ("", (), None, None)
        return self.start(
            python_path or last_path,
            last_options if options is None else options,
            last_env if env is None else env,
            last_cwd if cwd is None else cwd,
        )

    def execute(
        self,
        request: EvaluationRequest,
        before_send: Callable[[int], None] | None = None,
    ) -> int:
        """Send a request to the interpreter and return its request id.

        A request sent while another is evaluating supersedes it; the older
        one still runs to completion inside the interpreter. `before_send`
        receives the reserved id before the line reaches the process, so a
        consumer can mark it newest before any older outcome is dispatched.

        Example:
            ```python
            rid = supervisor.execute(EvaluationRequest(code="x = 1"), renderer.begin_request)
            ```
        """
        with self._lock:
            process = self._process
            if process is None or not process.alive:
                raise ProcessSpawnError("Interpreter process is not running")
            if self._evaling:
                self._interrupted_runs += 1
            self._request_counter += 1
            request_id = self._request_counter
            self._latest_request_id = request_id
            self._evaling = True
        if before_send is not None:
            before_send(request_id)
        try:
            process.send(encode_request(request, request_id))
        except (OSError, ValueError) as exc:
            with self._lock:
                self._evaling = False
            message = f"Could not send request {request_id} to the interpreter: {exc}"
            process.post(ProcessError(message=message))
        return request_id

    def stop(self) -> None:
        """Terminate the interpreter; safe to call repeatedly or before `start`.

        Example:
            ```python
            supervisor.stop()
            ```
        """
        with self._lock:
            process = self._process
            self._process = None
            self._evaling = False
        if process is None:
            return
        process.shutdown()
        logger.info("Stopped interpreter (pid %s)", process.popen.pid)

    def _deliver(self, process: _InterpreterProcess, outcome: EvaluationOutcome) -> None:
        """Update in-flight bookkeeping and hand the outcome to the consumer.

        Example:
            ```python
            supervisor._deliver(process, Result(request_id=1))
            ```
        """
        with self._lock:
            if process is not self._process:
                return
            if isinstance(outcome, Result) and outcome.request_id == self._latest_request_id:
                self._evaling = False
            if isinstance(outcome, ProcessExit):
                self._process = None
                self._evaling = False
        self._on_outcome(outcome)
