from __future__ import annotations

import os
import stat
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Iterator

import pytest

from live_eval.errors import ProcessSpawnError
from live_eval.execution.supervisor import InterpreterSupervisor, check_python_version
from live_eval.execution.types import (
    ErrorOutput,
    EvaluationOutcome,
    EvaluationRequest,
    PrintChunk,
    ProcessExit,
    Result,
)

_WAIT_SECONDS = 15


class _Collector:
    def __init__(self) -> None:
        self.outcomes: list[EvaluationOutcome] = []
        self._cond = threading.Condition()

    def __call__(self, outcome: EvaluationOutcome) -> None:
        with self._cond:
            self.outcomes.append(outcome)
            self._cond.notify_all()

    def wait_for(self, predicate: Callable[[list[EvaluationOutcome]], bool]) -> list[EvaluationOutcome]:
        with self._cond:
            assert self._cond.wait_for(lambda: predicate(self.outcomes), timeout=_WAIT_SECONDS)
            return list(self.outcomes)

    def result(self, request_id: int) -> Result:
        outcomes = self.wait_for(
            lambda items: any(isinstance(o, Result) and o.request_id == request_id for o in items)
        )
        return next(o for o in outcomes if isinstance(o, Result) and o.request_id == request_id)


@pytest.fixture
def collector() -> _Collector:
    return _Collector()


@pytest.fixture
def supervisor(collector: _Collector) -> Iterator[InterpreterSupervisor]:
    sup = InterpreterSupervisor(collector)
    yield sup
    sup.stop()


def test_execute_delivers_prints_then_result(supervisor: InterpreterSupervisor, collector: _Collector) -> None:
    assert supervisor.start(sys.executable, ["-u"]) is None
    assert supervisor.running is True

    request_id = supervisor.execute(EvaluationRequest(code="x = 2\nprint('hi')"))
    result = collector.result(request_id)

    assert request_id == 1
    assert result.variables == {"x": 2}
    assert result.user_prints == "hi\n"
    chunks = [o for o in collector.outcomes if isinstance(o, PrintChunk)]
    assert "".join(c.text for c in chunks) == "hi\n"
    assert collector.outcomes.index(chunks[0]) < collector.outcomes.index(result)
    assert supervisor.evaling is False


def test_before_send_sees_the_id_before_any_outcome(
    supervisor: InterpreterSupervisor, collector: _Collector
) -> None:
    supervisor.start(sys.executable)
    seen: list[tuple[int, int]] = []

    request_id = supervisor.execute(
        EvaluationRequest(code="x = 1"),
        before_send=lambda rid: seen.append((rid, len(collector.outcomes))),
    )
    collector.result(request_id)

    assert seen == [(request_id, 0)]
    assert supervisor.latest_request_id == request_id


def test_save_point_survives_between_requests(supervisor: InterpreterSupervisor, collector: _Collector) -> None:
    supervisor.start(sys.executable)

    first = supervisor.execute(
        EvaluationRequest(code="\n\ny = x + 1", saved_code="x = 1\n#$save", use_save_point=True)
    )
    collector.result(first)
    second = supervisor.execute(
        EvaluationRequest(code="\n\ny = x + 2", use_save_point=True, use_previous_variables=True)
    )

    assert collector.result(second).variables == {"x": 1, "y": 3}


def test_stderr_is_forwarded(supervisor: InterpreterSupervisor, collector: _Collector) -> None:
    supervisor.start(sys.executable, ["-u"])

    supervisor.execute(EvaluationRequest(code="import sys\nsys.stderr.write('careful\\n')"))
    outcomes = collector.wait_for(lambda items: any(isinstance(o, ErrorOutput) for o in items))

    assert ErrorOutput(text="careful\n") in outcomes


def test_overlapping_requests_count_as_interrupted(
    supervisor: InterpreterSupervisor, collector: _Collector
) -> None:
    supervisor.start(sys.executable)

    supervisor.execute(EvaluationRequest(code="import time\ntime.sleep(0.3)"))
    assert supervisor.evaling is True
    latest = supervisor.execute(EvaluationRequest(code="y = 1"))

    assert supervisor.interrupted_runs == 1
    assert supervisor.latest_request_id == latest
    collector.result(latest)
    assert supervisor.evaling is False


def test_unexpected_exit_is_reported(supervisor: InterpreterSupervisor, collector: _Collector) -> None:
    supervisor.start(sys.executable)

    supervisor.execute(EvaluationRequest(code="import os\nos._exit(3)"))
    outcomes = collector.wait_for(lambda items: any(isinstance(o, ProcessExit) for o in items))

    assert ProcessExit(code=3) in outcomes
    assert supervisor.running is False
    with pytest.raises(ProcessSpawnError):
        supervisor.execute(EvaluationRequest(code="x = 1"))


def test_stop_is_not_reported_as_exit(supervisor: InterpreterSupervisor, collector: _Collector) -> None:
    supervisor.start(sys.executable)
    supervisor.stop()
    supervisor.stop()
    time.sleep(0.3)

    assert not any(isinstance(o, ProcessExit) for o in collector.outcomes)
    assert supervisor.running is False
    assert supervisor.pid is None


def test_pipes_are_closed_after_the_process_exits(supervisor: InterpreterSupervisor) -> None:
    supervisor.start(sys.executable)
    process = supervisor._process
    assert process is not None
    popen = process.popen

    supervisor.stop()
    deadline = time.monotonic() + _WAIT_SECONDS
    while not (popen.stdout is not None and popen.stdout.closed and popen.stderr is not None and popen.stderr.closed):
        assert time.monotonic() < deadline
        time.sleep(0.01)


def test_restart_replaces_the_process(supervisor: InterpreterSupervisor, collector: _Collector) -> None:
    supervisor.start(sys.executable)
    first = supervisor.execute(EvaluationRequest(code="a = 1"))
    collector.result(first)
    old_pid = supervisor.pid

    supervisor.restart()
    request_id = supervisor.execute(EvaluationRequest(code="b = a", use_previous_variables=True))

    assert supervisor.pid != old_pid
    assert "NameError" in collector.result(request_id).user_error
    assert not any(isinstance(o, ProcessExit) for o in collector.outcomes)


def test_stop_before_start_is_a_no_op(collector: _Collector) -> None:
    InterpreterSupervisor(collector).stop()


def test_execute_without_process_raises(supervisor: InterpreterSupervisor) -> None:
    with pytest.raises(ProcessSpawnError, match="not running"):
        supervisor.execute(EvaluationRequest(code="x = 1"))


def test_restart_before_start_raises(supervisor: InterpreterSupervisor) -> None:
    with pytest.raises(ProcessSpawnError):
        supervisor.restart()


def test_missing_interpreter_raises_spawn_error(supervisor: InterpreterSupervisor, tmp_path: Path) -> None:
    with pytest.raises(ProcessSpawnError, match="Error running python"):
        supervisor.start(str(tmp_path / "no-python"))

    assert supervisor.running is False


def test_version_check_accepts_current_interpreter() -> None:
    assert check_python_version(sys.executable) is None


@pytest.mark.skipif(os.name == "nt", reason="uses a shell script as fake interpreter")
def test_version_check_warns_about_python_2(tmp_path: Path) -> None:
    fake = tmp_path / "python2"
    fake.write_text("#!/bin/sh\necho 'Python 2.7.18' >&2\n", encoding="utf-8")
    fake.chmod(fake.stat().st_mode | stat.S_IEXEC)

    warning = check_python_version(str(fake))

    assert warning is not None
    assert "does not support python 2" in warning
