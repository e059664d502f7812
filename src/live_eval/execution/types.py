from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class EvaluationRequest:
    """Normalized request sent to the interpreter process.

    Example:
        ```python
        req = EvaluationRequest(code="x = 1\\ny = 2", file_path="/tmp/demo.py")
        ```
    """

    code: str
    file_path: str = ""
    saved_code: str = ""
    use_save_point: bool = False
    use_previous_variables: bool = False
    show_global_vars: bool = True
    restart: bool = False
    restart_delay_ms: int = 0


@dataclass(frozen=True, slots=True)
class PrintChunk:
    """Text the user code wrote to stdout while a request was running.

    Example:
        ```python
        chunk = PrintChunk(text="hello\\n", request_id=3)
        ```
    """

    text: str
    request_id: int = 0


@dataclass(frozen=True, slots=True)
class Result:
    """Final outcome of one request.

    Example:
        ```python
        result = Result(variables={"x": 1}, user_prints="", elapsed_ms=1.5, request_id=3)
        ```
    """

    variables: dict[str, Any] = field(default_factory=dict)
    user_prints: str = ""
    elapsed_ms: float = 0.0
    user_error: str = ""
    request_id: int = 0


@dataclass(frozen=True, slots=True)
class ErrorOutput:
    """Raw text the interpreter process wrote to stderr.

    Example:
        ```python
        err = ErrorOutput(text="DeprecationWarning: ...")
        ```
    """

    text: str


@dataclass(frozen=True, slots=True)
class ProcessError:
    """The interpreter process could not be spawned or talked to.

    Example:
        ```python
        err = ProcessError(message="Broken pipe while sending request 4")
        ```
    """

    message: str


@dataclass(frozen=True, slots=True)
class ProcessExit:
    """The interpreter process exited without being asked to.

    Example:
        ```python
        crash = ProcessExit(code=1)
        ```
    """

    code: int


EvaluationOutcome = Union[PrintChunk, Result, ErrorOutput, ProcessError, ProcessExit]

# Lower value is delivered first when several outcomes are pending.
OUTCOME_PRIORITY: dict[type, int] = {
    ProcessError: 0,
    ProcessExit: 1,
    ErrorOutput: 2,
    PrintChunk: 3,
    Result: 4,
}


def outcome_priority(outcome: EvaluationOutcome) -> int:
    """Return the delivery priority of an outcome.

    Example:
        ```python
        assert outcome_priority(ProcessExit(code=1)) < outcome_priority(Result())
        ```
    """
    return OUTCOME_PRIORITY[type(outcome)]
