from __future__ import annotations

# Runs inside the user's interpreter, which may not have live_eval installed:
# this file must only import the standard library.

import builtins
import copy
import json
import os
import sys
import time
import traceback
import types
from typing import Any, TextIO

_MAX_REPR_CHARS = 10_000
_DEFAULT_FILENAME = "<live_eval>"


def send_message(message: dict[str, Any], out: TextIO) -> None:
    """Write one protocol message as a JSON line.

    Example:
        ```python
        send_message({"type": "print", "id": 1, "text": "hi"}, sys.stdout)
        ```
    """
    out.write(json.dumps(message, default=str) + "\n")
    out.flush()


class _PrintStream:
    """Stdout replacement that forwards user prints as protocol messages.

    Example:
        ```python
        sys.stdout = _PrintStream(request_id=1, out=protocol_out)
        ```
    """

    encoding = "utf-8"

    def __init__(self, request_id: int, out: TextIO) -> None:
        """Start an empty print buffer for one request.

        Example:
            ```python
            stream = _PrintStream(request_id=1, out=sys.__stdout__)
            ```
        """
        self.request_id = request_id
        self.out = out
        self.buffer: list[str] = []

    def write(self, text: str) -> int:
        """Record the text and send it to the supervisor immediately.

        Example:
            ```python
            stream.write("hello\\n")
            ```
        """
        if text:
            self.buffer.append(text)
            send_message({"type": "print", "id": self.request_id, "text": text}, self.out)
        return len(text)

    def flush(self) -> None:
        """Flush the protocol stream.

        Example:
            ```python
            stream.flush()
            ```
        """
        self.out.flush()

    def isatty(self) -> bool:
        """Report that user output is never a terminal.

        Example:
            ```python
            assert stream.isatty() is False
            ```
        """
        return False

    def getvalue(self) -> str:
        """Return everything printed during the request.

        Example:
            ```python
            text = stream.getvalue()
            ```
        """
        return "".join(self.buffer)


class SavePointFailed(Exception):
    """The cached `#$save` prefix raised, so code below it cannot run.

    Example:
        ```python
        raise SavePointFailed("ValueError: boom\\n")
        ```
    """


class EvaluationState:
    """Namespaces kept alive between requests.

    Example:
        ```python
        state = EvaluationState()
        ```
    """

    def __init__(self) -> None:
        """Start with no previous namespace and no save point.

        Example:
            ```python
            state = EvaluationState()
            ```
        """
        self.last_namespace: dict[str, Any] | None = None
        self.save_point: dict[str, Any] | None = None
        self.save_point_error = ""


def fresh_namespace(file_path: str) -> dict[str, Any]:
    """Build the globals a plain `python file.py` run would see.

    Example:
        ```python
        ns = fresh_namespace("/tmp/demo.py")
        ```
    """
    return {
        "__name__": "__main__",
        "__file__": file_path or _DEFAULT_FILENAME,
        "__builtins__": builtins,
    }


def copy_namespace(namespace: dict[str, Any]) -> dict[str, Any]:
    """Copy a namespace so later runs cannot mutate the saved values.

    Example:
        ```python
        snapshot = copy_namespace({"x": [1, 2]})
        ```
    """
    copied: dict[str, Any] = {}
    for name, value in namespace.items():
        if isinstance(value, types.ModuleType) or name == "__builtins__":
            copied[name] = value
            continue
        try:
            copied[name] = copy.deepcopy(value)
        except Exception:
            # Sockets, locks, generators...: share the original object.
            copied[name] = value
    return copied


def render_value(value: Any) -> Any:
    """Return a JSON-safe rendering of one user variable.

    Example:
        ```python
        assert render_value({"a": 1}) == {"a": 1}
        ```
    """
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError, OverflowError, RecursionError):
        text = repr(value)
        if len(text) > _MAX_REPR_CHARS:
            text = text[:_MAX_REPR_CHARS] + "..."
        return text


def collect_variables(namespace: dict[str, Any], show_global_vars: bool) -> dict[str, Any]:
    """Pick the user-visible globals from a namespace, in definition order.

    Example:
        ```python
        variables = collect_variables({"x": 1, "__name__": "__main__"}, True)
        ```
    """
    if not show_global_vars:
        return {}
    variables: dict[str, Any] = {}
    for name, value in namespace.items():
        if name.startswith("__"):
            continue
        if isinstance(value, (types.ModuleType, type)) or callable(value):
            continue
        variables[name] = render_value(value)
    return variables


def format_user_error(exc: BaseException) -> str:
    """Format an exception raised by user code without worker frames.

    Example:
        ```python
        text = format_user_error(ValueError("invalid literal"))
        ```
    """
    if isinstance(exc, SyntaxError):
        return "".join(traceback.format_exception_only(type(exc), exc))
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename == __file__:
        tb = tb.tb_next
    return "".join(traceback.format_exception(type(exc), exc, tb))


def run_source(code: str, file_path: str, namespace: dict[str, Any]) -> None:
    """Compile and execute source text in a namespace.

    Example:
        ```python
        run_source("x = 1", "", namespace)
        ```
    """
    exec(compile(code, file_path or _DEFAULT_FILENAME, "exec"), namespace)


def starting_namespace(request: dict[str, Any], state: EvaluationState) -> dict[str, Any]:
    """Pick the globals a request starts from, running its saved prefix first.

    Example:
        ```python
        ns = starting_namespace({"saved_code": "a = 1", "use_save_point": True}, state)
        ```
    """
    file_path = str(request.get("file_path", ""))
    saved_code = str(request.get("saved_code", ""))
    if saved_code:
        state.save_point = None
        state.save_point_error = ""
        namespace = fresh_namespace(file_path)
        try:
            run_source(saved_code, file_path, namespace)
        except Exception as exc:
            state.save_point_error = format_user_error(exc)
            raise
        state.save_point = copy_namespace(namespace)
    if request.get("use_save_point"):
        if state.save_point is not None:
            return copy_namespace(state.save_point)
        if state.save_point_error:
            # The prefix only runs again once it changes.
            raise SavePointFailed(state.save_point_error)
    if request.get("use_previous_variables") and state.last_namespace is not None:
        return state.last_namespace
    return fresh_namespace(file_path)


def evaluate(request: dict[str, Any], state: EvaluationState, out: TextIO) -> dict[str, Any]:
    """Run one request and return its result message.

    Example:
        ```python
        message = evaluate({"id": 1, "code": "x = 1"}, EvaluationState(), sys.stdout)
        ```
    """
    request_id = int(request.get("id", 0))
    file_path = str(request.get("file_path", ""))
    if file_path:
        folder = os.path.dirname(os.path.abspath(file_path))
        if folder not in sys.path:
            sys.path.insert(0, folder)

    stream = _PrintStream(request_id, out)
    namespace: dict[str, Any] = {}
    user_error = ""
    real_stdout = sys.stdout
    sys.stdout = stream
    started = time.perf_counter()
    try:
        namespace = starting_namespace(request, state)
        run_source(str(request.get("code", "")), file_path, namespace)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            user_error = f"SystemExit: {exc.code}\n"
    except SavePointFailed as exc:
        user_error = str(exc)
    except BaseException as exc:
        user_error = format_user_error(exc)
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        sys.stdout = real_stdout

    state.last_namespace = namespace
    return {
        "type": "result",
        "id": request_id,
        "variables": collect_variables(namespace, bool(request.get("show_global_vars", True))),
        "user_prints": stream.getvalue(),
        "elapsed_ms": elapsed_ms,
        "user_error": user_error,
    }


def serve(stdin: TextIO, out: TextIO, state: EvaluationState | None = None) -> int:
    """Answer newline-delimited JSON requests until stdin closes.

    Example:
        ```python
        raise SystemExit(serve(sys.stdin, sys.stdout))
        ```
    """
    state = state or EvaluationState()
    for line in stdin:
        if not line.strip():
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            sys.stderr.write(f"live_eval worker: invalid request: {exc}\n")
            sys.stderr.flush()
            continue
        send_message(evaluate(request, state, out), out)
    return 0


def main() -> int:
    """Serve requests over the process pipes.

    Example:
        ```python
        raise SystemExit(main())
        ```
    """
    here = os.path.dirname(os.path.abspath(__file__))
    sys.path[:] = [entry for entry in sys.path if os.path.abspath(entry or ".") != here]
    protocol_in, protocol_out = sys.stdin, sys.stdout
    # User code calling input() must not consume protocol requests.
    sys.stdin = open(os.devnull, encoding="utf-8")
    return serve(protocol_in, protocol_out)


if __name__ == "__main__":
    raise SystemExit(main())
