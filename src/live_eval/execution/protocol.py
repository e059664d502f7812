from __future__ import annotations

import json
from typing import Any

from ..errors import CommunicationError
from .types import EvaluationOutcome, EvaluationRequest, PrintChunk, Result

MESSAGE_PRINT = "print"
MESSAGE_RESULT = "result"


def encode_request(request: EvaluationRequest, request_id: int) -> str:
    """Encode a request as one newline-terminated JSON line for the worker.

    Example:
        ```python
        line = encode_request(EvaluationRequest(code="x = 1"), request_id=1)
        ```
    """
    payload = {
        "id": request_id,
        "code": request.code,
        "saved_code": request.saved_code,
        "use_save_point": request.use_save_point,
        "use_previous_variables": request.use_previous_variables,
        "show_global_vars": request.show_global_vars,
        "file_path": request.file_path,
    }
    return json.dumps(payload) + "\n"


def decode_message(line: str) -> dict[str, Any]:
    """Parse one stdout line from the worker into a message dictionary.

    Example:
        ```python
        msg = decode_message('{"type": "print", "id": 1, "text": "hi"}')
        ```
    """
    try:
        message = json.loads(line)
    except json.JSONDecodeError as exc:
        raise CommunicationError(f"Interpreter returned invalid JSON: {line[:200]!r}") from exc
    if not isinstance(message, dict):
        raise CommunicationError(f"Expected a JSON object, got: {line[:200]!r}")
    if message.get("type") not in {MESSAGE_PRINT, MESSAGE_RESULT}:
        raise CommunicationError(f"Unknown message type: {message.get('type')!r}")
    return message


def outcome_from_message(message: dict[str, Any]) -> EvaluationOutcome:
    """Convert a decoded worker message into a typed outcome.

    Example:
        ```python
        outcome = outcome_from_message({"type": "print", "id": 2, "text": "hello"})
        ```
    """
    request_id = int(message.get("id", 0))
    if message["type"] == MESSAGE_PRINT:
        return PrintChunk(text=str(message.get("text", "")), request_id=request_id)

    variables = message.get("variables") or {}
    if not isinstance(variables, dict):
        raise CommunicationError("'variables' must be a JSON object")
    return Result(
        variables=variables,
        user_prints=str(message.get("user_prints", "")),
        elapsed_ms=float(message.get("elapsed_ms", 0.0)),
        user_error=str(message.get("user_error") or ""),
        request_id=request_id,
    )


def parse_line(line: str) -> EvaluationOutcome:
    """Decode one worker stdout line straight into an outcome.

    Example:
        ```python
        outcome = parse_line('{"type": "result", "id": 1, "variables": {"x": 1}}')
        ```
    """
    return outcome_from_message(decode_message(line))
