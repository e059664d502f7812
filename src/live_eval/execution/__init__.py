from .supervisor import InterpreterSupervisor
from .types import EvaluationOutcome, EvaluationRequest

__all__ = [
    "EvaluationOutcome",
    "EvaluationRequest",
    "InterpreterSupervisor",
]
