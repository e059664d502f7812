from .builder import EvaluationRequestBuilder
from .execution.supervisor import InterpreterSupervisor
from .renderer import RenderOptions, ResultRenderer
from .session import EditEvent, LiveEvalSession, SessionState
from .settings import PreviewSettings

__all__ = [
    "EditEvent",
    "EvaluationRequestBuilder",
    "InterpreterSupervisor",
    "LiveEvalSession",
    "PreviewSettings",
    "RenderOptions",
    "ResultRenderer",
    "SessionState",
]
