from __future__ import annotations


class LiveEvalError(Exception):
    """Base class for live evaluation failures.

    Example:
        ```python
        raise LiveEvalError("something went wrong")
        ```
    """


class ProcessSpawnError(LiveEvalError):
    """The interpreter process could not be launched or written to.

    Example:
        ```python
        raise ProcessSpawnError("No such file or directory: '/bad/python'")
        ```
    """


class CommunicationError(LiveEvalError):
    """The interpreter process emitted output that is not a protocol message.

    Example:
        ```python
        raise CommunicationError("Expected a JSON object, got: 'hello'")
        ```
    """


class ConfigurationError(LiveEvalError):
    """A settings value could not be turned into something usable.

    Example:
        ```python
        raise ConfigurationError("Python path does not exist: ./venv/bin/python")
        ```
    """


class SessionStateError(LiveEvalError):
    """A session operation was called in a state that does not allow it.

    Example:
        ```python
        raise SessionStateError("already running")
        ```
    """
