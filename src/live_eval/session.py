from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .builder import EvaluationRequestBuilder, default_imports_text
from .env_vars import EnvironmentVariablesProvider
from .errors import LiveEvalError, SessionStateError
from .execution.supervisor import InterpreterSupervisor, OutcomeHandler
from .execution.types import (
    ErrorOutput,
    EvaluationOutcome,
    EvaluationRequest,
    PrintChunk,
    ProcessError,
    ProcessExit,
    Result,
)
from .ratelimit import Debouncer, TimerFactory, thread_timer
from .renderer import RenderOptions, RenderSink, ResultRenderer
from .settings import PreviewSettings, resolve_env_file, resolve_python_path

logger = logging.getLogger(__name__)

CRASH_MESSAGE = "live_eval crashed unexpectedly! Are you using python 3? err: {code}"


class SessionState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class EditEvent:
    """Snapshot of a document taken when the host reported an edit.

    Example:
        ```python
        event = EditEvent(document_id="file:///tmp/demo.py", text="x = 1", eol="\\n")
        ```
    """

    document_id: str
    text: str
    eol: str = "\n"
    timestamp: float = field(default_factory=time.time)


class Document(Protocol):
    """The host's view of the tracked document.

    Example:
        ```python
        session.start(document)
        ```
    """

    @property
    def document_id(self) -> str:
        """Stable identity of the document.

        Example:
            ```python
            doc_id = document.document_id
            ```
        """
        ...

    @property
    def file_path(self) -> str:
        """Path on disk, meaningless while untitled.

        Example:
            ```python
            path = document.file_path
            ```
        """
        ...

    @property
    def is_untitled(self) -> bool:
        """Whether the document was never saved.

        Example:
            ```python
            if document.is_untitled:
                ...
            ```
        """
        ...

    @property
    def eol(self) -> str:
        """End-of-line sequence used by the document.

        Example:
            ```python
            lines = document.get_text().split(document.eol)
            ```
        """
        ...

    def get_text(self) -> str:
        """Current full text.

        Example:
            ```python
            text = document.get_text()
            ```
        """
        ...

    def insert_at_start(self, text: str) -> None:
        """Insert text at the top of the document and return once applied.

        Example:
            ```python
            document.insert_at_start("import math\\n")
            ```
        """
        ...


@dataclass(slots=True)
class SessionStats:
    """Run counters reported when the session ends.

    Example:
        ```python
        stats = SessionStats(num_runs=3, num_interrupted_runs=1)
        ```
    """

    num_runs: int = 0
    num_interrupted_runs: int = 0


def snapshot(document: Document) -> EditEvent:
    """Capture the current text of a document as an edit event.

    Example:
        ```python
        event = snapshot(document)
        ```
    """
    return EditEvent(document_id=document.document_id, text=document.get_text(), eol=document.eol)


class LiveEvalSession:
    """Wire edits, the interpreter process and the preview for one document.

    Example:
        ```python
        session = LiveEvalSession(PreviewSettings(delay=50), sink)
        session.start(document)
        session.on_change(snapshot(document))
        ```
    """

    def __init__(
        self,
        settings: PreviewSettings,
        sink: RenderSink,
        *,
        workspace_folder: str = "",
        env_provider: EnvironmentVariablesProvider | None = None,
        supervisor_factory: Callable[[OutcomeHandler], InterpreterSupervisor] = InterpreterSupervisor,
        timer_factory: TimerFactory = thread_timer,
        status_callback: Callable[[bool], None] | None = None,
    ) -> None:
        """Assemble the pipeline; nothing runs until `start`.

        Example:
            ```python
            session = LiveEvalSession(settings, sink, workspace_folder="/work")
            ```
        """
        self.settings = settings
        self.workspace_folder = workspace_folder
        self.stats = SessionStats()
        self.builder = EvaluationRequestBuilder(restart_delay_ms=settings.restart_delay)
        self.renderer = ResultRenderer(
            sink,
            RenderOptions.from_settings(settings),
            update_interval_ms=settings.html_update_frequency,
            timer_factory=timer_factory,
        )
        self.supervisor = supervisor_factory(self._on_outcome)
        self._env_provider = env_provider or EnvironmentVariablesProvider(
            resolve_env_file(settings, workspace_folder)
        )
        self._env_provider.on_change(self._on_environment_changed)
        self._debouncer = Debouncer(timer_factory)
        self._status_callback = status_callback
        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._document: Document | None = None
        self._disposed = False
        self._needs_restart = False

    @property
    def state(self) -> SessionState:
        """Current lifecycle state.

        Example:
            ```python
            assert session.state is SessionState.RUNNING
            ```
        """
        return self._state

    @property
    def document(self) -> Document | None:
        """The tracked document, once started.

        Example:
            ```python
            doc = session.document
            ```
        """
        return self._document

    def start(self, document: Document | None) -> None:
        """Show the preview, launch the interpreter and begin tracking `document`.

        Example:
            ```python
            session.start(document)
            ```
        """
        with self._lock:
            if self._disposed:
                raise SessionStateError("session was stopped; create a new session")
            if document is None:
                raise SessionStateError("no active editor")
            if self._state is not SessionState.IDLE:
                raise SessionStateError("already running")
            self._state = SessionState.STARTING
            self._document = document

            if not self.settings.skip_landing_page:
                self.renderer.show_landing_page()
            self._start_interpreter()

            if document.is_untitled and document.get_text() == "":
                imports = default_imports_text(self.settings.default_imports, document.eol)
                if imports:
                    # Applied before RUNNING so the insertion does not count as an edit.
                    document.insert_at_start(imports)

            self._state = SessionState.RUNNING
            logger.info("Live evaluation started for %s", document.document_id)
            if self.settings.skip_landing_page:
                self._evaluate(snapshot(document))

    def on_change(self, event: EditEvent) -> None:
        """Handle a text change; evaluates after the configured quiet period.

        Example:
            ```python
            session.on_change(EditEvent(document_id=doc.document_id, text=doc.get_text()))
            ```
        """
        if not self._is_tracked(event.document_id):
            return
        if self.settings.when_to_execute != "afterDelay":
            return
        delay = self.settings.delay
        if self.builder.restart_mode:
            delay += self.settings.restart_delay
        self._debouncer.call(self._evaluate, delay, event)

    def on_save(self, document: Document) -> None:
        """Handle a save; evaluates when `when_to_execute` is `onSave`.

        Example:
            ```python
            session.on_save(document)
            ```
        """
        if not self._is_tracked(document.document_id):
            return
        if self.settings.when_to_execute == "onSave":
            self._evaluate(snapshot(document))

    def on_close(self, document: Document) -> None:
        """Stop the session when its document is closed.

        Example:
            ```python
            session.on_close(document)
            ```
        """
        if self._document is not None and document.document_id == self._document.document_id:
            self.dispose()

    def run_now(self) -> None:
        """Evaluate the whole document immediately (keybinding).

        Example:
            ```python
            session.run_now()
            ```
        """
        if self._document is not None and self._state is SessionState.RUNNING:
            self._debouncer.cancel()
            self._evaluate(snapshot(self._document))

    def run_block(self, start_line: int, end_line: int | None = None) -> None:
        """Evaluate a selection, or the block around `start_line`, on top of the current variables.

        Example:
            ```python
            session.run_block(9, 11)
            ```
        """
        with self._lock:
            document = self._document
            if document is None or self._state is not SessionState.RUNNING:
                return
            try:
                request = self.builder.build_block(
                    document.get_text(),
                    document.eol,
                    start_line,
                    end_line,
                    file_path=self._file_path(document),
                    show_global_vars=self.settings.show_global_vars,
                )
                if self._needs_restart or not self.supervisor.running:
                    if not self._restart_interpreter():
                        return
                self._send(request)
            except LiveEvalError as exc:
                self._report(exc)

    def configuration_changed(self, settings: PreviewSettings) -> None:
        """Apply new settings; the interpreter restarts if its launch settings changed.

        Example:
            ```python
            session.configuration_changed(settings.with_changes(python_options=["-u", "-X", "dev"]))
            ```
        """
        with self._lock:
            previous = self.settings
            self.settings = settings
            self.renderer.options = RenderOptions.from_settings(settings)
            self.renderer.set_update_interval(settings.html_update_frequency)
            self.builder.restart_delay_ms = settings.restart_delay
            self._env_provider.set_env_file(
                resolve_env_file(settings, self.workspace_folder), self.workspace_folder
            )
            launch_changed = (
                previous.python_path != settings.python_path
                or previous.python_options != settings.python_options
                or previous.env_file != settings.env_file
            )
            if launch_changed and self._state is SessionState.RUNNING:
                logger.info("Interpreter settings changed, restarting")
                self._restart_interpreter()

    def dispose(self) -> None:
        """Stop everything; the session produces no further renders.

        Example:
            ```python
            session.dispose()
            ```
        """
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            self._state = SessionState.STOPPING
        self._debouncer.cancel()
        self.renderer.dispose()
        self.supervisor.stop()
        self._set_status(False)
        logger.info(
            "Live evaluation finished after %d runs (%d interrupted)",
            self.stats.num_runs,
            self.stats.num_interrupted_runs,
        )
        with self._lock:
            self._state = SessionState.IDLE

    def _is_tracked(self, document_id: str) -> bool:
        """Whether events for this document should be handled now.

        Example:
            ```python
            if session._is_tracked(event.document_id):
                ...
            ```
        """
        document = self._document
        return (
            document is not None
            and self._state is SessionState.RUNNING
            and document.document_id == document_id
        )

    def _file_path(self, document: Document) -> str:
        """File path sent to the interpreter, empty for untitled documents.

        Example:
            ```python
            path = session._file_path(document)
            ```
        """
        return "" if document.is_untitled else document.file_path

    def _evaluate(self, event: EditEvent) -> None:
        """Build and send the request for an accepted edit.

        Example:
            ```python
            session._evaluate(snapshot(document))
            ```
        """
        with self._lock:
            document = self._document
            if document is None or self._state is not SessionState.RUNNING:
                return
            self.stats.num_runs += 1
            if self.supervisor.evaling:
                self.stats.num_interrupted_runs += 1
            file_path = self._file_path(document)
            show_globals = self.settings.show_global_vars
            try:
                request = self.builder.build(event.text, file_path, event.eol, show_globals)
                if request is None:
                    return
                if request.restart or self._needs_restart or not self.supervisor.running:
                    if not self._restart_interpreter():
                        return
                    # The new process has no save point: build again so the prefix is sent.
                    request = self.builder.build(event.text, file_path, event.eol, show_globals)
                    if request is None:
                        return
                self._send(request)
            except LiveEvalError as exc:
                self._report(exc)

    def _send(self, request: EvaluationRequest) -> None:
        """Hand a request to the supervisor and mark it as the newest.

        Example:
            ```python
            session._send(EvaluationRequest(code="x = 1"))
            ```
        """
        self._set_status(True)
        self.supervisor.execute(request, before_send=self.renderer.begin_request)

    def _start_interpreter(self) -> bool:
        """Launch the interpreter, rendering any failure instead of raising.

        Example:
            ```python
            ok = session._start_interpreter()
            ```
        """
        document = self._document
        cwd = self.workspace_folder or None
        if document is not None and not document.is_untitled and document.file_path:
            cwd = os.path.dirname(os.path.abspath(document.file_path))
        try:
            python_path = resolve_python_path(self.settings, self.workspace_folder)
            env = self._env_provider.get_environment_variables(self.workspace_folder)
            warning = self.supervisor.start(
                python_path, self.settings.python_options, env=env, cwd=cwd
            )
        except LiveEvalError as exc:
            self._needs_restart = True
            self._report(exc)
            return False
        finally:
            self.builder.invalidate_save_point()
        self._needs_restart = False
        if warning:
            self.renderer.on_error(warning, refresh=True)
        return True

    def _restart_interpreter(self) -> bool:
        """Replace the interpreter process without touching the preview.

        Example:
            ```python
            session._restart_interpreter()
            ```
        """
        self._state = SessionState.RESTARTING
        try:
            return self._start_interpreter()
        finally:
            if not self._disposed:
                self._state = SessionState.RUNNING

    def _report(self, exc: LiveEvalError) -> None:
        """Render a failure caught at the session boundary.

        Example:
            ```python
            session._report(ProcessSpawnError("No such file or directory"))
            ```
        """
        logger.error("%s: %s", type(exc).__name__, exc)
        self._set_status(False)
        self.renderer.display_process_error(str(exc))

    def _set_status(self, running: bool) -> None:
        """Tell the host whether an evaluation is in progress.

        Example:
            ```python
            session._set_status(True)
            ```
        """
        if self._status_callback is not None:
            self._status_callback(running)

    def _on_environment_changed(self, scope: str) -> None:
        """Restart the interpreter on the next run so it sees the new environment.

        Example:
            ```python
            session._on_environment_changed("")
            ```
        """
        with self._lock:
            self._needs_restart = True

    def _on_outcome(self, outcome: EvaluationOutcome) -> None:
        """Route one supervisor outcome to the renderer.

        Example:
            ```python
            session._on_outcome(PrintChunk(text="hi\\n", request_id=1))
            ```
        """
        if self._disposed:
            return
        try:
            if isinstance(outcome, PrintChunk):
                self.renderer.on_print(outcome.text, outcome.request_id)
            elif isinstance(outcome, Result):
                self.renderer.on_result(outcome)
                if not self.supervisor.evaling:
                    self._set_status(False)
            elif isinstance(outcome, ErrorOutput):
                self.renderer.on_stderr(outcome.text)
            elif isinstance(outcome, ProcessError):
                self._set_status(False)
                self.renderer.display_process_error(outcome.message)
            elif isinstance(outcome, ProcessExit):
                with self._lock:
                    self._needs_restart = True
                self._set_status(False)
                self.renderer.display_process_error(CRASH_MESSAGE.format(code=outcome.code))
        except Exception:
            logger.exception("Failed to handle %s", type(outcome).__name__)
