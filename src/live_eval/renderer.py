from __future__ import annotations

import html
import json
import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .execution.types import Result
from .ratelimit import Throttler, TimerFactory, thread_timer
from .settings import PreviewSettings

logger = logging.getLogger(__name__)

SEARCH_URL = "https://www.google.com/search?q=python "
# Most exceptions read `Name: explanation`, e.g. json.decoder.JSONDecodeError: Expecting value
_EXCEPTION_LINE = re.compile(r"^[\w.]+: ")
_MISSING_PYTHON_HINT = (
    "\n\nAre you sure you have installed python 3 and it is in your PATH?\n"
    "You can download python here: https://www.python.org/downloads/"
)

LANDING_PAGE = """<!doctype html>
<html lang="en">
<head><title>live_eval</title></head>
<body>
<p>Start typing or make a change and your code will be evaluated.</p>
<p><b style="color:red">WARNING:</b> code is evaluated WHILE YOU TYPE - don't try deleting files/folders!</p>
<p>Evaluation while you type can be turned off or adjusted in the settings.</p>
<h3>Directives</h3>
<ul>
<li><code>#$save</code>: code above the marker runs once and its variables are reused while you edit below it</li>
<li><code>#$end</code>: code after the marker is not evaluated</li>
<li><code>#$restart</code>: restart the interpreter before every run (turtle, GUI toolkits)</li>
</ul>
</body>
</html>"""

FOOTER = """<div id="footer"><p style="margin:0px;">live_eval | evaluated in a background interpreter</p></div>"""


class RenderSink(Protocol):
    def render_document(self, document: str) -> None:
        """Show a complete preview document.

        Example:
            ```python
            sink.render_document("<html>...</html>")
            ```
        """
        ...


class SinkDisposedError(RuntimeError):
    """Raised by a sink whose panel has already been closed.

    Example:
        ```python
        raise SinkDisposedError("webview is disposed")
        ```
    """


@dataclass(frozen=True, slots=True)
class RenderOptions:
    """Static presentation options read from settings.

    Example:
        ```python
        options = RenderOptions(print_result_placement="bottom", show_footer=False)
        ```
    """

    print_result_placement: str = "top"
    show_footer: bool = True
    show_to_level: int = 2
    max_string_length: int = 70

    @classmethod
    def from_settings(cls, settings: PreviewSettings) -> "RenderOptions":
        """Extract render options from session settings.

        Example:
            ```python
            options = RenderOptions.from_settings(PreviewSettings())
            ```
        """
        return cls(
            print_result_placement=settings.print_result_placement,
            show_footer=settings.show_footer,
            show_to_level=settings.show_to_level,
            max_string_length=settings.max_string_length,
        )


@dataclass(slots=True)
class RenderState:
    """Everything the preview shows; the only mutable input of `render()`.

    Example:
        ```python
        state = RenderState(print_text="hello\\n", time_ms=12)
        ```
    """

    error_text: str = ""
    stderr_text: str = ""
    print_text: str = ""
    print_request_id: int = 0
    variables: dict[str, Any] = field(default_factory=dict)
    time_ms: int | None = None
    time_regressed: bool = False
    latest_request_id: int = 0


def escape_text(text: str) -> str:
    """Escape markup in user output.

    Example:
        ```python
        assert escape_text("<module>") == "&lt;module&gt;"
        ```
    """
    return html.escape(text, quote=False)


def make_error_googleable(escaped: str) -> str:
    """Link `Name: message` lines of an escaped error to a web search.

    Example:
        ```python
        linked = make_error_googleable("ValueError: invalid literal")
        ```
    """
    if not escaped.strip():
        return escaped
    lines = escaped.split("\n")
    for index, line in enumerate(lines):
        if _EXCEPTION_LINE.match(line):
            href = html.escape(SEARCH_URL + line, quote=True)
            lines[index] = f'<a href="{href}">{line}</a>'
    return "\n".join(lines)


def variables_script(variables: dict[str, Any], options: RenderOptions) -> str:
    """Script block that hands the variables to the JSON tree viewer.

    Example:
        ```python
        script = variables_script({"x": 1}, RenderOptions())
        ```
    """
    blob = json.dumps(variables, default=str)
    # A literal </script> inside a value would close the tag early.
    blob = blob.replace("</script>", "<\\/script>")
    return (
        "<script>\n"
        "window.onload = function(){\n"
        f"  userVars = {blob};\n"
        f"  var renderer = renderjson.set_show_to_level({options.show_to_level})"
        f".set_max_string_length({options.max_string_length});\n"
        '  document.getElementById("results").appendChild(renderer(userVars));\n'
        "}\n"
        "</script>"
    )


def render_document(state: RenderState, options: RenderOptions) -> str:
    """Build the preview document from state and options.

    Example:
        ```python
        document = render_document(RenderState(), RenderOptions())
        ```
    """
    error = ""
    error_text = state.error_text + state.stderr_text
    if error_text:
        error = f'<div id="error">{make_error_googleable(escape_text(error_text))}</div>'
    prints = f'<br><b>Print Output:</b><div id="print">{escape_text(state.print_text)}</div>'
    results = '<div id="results"></div>'
    body = results + prints if options.print_result_placement == "bottom" else prints + results
    timing = ""
    if state.time_ms is not None:
        color = "red" if state.time_regressed else "green"
        timing = f'<p id="time" style="color:{color};">{state.time_ms} ms</p>'
    footer = FOOTER if options.show_footer else ""
    return (
        "<!doctype html>\n"
        '<html lang="en">\n'
        "<head>\n"
        "<title>live_eval</title>\n"
        f"{variables_script(state.variables, options)}\n"
        "</head>\n"
        "<body>\n"
        f"{error}\n"
        f"{body}\n"
        f"{timing}\n"
        f"{footer}\n"
        "</body>\n"
        "</html>"
    )


class ResultRenderer:
    """Keep the preview state and push throttled refreshes to a sink.

    Example:
        ```python
        renderer = ResultRenderer(sink, RenderOptions(), update_interval_ms=50)
        renderer.on_print("hello\\n", request_id=1)
        ```
    """

    def __init__(
        self,
        sink: RenderSink,
        options: RenderOptions | None = None,
        *,
        update_interval_ms: int = 50,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        """Create a renderer with empty state.

        Example:
            ```python
            renderer = ResultRenderer(sink, update_interval_ms=0)
            ```
        """
        self._sink = sink
        self._options = options or RenderOptions()
        self._lock = threading.RLock()
        self._state = RenderState()
        self._listeners: list[Callable[[RenderState], None]] = []
        self._disposed = False
        self._timer_factory = timer_factory
        self.throttled_update = Throttler(
            self.update, update_interval_ms, timer_factory=timer_factory
        )

    @property
    def state(self) -> RenderState:
        """A copy of the current render state.

        Example:
            ```python
            seconds = renderer.state.time_ms
            ```
        """
        with self._lock:
            return RenderState(
                error_text=self._state.error_text,
                stderr_text=self._state.stderr_text,
                print_text=self._state.print_text,
                print_request_id=self._state.print_request_id,
                variables=dict(self._state.variables),
                time_ms=self._state.time_ms,
                time_regressed=self._state.time_regressed,
                latest_request_id=self._state.latest_request_id,
            )

    @property
    def options(self) -> RenderOptions:
        """Current presentation options.

        Example:
            ```python
            placement = renderer.options.print_result_placement
            ```
        """
        return self._options

    @options.setter
    def options(self, options: RenderOptions) -> None:
        """Replace presentation options after a settings change.

        Example:
            ```python
            renderer.options = RenderOptions(show_footer=False)
            ```
        """
        with self._lock:
            self._options = options

    def set_update_interval(self, update_interval_ms: int) -> None:
        """Change the minimum time between refreshes.

        Example:
            ```python
            renderer.set_update_interval(100)
            ```
        """
        self.throttled_update.cancel()
        self.throttled_update = Throttler(
            self.update, update_interval_ms, timer_factory=self._timer_factory
        )

    def on_change(self, listener: Callable[[RenderState], None]) -> None:
        """Register a callback fired once per completed render.

        Example:
            ```python
            renderer.on_change(lambda state: print(state.time_ms))
            ```
        """
        self._listeners.append(listener)

    def begin_request(self, request_id: int) -> None:
        """Mark `request_id` as the newest request; older outcomes are ignored from now on.

        Example:
            ```python
            supervisor.execute(request, before_send=renderer.begin_request)
            ```
        """
        with self._lock:
            if request_id > self._state.latest_request_id:
                self._state.latest_request_id = request_id
                self._state.stderr_text = ""

    def _is_stale(self, request_id: int) -> bool:
        """Whether an outcome belongs to a request older than the newest one.

        Example:
            ```python
            if renderer._is_stale(3):
                return
            ```
        """
        return 0 < request_id < self._state.latest_request_id

    def on_result(self, result: Result) -> None:
        """Replace variables, prints and timing with a final result.

        Example:
            ```python
            renderer.on_result(Result(variables={"x": 1}, elapsed_ms=3.2, request_id=1))
            ```
        """
        with self._lock:
            if self._is_stale(result.request_id):
                logger.debug("Dropping result of superseded request %s", result.request_id)
                return
            state = self._state
            state.variables = dict(result.variables)
            state.print_text = result.user_prints
            state.print_request_id = result.request_id
            state.error_text = result.user_error
            elapsed = math.floor(result.elapsed_ms)
            state.time_regressed = state.time_ms is not None and elapsed > state.time_ms
            state.time_ms = elapsed
        self.throttled_update()

    def on_print(self, text: str, request_id: int = 0) -> None:
        """Add printed text; the first chunk of a new request replaces the old output.

        Example:
            ```python
            renderer.on_print("hello\\n", request_id=2)
            ```
        """
        with self._lock:
            if self._is_stale(request_id):
                return
            state = self._state
            if request_id and request_id != state.print_request_id:
                state.print_text = text
                state.print_request_id = request_id
            else:
                state.print_text += text
        self.throttled_update()

    def on_error(self, text: str, refresh: bool = False) -> None:
        """Store error text; with `refresh` the preview updates right away.

        Example:
            ```python
            renderer.on_error("ValueError: invalid literal", refresh=True)
            ```
        """
        with self._lock:
            self._state.error_text = text
        if refresh:
            self.throttled_update.cancel()
            self.update()

    def on_stderr(self, text: str) -> None:
        """Append diagnostic text the interpreter wrote to stderr.

        Example:
            ```python
            renderer.on_stderr("DeprecationWarning: ...\\n")
            ```
        """
        with self._lock:
            self._state.stderr_text += text
        self.throttled_update()

    def display_process_error(self, message: str) -> None:
        """Show a problem with the interpreter process itself, bypassing the throttle.

        Example:
            ```python
            renderer.display_process_error("live_eval crashed unexpectedly! err: 1")
            ```
        """
        text = f"Error in live_eval!\n{message}"
        if "No such file" in message or "ENOENT" in message or "not found" in message:
            text += _MISSING_PYTHON_HINT
        self.on_error(text, refresh=True)

    def clear_print(self) -> None:
        """Empty the print area.

        Example:
            ```python
            renderer.clear_print()
            ```
        """
        with self._lock:
            self._state.print_text = ""

    def render(self) -> str:
        """Render the current state; identical state gives identical output.

        Example:
            ```python
            document = renderer.render()
            ```
        """
        with self._lock:
            return render_document(self._state, self._options)

    def show_landing_page(self) -> None:
        """Show the welcome page before the first evaluation.

        Example:
            ```python
            renderer.show_landing_page()
            ```
        """
        self._push(LANDING_PAGE)

    def update(self) -> None:
        """Render now, hand the document to the sink and notify listeners.

        Example:
            ```python
            renderer.update()
            ```
        """
        if self._disposed:
            return
        document = self.render()
        if not self._push(document):
            return
        state = self.state
        for listener in list(self._listeners):
            listener(state)

    def dispose(self) -> None:
        """Cancel pending refreshes; later updates are ignored.

        Example:
            ```python
            renderer.dispose()
            ```
        """
        self._disposed = True
        self.throttled_update.cancel()

    def _push(self, document: str) -> bool:
        """Send a document to the sink; False when the sink is already gone.

        Example:
            ```python
            renderer._push("<html></html>")
            ```
        """
        try:
            self._sink.render_document(document)
        except SinkDisposedError as exc:
            # The panel was closed between a throttled call and its run.
            logger.warning("Preview is gone, skipping refresh: %s", exc)
            return False
        return True
