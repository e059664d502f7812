from __future__ import annotations

import argparse
import logging
import os
import threading
import time
from dataclasses import fields, is_dataclass
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from live_eval import LiveEvalSession, PreviewSettings, SessionState
from live_eval.env_vars import EnvironmentVariablesProvider
from live_eval.renderer import RenderState
from live_eval.session import snapshot
from live_eval.settings import resolve_env_file
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

_CONSOLE = Console(no_color=False)
_ERR_CONSOLE = Console(stderr=True)

DEFAULT_RUN_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.2


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="lpe")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


class _FileDocument:
    """A file on disk seen as an editor document.

    Example:
        ```python
        document = _FileDocument(Path("demo.py"))
        ```
    """

    def __init__(self, path: Path) -> None:
        """Read the file once; call `reload` after it changes.

        Example:
            ```python
            document = _FileDocument(Path("/tmp/demo.py"))
            ```
        """
        self.path = path.resolve()
        self._text = self._read()

    @property
    def document_id(self) -> str:
        """File URI used as the document identity.

        Example:
            ```python
            assert document.document_id.startswith("file://")
            ```
        """
        return self.path.as_uri()

    @property
    def file_path(self) -> str:
        """Absolute path of the file.

        Example:
            ```python
            path = document.file_path
            ```
        """
        return str(self.path)

    @property
    def is_untitled(self) -> bool:
        """Files on disk always have a name.

        Example:
            ```python
            assert document.is_untitled is False
            ```
        """
        return False

    @property
    def eol(self) -> str:
        """Line ending detected from the file contents.

        Example:
            ```python
            lines = document.get_text().split(document.eol)
            ```
        """
        return "\r\n" if "\r\n" in self._text else "\n"

    def get_text(self) -> str:
        """Text as last read from disk.

        Example:
            ```python
            text = document.get_text()
            ```
        """
        return self._text

    def reload(self) -> None:
        """Read the file again.

        Example:
            ```python
            document.reload()
            ```
        """
        self._text = self._read()

    def insert_at_start(self, text: str) -> None:
        """Prepend text and write the file back.

        Example:
            ```python
            document.insert_at_start("import math\\n")
            ```
        """
        self._text = text + self._text
        self.path.write_bytes(self._text.encode("utf-8"))

    def _read(self) -> str:
        """Read the file keeping its original line endings.

        Example:
            ```python
            text = document._read()
            ```
        """
        return self.path.read_bytes().decode("utf-8", errors="replace")


class _DocumentSink:
    """Keep the latest preview document and optionally mirror it to an HTML file.

    Example:
        ```python
        sink = _DocumentSink(Path("preview.html"))
        ```
    """

    def __init__(self, html_out: Path | None = None) -> None:
        """Create a sink with no document yet.

        Example:
            ```python
            sink = _DocumentSink()
            ```
        """
        self.html_out = html_out
        self.latest = ""

    def render_document(self, document: str) -> None:
        """Store the document and write it out when a path is configured.

        Example:
            ```python
            sink.render_document("<html></html>")
            ```
        """
        self.latest = document
        if self.html_out is not None:
            self.html_out.write_text(document, encoding="utf-8")


def _to_jsonable(value: object) -> Any:
    """Convert CLI return values into printable payloads.

    Example:
        ```python
        payload = _to_jsonable(PreviewSettings())
        ```
    """
    if not isinstance(value, type) and is_dataclass(value):
        return {field.name: getattr(value, field.name) for field in fields(value)}
    if hasattr(value, "__dict__"):
        return vars(value)
    return value


def _line_range(value: str) -> tuple[int, int]:
    """Parse a 1-based inclusive `START:END` line range.

    Example:
        ```python
        assert _line_range("3:5") == (3, 5)
        ```
    """
    start, sep, end = value.partition(":")
    try:
        first = int(start)
        last = int(end) if sep else first
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected START:END, got {value!r}") from exc
    if first < 1 or last < 1:
        raise argparse.ArgumentTypeError("line numbers start at 1")
    return first, last


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for live Python evaluation.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="lpe",
        description=(
            "live-py-eval CLI\n"
            "Evaluate a Python file while you edit it and show its variables,\n"
            "prints and errors after every change."
        ),
        epilog=(
            "Quick Examples:\n"
            "  lpe watch demo.py\n"
            "  lpe watch demo.py --html-out preview.html\n"
            "  lpe run demo.py\n"
            "  lpe run demo.py --lines 10:12\n"
            "  lpe --config live_eval.toml settings\n\n"
            "Directives:\n"
            "  #$save     code above runs once, later runs reuse its variables\n"
            "  #$end      code below is not evaluated\n"
            "  #$restart  restart the interpreter before every run"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Settings TOML file with a [live_eval] table.\n"
            "camelCase keys such as whenToExecute are accepted."
        ),
    )
    parser.add_argument(
        "--workspace",
        help="Folder used for ${workspaceFolder} (default: the file's folder).",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for diagnostics on stderr (default: WARNING).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    watch_cmd = sub.add_parser(
        "watch",
        help="Re-evaluate a file every time it changes.",
        description=(
            "Watch a file and evaluate it after each change.\n"
            "Honors whenToExecute, delay and the in-source directives."
        ),
        epilog=(
            "Examples:\n"
            "  lpe watch demo.py\n"
            "  lpe watch demo.py --html-out preview.html --poll-interval 0.1"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    watch_cmd.add_argument("file")
    watch_cmd.add_argument(
        "--html-out",
        help="Also write the HTML preview to this path after every refresh.",
    )
    watch_cmd.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL_SECONDS,
        help=f"Seconds between file checks (default: {DEFAULT_POLL_INTERVAL_SECONDS}).",
    )

    run_cmd = sub.add_parser(
        "run",
        help="Evaluate a file, or some of its lines, once.",
        description=(
            "Evaluate a file once and print its variables.\n"
            "Exits with status 1 when the code raised an error."
        ),
        epilog=(
            "Examples:\n"
            "  lpe run demo.py\n"
            "  lpe run demo.py --line 4\n"
            "  lpe run demo.py --lines 10:12"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file")
    selection = run_cmd.add_mutually_exclusive_group()
    selection.add_argument(
        "--line",
        type=int,
        help="Evaluate only the block around this 1-based line.",
    )
    selection.add_argument(
        "--lines",
        type=_line_range,
        help="Evaluate only this 1-based inclusive START:END range.",
    )
    run_cmd.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_RUN_TIMEOUT_SECONDS,
        help=f"Seconds to wait for the result (default: {DEFAULT_RUN_TIMEOUT_SECONDS}).",
    )

    sub.add_parser(
        "settings",
        help="Show the effective settings.",
        description="Show the settings after defaults and the --config file are merged.",
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def configure_logging(level: str) -> None:
    """Send library logs to stderr through Rich.

    Example:
        ```python
        configure_logging("INFO")
        ```
    """
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_ERR_CONSOLE, show_path=False)],
    )


def load_settings(args: argparse.Namespace) -> PreviewSettings:
    """Create settings from the global --config flag.

    Example:
        ```python
        settings = load_settings(args)
        ```
    """
    if args.config:
        return PreviewSettings.from_file(args.config)
    return PreviewSettings()


def _workspace_for(args: argparse.Namespace, document: _FileDocument) -> str:
    """Workspace folder from --workspace, defaulting to the file's folder.

    Example:
        ```python
        folder = _workspace_for(args, document)
        ```
    """
    if args.workspace:
        return os.path.abspath(args.workspace)
    return str(document.path.parent)


def _print_state(state: RenderState) -> None:
    """Render variables, prints and errors of one evaluation.

    Example:
        ```python
        _print_state(session.renderer.state)
        ```
    """
    table = Table(title="Variables")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for name, value in state.variables.items():
        table.add_row(name, Pretty(value))
    _CONSOLE.print(table)
    if state.print_text:
        _CONSOLE.print(Panel(state.print_text.rstrip("\n"), title="Print Output", border_style="cyan"))
    error_text = state.error_text + state.stderr_text
    if error_text:
        _CONSOLE.print(Panel(error_text.rstrip("\n"), title="Error", border_style="red"))
    if state.time_ms is not None:
        color = "red" if state.time_regressed else "green"
        _CONSOLE.print(f"[{color}]{state.time_ms} ms[/{color}]")


def _open_document(path: str) -> _FileDocument | None:
    """Open a file as a document, reporting a missing file.

    Example:
        ```python
        document = _open_document("demo.py")
        ```
    """
    file_path = Path(path)
    if not file_path.is_file():
        _CONSOLE.print(Panel.fit(f"File not found: {path}", style="bold red"))
        return None
    return _FileDocument(file_path)


def _run_once(args: argparse.Namespace, settings: PreviewSettings) -> int:
    """Handle `lpe run`.

    Example:
        ```python
        code = _run_once(args, PreviewSettings())
        ```
    """
    document = _open_document(args.file)
    if document is None:
        return 1
    finished = threading.Event()
    # Skipping the landing page makes start() evaluate the whole file, which would
    # run it a second time before the selected lines.
    session = LiveEvalSession(
        settings.with_changes(when_to_execute="onKeybinding", skip_landing_page=False),
        _DocumentSink(),
        workspace_folder=_workspace_for(args, document),
        status_callback=lambda running: None if running else finished.set(),
    )
    try:
        session.start(document)
        finished.clear()
        if args.line is not None:
            session.run_block(args.line - 1)
        elif args.lines is not None:
            first, last = args.lines
            session.run_block(first - 1, last - 1)
        else:
            session.run_now()
        if not finished.wait(args.timeout):
            _CONSOLE.print(Panel.fit(f"No result after {args.timeout}s", style="bold red"))
            return 1
        state = session.renderer.state
    finally:
        session.dispose()
    _print_state(state)
    return 1 if state.error_text else 0


def _watch(args: argparse.Namespace, settings: PreviewSettings) -> int:
    """Handle `lpe watch` until Ctrl+C or the file disappears.

    Example:
        ```python
        code = _watch(args, PreviewSettings())
        ```
    """
    document = _open_document(args.file)
    if document is None:
        return 1
    workspace = _workspace_for(args, document)
    provider = EnvironmentVariablesProvider(resolve_env_file(settings, workspace))
    html_out = Path(args.html_out) if args.html_out else None
    session = LiveEvalSession(
        settings,
        _DocumentSink(html_out),
        workspace_folder=workspace,
        env_provider=provider,
    )
    session.renderer.on_change(_print_state)
    _CONSOLE.print(Panel.fit(f"Watching {document.file_path} (Ctrl+C to stop)", style="bold green"))
    session.start(document)
    last_mtime = os.path.getmtime(document.path)
    try:
        while session.state is SessionState.RUNNING:
            time.sleep(args.poll_interval)
            provider.check_for_changes(workspace)
            if not document.path.exists():
                session.on_close(document)
                break
            mtime = os.path.getmtime(document.path)
            if mtime == last_mtime:
                continue
            last_mtime = mtime
            document.reload()
            session.on_change(snapshot(document))
            session.on_save(document)
    except KeyboardInterrupt:
        _CONSOLE.print("Stopped.")
    finally:
        session.dispose()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `lpe` CLI command handler.

    Example:
        ```python
        code = main(["run", "demo.py"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level)
    try:
        settings = load_settings(args)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"Invalid settings: {exc}", style="bold red"))
        return 2

    if args.command == "settings":
        _CONSOLE.print(
            Panel.fit(Pretty(_to_jsonable(settings)), title="Settings", border_style="cyan")
        )
        return 0
    if args.command == "run":
        return _run_once(args, settings)
    if args.command == "watch":
        return _watch(args, settings)

    parser.error("Unhandled command")
    return 2
