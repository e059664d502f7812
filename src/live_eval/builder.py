from __future__ import annotations

import logging
from dataclasses import dataclass

from .execution.types import EvaluationRequest

logger = logging.getLogger(__name__)

SAVE_MARKER = "#$save"
END_MARKER = "#$end"
RESTART_MARKER = "#$restart"


@dataclass(frozen=True, slots=True)
class Directives:
    """Line indexes of the in-source markers found in a document.

    Example:
        ```python
        found = Directives(save_line=3, end_line=None, restart=False)
        ```
    """

    save_line: int | None = None
    end_line: int | None = None
    restart: bool = False


def _marker_at_end(line: str, marker: str) -> bool:
    """Whether a line ends with the marker, ignoring trailing whitespace.

    Example:
        ```python
        assert _marker_at_end("x = 1  #$save  ", "#$save")
        ```
    """
    return line.rstrip().endswith(marker)


def scan_directives(lines: list[str]) -> Directives:
    """Find the last save marker, the first end marker and any restart marker.

    A save marker after the end marker is ignored since that code never runs.

    Example:
        ```python
        found = scan_directives(["import json", "#$save", "x = 1"])
        ```
    """
    save_line: int | None = None
    end_line: int | None = None
    restart = False
    for index, line in enumerate(lines):
        if _marker_at_end(line, RESTART_MARKER):
            restart = True
        if _marker_at_end(line, SAVE_MARKER):
            save_line = index
        if _marker_at_end(line, END_MARKER):
            end_line = index
            break
    return Directives(save_line=save_line, end_line=end_line, restart=restart)


def _is_blank(line: str) -> bool:
    """Whether the line holds only whitespace.

    Example:
        ```python
        assert _is_blank("   ")
        ```
    """
    return not line.strip()


def _is_indented(line: str) -> bool:
    """Whether a non-blank line starts after column 0.

    Example:
        ```python
        assert _is_indented("    return x")
        ```
    """
    return not _is_blank(line) and line[0] in " \t"


def _next_code_line(lines: list[str], index: int) -> int | None:
    """Index of the first non-blank line at or after `index`.

    Example:
        ```python
        nxt = _next_code_line(["", "", "x = 1"], 0)
        ```
    """
    for candidate in range(index, len(lines)):
        if not _is_blank(lines[candidate]):
            return candidate
    return None


def find_block(lines: list[str], line: int) -> tuple[int, int]:
    """Return the inclusive (start, end) line range of the block around `line`.

    A block is a paragraph of column-0 statements together with their indented
    bodies. It ends before a blank line whose next code line starts at column 0,
    or at the end of the document. Blank lines inside an indented body do not
    end it.

    Example:
        ```python
        start, end = find_block(["def f():", "    return 1", "", "x = f()"], 1)
        ```
    """
    if not lines:
        return 0, 0
    line = max(0, min(line, len(lines) - 1))

    start = line
    while start > 0:
        current = lines[start]
        if _is_blank(current):
            nxt = _next_code_line(lines, start)
            if nxt is None or not _is_indented(lines[nxt]):
                break
        elif not _is_indented(current) and _is_blank(lines[start - 1]):
            break
        start -= 1
    if _is_blank(lines[start]):
        code_line = _next_code_line(lines, start)
        if code_line is None:
            return line, line
        start = code_line

    end = start
    while end + 1 < len(lines):
        following = lines[end + 1]
        if _is_blank(following):
            nxt = _next_code_line(lines, end + 1)
            if nxt is None or not _is_indented(lines[nxt]):
                break
        end += 1
    return start, end


def default_imports_text(imports: list[str], eol: str) -> str:
    """Turn the default imports setting into source text to insert.

    Bare module names become `import name`; full statements are kept.

    Example:
        ```python
        assert default_imports_text(["math", "from os import path"], "\\n") == "import math\\nfrom os import path\\n"
        ```
    """
    statements: list[str] = []
    for item in imports:
        item = item.strip()
        if not item:
            continue
        first_word = item.split(" ")[0]
        if first_word not in {"import", "from"}:
            item = "import " + item
        statements.append(item)
    if not statements:
        return ""
    return eol.join(statements) + eol


class EvaluationRequestBuilder:
    """Decide what each accepted edit sends to the interpreter.

    Example:
        ```python
        builder = EvaluationRequestBuilder(restart_delay_ms=300)
        request = builder.build("x = 1\\ny = 2", "/tmp/demo.py", "\\n")
        ```
    """

    def __init__(self, restart_delay_ms: int = 0) -> None:
        """Create a builder with an empty save-point cache.

        Example:
            ```python
            builder = EvaluationRequestBuilder()
            ```
        """
        self.restart_delay_ms = restart_delay_ms
        self.restart_mode = False
        self._saved_prefix: str | None = None
        self._last_evaluated: str | None = None
        self._last_tail: str | None = None

    @property
    def saved_prefix(self) -> str | None:
        """The save-point prefix the interpreter currently holds, if any.

        Example:
            ```python
            cached = builder.saved_prefix
            ```
        """
        return self._saved_prefix

    def invalidate_save_point(self) -> None:
        """Forget the cached prefix; the next save-point run executes it again.

        Example:
            ```python
            builder.invalidate_save_point()
            ```
        """
        self._saved_prefix = None
        self._last_evaluated = None

    def build(
        self,
        text: str,
        file_path: str,
        eol: str,
        show_global_vars: bool = True,
    ) -> EvaluationRequest | None:
        """Build a whole-file request, or None when only code after `#$end` changed.

        Example:
            ```python
            request = builder.build(document_text, "/tmp/demo.py", "\\n")
            ```
        """
        lines = text.split(eol)
        directives = scan_directives(lines)
        self.restart_mode = directives.restart

        tail = ""
        if directives.end_line is not None:
            tail = eol.join(lines[directives.end_line + 1 :])
            lines = lines[: directives.end_line + 1]
        evaluated = eol.join(lines)
        if (
            directives.end_line is not None
            and evaluated == self._last_evaluated
            and tail != self._last_tail
        ):
            self._last_tail = tail
            logger.debug("Only code after %s changed, skipping run", END_MARKER)
            return None
        self._last_evaluated = evaluated
        self._last_tail = tail

        saved_code = ""
        use_save_point = False
        code = evaluated
        if directives.save_line is not None:
            prefix_lines = lines[: directives.save_line + 1]
            prefix = eol.join(prefix_lines)
            use_save_point = True
            if prefix != self._saved_prefix:
                saved_code = prefix
                self._saved_prefix = prefix
            code = eol * len(prefix_lines) + eol.join(lines[directives.save_line + 1 :])
        else:
            self._saved_prefix = None

        return EvaluationRequest(
            code=code,
            file_path=file_path,
            saved_code=saved_code,
            use_save_point=use_save_point,
            use_previous_variables=use_save_point and not saved_code,
            show_global_vars=show_global_vars,
            restart=directives.restart,
            restart_delay_ms=self.restart_delay_ms if directives.restart else 0,
        )

    def build_block(
        self,
        text: str,
        eol: str,
        start_line: int,
        end_line: int | None = None,
        file_path: str = "",
        show_global_vars: bool = True,
    ) -> EvaluationRequest:
        """Build a request running one block on top of the previous variables.

        With `end_line=None` the block around `start_line` is used. The code is
        padded with blank lines so reported line numbers match the document.

        Example:
            ```python
            request = builder.build_block(document_text, "\\n", start_line=9, end_line=11)
            ```
        """
        lines = text.split(eol)
        directives = scan_directives(lines)
        if end_line is None:
            start_line, end_line = find_block(lines, start_line)
        if start_line > end_line:
            start_line, end_line = end_line, start_line
        if directives.end_line is not None:
            end_line = min(end_line, directives.end_line)
        block = eol.join(lines[start_line : end_line + 1])
        return EvaluationRequest(
            code=eol * start_line + block,
            file_path=file_path,
            use_previous_variables=True,
            show_global_vars=show_global_vars,
        )
