from __future__ import annotations

import os
import re
import shutil
import sys
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigurationError

WHEN_TO_EXECUTE = {"onSave", "afterDelay", "onKeybinding"}
PRINT_PLACEMENTS = {"top", "bottom"}

# Editor-style keys accepted in settings files next to the snake_case names.
_KEY_ALIASES = {
    "pythonPath": "python_path",
    "pythonOptions": "python_options",
    "envFile": "env_file",
    "whenToExecute": "when_to_execute",
    "restartDelay": "restart_delay",
    "showGlobalVars": "show_global_vars",
    "printResultPlacement": "print_result_placement",
    "showFooter": "show_footer",
    "defaultImports": "default_imports",
    "skipLandingPage": "skip_landing_page",
    "htmlUpdateFrequency": "html_update_frequency",
    "showToLevel": "show_to_level",
    "maxStringLength": "max_string_length",
}
_ENV_PATTERN = re.compile(r"\$\{env:([^}]+)\}")


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read a settings TOML file and return its `[live_eval]` table with snake_case keys.

    Example:
        ```python
        raw = _read_settings_toml(Path("/tmp/live_eval.toml"))
        ```
    """
    if not path.exists():
        return {}
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("live_eval", raw)
    if not isinstance(table, dict):
        raise ValueError("Settings config must be a TOML table")
    return {_KEY_ALIASES.get(key, key): value for key, value in table.items()}


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings settings field.

    Example:
        ```python
        options = _list_of_str(["-u", "-X", "dev"], "python_options")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


_DEFAULT_SETTINGS_RAW = _read_settings_toml(_default_settings_path())
DEFAULT_PYTHON_OPTIONS = _list_of_str(
    _DEFAULT_SETTINGS_RAW.get("python_options", ["-u"]), "python_options"
)
DEFAULT_ENV_FILE = str(_DEFAULT_SETTINGS_RAW.get("env_file", "${workspaceFolder}/.env"))
DEFAULT_WHEN_TO_EXECUTE = str(_DEFAULT_SETTINGS_RAW.get("when_to_execute", "afterDelay"))
DEFAULT_DELAY_MS = int(_DEFAULT_SETTINGS_RAW.get("delay", 300))
DEFAULT_RESTART_DELAY_MS = int(_DEFAULT_SETTINGS_RAW.get("restart_delay", 300))
DEFAULT_HTML_UPDATE_FREQUENCY_MS = int(_DEFAULT_SETTINGS_RAW.get("html_update_frequency", 50))
DEFAULT_DEFAULT_IMPORTS = _list_of_str(
    _DEFAULT_SETTINGS_RAW.get("default_imports", []), "default_imports"
)


@dataclass(slots=True)
class PreviewSettings:
    """Settings consumed by a live evaluation session.

    Example:
        ```python
        settings = PreviewSettings(when_to_execute="afterDelay", delay=50)
        ```
    """

    python_path: str = str(_DEFAULT_SETTINGS_RAW.get("python_path", ""))
    python_options: list[str] = field(default_factory=lambda: DEFAULT_PYTHON_OPTIONS.copy())
    env_file: str = DEFAULT_ENV_FILE
    when_to_execute: str = DEFAULT_WHEN_TO_EXECUTE
    delay: int = DEFAULT_DELAY_MS
    restart_delay: int = DEFAULT_RESTART_DELAY_MS
    show_global_vars: bool = bool(_DEFAULT_SETTINGS_RAW.get("show_global_vars", True))
    print_result_placement: str = str(_DEFAULT_SETTINGS_RAW.get("print_result_placement", "top"))
    show_footer: bool = bool(_DEFAULT_SETTINGS_RAW.get("show_footer", True))
    default_imports: list[str] = field(default_factory=lambda: DEFAULT_DEFAULT_IMPORTS.copy())
    skip_landing_page: bool = bool(_DEFAULT_SETTINGS_RAW.get("skip_landing_page", False))
    html_update_frequency: int = DEFAULT_HTML_UPDATE_FREQUENCY_MS
    show_to_level: int = int(_DEFAULT_SETTINGS_RAW.get("show_to_level", 2))
    max_string_length: int = int(_DEFAULT_SETTINGS_RAW.get("max_string_length", 70))
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate enumerated and numeric fields after dataclass initialization.

        Example:
            ```python
            PreviewSettings(print_result_placement="bottom")
            ```
        """
        if self.when_to_execute not in WHEN_TO_EXECUTE:
            raise ValueError("when_to_execute must be 'onSave', 'afterDelay' or 'onKeybinding'")
        if self.print_result_placement not in PRINT_PLACEMENTS:
            raise ValueError("print_result_placement must be 'top' or 'bottom'")
        for name in ("delay", "restart_delay", "html_update_frequency"):
            if int(getattr(self, name)) < 0:
                raise ValueError(f"'{name}' must be zero or a positive number of milliseconds")

    @classmethod
    def from_file(cls, config_path: str) -> "PreviewSettings":
        """Create settings from a TOML file, falling back to defaults per key.

        Example:
            ```python
            settings = PreviewSettings.from_file("/tmp/live_eval.toml")
            ```
        """
        raw = _read_settings_toml(Path(config_path))
        known = {f.name for f in fields(cls)} - {"config_path"}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        values: dict[str, Any] = dict(raw)
        for name in ("python_options", "default_imports"):
            if name in values:
                values[name] = _list_of_str(values[name], name)
        return cls(**values, config_path=config_path)

    def with_changes(self, **changes: Any) -> "PreviewSettings":
        """Return a copy with some fields replaced.

        Example:
            ```python
            faster = settings.with_changes(delay=50)
            ```
        """
        return replace(self, **changes)


def _substitute(value: str, workspace_folder: str, environ: Mapping[str, str]) -> str:
    """Expand `${workspaceFolder}` and `${env:NAME}` placeholders.

    Example:
        ```python
        path = _substitute("${env:HOME}/py", "/work", os.environ)
        ```
    """
    value = value.replace("${workspaceFolder}", workspace_folder)
    return _ENV_PATTERN.sub(lambda match: environ.get(match.group(1), ""), value)


def resolve_python_path(
    settings: PreviewSettings,
    workspace_folder: str = "",
    environ: Mapping[str, str] | None = None,
) -> str:
    """Resolve the interpreter to launch from settings.

    An empty setting means the interpreter running live_eval. Relative paths
    containing a separator are anchored at the workspace folder.

    Example:
        ```python
        python = resolve_python_path(PreviewSettings(python_path="${workspaceFolder}/.venv/bin/python"), "/work")
        ```
    """
    env = os.environ if environ is None else environ
    python_path = settings.python_path.strip()
    if not python_path:
        return sys.executable

    folder = workspace_folder or os.getcwd()
    python_path = _substitute(python_path, folder, env)
    has_separator = os.sep in python_path or (os.altsep is not None and os.altsep in python_path)
    if has_separator and not os.path.isabs(python_path):
        python_path = os.path.join(folder, python_path)
    if has_separator:
        if not os.path.exists(python_path):
            raise ConfigurationError(f"Python path does not exist: {python_path}")
        return python_path
    if shutil.which(python_path) is None:
        raise ConfigurationError(f"Python executable not found on PATH: {python_path}")
    return python_path


def resolve_env_file(settings: PreviewSettings, workspace_folder: str = "") -> str:
    """Expand placeholders in the env file setting.

    Example:
        ```python
        env_file = resolve_env_file(PreviewSettings(), "/work")
        ```
    """
    folder = workspace_folder or os.getcwd()
    env_file = _substitute(settings.env_file, folder, os.environ)
    if env_file and not os.path.isabs(env_file):
        env_file = os.path.join(folder, env_file)
    return env_file
