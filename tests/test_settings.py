from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from live_eval.errors import ConfigurationError
from live_eval.settings import PreviewSettings, resolve_env_file, resolve_python_path


def test_defaults_come_from_bundled_settings() -> None:
    settings = PreviewSettings()

    assert settings.when_to_execute == "afterDelay"
    assert settings.delay == 300
    assert settings.restart_delay == 300
    assert settings.python_options == ["-u"]
    assert settings.print_result_placement == "top"
    assert settings.html_update_frequency == 50
    assert settings.skip_landing_page is False


def test_list_defaults_are_not_shared() -> None:
    first = PreviewSettings()
    second = PreviewSettings()

    first.python_options.append("-X")

    assert second.python_options == ["-u"]


def test_from_file_accepts_camel_case_keys(tmp_path: Path) -> None:
    config = tmp_path / "live_eval.toml"
    config.write_text(
        (
            "[live_eval]\n"
            "whenToExecute = \"onSave\"\n"
            "delay = 50\n"
            "printResultPlacement = \"bottom\"\n"
            "defaultImports = [\"math\"]\n"
        ),
        encoding="utf-8",
    )

    settings = PreviewSettings.from_file(str(config))

    assert settings.when_to_execute == "onSave"
    assert settings.delay == 50
    assert settings.print_result_placement == "bottom"
    assert settings.default_imports == ["math"]
    assert settings.show_footer is True
    assert settings.config_path == str(config)


def test_from_file_rejects_unknown_keys(tmp_path: Path) -> None:
    config = tmp_path / "live_eval.toml"
    config.write_text("[live_eval]\nturbo = true\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Unknown settings: turbo"):
        PreviewSettings.from_file(str(config))


def test_from_file_rejects_non_string_options(tmp_path: Path) -> None:
    config = tmp_path / "live_eval.toml"
    config.write_text("[live_eval]\npython_options = [1]\n", encoding="utf-8")

    with pytest.raises(ValueError, match="python_options"):
        PreviewSettings.from_file(str(config))


@pytest.mark.parametrize(
    "changes",
    [
        {"when_to_execute": "always"},
        {"print_result_placement": "left"},
        {"delay": -1},
        {"html_update_frequency": -5},
    ],
)
def test_invalid_values_raise_value_error(changes: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        PreviewSettings(**changes)  # type: ignore[arg-type]


def test_with_changes_returns_validated_copy() -> None:
    settings = PreviewSettings()

    faster = settings.with_changes(delay=10)

    assert faster.delay == 10
    assert settings.delay == 300
    with pytest.raises(ValueError):
        settings.with_changes(when_to_execute="sometimes")


def test_empty_python_path_uses_current_interpreter() -> None:
    assert resolve_python_path(PreviewSettings()) == sys.executable


def test_python_path_expands_workspace_folder(tmp_path: Path) -> None:
    python = tmp_path / ".venv" / "bin" / "python"
    python.parent.mkdir(parents=True)
    python.write_text("", encoding="utf-8")
    settings = PreviewSettings(python_path="${workspaceFolder}/.venv/bin/python")

    assert resolve_python_path(settings, str(tmp_path)) == str(python)


def test_relative_python_path_is_anchored_at_workspace(tmp_path: Path) -> None:
    python = tmp_path / "env" / "python"
    python.parent.mkdir()
    python.write_text("", encoding="utf-8")
    settings = PreviewSettings(python_path=os.path.join("env", "python"))

    assert resolve_python_path(settings, str(tmp_path)) == str(python)


def test_python_path_expands_env_variables(tmp_path: Path) -> None:
    python = tmp_path / "python"
    python.write_text("", encoding="utf-8")
    settings = PreviewSettings(python_path="${env:PY_HOME}/python")

    resolved = resolve_python_path(settings, "/unused", environ={"PY_HOME": str(tmp_path)})

    assert resolved == str(python)


def test_missing_python_path_raises_configuration_error(tmp_path: Path) -> None:
    settings = PreviewSettings(python_path="${workspaceFolder}/nope/python")

    with pytest.raises(ConfigurationError, match="does not exist"):
        resolve_python_path(settings, str(tmp_path))


def test_unknown_python_command_raises_configuration_error() -> None:
    settings = PreviewSettings(python_path="definitely-not-a-python-binary")

    with pytest.raises(ConfigurationError, match="not found on PATH"):
        resolve_python_path(settings)


def test_env_file_is_resolved_against_workspace(tmp_path: Path) -> None:
    assert resolve_env_file(PreviewSettings(), str(tmp_path)) == os.path.join(str(tmp_path), ".env")
    assert resolve_env_file(PreviewSettings(env_file="local.env"), str(tmp_path)) == os.path.join(
        str(tmp_path), "local.env"
    )
