from __future__ import annotations

import io
from pathlib import Path

import pytest

from lpe import cli


def test_cli_top_level_help_examples(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Quick Examples:" in output
    assert "lpe watch demo.py" in output
    assert "#$save" in output


def test_cli_subcommand_help(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["run", "--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Evaluate a file once and print its variables." in output


def test_cli_print_help_writes_to_requested_stream(capsys: pytest.CaptureFixture[str]) -> None:
    parser = cli.build_parser()
    buffer = io.StringIO()
    parser.print_help(file=buffer)
    output = capsys.readouterr().out
    assert output == ""
    help_text = buffer.getvalue()
    assert "Usage:" in help_text
    assert "live-py-eval CLI" in help_text


def test_cli_line_and_lines_are_exclusive(tmp_path: Path) -> None:
    script = tmp_path / "demo.py"
    script.write_text("x = 1\n", encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        cli.main(["run", str(script), "--line", "1", "--lines", "1:1"])
    assert exc.value.code == 2


def test_cli_rejects_bad_line_range(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["run", str(tmp_path / "demo.py"), "--lines", "a:b"])
    assert exc.value.code == 2


def test_cli_settings_shows_defaults(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["settings"])
    output = capsys.readouterr().out
    assert code == 0
    assert "when_to_execute" in output
    assert "afterDelay" in output


def test_cli_settings_reads_config_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = tmp_path / "live_eval.toml"
    config.write_text('[live_eval]\nwhenToExecute = "onSave"\n', encoding="utf-8")

    code = cli.main(["--config", str(config), "settings"])
    output = capsys.readouterr().out

    assert code == 0
    assert "onSave" in output


def test_cli_invalid_config_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = tmp_path / "live_eval.toml"
    config.write_text("[live_eval]\ndelay = -3\n", encoding="utf-8")

    code = cli.main(["--config", str(config), "settings"])
    output = capsys.readouterr().out

    assert code == 2
    assert "Invalid settings" in output


def test_cli_run_prints_variables(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = tmp_path / "demo.py"
    script.write_text("answer = 40 + 2\nprint('hello there')\n", encoding="utf-8")

    code = cli.main(["run", str(script)])
    output = capsys.readouterr().out

    assert code == 0
    assert "answer" in output
    assert "42" in output
    assert "hello there" in output


def test_cli_run_reports_user_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = tmp_path / "broken.py"
    script.write_text("x = 1\n1 / 0\n", encoding="utf-8")

    code = cli.main(["run", str(script)])
    output = capsys.readouterr().out

    assert code == 1
    assert "ZeroDivisionError" in output


def test_cli_run_selected_lines(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = tmp_path / "demo.py"
    script.write_text("first = 1\n\nsecond = 2\n", encoding="utf-8")

    code = cli.main(["run", str(script), "--lines", "3:3"])
    output = capsys.readouterr().out

    assert code == 0
    assert "second" in output
    assert "first" not in output


def test_cli_run_executes_once_when_landing_page_is_skipped(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    counter = tmp_path / "runs.txt"
    counter.write_text("", encoding="utf-8")
    script = tmp_path / "demo.py"
    script.write_text(
        "import pathlib\n"
        f"counter = pathlib.Path({str(counter)!r})\n"
        "counter.write_text(counter.read_text() + '.')\n",
        encoding="utf-8",
    )
    config = tmp_path / "live_eval.toml"
    config.write_text("[live_eval]\nskipLandingPage = true\n", encoding="utf-8")

    code = cli.main(["--config", str(config), "run", str(script)])
    capsys.readouterr()

    assert code == 0
    assert counter.read_text(encoding="utf-8") == "."


def test_cli_run_missing_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", str(tmp_path / "nope.py")])
    output = capsys.readouterr().out

    assert code == 1
    assert "File not found" in output
