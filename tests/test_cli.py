"""Tests for the chub command line.

The compile tests run the embedded brainfuck toolchain through the real
sandbox, so they need no compiler on PATH.
"""

import json
import zipfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from compilerhub import __version__
from compilerhub.cli import EXIT_COMPILE_FAILED, EXIT_SUCCESS, detect_language, main

HELLO_A = "++++++++[>++++++++<-]>+."


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestDetectLanguage:
    @pytest.mark.parametrize(
        ("source", "expected"),
        [
            ("main.c", "c"),
            ("lib.H", "c"),
            ("main.cc", "cpp"),
            ("Main.java", "java"),
            ("main.swift", "swift"),
            ("hello.bf", "brainfuck"),
            ("main.go", "go"),
            ("notes.txt", None),
            ("-", None),
            (None, None),
        ],
    )
    def test_extensions(self, source: str | None, expected: str | None) -> None:
        assert detect_language(source) == expected


class TestCompileCommand:
    def test_inline_code(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["compile", "-l", "brainfuck", "-c", HELLO_A])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert "brainfuck job" in result.stdout
        assert "succeeded" in result.stdout
        for stage in ("lex", "parse", "ir", "execute"):
            assert stage in result.stdout

    def test_file_language_is_detected(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "hello.bf"
        path.write_text(HELLO_A, encoding="utf-8")
        result = runner.invoke(main, ["compile", "--json", str(path)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        data = json.loads(result.stdout)
        assert data["language"] == "brainfuck"
        assert data["execution"]["output"] == "A"

    def test_stdin(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["compile", "-l", "brainfuck", "--json", "-"], input=HELLO_A)
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert json.loads(result.stdout)["status"] == "succeeded"

    def test_compile_error(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["compile", "-l", "brainfuck", "-c", "+\n+]"])
        assert result.exit_code == EXIT_COMPILE_FAILED
        assert "main.bf:2:2: error: unmatched ']'" in result.stdout
        assert "not run" in result.stdout

    def test_analyze(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["compile", "-l", "brainfuck", "--analyze", "--json", "-c", HELLO_A])
        assert result.exit_code == EXIT_SUCCESS, result.output
        assert [s["name"] for s in json.loads(result.stdout)["stages"]] == ["lex", "parse"]

    def test_export(self, runner: CliRunner, tmp_path: Path) -> None:
        out = tmp_path / "out"
        result = runner.invoke(main, ["compile", "-l", "brainfuck", "-c", HELLO_A, "--export", str(out)])
        assert result.exit_code == EXIT_SUCCESS, result.output
        bundles = list(out.glob("compilerhub-*.zip"))
        assert len(bundles) == 1
        assert "Artifacts written to" in result.stderr
        with zipfile.ZipFile(bundles[0]) as zf:
            assert "source.bf" in zf.namelist()

    @pytest.mark.parametrize(
        ("args", "message"),
        [
            (["compile", "-c", HELLO_A], "Cannot detect the language"),
            (["compile", "missing.bf"], "No such file"),
            (["compile", "-l", "brainfuck"], "No code provided"),
            (["compile", "-l", "brainfuck", "-c", "   "], "Source code is empty"),
            (["compile", "-l", "brainfuck", "-t", "0", "-c", HELLO_A], "Invalid timeout"),
            (["compile", "-l", "cobol", "-c", "x"], "Invalid value for '-l'"),
        ],
    )
    def test_usage_errors(self, runner: CliRunner, tmp_path: Path, args: list[str], message: str) -> None:
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(main, args)
        assert result.exit_code == 2
        assert message in result.stderr


class TestOtherCommands:
    def test_languages(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["languages"])
        assert result.exit_code == 0
        lines = result.stdout.splitlines()
        assert sorted(line.split()[0] for line in lines) == ["brainfuck", "c", "cpp", "go", "java", "swift"]
        brainfuck = next(line for line in lines if line.startswith("brainfuck"))
        assert "lex → parse → ir → execute" in brainfuck
        assert brainfuck.rstrip().endswith("ok")

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout
