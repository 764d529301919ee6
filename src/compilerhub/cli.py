"""Command-line interface for compilerhub.

Usage:
    chub compile main.c                      # Compile a file (language from extension)
    chub compile -l go -                     # Read source from stdin
    chub compile -l brainfuck -c '+[>+<-].'  # Inline code
    chub compile --json -O2 main.cpp | jq .  # Full result as JSON
    chub languages                           # Adapters and toolchain availability
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
from pydantic import ValidationError

from compilerhub import __version__
from compilerhub._logging import configure_logging
from compilerhub.adapters import default_registry
from compilerhub.api import result_data
from compilerhub.config import PipelineConfig
from compilerhub.exceptions import InputValidationError, InternalFaultError
from compilerhub.export import SOURCE_EXTENSIONS, export_bundle
from compilerhub.models import CompileOptions, CompileResult, JobMode, JobStatus, OptimizationLevel, Severity
from compilerhub.pipeline import Pipeline
from compilerhub.settings import Settings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_COMPILE_FAILED = 1
EXIT_INTERNAL_ERROR = 125

EXTENSION_MAP: dict[str, str] = {f".{ext}": language for language, ext in SOURCE_EXTENSIONS.items()} | {
    ".h": "c",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".b": "brainfuck",
}

_SEVERITY_COLORS = {
    Severity.ERROR: "red",
    Severity.WARNING: "yellow",
    Severity.INFO: "blue",
    Severity.NOTE: "cyan",
}


def detect_language(source: str | None) -> str | None:
    """Language from a file extension; None for stdin, inline code or unknown suffixes."""
    if not source or source == "-":
        return None
    return EXTENSION_MAP.get(Path(source).suffix.lower())


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    lines = [click.style(f"Error: {title}", fg="red", bold=True), "", f"  {message}"]
    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)
    return "\n".join(lines)


def format_result_text(result: CompileResult, source_name: str) -> str:
    lines: list[str] = []
    for record in result.records:
        if not record.ran:
            lines.append(click.style(f"  - {record.stage_name:<10} not run", dim=True))
            continue
        mark = click.style("✓", fg="green") if record.success else click.style("✗", fg="red")
        units = len(record.artifact.units) if record.artifact is not None else 0
        detail = f"{record.duration_ms}ms"
        if units:
            detail += f", {units} units"
        lines.append(f"  {mark} {record.stage_name:<10} {detail}")
        for d in record.diagnostics:
            where = source_name
            if d.line is not None:
                where += f":{d.line}" + (f":{d.column}" if d.column is not None else "")
            severity = click.style(d.severity.value, fg=_SEVERITY_COLORS[d.severity])
            lines.append(f"      {where}: {severity}: {d.message}")
    color = "green" if result.status == JobStatus.SUCCEEDED else "red"
    lines.append(click.style(f"{result.language} job {result.job_id}: {result.status.value}", fg=color, bold=True))
    return "\n".join(lines)


def _read_code(source: str | None, inline_code: str | None) -> str:
    if inline_code:
        return inline_code
    if source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin or use -c flag.")
        return sys.stdin.read()
    if source:
        path = Path(source)
        if not path.is_file():
            raise click.UsageError(f"No such file: {source}")
        return path.read_text(encoding="utf-8")
    raise click.UsageError("No code provided. Provide FILE argument or use -c flag.")


async def compile_code(
    code: str,
    language: str,
    options: CompileOptions,
    *,
    mode: JobMode,
    use_cache: bool,
    config: PipelineConfig,
) -> CompileResult:
    async with Pipeline(config) as pipeline:
        return await pipeline.run(language, code, options, mode=mode, use_cache=use_cache)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", count=True, help="Log to stderr (-v info, -vv debug)")
@click.version_option(__version__, "-V", "--version", prog_name="compilerhub")
def main(verbose: int) -> None:
    """Run source code through a language toolchain, stage by stage."""
    if verbose:
        configure_logging(level="DEBUG" if verbose > 1 else "INFO")


@main.command("compile")
@click.argument("source", required=False)
@click.option(
    "-l",
    "--language",
    type=click.Choice(sorted(SOURCE_EXTENSIONS), case_sensitive=False),
    help="Source language (auto-detected from file extension)",
)
@click.option("-c", "--code", "inline_code", help="Code to compile (alternative to SOURCE)")
@click.option(
    "-O",
    "--optimization",
    type=click.Choice([level.value for level in OptimizationLevel]),
    default=OptimizationLevel.O0.value,
    show_default=True,
    help="Optimization hint",
)
@click.option("--debug", is_flag=True, help="Request debug info / execution trace")
@click.option("--analyze", is_flag=True, help="Run only the front-end (lex/parse) stages")
@click.option("--no-cache", is_flag=True, help="Always run fresh")
@click.option("-t", "--timeout", type=float, default=None, help="Per-stage timeout in seconds")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option(
    "--export",
    "export_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Write a zip bundle of all artifacts into this directory",
)
def compile_command(
    source: str | None,
    language: str | None,
    inline_code: str | None,
    optimization: str,
    debug: bool,
    analyze: bool,
    no_cache: bool,
    timeout: float | None,
    json_output: bool,
    export_dir: Path | None,
) -> NoReturn:
    """Compile SOURCE (a file, or - for stdin) and report every stage.

    Exit status: 0 succeeded, 1 compilation failed, 2 usage error,
    125 internal fault.
    """
    code = _read_code(source, inline_code)
    resolved = language.lower() if language else detect_language(source)
    if resolved is None:
        raise click.UsageError("Cannot detect the language; pass -l/--language.")

    config_fields: dict[str, Any] = {}
    if timeout is not None:
        config_fields["stage_timeout_seconds"] = timeout
    try:
        config = PipelineConfig(**config_fields)
    except ValidationError as e:
        raise click.UsageError(f"Invalid timeout: {e.errors()[0]['msg']}") from e
    options = CompileOptions(optimization=OptimizationLevel(optimization), debug=debug)

    try:
        result = asyncio.run(
            compile_code(
                code,
                resolved,
                options,
                mode=JobMode.ANALYZE if analyze else JobMode.COMPILE,
                use_cache=not no_cache,
                config=config,
            )
        )
    except InputValidationError as e:
        raise click.UsageError(e.message) from e
    except InternalFaultError as e:
        click.echo(format_error("Internal fault", e.message, ["Re-run with -vv for details"]), err=True)
        sys.exit(EXIT_INTERNAL_ERROR)

    if json_output:
        click.echo(json.dumps(result_data(result), indent=2))
    else:
        source_name = default_registry().get(result.language).file_name(result.source_code)
        click.echo(format_result_text(result, source_name))

    if export_dir is not None:
        export_dir.mkdir(parents=True, exist_ok=True)
        bundle = export_dir / f"compilerhub-{result.job_id}.zip"
        bundle.write_bytes(export_bundle(result))
        click.echo(f"Artifacts written to {bundle}", err=True)

    sys.exit(EXIT_SUCCESS if result.status == JobStatus.SUCCEEDED else EXIT_COMPILE_FAILED)


@main.command("languages")
def languages_command() -> None:
    """List supported languages, their stages and missing toolchain binaries."""
    settings = Settings()
    for adapter in default_registry():
        missing = adapter.missing_tools(settings)
        status = click.style("missing: " + ", ".join(missing), fg="red") if missing else click.style("ok", fg="green")
        click.echo(f"{adapter.language:<10} {' → '.join(adapter.stage_names()):<45} {status}")


if __name__ == "__main__":
    main()
