# cli.py
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import click

from stageci import settings
from stageci.credentials import EnvSecretBackend, JsonFileSecretBackend
from stageci.errors import PipelineLoadError
from stageci.events import LoggingEventSink
from stageci.loader import load_pipeline
from stageci.runner import run_pipeline
from stageci.ui.console import Console, ConsoleEventSink, set_console, get_console

EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    found = []

    default = current_dir / settings.DEFAULT_PIPELINE
    if default.exists():
        found.append(default)

    for pattern in ("*_pipeline.py", "*.pipeline.json"):
        for path in current_dir.glob(pattern):
            if path.resolve() != default.resolve():
                found.append(path)

    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If no pipeline (or more than one candidate) is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix not in (".py", ".json"):
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  stageci run --pipeline my_pipeline.py",
            )
            sys.exit(EXIT_USAGE)
        return path

    files = find_pipeline_files()

    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", f"  {settings.DEFAULT_PIPELINE}", "  *_pipeline.py", "  *.pipeline.json"],
            suggestion="Specify a pipeline explicitly:\n  stageci run --pipeline my_pipeline.py",
        )
        sys.exit(EXIT_USAGE)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion=f"stageci run --pipeline {files[0]}",
        )
        sys.exit(EXIT_USAGE)

    return files[0]


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str]:
    out = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        key, value = pair.split("=", 1)
        out[key] = value
    return out


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageci - run stage-graph CI pipelines locally."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None,
              help=f"Pipeline file (.py or .json); defaults to {settings.DEFAULT_PIPELINE} if present")
@click.option("--workspace", default=".", show_default=True, type=click.Path(file_okay=False),
              help="Directory every step runs in")
@click.option("--timeout", default=settings.RUN_TIMEOUT, type=float, help="Run-level timeout in seconds")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Cap on concurrently running parallel branches")
@click.option("--secrets", default=settings.SECRETS_FILE, type=click.Path(dir_okay=False),
              help="JSON secrets file (defaults to STAGECI_CRED_* environment variables). "
                   "Secret values shorter than 3 characters are not masked in output.")
@click.option("--env", "env_pairs", multiple=True, metavar="KEY=VALUE", help="Extra root variable (repeatable)")
@click.option("--strict-env/--no-strict-env", default=settings.STRICT_ENV, show_default=True,
              help="Fail on undefined ${VAR} references instead of substituting ''")
@click.option("--log-events", is_flag=True, default=False, help="Also emit run events through logging")
@click.pass_context
def run(ctx, pipeline_arg, workspace, timeout, workers, secrets, env_pairs, strict_env, log_events):
    """Run a stageci pipeline; exits 0 only if it succeeds."""
    console = get_console()
    path = discover_pipeline(pipeline_arg)

    try:
        spec = load_pipeline(path)
    except PipelineLoadError as e:
        console.print_error("Failed to load pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        sys.exit(EXIT_USAGE)

    env = dict(os.environ)
    env.update(_parse_env(env_pairs))
    backend = JsonFileSecretBackend(secrets) if secrets else EnvSecretBackend()

    sinks = [ConsoleEventSink(console)]
    if log_events:
        sinks.append(LoggingEventSink())

    console.print_run_started(pipeline=spec.name, source=path.name, stage_count=len(spec.stages))

    try:
        result = run_pipeline(
            spec,
            workspace=workspace,
            env=env,
            backend=backend,
            timeout=timeout,
            max_workers=workers,
            sinks=sinks,
            strict_env=strict_env,
            redaction_marker=settings.REDACTION_MARKER,
            on_output=console.print_output_line,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(result)
    console.print_first_failure(result)
    sys.exit(result.exit_code)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (.py or .json)")
def plan(pipeline_arg):
    """Print the stage tree without running anything."""
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    try:
        spec = load_pipeline(path)
    except PipelineLoadError as e:
        console.print_error("Failed to load pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        sys.exit(EXIT_USAGE)
    console.print_plan(spec)


if __name__ == "__main__":
    cli()
