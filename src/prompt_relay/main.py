"""CLI entrypoint for prompt-relay."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from prompt_relay import __version__
from prompt_relay.controllers import (
    DispatchCliController,
    ListRunsCommand,
    RunIdCommand,
    RunPromptCommand,
    StatusCommand,
    UsageLimitCommand,
)
from prompt_relay.dispatch.executor import DispatchError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()

T = TypeVar("T")

_DATA_DIR_OPTION = click.option(
    "--data-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Data directory holding providers.json, provider-status.json and runs/.",
)


@click.group()
@click.version_option(version=__version__, prog_name="prompt-relay")
def prompt_relay() -> None:
    """Dispatch prompts to CLI and streaming HTTP model backends."""

    level = os.getenv("PROMPT_RELAY_LOG_LEVEL", "WARNING").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@prompt_relay.command("run")
@_DATA_DIR_OPTION
@click.argument("backend_id")
@click.argument("prompt")
@click.option("--model", default=None, help="Model override for HTTP backends.")
@click.option(
    "--timeout-ms",
    type=int,
    default=None,
    help="Run timeout in milliseconds (1000..600000). Defaults to the backend's timeout.",
)
@click.option(
    "--workspace",
    "workspace_path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for process backends.",
)
@click.option(
    "--fallback",
    "fallback_backend_id",
    default=None,
    help="Preferred fallback backend when BACKEND_ID is unavailable.",
)
@click.option(
    "--image",
    "images",
    multiple=True,
    help="Image path relative to the screenshots directory. Can be repeated.",
)
def run_prompt(  # noqa: PLR0913
    data_dir: Path | None,
    backend_id: str,
    prompt: str,
    model: str | None,
    timeout_ms: int | None,
    workspace_path: Path | None,
    fallback_backend_id: str | None,
    images: tuple[str, ...],
) -> None:
    """Dispatch PROMPT to BACKEND_ID and stream its output."""

    result = _guard(
        lambda: CONTROLLER.run_prompt(
            RunPromptCommand(
                data_dir=data_dir,
                backend_id=backend_id,
                prompt=prompt,
                model=model,
                timeout_ms=timeout_ms,
                workspace_path=workspace_path,
                fallback_backend_id=fallback_backend_id,
                images=images,
            ),
            on_output=lambda text: click.echo(text, nl=False),
        ),
    )
    click.echo("")
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run did not succeed.")


@prompt_relay.group()
def status() -> None:
    """Backend availability commands."""


@status.command("list")
@_DATA_DIR_OPTION
def status_list(data_dir: Path | None) -> None:
    """Show availability of every known backend."""

    _emit_lines(_guard(lambda: CONTROLLER.list_statuses(data_dir)))


@status.command("show")
@_DATA_DIR_OPTION
@click.argument("backend_id")
def status_show(data_dir: Path | None, backend_id: str) -> None:
    """Print the full status record of BACKEND_ID."""

    _emit_lines(
        _guard(lambda: CONTROLLER.show_status(StatusCommand(data_dir, backend_id))),
    )


@status.command("recover")
@_DATA_DIR_OPTION
@click.argument("backend_id")
def status_recover(data_dir: Path | None, backend_id: str) -> None:
    """Mark BACKEND_ID available again."""

    _emit_lines(_guard(lambda: CONTROLLER.recover(StatusCommand(data_dir, backend_id))))


@status.command("usage-limit")
@_DATA_DIR_OPTION
@click.argument("backend_id")
@click.option("--message", default=None, help="Message to store with the status.")
@click.option(
    "--wait-time",
    default=None,
    help="Human wait time, for example '2 hours 30 minutes'. Defaults to the usage-limit wait.",
)
def status_usage_limit(
    data_dir: Path | None,
    backend_id: str,
    message: str | None,
    wait_time: str | None,
) -> None:
    """Mark BACKEND_ID as usage-limited."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.mark_usage_limit(
                UsageLimitCommand(
                    data_dir=data_dir,
                    backend_id=backend_id,
                    message=message,
                    wait_time=wait_time,
                ),
            ),
        ),
    )


@status.command("rate-limit")
@_DATA_DIR_OPTION
@click.argument("backend_id")
def status_rate_limit(data_dir: Path | None, backend_id: str) -> None:
    """Mark BACKEND_ID as rate-limited for the configured short wait."""

    _emit_lines(
        _guard(lambda: CONTROLLER.mark_rate_limited(StatusCommand(data_dir, backend_id))),
    )


@prompt_relay.group()
def runs() -> None:
    """Persisted run commands."""


@runs.command("list")
@_DATA_DIR_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of runs to print.",
)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.option(
    "--source",
    default="all",
    show_default=True,
    help="Filter by run source, for example cli. Use 'all' to disable filtering.",
)
def runs_list(data_dir: Path | None, limit: int, offset: int, source: str) -> None:
    """List runs newest first."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.list_runs(
                ListRunsCommand(data_dir=data_dir, limit=limit, offset=offset, source=source),
            ),
        ),
    )


@runs.command("show")
@_DATA_DIR_OPTION
@click.argument("run_id")
def runs_show(data_dir: Path | None, run_id: str) -> None:
    """Print run metadata as JSON."""

    _emit_lines(_guard(lambda: CONTROLLER.show_run(RunIdCommand(data_dir, run_id))))


@runs.command("output")
@_DATA_DIR_OPTION
@click.argument("run_id")
def runs_output(data_dir: Path | None, run_id: str) -> None:
    """Print captured run output."""

    _emit_lines(_guard(lambda: CONTROLLER.run_output(RunIdCommand(data_dir, run_id))))


@runs.command("delete")
@_DATA_DIR_OPTION
@click.argument("run_id")
def runs_delete(data_dir: Path | None, run_id: str) -> None:
    """Delete one run directory."""

    _emit_lines(_guard(lambda: CONTROLLER.delete_run(RunIdCommand(data_dir, run_id))))


@runs.command("prune-failed")
@_DATA_DIR_OPTION
def runs_prune_failed(data_dir: Path | None) -> None:
    """Delete every failed run."""

    _emit_lines(_guard(lambda: CONTROLLER.prune_failed(data_dir)))


@prompt_relay.group()
def backends() -> None:
    """Backend registry commands."""


@backends.command("list")
@_DATA_DIR_OPTION
def backends_list(data_dir: Path | None) -> None:
    """List configured backends; the active one is marked with '*'."""

    _emit_lines(_guard(lambda: CONTROLLER.list_backends(data_dir)))


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except (DispatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    prompt_relay()
