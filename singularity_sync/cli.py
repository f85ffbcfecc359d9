"""Thin CLI wrapper for singularity_sync.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import shlex
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from singularity_sync import __version__
from singularity_sync.builds.orchestrator import (
    RunResult,
    create_orchestrator,
    plan_builds,
)
from singularity_sync.builds.runner import SingularityBuilder
from singularity_sync.config import Settings, get_settings, print_settings_json
from singularity_sync.manifest.io import ManifestError, load_manifest, write_manifest
from singularity_sync.manifest.schema import Manifest
from singularity_sync.types import (
    EXIT_CANCELLED,
    EXIT_MANIFEST_ERROR,
    AbortPolicy,
)

app = typer.Typer(
    name="singularity-sync",
    help="Singularity Sync - build Singularity images from a manifest of Docker images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

EXIT_USAGE = 2


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"singularity-sync version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Singularity Sync - build Singularity images from a manifest of Docker images."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)


def _load_manifest_or_exit(source: str | None, settings: Settings) -> Manifest:
    try:
        return load_manifest(source, timeout=settings.manifest_timeout)
    except ManifestError as e:
        err_console.print(
            f"[red]Failed to parse manifest ({e.code}): {escape(str(e))}[/red]"
        )
        raise typer.Exit(code=EXIT_MANIFEST_ERROR) from None


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        log_dir_display = (
            str(settings.log_dir) if settings.log_dir else "(captured in memory)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Build tool:[/bold]")
        console.print(f"  Executable:          {settings.build_tool}")
        console.print(f"  Image extension:     {settings.artifact_extension}")
        console.print(f"  Source scheme:       {settings.source_scheme}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Abort policy:        {settings.abort_policy.value}")
        console.print(f"  Force rebuild:       {settings.force}")
        console.print(f"  Log directory:       {log_dir_display}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print(f"  Manifest timeout:    {settings.manifest_timeout}")


@app.command()
def validate(
    manifest: Annotated[
        str | None,
        typer.Option(
            "--manifest",
            "-m",
            help=(
                "Manifest file path or http(s):// URL (reads stdin if omitted "
                "or '-'); other values are read as file paths"
            ),
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Validate a manifest without building anything."""
    settings = get_settings()
    parsed = _load_manifest_or_exit(manifest, settings)
    invalid = parsed.invalid_entries

    if json_output:
        output = {
            "valid": not invalid,
            "total": len(parsed),
            "entries": [
                {
                    "image": e.image,
                    "valid": e.is_valid,
                    **({"error": e.error.reason} if e.error else {}),
                }
                for e in parsed.entries
            ],
        }
        typer.echo(json.dumps(output, indent=2))
    elif invalid:
        console.print(f"[red]✗ {len(invalid)} invalid entr(ies):[/red]")
        for e in invalid:
            reason = e.error.reason if e.error else ""
            console.print(f"  {e.image}: {reason}", markup=False)
    else:
        console.print(f"[green]✓ Manifest is valid ({len(parsed)} image(s))[/green]")

    if invalid:
        raise typer.Exit(code=EXIT_MANIFEST_ERROR)


def _print_plans(manifest: Manifest, directory: Path, settings: Settings) -> None:
    builder = SingularityBuilder.from_settings(settings)
    plans = plan_builds(manifest, directory, builder)
    console.print(f"[bold][DRY RUN] {len(plans)} image(s):[/bold]")
    for plan in plans:
        if plan.error:
            console.print(f"  [red]✗ {escape(plan.image)}[/red]")
            console.print(f"      Error: {plan.error}", markup=False)
        elif plan.command is None:
            console.print(f"  [blue]= {escape(plan.image)} (exists)[/blue]")
            console.print(f"      {plan.artifact_path}", markup=False)
        else:
            console.print(f"  [green]+ {escape(plan.image)}[/green]")
            console.print(f"      {shlex.join(plan.command)}", markup=False)


def _print_result(result: RunResult) -> None:
    console.print()
    console.print("[bold]Sync Results:[/bold]")
    console.print(f"  Total images: {result.total}")
    console.print(f"  [green]Succeeded: {result.succeeded}[/green]")
    console.print(f"  [blue]Reused: {result.reused}[/blue]")
    if result.failed > 0:
        console.print(f"  [red]Failed: {result.failed}[/red]")
    if result.not_attempted:
        console.print(f"  [yellow]Not attempted: {len(result.not_attempted)}[/yellow]")
    if result.cancelled:
        console.print("  [yellow]Cancelled[/yellow]")
    elif result.aborted:
        console.print("  [yellow]Stopped early (abort-on-first-failure)[/yellow]")
    console.print(f"  Status: {result.overall_status.value}")

    console.print()
    console.print("[bold]Per-Image Results:[/bold]")
    for o in result.outcomes:
        if o.succeeded:
            marker = " (reused)" if o.reused else ""
            console.print(f"  [green]✓ {escape(o.image)}{marker}[/green]")
            console.print(f"      {o.artifact_path}", markup=False)
        else:
            kind = o.error_kind.value if o.error_kind else "unknown"
            console.print(f"  [red]✗ {escape(o.image)} ({kind})[/red]")
            if o.error_detail:
                console.print(f"      Error: {o.error_detail}", markup=False)
    for image in result.not_attempted:
        console.print(f"  [yellow]- {escape(image)} (not attempted)[/yellow]")


@app.command()
def sync(
    directory: Annotated[
        Path,
        typer.Argument(
            help="Directory to sync singularity containers to",
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
        ),
    ],
    manifest: Annotated[
        str | None,
        typer.Option(
            "--manifest",
            "-m",
            help=(
                "Manifest file path or http(s):// URL to use for syncing (reads "
                "stdin if omitted or '-'); other values are read as file paths"
            ),
        ),
    ] = None,
    mode: Annotated[
        str | None,
        typer.Option(
            "--mode",
            help="continue-on-failure (default) or abort-on-first-failure",
        ),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, max=32, help="Concurrent builds"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option(
            "--force", "-f", help="Overwrite any existing singularity containers"
        ),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-d", help="Do not build singularity containers"
        ),
    ] = False,
    failed_manifest: Annotated[
        Path | None,
        typer.Option(
            "--failed-manifest",
            help="Write failed and unattempted images to this manifest file",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a singularity container for every image in the manifest.

    Images are built in manifest order. Use --mode=abort-on-first-failure to
    stop on the first failed image, or keep the default continue-on-failure
    to build the remaining images after a failure.
    """
    settings = get_settings()

    overrides: dict[str, object] = {}
    if mode is not None:
        try:
            overrides["abort_policy"] = AbortPolicy(mode)
        except ValueError:
            err_console.print(f"[red]Invalid mode: {mode}[/red]")
            err_console.print(
                "Valid values: " + ", ".join(p.value for p in AbortPolicy)
            )
            raise typer.Exit(code=EXIT_USAGE) from None
    if jobs is not None:
        overrides["max_concurrent_builds"] = jobs
    if force:
        overrides["force"] = True
    if overrides:
        settings = settings.model_copy(update=overrides)

    parsed = _load_manifest_or_exit(manifest, settings)

    if dry_run:
        _print_plans(parsed, directory, settings)
        return

    orchestrator = create_orchestrator(settings)
    try:
        result = orchestrator.run(parsed, directory, settings.abort_policy)
    except KeyboardInterrupt:
        err_console.print("[yellow]Cancelled; in-flight builds terminated[/yellow]")
        raise typer.Exit(code=EXIT_CANCELLED) from None

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)

    retry = result.retry_images()
    if failed_manifest is not None and retry:
        write_manifest(retry, failed_manifest)
        err_console.print(f"Wrote {len(retry)} image(s) to {failed_manifest}")

    if result.exit_code != 0:
        raise typer.Exit(code=result.exit_code)


__all__ = ["app"]
