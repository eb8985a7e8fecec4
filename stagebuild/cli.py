"""Thin CLI wrapper for stagebuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from stagebuild import __version__
from stagebuild.config import get_settings, print_settings_json

app = typer.Typer(
    name="stagebuild",
    help="stagebuild - two-pass cached builds packaged into minimal runtime images",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "running": "blue",
    "pending": "yellow",
}


def _print_json(data: Any) -> None:
    # Plain echo: rich would wrap long digests and break the JSON
    typer.echo(json.dumps(data, indent=2))


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _report_pipeline_error(error: Any, json_output: bool) -> None:
    if json_output:
        _print_json({"success": False, "error": error.to_dict()})
        return
    console.print(f"[red]Pipeline failed ({error.category} problem)[/red]")
    console.print(f"  Code:        {error.code}")
    console.print(f"  Stage:       {error.stage.value}")
    console.print(f"  Message:     {error.message}")
    if error.fingerprint:
        console.print(f"  Fingerprint: {error.fingerprint}")
    if error.path:
        console.print(f"  Path:        {error.path}")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagebuild version {__version__}")
        raise typer.Exit()


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
) -> None:
    """stagebuild - two-pass cached builds packaged into minimal runtime images."""
    _configure_logging(get_settings().log_level)


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
        work_dir_display = (
            str(settings.work_dir) if settings.work_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Work directory:      {work_dir_display}")
        console.print(f"  Package repository:  {settings.package_repo or '(none)'}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")
        console.print(f"  Download timeout:    {settings.download_timeout}")


@app.command()
def fingerprint(
    manifest: Annotated[Path, typer.Argument(help="Dependency manifest path")],
    lockfile: Annotated[
        Path | None,
        typer.Option("--lockfile", "-l", help="Lock file included in the identity"),
    ] = None,
    language: Annotated[
        str,
        typer.Option("--language", help="Language profile naming the lock file"),
    ] = "rust",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compute the dependency fingerprint of a manifest.

    Without --lockfile, the language's lock file beside the manifest is
    included when present, as `build run` does.
    """
    from stagebuild.errors import PipelineError
    from stagebuild.manifest.fingerprint import fingerprint_manifest
    from stagebuild.toolchain.languages import get_language

    if lockfile is None:
        try:
            profile = get_language(language)
        except KeyError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None
        if profile.lockfile_name:
            sibling = manifest.parent / profile.lockfile_name
            if sibling.is_file():
                lockfile = sibling

    try:
        fp, parsed = fingerprint_manifest(manifest, lockfile)
    except PipelineError as e:
        _report_pipeline_error(e, json_output)
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            {
                "fingerprint": fp,
                "lockfile": str(lockfile) if lockfile else None,
                "package": parsed.name,
                "dependencies": [str(d) for d in parsed.declared_dependencies()],
                "binaries": parsed.binaries,
                "primary": parsed.primary_binary(),
            }
        )
    else:
        console.print(f"[bold]{parsed.name}[/bold] {fp}")
        for dep in parsed.declared_dependencies():
            console.print(f"  - {dep}")


builds_app = typer.Typer(help="Run pipelines and inspect run history")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    pipeline_file: Annotated[
        Path, typer.Argument(help="Pipeline file (stagebuild.yaml)")
    ] = Path("stagebuild.yaml"),
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Drop the cached dependency entry first"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the pipeline described by a pipeline file."""
    from stagebuild.builds.schema import PipelineConfigError, load_pipeline
    from stagebuild.builds.service import run_pipeline
    from stagebuild.db import open_run_store
    from stagebuild.errors import PipelineError

    try:
        pipeline = load_pipeline(pipeline_file)
    except PipelineConfigError as e:
        if json_output:
            error = {"code": e.code, "message": str(e)}
            _print_json({"success": False, "error": error})
        else:
            console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    settings = get_settings()
    factory = open_run_store(settings.db_url)

    with factory() as session:
        try:
            result = run_pipeline(
                pipeline,
                base_path=pipeline_file.resolve().parent,
                settings=settings,
                session=session,
                force_rebuild=force,
            )
        except PipelineError as e:
            session.commit()
            _report_pipeline_error(e, json_output)
            raise typer.Exit(code=1) from None
        except PipelineConfigError as e:
            session.rollback()
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

    if json_output:
        _print_json({"success": True, **result.to_dict()})
        return

    console.print(f"[green]Built image {result.name}[/green]")
    console.print(f"  Image ID:    {result.image.image_id}")
    console.print(f"  Path:        {result.image.path}")
    console.print(f"  Entrypoint:  {' '.join(result.image.entrypoint)}")
    console.print(f"  Fingerprint: {result.fingerprint}")
    console.print(f"  Cache:       {'hit' if result.cache_hit else 'miss (populated)'}")
    console.print(f"  Artifact:    {result.artifact.sha256}")
    console.print(f"  Logs:        {result.log_dir}")


@builds_app.command("list")
def builds_list(
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Filter by image name"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List pipeline run records."""
    from stagebuild.builds.service import list_builds
    from stagebuild.db import open_run_store
    from stagebuild.types import BuildStatus

    factory = open_run_store()

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with factory() as session:
        builds = list_builds(session, name=name, status=status_filter, limit=limit)

        if json_output:
            _print_json(
                [
                    {
                        "id": b.id,
                        "name": b.name,
                        "status": b.status,
                        "fingerprint": b.fingerprint,
                        "is_cache_hit": b.is_cache_hit,
                        "requested_at": b.requested_at.isoformat()
                        if b.requested_at
                        else None,
                        "finished_at": b.finished_at.isoformat()
                        if b.finished_at
                        else None,
                        "image_id": b.image_id,
                        "image_path": b.image_path,
                        "error_code": b.error_code,
                        "error_stage": b.error_stage,
                        "error_message": b.error_message,
                    }
                    for b in builds
                ]
            )
            return

        if not builds:
            console.print("[yellow]No build records found[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            color = STATUS_COLORS.get(b.status, "white")
            console.print(f"  [{color}]Build #{b.id}[/{color}] {b.name}")
            console.print(f"    Status: {b.status}")
            console.print(f"    Cache hit: {b.is_cache_hit}")
            if b.image_path:
                console.print(f"    Image: {b.image_path}")
            if b.error_message:
                console.print(f"    Error ({b.error_stage}): {b.error_message}")
            console.print()


cache_app = typer.Typer(help="Manage the dependency cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List committed dependency cache entries."""
    from stagebuild.builds.service import open_cache_store

    entries = open_cache_store().list_entries()

    if json_output:
        _print_json([e.to_dict() for e in entries])
        return
    if not entries:
        console.print("[yellow]Dependency cache is empty[/yellow]")
        return
    console.print(f"[bold]Found {len(entries)} cache entr(ies):[/bold]")
    for e in entries:
        console.print(
            f"  {e.fingerprint[:23]}  {e.package}  "
            f"{len(e.dependencies)} deps  {e.size_bytes} bytes  {e.created_at}"
        )


@cache_app.command("show")
def cache_show(
    fingerprint_prefix: Annotated[
        str, typer.Argument(help="Fingerprint (or unique prefix) of the entry")
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show one dependency cache entry."""
    from stagebuild.builds.service import open_cache_store

    needle = fingerprint_prefix.removeprefix("sha256:")
    matches = [
        e
        for e in open_cache_store().list_entries()
        if e.fingerprint.removeprefix("sha256:").startswith(needle)
    ]
    if len(matches) != 1:
        reason = "not found" if not matches else "ambiguous"
        console.print(f"[red]Cache entry {reason}: {fingerprint_prefix}[/red]")
        raise typer.Exit(code=1)

    entry = matches[0]
    if json_output:
        _print_json(entry.to_dict())
        return
    console.print(f"[bold]{entry.fingerprint}[/bold]")
    console.print(f"  Package:  {entry.package}")
    console.print(f"  Created:  {entry.created_at}")
    console.print(f"  Files:    {entry.file_count} ({entry.size_bytes} bytes)")
    console.print(f"  Path:     {entry.path}")
    console.print("  Dependencies:")
    for dep in entry.dependencies:
        console.print(f"    - {dep}")


@cache_app.command("prune")
def cache_prune(
    keep: Annotated[
        int | None,
        typer.Option("--keep", "-k", min=0, help="Keep only the N newest entries"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove abandoned scratch state and, optionally, old entries."""
    from stagebuild.builds.service import open_cache_store

    removed = open_cache_store().prune(keep=keep)

    if json_output:
        _print_json({"removed": removed})
    elif not removed:
        console.print("[yellow]No cache entries removed[/yellow]")
    else:
        console.print(f"[bold]Removed {len(removed)} cache entr(ies):[/bold]")
        for fp in removed:
            console.print(f"  - {fp}")


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show dependency cache information."""
    from stagebuild.builds.service import open_cache_store

    info = open_cache_store().get_cache_info()

    if json_output:
        _print_json(info)
    else:
        console.print("[bold]Dependency Cache Information:[/bold]")
        console.print()
        console.print(f"  Cache directory: {info['root']}")
        console.print(f"  Entries: {info['entry_count']}")
        console.print(f"  Total size: {info['total_size_bytes']} bytes")


if __name__ == "__main__":
    app()
