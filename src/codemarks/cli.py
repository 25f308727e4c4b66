"""
codemarks CLI - code annotation tracker command line interface

The main entry point, providing commands for scanning, watching, listing,
resolving and cleaning annotations, CI checks and configuration management.
"""

import asyncio
import sys
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from codemarks import __version__
from codemarks.config import CodemarksConfig
from codemarks.core import (
    CodemarksError,
    configure_logging,
    format_duration,
    get_config_path,
    get_projects_path,
)
from codemarks.indexing.watcher import AnnotationWatcher, BatchReport
from codemarks.service import CodemarksService, ScanReport
from codemarks.storage.persistence import EphemeralPersistence

# Rich console for pretty output
console = Console()
error_console = Console(stderr=True)

EXIT_FOUND = 1
EXIT_FATAL = 2


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[bold red]Error:[/bold red] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]✓[/bold green] {escape(message)}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]![/bold yellow] {escape(message)}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[bold blue]i[/bold blue] {escape(message)}")


def fail(error: CodemarksError) -> NoReturn:
    print_error(str(error))
    sys.exit(EXIT_FATAL)


def open_service(ctx: click.Context, ephemeral: bool = False, **kwargs) -> CodemarksService:
    """Create the service and apply the configured log level."""
    service = CodemarksService(ephemeral=ephemeral, **kwargs)
    if not ctx.obj.get("verbose"):
        configure_logging(level=service.config.log_level)
    return service


directory_option = click.option(
    "--directory",
    "-d",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Directory to scan",
)
ignore_option = click.option(
    "--ignore",
    "-i",
    multiple=True,
    help="Glob pattern to exclude (gitignore syntax, repeatable)",
)
pattern_option = click.option("--pattern", help="Annotation pattern overriding the configured one")
name_option = click.option("--name", "-n", help="Project name (detected from manifests by default)")
ephemeral_option = click.option(
    "--ephemeral",
    is_flag=True,
    help="Do not read or write the per-user configuration and projects database",
)


@click.group()
@click.version_option(version=__version__, prog_name="codemarks")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """
    codemarks - track TODO, FIXME and HACK annotations

    Scans codebases for annotation comments, keeps a project-scoped index
    of them and keeps it current while files change.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(verbose=verbose)


@main.command()
def version() -> None:
    """Show the codemarks version."""
    click.echo(f"codemarks version {__version__}")


def _print_scan_report(report: ScanReport) -> None:
    summary = report.summary
    result = report.result
    print_success(
        f"Found {result.count} code annotations in project '{report.project}' "
        f"({result.files_scanned} files, {format_duration(result.duration_seconds)})"
    )
    console.print(
        f"  [dim]added {summary.added}, kept {summary.kept}, removed {summary.removed}[/dim]"
    )
    if result.skipped:
        console.print(f"  [dim]skipped {len(result.skipped)} unreadable files (use --verbose for details)[/dim]")
    if report.ephemeral:
        print_info("Ephemeral mode: nothing was saved")


@main.command()
@directory_option
@ignore_option
@pattern_option
@name_option
@ephemeral_option
@click.pass_context
def scan(
    ctx: click.Context,
    directory: Path,
    ignore: tuple[str, ...],
    pattern: Optional[str],
    name: Optional[str],
    ephemeral: bool,
) -> None:
    """Scan a directory and save its annotations."""
    try:
        service = open_service(ctx, ephemeral=ephemeral)
        with console.status("[bold blue]Scanning for annotations..."):
            report = service.scan(directory, ignore=ignore, pattern=pattern, name=name)
    except CodemarksError as e:
        fail(e)

    _print_scan_report(report)


@main.command()
@directory_option
@ignore_option
@click.option("--debounce", type=click.IntRange(10, 60000), help="Debounce period in milliseconds")
@pattern_option
@name_option
@ephemeral_option
@click.option("--no-initial-scan", is_flag=True, help="Skip the full scan before watching")
@click.pass_context
def watch(
    ctx: click.Context,
    directory: Path,
    ignore: tuple[str, ...],
    debounce: Optional[int],
    pattern: Optional[str],
    name: Optional[str],
    ephemeral: bool,
    no_initial_scan: bool,
) -> None:
    """Watch a directory and keep its annotations up to date."""

    def on_start(watcher: AnnotationWatcher) -> None:
        console.print(Panel(
            f"Directory: [cyan]{escape(str(watcher.root))}[/cyan]\n"
            f"Project:   [cyan]{escape(watcher.project)}[/cyan]\n"
            f"Pattern:   [dim]{escape(watcher.scanner.matcher.pattern)}[/dim]\n"
            f"Debounce:  {int(watcher.debounce_seconds * 1000)}ms\n\n"
            f"Press Ctrl+C to stop watching",
            title="[bold]Watching[/bold]",
            border_style="blue",
        ))

    def on_batch(report: BatchReport) -> None:
        if report.error:
            print_warning(f"Rescan of {len(report.paths)} path(s) failed: {report.error}")
            return
        summary = report.summary
        for path in report.paths:
            console.print(f"  [dim]changed[/dim] {escape(path)}")
        if summary is not None and summary.changed:
            print_success(
                f"+{summary.added} -{summary.removed} annotations, "
                f"{report.total} in project '{summary.project}'"
            )
        else:
            print_info("No annotation changes")

    try:
        service = open_service(ctx, ephemeral=ephemeral)
        asyncio.run(
            service.watch(
                directory,
                ignore=ignore,
                pattern=pattern,
                name=name,
                debounce_ms=debounce,
                initial_scan=False if no_initial_scan else None,
                on_scan=_print_scan_report,
                on_batch=on_batch,
                on_start=on_start,
            )
        )
    except CodemarksError as e:
        fail(e)

    print_info("Stopped watching")


@main.command(name="list")
@click.option("--project", "-p", help="Only show this project")
@click.option("--unresolved", is_flag=True, help="Hide resolved annotations")
@click.pass_context
def list_annotations(ctx: click.Context, project: Optional[str], unresolved: bool) -> None:
    """List stored annotations grouped by project."""
    try:
        service = open_service(ctx)
        rows = service.list_annotations(project=project, unresolved_only=unresolved)
    except CodemarksError as e:
        fail(e)

    if not rows:
        click.echo("No code annotations found. Run 'codemarks scan' first to scan for annotations.")
        return

    current = None
    for project_name, annotation in rows:
        if project_name != current:
            if current is not None:
                click.echo()
            click.echo(project_name)
            current = project_name
        mark = "[x]" if annotation.resolved else "[ ]"
        click.echo(
            f"  {annotation.identity[:8]} {mark} {annotation.location} "
            f"{annotation.kind}: {annotation.message}"
        )


def _set_resolved(ctx: click.Context, project: str, identity: str, resolved: bool) -> None:
    try:
        service = open_service(ctx)
        annotation = service.set_resolved(project, identity, resolved=resolved)
    except CodemarksError as e:
        fail(e)

    state = "resolved" if resolved else "unresolved"
    print_success(f"Marked {annotation.identity} as {state}")
    console.print(f"  [dim]{escape(annotation.location)} {escape(annotation.kind)}: {escape(annotation.message)}[/dim]")


@main.command()
@click.argument("project")
@click.argument("identity")
@click.pass_context
def resolve(ctx: click.Context, project: str, identity: str) -> None:
    """Mark an annotation as resolved (ID or unique ID prefix)."""
    _set_resolved(ctx, project, identity, True)


@main.command()
@click.argument("project")
@click.argument("identity")
@click.pass_context
def unresolve(ctx: click.Context, project: str, identity: str) -> None:
    """Mark an annotation as unresolved again."""
    _set_resolved(ctx, project, identity, False)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be removed without removing it")
@click.option("--project", "-p", help="Only clean this project")
@click.pass_context
def clean(ctx: click.Context, dry_run: bool, project: Optional[str]) -> None:
    """Remove resolved annotations."""
    try:
        service = open_service(ctx)
        summary = service.clean(project=project, dry_run=dry_run)
    except CodemarksError as e:
        fail(e)

    if summary.missing_project:
        print_warning(f"Project '{summary.missing_project}' not found")

    if summary.removed_count == 0:
        click.echo("No resolved annotations found to clean")
        return

    projects_affected = len(summary.per_project)
    if dry_run:
        for name, count in summary.per_project.items():
            click.echo(f"Would remove {count} resolved annotations from project '{name}'")
        for name in summary.removed_projects:
            click.echo(f"Would remove project '{name}' (all annotations are resolved)")
        click.echo()
        click.echo(
            f"Dry run: would remove {summary.removed_count} resolved annotations "
            f"from {projects_affected} projects"
        )
        click.echo("Use 'codemarks clean' (without --dry-run) to perform the actual cleanup")
        return

    print_success(
        f"Removed {summary.removed_count} resolved annotations from {projects_affected} projects"
    )
    for name, count in summary.per_project.items():
        click.echo(f"  - {name}: {count} resolved annotations removed")
    for name in summary.removed_projects:
        click.echo(f"Removed project '{name}' (all annotations were resolved)")


@main.command()
@directory_option
@ignore_option
@pattern_option
@click.pass_context
def ci(
    ctx: click.Context,
    directory: Path,
    ignore: tuple[str, ...],
    pattern: Optional[str],
) -> None:
    """Fail (exit 1) when any annotation is present. Nothing is saved."""
    try:
        service = open_service(ctx, persistence=EphemeralPersistence())
        result = service.ci(directory, ignore=ignore, pattern=pattern)
    except CodemarksError as e:
        fail(e)

    for annotation in result.annotations:
        click.echo(f"{annotation.location}: {annotation.kind}: {annotation.message}")

    if result.count:
        click.echo(f"Found {result.count} codemarks matching pattern.")
        sys.exit(EXIT_FOUND)
    click.echo("No codemarks found matching pattern.")


@main.group()
def config() -> None:
    """Show or change the configuration."""
    pass


@config.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the current configuration."""
    try:
        service = open_service(ctx)
    except CodemarksError as e:
        fail(e)

    cfg = service.config
    table = Table(box=box.ROUNDED, show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Annotation pattern", escape(cfg.annotation_pattern))
    table.add_row("Ignore patterns", escape(", ".join(cfg.scan.ignore_patterns) or "-"))
    table.add_row("Ignore files", escape(", ".join(cfg.scan.ignore_filenames)))
    table.add_row("Include hidden", str(cfg.scan.include_hidden))
    table.add_row("Max file size", f"{cfg.scan.max_file_size_kb} KB")
    table.add_row("Debounce", f"{cfg.watch.debounce_ms}ms")
    table.add_row("Config file", escape(str(get_config_path())))
    table.add_row("Projects file", escape(str(get_projects_path())))
    console.print(table)


@config.command(name="set-pattern")
@click.argument("pattern")
@click.pass_context
def config_set_pattern(ctx: click.Context, pattern: str) -> None:
    """Set the global annotation pattern."""
    try:
        service = open_service(ctx)
        service.set_pattern(pattern)
    except CodemarksError as e:
        fail(e)

    print_success(f"Global code annotation pattern updated to: {pattern}")


@config.command(name="reset")
@click.pass_context
def config_reset(ctx: click.Context) -> None:
    """Restore the default configuration."""
    try:
        service = open_service(ctx, config=CodemarksConfig())
        service.reset_config()
    except CodemarksError as e:
        fail(e)

    print_success("Configuration reset to defaults")


if __name__ == "__main__":
    main()
