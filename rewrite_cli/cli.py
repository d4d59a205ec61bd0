"""Typer-based CLI for the rewrite tool."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__, config_manager
from .config import DEFAULT_DESCRIPTOR
from .errors import RewriteError
from .models import Coordinate, EditResult
from .pipeline import RewriteRun, RunReport, build_resolver

app = typer.Typer(
    help="Resolve a project's classpath, run rewrite rules over its sources, and emit a patch or apply it.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
config_app = typer.Typer(help="Show or change persistent settings.", no_args_is_help=True)
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure application logging (stderr, rich formatting)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose, rich_tracebacks=verbose)],
        force=True,
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _fail(exc: RewriteError) -> NoReturn:
    err_console.print(f"[red]✗[/red] {escape(exc.message)}", soft_wrap=True)
    raise typer.Exit(code=1)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"rewrite-cli v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    )
):
    """rewrite: batch source transformation for Maven projects."""
    pass


def _print_result(verb: str, result: EditResult) -> None:
    if result.before is not None and result.after is not None and result.before.source_path != result.after.source_path:
        target = f"{result.before.source_path} to {result.after.source_path}"
    else:
        target = result.path
    console.print(f"These rules would {verb} {escape(target)}:", soft_wrap=True)
    prefix = "    "
    for rule_id in result.rule_ids:
        console.print(f"{prefix}{escape(rule_id)}", soft_wrap=True)
        prefix += "    "


def _print_report(report: RunReport, dry_run: bool) -> None:
    classification = report.classification
    for failure in report.parse_failures:
        err_console.print(f"[yellow]degraded[/yellow] {escape(failure.message)}", soft_wrap=True)
    if classification.is_empty:
        console.print("Applying the rule(s) would make no changes. No patch file generated.")
        return
    for result in classification.created:
        _print_result("generate a new file", result)
    for result in classification.deleted:
        _print_result("delete the file", result)
    for result in classification.moved:
        _print_result("move a file from", result)
    for result in classification.modified:
        _print_result("make changes to", result)

    if dry_run and report.patch_path is not None:
        console.print(f"\nReport available:\n    {escape(str(report.patch_path))}", soft_wrap=True)
        console.print("Run 'git apply -stat' on it to review, or 'git apply' to apply the changes.")
    elif report.apply_result is not None:
        console.print(f"\n[green]✓[/green] Wrote {report.apply_result.files_written} file(s), "
                      f"deleted {report.apply_result.files_deleted}.")
    console.print(f"Estimate time saved: {report.time_saved_text}")


@app.command("run")
def run(
    project_root: Path = typer.Argument(..., exists=True, file_okay=False, help="Root of the project to rewrite."),
    rule: Optional[str] = typer.Option(None, "--rule", "-r", help="Id of the rule to run."),
    options: Optional[str] = typer.Option(None, "--options", "-o", help="Rule options: key=value,key2=value2."),
    jars: Optional[str] = typer.Option(None, "--jar", help="Extension packages (paths or coordinates), comma separated."),
    config_location: Optional[str] = typer.Option(None, "--config", "-c", help="Declarative rule file (default rewrite.yml)."),
    exclusions: Optional[str] = typer.Option(None, "--exclusions", help="Glob patterns of files to skip, comma separated."),
    plain_text_masks: Optional[str] = typer.Option(None, "--plain-text-masks", help="Globs of files parsed as plain text."),
    size_threshold_mb: Optional[int] = typer.Option(None, "--size-threshold-mb", min=0, help="Files above this size stay opaque."),
    dry_run: bool = typer.Option(True, "--dry-run/--apply", help="Write a patch (default) or apply changes in place."),
    profiles: Optional[str] = typer.Option(None, "--profiles", "-P", help="Build profiles to activate, comma separated."),
    defines: Optional[List[str]] = typer.Option(None, "--define", "-D", help="System property key=value (repeatable)."),
    extend_host_registry: Optional[bool] = typer.Option(
        None, "--extend-host-registry/--isolated-extensions",
        help="Merge extension rules into the built-in registry.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Run a rule (or the rules of the rule file) over PROJECT_ROOT."""
    setup_logging(verbose)
    system_properties = {}
    for define in defines or []:
        key, _, value = define.partition("=")
        system_properties[key.strip()] = value

    cfg = config_manager.build_run_config(
        project_root.resolve(),
        rule_id=rule,
        rule_options=options,
        extensions=jars,
        config_location=config_location,
        exclusions=exclusions,
        plain_text_masks=plain_text_masks,
        size_threshold_mb=size_threshold_mb,
        dry_run=dry_run,
        active_profiles=profiles,
        system_properties=system_properties,
        extend_host_registry=extend_host_registry,
    )
    runner = RewriteRun(cfg)
    try:
        report = runner.execute()
    except RewriteError as exc:
        _fail(exc)
    finally:
        runner.close()
    _print_report(report, cfg.dry_run)


@app.command("rules")
def list_rules(
    jars: Optional[str] = typer.Option(None, "--jar", help="Extension packages (paths or coordinates), comma separated."),
    config_location: Optional[str] = typer.Option(None, "--config", "-c", help="Declarative rule file."),
    project_root: Path = typer.Option(Path("."), "--project", "-p", file_okay=False, help="Project the rule file is relative to."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """List every rule visible to a run."""
    setup_logging(verbose)
    cfg = config_manager.build_run_config(project_root.resolve(), extensions=jars, config_location=config_location)
    runner = RewriteRun(cfg)
    try:
        chain, _ = runner.build_registry()
        descriptions = chain.describe()
    except RewriteError as exc:
        _fail(exc)
    finally:
        runner.close()

    table = Table(title="Rules")
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Registry")
    table.add_column("Options")
    table.add_column("Description")
    for item in descriptions:
        table.add_row(
            item.rule_id,
            item.registry,
            ", ".join(f"{name}:{tag}" for name, tag in item.options),
            item.description or item.display_name,
        )
    console.print(table)


@app.command("resolve")
def resolve(
    coordinates: List[str] = typer.Argument(..., help="Coordinates as group:name:version (or G:A:T:V, G:A:T:C:V)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Resolve artifacts into the local repository and print their paths."""
    setup_logging(verbose)
    cfg = config_manager.build_run_config(Path.cwd())
    failed = 0
    with build_resolver(cfg) as resolver:
        for text in coordinates:
            try:
                path = resolver.resolve(Coordinate.parse(text))
            except ValueError as exc:
                err_console.print(f"[red]✗[/red] {escape(str(exc))}", soft_wrap=True)
                failed += 1
                continue
            except RewriteError as exc:
                err_console.print(f"[red]✗[/red] {escape(exc.message)}", soft_wrap=True)
                failed += 1
                continue
            console.print(escape(str(path)), soft_wrap=True)
    if failed:
        raise typer.Exit(code=1)


@app.command("classpath")
def classpath(
    project_root: Path = typer.Argument(..., exists=True, file_okay=False, help="Project containing pom.xml."),
    profiles: Optional[str] = typer.Option(None, "--profiles", "-P", help="Build profiles to activate."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Print the resolved classpath of PROJECT_ROOT's build descriptor."""
    setup_logging(verbose)
    cfg = config_manager.build_run_config(project_root.resolve(), active_profiles=profiles)
    runner = RewriteRun(cfg)
    try:
        result = runner.assembler.assemble(runner.root / DEFAULT_DESCRIPTOR)
    except RewriteError as exc:
        _fail(exc)
    finally:
        runner.close()
    console.print(os.pathsep.join(str(p) for p in result.paths), soft_wrap=True)
    for coordinate in result.missing:
        err_console.print(f"[yellow]missing[/yellow] {escape(str(coordinate))}", soft_wrap=True)


# ---------------------------------------------------------------------------
# Persistent settings
# ---------------------------------------------------------------------------

_LIST_KEYS = {"exclusions", "plain_text_masks"}


def _parse_setting(key: str, raw: str) -> Any:
    if key in _LIST_KEYS:
        return config_manager.split_list(raw)
    if raw.lower() in ("true", "false"):
        return raw.lower() == "true"
    if raw.isdigit():
        return int(raw)
    return raw


@config_app.command("show")
def config_show():
    """Print the effective [rewrite] settings and the repository list."""
    settings = config_manager.load_settings()
    repos = config_manager.load_repository_config()
    for key, value in settings.items():
        console.print(f"rewrite.{key} = {escape(repr(value))}", soft_wrap=True)
    console.print(f"repositories.local = {escape(str(repos['local']))}", soft_wrap=True)
    for remote in repos["remotes"]:
        console.print(f"repositories.remote {escape(remote['id'])} = {escape(remote['url'])}", soft_wrap=True)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="SECTION.KEY, e.g. rewrite.size_threshold_mb"),
    value: str = typer.Argument(..., help="New value."),
):
    """Persist one setting in the config file."""
    section, sep, name = key.partition(".")
    if not sep or section not in ("rewrite", "repositories", "extensions") or not name:
        raise typer.BadParameter("Key must look like rewrite.NAME, repositories.NAME or extensions.NAME")
    current = config_manager.load_full_config().get(section, {})
    current[name] = _parse_setting(name, value)
    if not config_manager.save_config(section, current):
        err_console.print("[red]✗[/red] Could not write the config file")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] {escape(key)} = {escape(repr(current[name]))}", soft_wrap=True)


if __name__ == "__main__":
    app()
