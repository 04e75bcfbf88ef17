"""dbtlint CLI entry point."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from dbtlint import __version__

if TYPE_CHECKING:
    from dbtlint.graph.loader import ProjectFacts
    from dbtlint.infrastructure.config import EngineConfig


def _configure_logging(*, verbose: bool, quiet: bool) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="dbtlint")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """dbtlint - metadata lint and description propagation for dbt projects."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    _configure_logging(verbose=verbose, quiet=quiet)


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------


def _input_options(fn: click.decorators.FC) -> click.decorators.FC:
    fn = click.option(
        "--config",
        "config_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="Configuration file (.toml or .yml).",
    )(fn)
    fn = click.option(
        "--lineage",
        "lineage_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="Column lineage facts to combine with --manifest.",
    )(fn)
    fn = click.option(
        "--manifest",
        is_flag=True,
        default=False,
        help="Treat FACTS as a dbt manifest.json.",
    )(fn)
    fn = click.argument(
        "facts_path",
        metavar="FACTS",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
    )(fn)
    return fn


def _load(
    facts_path: Path,
    *,
    manifest: bool,
    lineage_path: Path | None,
    config_path: Path | None,
) -> tuple[ProjectFacts, EngineConfig]:
    """Load configuration and facts; exits with status 2 on invalid input."""
    from dbtlint.graph.loader import LoaderError, load_facts, load_manifest
    from dbtlint.infrastructure.config import ConfigError, EngineConfig, load_config

    if lineage_path is not None and not manifest:
        msg = "--lineage can only be combined with --manifest"
        raise click.UsageError(msg)

    try:
        config = load_config(config_path) if config_path is not None else EngineConfig()
        if manifest:
            facts = load_manifest(facts_path, lineage_path=lineage_path, layers=config.layers)
        else:
            facts = load_facts(facts_path)
    except (ConfigError, LoaderError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)
    return facts, config


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@main.command()
@_input_options
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["rich", "json", "porcelain"]),
    default=None,
    help="Output format (default: rich if TTY, porcelain if piped).",
)
def check(
    *,
    facts_path: Path,
    manifest: bool,
    lineage_path: Path | None,
    config_path: Path | None,
    fmt: str | None,
) -> None:
    """Evaluate lint rules against a project.

    Exit codes: 0 = no error-severity findings, 1 = error findings,
    2 = configuration or input error.
    """
    from dbtlint.graph.linter import LintError, format_json, format_porcelain, format_rich
    from dbtlint.graph.linter import check as run_check

    facts, config = _load(
        facts_path, manifest=manifest, lineage_path=lineage_path, config_path=config_path
    )

    if fmt is None:
        fmt = "rich" if sys.stdout.isatty() else "porcelain"

    try:
        result = run_check(facts, config)
    except LintError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    formatters = {
        "rich": format_rich,
        "json": format_json,
        "porcelain": format_porcelain,
    }
    output = formatters[fmt](result)
    if output:
        click.echo(output)

    sys.exit(result.exit_code)


@main.command()
@_input_options
@click.option(
    "--unsafe",
    is_flag=True,
    default=False,
    help="Also emit structural edits (column and model removal).",
)
@click.option(
    "--check-idempotent",
    is_flag=True,
    default=False,
    help="Plan again on the fixed project and fail if any edit is still proposed.",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write edit intents to this file instead of stdout.",
)
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["yaml", "json", "porcelain", "rich"]),
    default="yaml",
    show_default=True,
    help="Output format for edit intents.",
)
def fix(
    *,
    facts_path: Path,
    manifest: bool,
    lineage_path: Path | None,
    config_path: Path | None,
    unsafe: bool,
    check_idempotent: bool,
    output_path: Path | None,
    fmt: str,
) -> None:
    """Plan description fixes and emit edit intents for a YAML writer.

    Exit codes: 0 = nothing left unresolved, 1 = conflicts, rejected unsafe
    edits, error findings or (with --check-idempotent) repeated edits remain,
    2 = configuration or input error.
    """
    from dbtlint.graph.linter import (
        LintError,
        format_intents_yaml,
        format_json,
        format_porcelain,
        format_rich,
    )
    from dbtlint.graph.linter import fix as run_fix

    facts, config = _load(
        facts_path, manifest=manifest, lineage_path=lineage_path, config_path=config_path
    )

    try:
        result = run_fix(
            facts,
            config,
            safety_mode="unsafe" if unsafe else "safe",
            check_idempotent=check_idempotent,
        )
    except LintError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    formatters = {
        "yaml": format_intents_yaml,
        "json": format_json,
        "porcelain": format_porcelain,
        "rich": format_rich,
    }
    output = formatters[fmt](result)
    if output_path is not None:
        if not output.endswith("\n"):
            output += "\n"
        output_path.write_text(output, encoding="utf-8")
        click.echo(
            f"Wrote {len(result.intents)} edit intents to {output_path} "
            f"({len(result.findings)} unresolved)"
        )
    elif output:
        click.echo(output.rstrip("\n"))

    sys.exit(result.exit_code)


@main.command("rules")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (.toml or .yml).",
)
def list_rules(*, config_path: Path | None) -> None:
    """List registered rules and whether they are enabled."""
    from rich.console import Console
    from rich.table import Table

    from dbtlint.graph.rule_engine import default_registry
    from dbtlint.infrastructure.config import ConfigError, load_config

    registry = default_registry()
    try:
        configured = load_config(config_path, registry=registry).rules if config_path else {}
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    table = Table(title=f"Rules ({len(registry)})")
    table.add_column("Rule", style="cyan", no_wrap=True)
    table.add_column("Suite")
    table.add_column("Category")
    table.add_column("Severity")
    table.add_column("Enabled")
    table.add_column("Description")

    for rule in registry.rules():
        rule_config = configured.get(rule.id)
        enabled = rule.enabled_by_default if rule_config is None else rule_config.enabled
        severity = rule.severity
        if rule_config is not None and rule_config.severity is not None:
            severity = rule_config.severity
        marker = "[green]yes[/green]" if enabled else "[dim]no[/dim]"
        if rule.unsafe:
            marker += " (unsafe)"
        table.add_row(rule.id, rule.suite, rule.category, severity, marker, rule.description)

    Console().print(table)
