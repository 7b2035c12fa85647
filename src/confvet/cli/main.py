"""CLI entry point - Click commands for confvet."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import NoReturn

import click

from confvet import __version__
from confvet.cli._output import (
    format_build_report,
    format_lint_json,
    format_lint_text,
    format_rule_json,
    format_rule_text,
    format_ruleset_json,
    format_ruleset_text,
    format_rulesets_json,
    format_rulesets_text,
)
from confvet.core._types import OutputFormat
from confvet.core.config import ConfvetConfig, load_config
from confvet.core.errors import ConfigError, ConfvetError, RulesetBuildError
from confvet.lint import collect_documents, run_lint
from confvet.rulesets import RulesetManager, RulesetStore, add_ruleset, update_ruleset

logger = logging.getLogger("confvet")


@dataclass
class _Options:
    fmt: OutputFormat
    no_color: bool
    config_path: str | None
    _config: ConfvetConfig | None = None

    @property
    def config(self) -> ConfvetConfig:
        if self._config is None:
            try:
                self._config = load_config(self.config_path)
            except ConfigError as exc:
                _fail(f"invalid config: {exc}")
            _setup_logging(self._config.log_level)
        return self._config

    @property
    def json(self) -> bool:
        return self.fmt == OutputFormat.JSON

    def store(self) -> RulesetStore:
        return RulesetStore(self.config.store_path)

    def progress(self, message: str) -> None:
        if not self.json:
            click.echo(message, err=True)


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(2)


class _EchoHandler(logging.Handler):
    """Write log records to whatever stderr click currently targets."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def _setup_logging(level: str) -> None:
    handler = _EchoHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(level.upper())
    logger.propagate = False


pass_options = click.make_pass_decorator(_Options)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", message="confvet %(version)s")
@click.option(
    "--format",
    "fmt",
    type=click.Choice([f.value for f in OutputFormat]),
    default=OutputFormat.TEXT.value,
    help="Output format.",
)
@click.option("--no-color", is_flag=True, envvar="NO_COLOR", help="Disable ANSI colors.")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to .confvet.toml or pyproject.toml config file.",
)
@click.pass_context
def cli(ctx: click.Context, fmt: str, no_color: bool, config_path: str | None) -> None:
    """confvet - pluggable configuration linter."""
    ctx.obj = _Options(fmt=OutputFormat(fmt), no_color=no_color, config_path=config_path)


@cli.command()
@click.argument("paths", nargs=-1)
@pass_options
def lint(opts: _Options, paths: tuple[str, ...]) -> None:
    """Lint documents with every enabled rule.

    PATHS may be files, directories or globs and defaults to the current
    directory.  Exits 1 when any finding or rule failure was reported.
    """
    config = opts.config
    try:
        rulesets = opts.store().get_enabled_rulesets()
        documents = collect_documents(paths or (".",), config.patterns)
    except ConfvetError as exc:
        _fail(str(exc))

    if not rulesets:
        click.echo("No enabled rulesets. Add one with `confvet ruleset add <repository>`.", err=True)
    if not documents:
        click.echo("No documents matched.", err=True)

    try:
        report = run_lint(documents, rulesets, config=config)
    except ConfvetError as exc:
        _fail(str(exc))

    if opts.json:
        click.echo(format_lint_json(report))
    else:
        click.echo(format_lint_text(report, no_color=opts.no_color))

    if not report.clean:
        sys.exit(1)


# Rulesets


@cli.group()
def ruleset() -> None:
    """Manage rulesets."""


@ruleset.command("add")
@click.argument("repository")
@pass_options
def ruleset_add(opts: _Options, repository: str) -> None:
    """Add the ruleset at REPOSITORY (git URL or local directory) and build its rules."""
    try:
        added, report = add_ruleset(repository, config=opts.config, on_progress=opts.progress)
    except RulesetBuildError as exc:
        if exc.report is not None and not opts.json:
            click.echo(format_build_report(exc.report, no_color=opts.no_color), err=True)
        _fail(str(exc))
    except ConfvetError as exc:
        _fail(str(exc))

    if opts.json:
        click.echo(format_ruleset_json(added))
        return
    click.echo(format_build_report(report, no_color=opts.no_color))
    click.echo(f"Added ruleset {added.name} v{added.version}")


@ruleset.command("update")
@click.argument("name", required=False)
@click.option("--force", is_flag=True, help="Rebuild even when already at the newest version.")
@pass_options
def ruleset_update(opts: _Options, name: str | None, force: bool) -> None:
    """Update ruleset NAME, or every installed ruleset."""
    try:
        names = [name] if name else [rs.name for rs in opts.store().get_rulesets()]
    except ConfvetError as exc:
        _fail(str(exc))

    updated: list[str] = []
    for target in names:
        try:
            result = update_ruleset(target, config=opts.config, force=force, on_progress=opts.progress)
        except RulesetBuildError as exc:
            if exc.report is not None and not opts.json:
                click.echo(format_build_report(exc.report, no_color=opts.no_color), err=True)
            _fail(str(exc))
        except ConfvetError as exc:
            _fail(str(exc))

        if result.updated:
            updated.append(target)
            if not opts.json and result.report is not None:
                click.echo(format_build_report(result.report, no_color=opts.no_color))
                click.echo(
                    f"Updated ruleset {target} {result.previous_version} -> {result.remote_version}"
                )

    if opts.json:
        rulesets = [rs for rs in opts.store().get_rulesets() if rs.name in names]
        click.echo(format_rulesets_json(rulesets))
    elif not updated:
        click.echo("All rulesets are up to date.")


@ruleset.command("list")
@click.argument("name", required=False)
@pass_options
def ruleset_list(opts: _Options, name: str | None) -> None:
    """List installed rulesets, or the rules of ruleset NAME."""
    try:
        if name is None:
            rulesets = opts.store().get_rulesets()
        else:
            single = opts.store().get_ruleset(name)
    except ConfvetError as exc:
        _fail(str(exc))

    if name is None:
        if opts.json:
            click.echo(format_rulesets_json(rulesets))
        else:
            click.echo(format_rulesets_text(rulesets, no_color=opts.no_color))
    elif opts.json:
        click.echo(format_ruleset_json(single))
    else:
        click.echo(format_ruleset_text(single, no_color=opts.no_color))


def _toggle_ruleset(opts: _Options, name: str, enabled: bool) -> None:
    try:
        store = opts.store()
        (store.enable_ruleset if enabled else store.disable_ruleset)(name)
    except ConfvetError as exc:
        _fail(str(exc))
    click.echo(f"Ruleset {name} {'enabled' if enabled else 'disabled'}")


@ruleset.command("enable")
@click.argument("name")
@pass_options
def ruleset_enable(opts: _Options, name: str) -> None:
    """Enable ruleset NAME."""
    _toggle_ruleset(opts, name, True)


@ruleset.command("disable")
@click.argument("name")
@pass_options
def ruleset_disable(opts: _Options, name: str) -> None:
    """Disable ruleset NAME; its rules are skipped by lint."""
    _toggle_ruleset(opts, name, False)


@ruleset.command("remove")
@click.argument("name")
@pass_options
def ruleset_remove(opts: _Options, name: str) -> None:
    """Remove ruleset NAME and its built rules."""
    try:
        removed = RulesetManager(opts.config).remove_ruleset(name)
    except ConfvetError as exc:
        _fail(str(exc))
    click.echo(f"Removed ruleset {removed.name}")


# Rules


@cli.group()
def rule() -> None:
    """Manage individual rules."""


def _toggle_rule(opts: _Options, ruleset_name: str, rule_id: str, enabled: bool) -> None:
    try:
        store = opts.store()
        (store.enable_rule if enabled else store.disable_rule)(ruleset_name, rule_id)
    except ConfvetError as exc:
        _fail(str(exc))
    click.echo(f"Rule {rule_id} in {ruleset_name} {'enabled' if enabled else 'disabled'}")


@rule.command("enable")
@click.argument("ruleset_name", metavar="RULESET")
@click.argument("rule_id", metavar="RULE")
@pass_options
def rule_enable(opts: _Options, ruleset_name: str, rule_id: str) -> None:
    """Enable RULE in RULESET."""
    _toggle_rule(opts, ruleset_name, rule_id, True)


@rule.command("disable")
@click.argument("ruleset_name", metavar="RULESET")
@click.argument("rule_id", metavar="RULE")
@pass_options
def rule_disable(opts: _Options, ruleset_name: str, rule_id: str) -> None:
    """Disable RULE in RULESET."""
    _toggle_rule(opts, ruleset_name, rule_id, False)


@rule.command("describe")
@click.argument("ruleset_name", metavar="RULESET")
@click.argument("rule_id", metavar="RULE")
@pass_options
def rule_describe(opts: _Options, ruleset_name: str, rule_id: str) -> None:
    """Show the stored details of RULE in RULESET."""
    try:
        found = opts.store().get_rule(ruleset_name, rule_id)
    except ConfvetError as exc:
        _fail(str(exc))

    if opts.json:
        click.echo(format_rule_json(found))
    else:
        click.echo(format_rule_text(found, no_color=opts.no_color))
