# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Melody CLI - back up and restore configuration state from templates"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click

from melody import __version__
from melody.core.analyzer import analyze
from melody.core.config import load_config
from melody.core.elevation import ElevatedTask, ElevationCoordinator, default_launcher
from melody.core.engine import BACKUP, PRIVILEGE_KINDS, RESTORE, StateEngine
from melody.core.exceptions import ConfigError, ElevationFailedError, MelodyError
from melody.core.logger import setup_logging
from melody.core.privilege import PrivilegeContext
from melody.core.store import StateStore
from melody.core.template import load_template

# Force UTF-8 encoding for Windows
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8")
    sys.stderr.reconfigure(encoding="utf-8")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PRIVILEGE = 2

_PRIVILEGE_KIND_VALUES = {kind.value for kind in PRIVILEGE_KINDS}


@click.group()
@click.version_option(version=__version__, prog_name="melody")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False), help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str], verbose: bool):
    """Melody - configuration state backup and restore.

    Core commands:
        melody analyze TEMPLATE   - Show which privileges a template needs
        melody backup TEMPLATE    - Capture every item into the state store
        melody restore TEMPLATE   - Re-apply captured items
        melody inspect SNAPSHOT   - Show a snapshot's metadata
        melody whoami             - Show the current privilege level
    """
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as e:
        click.echo(f"[-] Config error: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    setup_logging(config, verbose)
    ctx.obj = {"config": config, "config_file": config_file}


# =============================================================================
# Helpers
# =============================================================================


def _emit_json(data: Dict[str, Any]):
    click.echo(json.dumps(data, indent=2, default=str))


def _resolve_secret(secret_env: Optional[str], ask_secret: bool) -> Optional[str]:
    if ask_secret:
        return click.prompt("Secret", hide_input=True)
    if secret_env:
        value = os.environ.get(secret_env)
        if not value:
            raise click.UsageError(f"Environment variable {secret_env} is not set")
        return value
    return None


def _report_exit_code(report: Dict[str, Any]) -> int:
    if report.get("success"):
        return EXIT_OK
    for outcome in report.get("outcomes", []):
        if not outcome["success"] and outcome.get("error_kind") in _PRIVILEGE_KIND_VALUES:
            return EXIT_PRIVILEGE
    return EXIT_FAILURE


def _render_report(report: Dict[str, Any]):
    requirement = report["requirement"]
    click.echo(f"Template: {report['template']} ({report['operation']})")
    if requirement["requires_admin"]:
        state = "elevation required" if requirement["requires_elevation"] else "running elevated"
        click.echo(f"Privilege: administrator ({state})")

    for outcome in report["outcomes"]:
        item = outcome["details"].get("item", "?")
        if not outcome["success"]:
            click.echo(f"  [-] {item}: {outcome['error_kind']}: {outcome['message']}")
        elif outcome["skipped"]:
            click.echo(f"  [~] {item}: {outcome['message']}")
        else:
            click.echo(f"  [+] {item}: {outcome['message']}")

    summary = report["summary"]
    click.echo(f"\n{summary['total']} item(s), {summary['failed']} failed, {summary['skipped']} skipped")


def _run_template_command(
    ctx: click.Context,
    operation: str,
    template_path: str,
    state_dir: Optional[str],
    secret_env: Optional[str],
    ask_secret: bool,
    as_json: bool,
    elevate: bool,
    what_if: bool,
    no_prompt: bool,
):
    config = ctx.obj["config"]
    if state_dir:
        config.paths.state_dir = Path(state_dir)

    try:
        template = load_template(template_path)
        context = PrivilegeContext.current()
        requirement = analyze(template, context)
    except MelodyError as e:
        click.echo(f"[-] {e}", err=True)
        sys.exit(EXIT_FAILURE)

    if what_if:
        plan = [
            {"item": item.name, "path": str(item.config_path)}
            for item in template.items()
            if item.action.applies_to(operation)
        ]
        if as_json:
            _emit_json({"what_if": True, "operation": operation, "requirement": requirement.to_dict(), "items": plan})
        else:
            click.echo(f"What-if: {operation} of '{template.name}' would process {len(plan)} item(s)")
            for entry in plan:
                click.echo(f"  [ ] {entry['item']}: {entry['path']}")
        sys.exit(EXIT_OK)

    secret = _resolve_secret(secret_env, ask_secret)

    if elevate and requirement.requires_elevation:
        task = ElevatedTask(
            target=f"melody.core.engine:run_{operation}_task",
            kwargs={
                "template": str(Path(template_path).resolve()),
                "state_dir": str(Path(config.paths.state_dir).resolve()),
                "secret": secret,
                "key_file": str(config.paths.key_file),
                "config_file": ctx.obj["config_file"],
            },
        )
        outcome = ElevationCoordinator(config=config).invoke_with_elevation(
            task, no_prompt=no_prompt, context=context
        )
        if not outcome.success:
            if as_json:
                _emit_json(outcome.to_dict())
            else:
                click.echo(f"[-] {outcome.error_kind.value}: {outcome.message}", err=True)
            sys.exit(EXIT_PRIVILEGE)
        report = outcome.value
    else:
        engine = StateEngine(config=config)
        if operation == BACKUP:
            report = engine.backup_template(template, secret=secret, context=context).to_dict()
        else:
            report = engine.restore_template(template, secret=secret, context=context).to_dict()

    if as_json:
        _emit_json(report)
    else:
        _render_report(report)
        if requirement.requires_elevation and not elevate:
            click.echo("Some items need administrator rights; re-run with --elevate.")

    sys.exit(_report_exit_code(report))


def _template_options(func):
    options = [
        click.argument("template_path", metavar="TEMPLATE", type=click.Path(exists=True, dir_okay=False)),
        click.option("--state-dir", type=click.Path(file_okay=False), help="Snapshot store directory"),
        click.option("--secret-env", metavar="NAME", help="Read the encryption secret from this env var"),
        click.option("--ask-secret", is_flag=True, help="Prompt for the encryption secret"),
        click.option("--json", "as_json", is_flag=True, help="JSON output"),
        click.option("--elevate", is_flag=True, help="Relaunch with administrator rights when needed"),
        click.option("--what-if", is_flag=True, help="Show what would run without doing it"),
        click.option("--no-prompt", is_flag=True, help="Fail instead of prompting for elevation"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


# =============================================================================
# Commands
# =============================================================================


@cli.command("analyze")
@click.argument("template_path", metavar="TEMPLATE", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="JSON output")
def analyze_cmd(template_path: str, as_json: bool):
    """Show the privilege a template needs.

    Examples:
        melody analyze templates/sound.yaml
        melody analyze templates/network.yaml --json
    """
    try:
        template = load_template(template_path)
        requirement = analyze(template)
    except MelodyError as e:
        click.echo(f"[-] {e}", err=True)
        sys.exit(EXIT_FAILURE)

    if as_json:
        _emit_json({"template": template.name, **requirement.to_dict()})
        return

    click.echo(f"Template: {template.name}")
    click.echo(f"Requires admin: {'yes' if requirement.requires_admin else 'no'}")
    click.echo(f"Requires elevation: {'yes' if requirement.requires_elevation else 'no'}")
    for reason in requirement.reasons:
        click.echo(f"  - {reason.item}: {reason.target} ({reason.tag})")


@cli.command()
@_template_options
@click.pass_context
def backup(ctx: click.Context, template_path: str, **options):
    """Capture every item of a template into the state store.

    Examples:
        melody backup templates/sound.yaml
        melody backup templates/ssh.yaml --secret-env MELODY_SECRET
        melody backup templates/network.yaml --elevate
    """
    _run_template_command(ctx, BACKUP, template_path, **options)


@cli.command()
@_template_options
@click.pass_context
def restore(ctx: click.Context, template_path: str, **options):
    """Re-apply captured items of a template.

    Examples:
        melody restore templates/sound.yaml
        melody restore templates/network.yaml --elevate --no-prompt
    """
    _run_template_command(ctx, RESTORE, template_path, **options)


@cli.command()
@click.argument("snapshot_file", metavar="SNAPSHOT", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="JSON output")
def inspect(snapshot_file: str, as_json: bool):
    """Show a snapshot's metadata (never its payload)."""
    try:
        snapshot = StateStore.load_file(snapshot_file)
    except MelodyError as e:
        click.echo(f"[-] {e}", err=True)
        sys.exit(EXIT_FAILURE)

    info = {
        "source": str(snapshot.source_path),
        "kind": snapshot.source_path.kind,
        "captured_at": snapshot.captured_at.isoformat(),
        "payload_hash": snapshot.payload_hash,
        "hash_ok": snapshot.verify(),
        "size": len(snapshot.payload),
        "encrypted": snapshot.encrypted,
        "algorithm": snapshot.encryption.algorithm if snapshot.encryption else None,
        "metadata": snapshot.metadata,
    }

    if as_json:
        _emit_json(info)
    else:
        for key, value in info.items():
            click.echo(f"{key:>12}: {value}")

    if not info["hash_ok"]:
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="JSON output")
@click.pass_context
def whoami(ctx: click.Context, as_json: bool):
    """Show the current privilege level and elevation launcher."""
    context = PrivilegeContext.current()
    try:
        launcher = default_launcher(ctx.obj["config"]).name
    except ElevationFailedError:
        launcher = None

    info = {"elevated": context.elevated, "platform": context.platform, "launcher": launcher}
    if as_json:
        _emit_json(info)
    else:
        click.echo(f"Platform: {context.platform}")
        click.echo(f"Elevated: {'yes' if context.elevated else 'no'}")
        click.echo(f"Launcher: {launcher or 'none available'}")


def main():
    cli()


if __name__ == "__main__":
    main()
