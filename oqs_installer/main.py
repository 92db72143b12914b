"""
oqs-install — CLI entrypoint.

Usage:
    oqs-install --help
    oqs-install server --port 8022
    oqs-install client --server-host example.org --server-user alice
    oqs-install check

Exit codes:
    0 success, 1 generic, 10 validation, 11 network, 12 build,
    13 config, 14 key, 15 service, 16 lock held, 130 cancelled
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from oqs_installer import __version__
from oqs_installer.core.config.loader import InstallConfig, load_config
from oqs_installer.core.errors import ConfigError, ValidationError
from oqs_installer.core.observability.logging_config import setup_logging

# CLI option name → InstallConfig field
_OPTION_FIELDS = {
    "prefix": "install_prefix",
    "rollback": "rollback_on_failure",
}


@click.group()
@click.version_option(version=__version__, prog_name="oqs-install")
@click.option("--verbose", "-v", is_flag=True, help="Show progress (INFO) on the console.")
@click.option("--quiet", "-q", is_flag=True, help="Only show errors.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with option values.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """Build and install a quantum-safe OpenSSH (liboqs + OQS OpenSSH)."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (console only until the config is known) ──
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("OQS_LOG_LEVEL", "WARNING")
    ctx.obj["log_level"] = level

    setup_logging(level=level)


def install_options(fn: Callable) -> Callable:
    """Options shared by ``server`` and ``client``."""
    options = [
        click.option("--prefix", type=click.Path(path_type=Path), default=None,
                     help="Install prefix (default /opt/oqs-ssh)."),
        click.option("--port", type=click.IntRange(1, 65535), default=None,
                     help="Port of the quantum-safe sshd (default 8022)."),
        click.option("--jobs", "-j", type=click.IntRange(min=1), default=None,
                     help="Parallel compile jobs (default: CPU count)."),
        click.option("--liboqs-version", default=None, help="liboqs branch or tag."),
        click.option("--ssh-version", default=None, help="OQS OpenSSH branch or tag."),
        click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None,
                     help="Timeout in seconds for fetch, package, configure and install commands."),
        click.option("--retries", type=click.IntRange(min=1), default=None,
                     help="Attempts for network operations."),
        click.option("--retry-delay", type=click.FloatRange(min=0), default=None,
                     help="Seconds before the first retry."),
        click.option("--log-file", type=click.Path(path_type=Path), default=None,
                     help="Installation log (append-only)."),
        click.option("--dry-run", is_flag=True, help="Show the steps without running them."),
        click.option("--skip-tests", is_flag=True, help="Do not run the OpenSSH test script."),
        click.option("--skip-packages", is_flag=True, help="Do not install system packages."),
        click.option("--force", is_flag=True, help="Regenerate keys even if present."),
        click.option("--backup-sources", is_flag=True,
                     help="Move previous source trees to the backup dir instead of deleting them."),
        click.option("--rollback", is_flag=True,
                     help="On failure, also undo steps that succeeded (removes the prefix)."),
        click.option("--resume", is_flag=True,
                     help="Skip steps that succeeded in the previous run."),
        click.option("--json", "as_json", is_flag=True, help="Output as JSON."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _cli_values(options: dict[str, Any]) -> dict[str, Any]:
    """Map click parameters to config fields; unset values are dropped.

    Flags only ever switch behaviour on, so False means "not given".
    """
    values = {}
    for name, value in options.items():
        if value is None or value is False:
            continue
        values[_OPTION_FIELDS.get(name, name)] = value
    return values


def _load(
    ctx: click.Context,
    options: dict[str, Any],
    *,
    log_to_file: bool = True,
) -> InstallConfig:
    try:
        config = load_config(_cli_values(options), config_file=ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(e.exit_code)

    if log_to_file and not config.dry_run:
        setup_logging(
            level=ctx.obj["log_level"],
            log_file=config.effective_log_file,
        )
    return config


def _install(ctx: click.Context, role: str, as_json: bool, options: dict[str, Any]) -> None:
    from oqs_installer.core.persistence.report import format_summary
    from oqs_installer.core.use_cases.install import run_install

    config = _load(ctx, options)
    result = run_install(role, config)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.dry_run:
        click.secho(f"Dry run: {role} installation plan", fg="cyan", bold=True)
        for index, step in enumerate(result.plan, start=1):
            requires = f"  (after {', '.join(step['requires'])})" if step["requires"] else ""
            click.echo(f"  {index:2d}. {step['name']:<16} {step['description']}{requires}")
        click.echo(f"\nInstall prefix: {config.install_prefix}")
        return

    if result.error is not None:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(result.exit_code)

    run = result.run
    lines = format_summary(run, result.report_path)

    if result.ok:
        click.secho(f"✅ {role} installation complete", fg="green", bold=True)
        for line in lines:
            click.echo(line)
        for step in run.steps:
            for note in step.notes:
                click.echo(f"  • {note}")
        return

    failed = run.failed_step
    click.secho(f"❌ {role} installation failed", fg="red", bold=True, err=True)
    for line in lines:
        click.echo(line, err=True)
    if failed is not None and failed.error is not None:
        click.echo(f"\nFailed step: {failed.name}", err=True)
        click.echo(f"Reason:      {failed.error.message}", err=True)
        if failed.error.command:
            click.echo(f"Command:     {failed.error.command}", err=True)
    click.echo(f"See the log: {config.effective_log_file}", err=True)
    sys.exit(result.exit_code)


@cli.command()
@install_options
@click.option("--no-service", is_flag=True, help="Do not register the systemd unit.")
@click.pass_context
def server(ctx: click.Context, as_json: bool, **options: Any) -> None:
    """Install the quantum-safe sshd as a second SSH server."""
    _install(ctx, "server", as_json, options)


@cli.command()
@install_options
@click.option("--server-host", default=None, help="Host name or address of the OQS server.")
@click.option("--server-user", default=None, help="Login user on the server.")
@click.option("--server-port", type=click.IntRange(1, 65535), default=None,
              help="Server port (default: --port).")
@click.option("--host-alias", default=None, help="Alias written to the client config.")
@click.pass_context
def client(ctx: click.Context, as_json: bool, **options: Any) -> None:
    """Install the quantum-safe ssh client and a host alias."""
    _install(ctx, "client", as_json, options)


@cli.command()
@click.option("--prefix", type=click.Path(path_type=Path), default=None,
              help="Install prefix to check free space for.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check(ctx: click.Context, prefix: Path | None, as_json: bool) -> None:
    """Check the build toolchain and host resources; install nothing."""
    from oqs_installer.core.use_cases.install import check_host

    config = _load(ctx, {"prefix": prefix}, log_to_file=False)
    failures = check_host(config)

    if as_json:
        click.echo(json.dumps({
            "ok": not failures,
            "failures": [{"tool": f.tool, "reason": f.reason} for f in failures],
        }, indent=2))
    elif failures:
        click.secho("❌ Host is not ready:", fg="red", err=True)
        for failure in failures:
            click.echo(f"   • {failure}", err=True)
    else:
        click.secho("✅ Toolchain and resources OK", fg="green")

    if failures:
        sys.exit(ValidationError.exit_code)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
