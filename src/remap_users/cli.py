"""remap_users.cli

``remap-users`` command: remap user-identity references from a source
environment snapshot onto the target database's users.

Usage:
    remap-users --db-dsn "$DSN" --source-env PROD --snapshot-path ./snap \\
        --match-rule email_exact --match-rule fallback --fallback-user-id 999
    remap-users ... --commit        # after reviewing the dry-run artifacts
"""

from __future__ import annotations

import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click
from click.core import ParameterSource

from remap_users.config import build_context, build_options, load_config, merge_settings
from remap_users.pipeline import run_pipeline
from remap_users.reporting import build_dry_run_report, build_validation_report
from remap_users.shared import ConfigurationError

# Option names that are merged with the config file.
_SETTING_NAMES = (
    "db_dsn", "source_env", "snapshot_path", "user_table", "user_id_column",
    "match_rules", "fallback_user_id", "policy", "dry_run", "artifact_dir",
    "batch_size", "command_timeout", "parallelism", "include_pii", "rebuild_map",
    "user_map", "manifest", "max_dry_run_age_hours", "require_dry_run_approval",
    "log_level",
)


def _split_params(params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return (explicitly supplied, defaulted) option values."""
    ctx = click.get_current_context()
    explicit, defaults = {}, {}
    for name in _SETTING_NAMES:
        value = params[name]
        if name == "match_rules":
            value = list(value) or None
        source = ctx.get_parameter_source(name)
        if source in (ParameterSource.COMMANDLINE, ParameterSource.ENVIRONMENT):
            explicit[name] = value
        else:
            defaults[name] = value
    return explicit, defaults


@click.command()
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="YAML run configuration (lowest precedence)")
@click.option("--db-dsn", default=None, envvar="REMAP_USERS_DSN",
              help="PostgreSQL DSN of the target database [env: REMAP_USERS_DSN]")
@click.option("--source-env", default=None, help="Source environment tag, e.g. PROD")
@click.option("--snapshot-path", default=None, type=click.Path(file_okay=False),
              help="Directory of per-table JSON snapshot files")
@click.option("--user-table", default="User", show_default=True,
              help="Identity table, optionally schema-qualified")
@click.option("--user-id-column", default="Id", show_default=True)
@click.option(
    "--match-rule", "match_rules",
    multiple=True,
    help="Matching rule, repeatable and tried in order: "
         "email_exact, email_norm, username, employee_no, fallback",
)
@click.option("--fallback-user-id", default=None, type=int,
              help="Target user id for the fallback rule and the reassign policy")
@click.option("--policy", default=None, type=click.Choice(["reassign", "prune"], case_sensitive=False),
              help="Unmapped identities: reassign to fallback or prune "
                   "(default: reassign when a fallback is set)")
@click.option("--dry-run/--commit", default=True, show_default=True)
@click.option("--artifact-dir", default="./artifacts/remap-users", show_default=True,
              type=click.Path(file_okay=False))
@click.option("--batch-size", default=1000, type=int, show_default=True)
@click.option("--command-timeout", default=600, type=int, show_default=True,
              help="Per-statement timeout in seconds")
@click.option("--parallelism", default=4, type=int, show_default=True)
@click.option("--include-pii", is_flag=True, default=False,
              help="Show raw identifiers in reports instead of hashes")
@click.option("--rebuild-map", is_flag=True, default=False,
              help="Discard existing ctl.UserMap rows for the source environment")
@click.option("--user-map", default=None, type=click.Path(exists=True, dir_okay=False),
              help="CSV of SourceUserId,TargetUserId pairs applied before the rules")
@click.option("--manifest", default=None, type=click.Path(dir_okay=False),
              help="Dry-run manifest authorizing a commit (default: in --artifact-dir)")
@click.option("--max-dry-run-age-hours", default=24.0, type=float, show_default=True)
@click.option("--require-dry-run-approval/--no-require-dry-run-approval",
              default=True, show_default=True)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(config_path: str | None, run_id: str | None, **params: Any) -> None:
    """Remap user-identity foreign keys from a source snapshot onto UAT users."""
    run_id = run_id or str(uuid.uuid4())
    explicit, defaults = _split_params(params)

    try:
        file_settings = load_config(Path(config_path)) if config_path else {}
        settings = merge_settings(file_settings, explicit, defaults)
        logging.basicConfig(
            level=str(settings.get("log_level") or "INFO").upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        ctx = build_context(settings)
        options = build_options(settings)
    except ConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(2)

    click.echo(
        f"[{run_id}] Starting remap-users run (source_env={ctx.source_environment}, "
        f"dry_run={ctx.dry_run}, policy={ctx.policy.value})"
    )
    click.echo(f"[{run_id}] Parameters hash: {ctx.parameters_hash}")

    result = run_pipeline(ctx, options=options, run_id=run_id)
    state = result.state

    if state.dry_run_summary is not None:
        click.echo(build_dry_run_report(state.dry_run_summary, state.user_map_report))
    if state.post_load_validation is not None:
        click.echo(build_validation_report(state.post_load_validation))
    for warning in state.warnings:
        click.echo(f"[{run_id}] WARNING: {warning}", err=True)
    click.echo(f"[{run_id}] Artifacts: {ctx.artifact_directory}")

    failed = result.failed_step
    if failed is not None:
        click.echo(
            f"[{run_id}] FAILED at step {failed.step}: {failed.error_type}: {failed.error}",
            err=True,
        )
        sys.exit(1)
    click.echo(f"[{run_id}] Completed {'dry run' if ctx.dry_run else 'commit'}")


if __name__ == "__main__":
    main()
