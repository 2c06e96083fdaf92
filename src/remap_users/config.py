"""remap_users.config

YAML run configuration for ``remap-users --config``.

Precedence, lowest to highest: YAML file, environment (``REMAP_USERS_DSN``),
command-line options. Only settings actually supplied by a source take part
in the merge; anything unset falls back to the CLI default.

Example file:

    source_env: PROD
    snapshot_path: ./snapshots/prod-2024-05-01
    user_table: dbo.User
    match_rules: [email_exact, email_norm, username, fallback]
    fallback_user_id: 999
    policy: reassign
    batch_size: 5000
    parallelism: 8
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

import yaml

from remap_users.context import RemapUsersContext
from remap_users.pipeline import DEFAULT_MAX_DRY_RUN_AGE, PipelineOptions
from remap_users.shared import ConfigurationError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

# key -> accepted Python types after yaml.safe_load
KNOWN_KEYS: dict[str, tuple[type, ...]] = {
    "db_dsn": (str,),
    "source_env": (str,),
    "snapshot_path": (str,),
    "user_table": (str,),
    "user_id_column": (str,),
    "match_rules": (list, str),
    "fallback_user_id": (int,),
    "policy": (str,),
    "dry_run": (bool,),
    "artifact_dir": (str,),
    "batch_size": (int,),
    "command_timeout": (int,),
    "parallelism": (int,),
    "include_pii": (bool,),
    "rebuild_map": (bool,),
    "user_map": (str,),
    "manifest": (str,),
    "max_dry_run_age_hours": (int, float),
    "require_dry_run_approval": (bool,),
    "log_level": (str,),
}

DEFAULT_MATCH_RULES = ("email_exact", "email_norm", "username", "employee_no")


class ConfigValidationError(ConfigurationError):
    """Raised when a YAML config file fails schema validation."""


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_config(path: Path) -> dict[str, Any]:
    """Load and validate a YAML config file.

    Raises:
        ConfigValidationError: Unknown key, wrong value type, or the document
            is not a mapping.
        FileNotFoundError: If the file does not exist.
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    validate_config(data)
    config = dict(data)
    if isinstance(config.get("match_rules"), str):
        config["match_rules"] = [r.strip() for r in config["match_rules"].split(",") if r.strip()]
    return config


def validate_config(data: Any) -> None:
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"config root must be a mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(KNOWN_KEYS))
    if unknown:
        raise ConfigValidationError(f"unknown config key(s): {', '.join(unknown)}")
    for key, value in data.items():
        if value is None:
            continue
        accepted = KNOWN_KEYS[key]
        # bool is an int subclass; only accept it where bool is listed
        if isinstance(value, bool) and bool not in accepted:
            raise ConfigValidationError(f"{key} must not be a boolean")
        if not isinstance(value, accepted):
            names = " or ".join(t.__name__ for t in accepted)
            raise ConfigValidationError(
                f"{key} must be {names}, got {type(value).__name__}")
    rules = data.get("match_rules")
    if isinstance(rules, list) and not all(isinstance(r, str) for r in rules):
        raise ConfigValidationError("match_rules must be a list of strings")


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def merge_settings(
    file_settings: Mapping[str, Any],
    explicit: Mapping[str, Any],
    defaults: Mapping[str, Any],
) -> dict[str, Any]:
    """Combine config-file values, explicitly supplied options and defaults.

    A policy named in both the file and on the command line must agree.

    Raises:
        ConfigurationError: File and command-line policies differ.
    """
    file_policy = file_settings.get("policy")
    cli_policy = explicit.get("policy")
    if file_policy is not None and cli_policy is not None and (
        str(file_policy).strip().lower() != str(cli_policy).strip().lower()
    ):
        raise ConfigurationError(
            f"policy {cli_policy!r} conflicts with config file policy {file_policy!r}")

    merged = dict(defaults)
    merged.update({k: v for k, v in file_settings.items() if v is not None})
    merged.update({k: v for k, v in explicit.items() if v is not None})
    merged["policy_explicit"] = file_policy is not None or cli_policy is not None
    return merged


def _path(value: Any) -> Path | None:
    return Path(value) if value not in (None, "") else None


def build_context(settings: Mapping[str, Any]) -> RemapUsersContext:
    """Build a validated ``RemapUsersContext`` from merged settings."""
    for key in ("db_dsn", "source_env", "snapshot_path"):
        if not settings.get(key):
            raise ConfigurationError(f"{key} is required")
    rules = settings.get("match_rules") or DEFAULT_MATCH_RULES
    return RemapUsersContext(
        source_environment=settings["source_env"],
        connection_string=settings["db_dsn"],
        snapshot_path=Path(settings["snapshot_path"]),
        user_table=settings.get("user_table") or "User",
        matching_rules=tuple(rules),
        fallback_user_id=settings.get("fallback_user_id"),
        policy=settings.get("policy") if settings.get("policy_explicit") else None,
        dry_run=bool(settings.get("dry_run", True)),
        artifact_directory=_path(settings.get("artifact_dir")) or Path("./artifacts/remap-users"),
        batch_size=settings.get("batch_size", 1000),
        command_timeout_seconds=settings.get("command_timeout", 600),
        parallelism=settings.get("parallelism", 4),
        include_pii=bool(settings.get("include_pii", False)),
        rebuild_map=bool(settings.get("rebuild_map", False)),
        user_id_column=settings.get("user_id_column") or "Id",
        user_map_path=_path(settings.get("user_map")),
        log_level=settings.get("log_level") or "INFO",
    )


def build_options(settings: Mapping[str, Any]) -> PipelineOptions:
    hours = settings.get("max_dry_run_age_hours")
    if hours is not None and hours <= 0:
        raise ConfigurationError(f"max_dry_run_age_hours must be positive, got {hours!r}")
    return PipelineOptions(
        require_dry_run_approval=bool(settings.get("require_dry_run_approval", True)),
        manifest_path=_path(settings.get("manifest")),
        max_dry_run_age=timedelta(hours=hours) if hours is not None else DEFAULT_MAX_DRY_RUN_AGE,
    )
