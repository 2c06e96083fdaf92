"""remap_users.context

Immutable per-run configuration for the remap-users pipeline.

``RemapUsersContext`` validates itself in ``__post_init__`` and raises
``ConfigurationError`` before any database I/O happens. It also derives the
run-parameter fingerprint (including a stat-based fingerprint of every file
under the snapshot path) that a dry-run manifest is matched against.

Usage:
    ctx = RemapUsersContext(
        source_environment="prod",
        connection_string="host=uat dbname=app",
        snapshot_path="./snapshots/prod",
        user_table="public.User",
        matching_rules=["email", "fallback"],
        fallback_user_id=999,
    )
    ctx.policy             # RemapUsersPolicy.REASSIGN (fallback configured)
    ctx.parameters_hash    # stable sha256 hex digest
"""

from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from remap_users.manifest import RemapUsersRunParameters, compute_snapshot_fingerprint
from remap_users.normalize import trim
from remap_users.schema_graph import SchemaTable
from remap_users.shared import ConfigurationError

log = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIRECTORY = "./artifacts/remap-users"
DEFAULT_USER_SCHEMA = "public"
DEFAULT_USER_ID_COLUMN = "Id"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RemapUsersPolicy(str, enum.Enum):
    """Disposition of identity references that have no mapping."""

    REASSIGN = "reassign"
    PRUNE = "prune"

    @classmethod
    def parse(cls, value: "RemapUsersPolicy | str") -> "RemapUsersPolicy":
        if isinstance(value, cls):
            return value
        v = (trim(str(value)) or "").lower()
        for member in cls:
            if member.value == v:
                return member
        raise ConfigurationError(
            f"unknown policy {value!r}; expected one of: "
            f"{', '.join(m.value for m in cls)}"
        )


class RemapUsersMatchRule(str, enum.Enum):
    """Identity matching rules; the value doubles as the map's match reason."""

    EMAIL = "email_exact"
    NORMALIZE_EMAIL = "email_norm"
    USER_NAME = "username"
    EMPLOYEE_NUMBER = "employee_no"
    FALLBACK = "fallback"

    @classmethod
    def parse(cls, value: "RemapUsersMatchRule | str") -> "RemapUsersMatchRule":
        if isinstance(value, cls):
            return value
        key = "".join(c for c in str(value).lower() if c.isalnum())
        rule = _RULE_ALIASES.get(key)
        if rule is None:
            raise ConfigurationError(
                f"unknown matching rule {value!r}; expected one of: "
                "email, normalize-email, username, employee-number, fallback"
            )
        return rule

    @classmethod
    def parse_many(
        cls, values: Sequence["RemapUsersMatchRule | str"]
    ) -> tuple["RemapUsersMatchRule", ...]:
        """Parse rules in order, dropping repeats (first occurrence wins)."""
        seen: list[RemapUsersMatchRule] = []
        for value in values:
            rule = cls.parse(value)
            if rule not in seen:
                seen.append(rule)
        return tuple(seen)


_RULE_ALIASES = {
    "email": RemapUsersMatchRule.EMAIL,
    "emailexact": RemapUsersMatchRule.EMAIL,
    "normalizeemail": RemapUsersMatchRule.NORMALIZE_EMAIL,
    "normalizedemail": RemapUsersMatchRule.NORMALIZE_EMAIL,
    "emailnorm": RemapUsersMatchRule.NORMALIZE_EMAIL,
    "username": RemapUsersMatchRule.USER_NAME,
    "employeenumber": RemapUsersMatchRule.EMPLOYEE_NUMBER,
    "employeeno": RemapUsersMatchRule.EMPLOYEE_NUMBER,
    "fallback": RemapUsersMatchRule.FALLBACK,
}


# ---------------------------------------------------------------------------
# PII redaction
# ---------------------------------------------------------------------------

def redact_identifier(value: str | None, include_pii: bool) -> str:
    """Return ``value`` unchanged when PII is allowed, else a one-way hash.

    Blank values redact to the empty string so they stay recognisable.
    """
    if include_pii:
        return value or ""
    if value is None or not value.strip():
        return ""
    return "hash:" + hashlib.sha256(value.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

def _split_user_table(user_table: str) -> tuple[str, str]:
    schema, sep, name = user_table.partition(".")
    if sep and schema and name:
        return schema, name
    return DEFAULT_USER_SCHEMA, user_table


@dataclass(frozen=True)
class RemapUsersContext:
    source_environment: str
    connection_string: str = field(repr=False)
    snapshot_path: Path
    user_table: str
    matching_rules: tuple[RemapUsersMatchRule, ...]
    fallback_user_id: int | None = None
    policy: RemapUsersPolicy | None = None
    dry_run: bool = True
    artifact_directory: Path = Path(DEFAULT_ARTIFACT_DIRECTORY)
    batch_size: int = 1000
    command_timeout_seconds: int = 600
    parallelism: int = 4
    include_pii: bool = False
    rebuild_map: bool = False
    user_id_column: str = DEFAULT_USER_ID_COLUMN
    user_map_path: Path | None = None
    log_level: str = "INFO"

    # Derived in __post_init__
    policy_was_explicit: bool = field(init=False)
    user_table_schema: str = field(init=False)
    user_table_name: str = field(init=False)
    snapshot_fingerprint: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        def _set(name: str, value: object) -> None:
            object.__setattr__(self, name, value)

        for name in ("source_environment", "connection_string", "user_table", "user_id_column"):
            value = trim(getattr(self, name))
            if value is None:
                raise ConfigurationError(f"{name} is required")
            _set(name, value)

        snapshot = trim(str(self.snapshot_path)) if self.snapshot_path is not None else None
        if snapshot is None:
            raise ConfigurationError("snapshot_path is required")
        _set("snapshot_path", Path(snapshot).expanduser().resolve())

        for name in ("batch_size", "command_timeout_seconds", "parallelism"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if self.fallback_user_id is not None and (
            isinstance(self.fallback_user_id, bool) or not isinstance(self.fallback_user_id, int)
        ):
            raise ConfigurationError(
                f"fallback_user_id must be an integer, got {self.fallback_user_id!r}"
            )

        rules = RemapUsersMatchRule.parse_many(list(self.matching_rules or ()))
        if not rules:
            raise ConfigurationError("at least one matching rule must be supplied")
        if RemapUsersMatchRule.FALLBACK in rules and self.fallback_user_id is None:
            raise ConfigurationError(
                "fallback_user_id must be provided when the fallback matching rule is enabled"
            )
        if RemapUsersMatchRule.FALLBACK in rules and rules[-1] is not RemapUsersMatchRule.FALLBACK:
            log.warning("fallback rule is not last; rules after it can never match: %s",
                        ", ".join(r.value for r in rules))
        _set("matching_rules", rules)

        explicit = self.policy is not None
        if explicit:
            policy = RemapUsersPolicy.parse(self.policy)
            if policy is RemapUsersPolicy.REASSIGN and self.fallback_user_id is None:
                raise ConfigurationError("policy 'reassign' requires fallback_user_id")
        elif self.fallback_user_id is not None:
            policy = RemapUsersPolicy.REASSIGN
        else:
            policy = RemapUsersPolicy.PRUNE
        _set("policy", policy)
        _set("policy_was_explicit", explicit)

        level = (trim(self.log_level) or "INFO").upper()
        if level not in VALID_LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {VALID_LOG_LEVELS}, got {self.log_level!r}")
        _set("log_level", level)

        artifacts = trim(str(self.artifact_directory)) if self.artifact_directory else None
        _set("artifact_directory", Path(artifacts or DEFAULT_ARTIFACT_DIRECTORY).expanduser().resolve())

        if self.user_map_path is not None:
            _set("user_map_path", Path(self.user_map_path).expanduser().resolve())

        schema, name = _split_user_table(self.user_table)
        _set("user_table_schema", schema)
        _set("user_table_name", name)
        _set("user_table", f"{schema}.{name}")

        _set("snapshot_fingerprint", compute_snapshot_fingerprint(self.snapshot_path))

    # ------------------------------------------------------------------

    @property
    def user_table_ref(self) -> SchemaTable:
        return SchemaTable(self.user_table_schema, self.user_table_name)

    @property
    def run_parameters(self) -> RemapUsersRunParameters:
        return RemapUsersRunParameters(
            source_environment=self.source_environment,
            snapshot_path=str(self.snapshot_path),
            snapshot_fingerprint=self.snapshot_fingerprint,
            matching_rules=tuple(r.value for r in self.matching_rules),
            policy=self.policy.value,
            include_pii=self.include_pii,
            rebuild_map=self.rebuild_map,
            user_table=self.user_table,
            batch_size=self.batch_size,
            command_timeout_seconds=self.command_timeout_seconds,
            parallelism=self.parallelism,
            fallback_user_id=self.fallback_user_id,
        )

    @property
    def parameters_hash(self) -> str:
        return self.run_parameters.compute_hash()

    def redact(self, value: str | None) -> str:
        return redact_identifier(value, self.include_pii)
