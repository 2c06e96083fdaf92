"""Unit tests for remap_users.config (YAML loading, validation, merge precedence)."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from remap_users.config import (
    DEFAULT_MATCH_RULES,
    ConfigValidationError,
    build_context,
    build_options,
    load_config,
    merge_settings,
    validate_config,
)
from remap_users.context import RemapUsersMatchRule, RemapUsersPolicy
from remap_users.pipeline import DEFAULT_MAX_DRY_RUN_AGE
from remap_users.shared import ConfigurationError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "remap.yaml"
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# load_config / validate_config
# ---------------------------------------------------------------------------

class TestLoadConfig:
    def test_valid_file(self, tmp_path):
        cfg = load_config(_write(tmp_path, (
            "source_env: PROD\n"
            "match_rules: [email_exact, fallback]\n"
            "fallback_user_id: 999\n"
            "dry_run: false\n"
            "max_dry_run_age_hours: 12.5\n"
        )))
        assert cfg["source_env"] == "PROD"
        assert cfg["match_rules"] == ["email_exact", "fallback"]
        assert cfg["dry_run"] is False
        assert cfg["max_dry_run_age_hours"] == 12.5

    def test_empty_file(self, tmp_path):
        assert load_config(_write(tmp_path, "")) == {}

    def test_comma_separated_rules(self, tmp_path):
        cfg = load_config(_write(tmp_path, "match_rules: 'email_exact, username ,'\n"))
        assert cfg["match_rules"] == ["email_exact", "username"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")


class TestValidateConfig:
    def test_root_must_be_mapping(self):
        with pytest.raises(ConfigValidationError, match="mapping"):
            validate_config(["source_env"])

    def test_unknown_key(self):
        with pytest.raises(ConfigValidationError, match="snapshot_dir"):
            validate_config({"snapshot_dir": "./x"})

    def test_wrong_type(self):
        with pytest.raises(ConfigValidationError, match="batch_size must be int"):
            validate_config({"batch_size": "lots"})

    def test_bool_rejected_for_int(self):
        with pytest.raises(ConfigValidationError, match="boolean"):
            validate_config({"parallelism": True})

    def test_rule_list_of_strings(self):
        with pytest.raises(ConfigValidationError, match="list of strings"):
            validate_config({"match_rules": ["email", 3]})

    def test_null_values_allowed(self):
        validate_config({"fallback_user_id": None, "policy": None})

    def test_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            validate_config({"nope": 1})


# ---------------------------------------------------------------------------
# merge_settings
# ---------------------------------------------------------------------------

class TestMergeSettings:
    def test_precedence(self):
        merged = merge_settings(
            {"batch_size": 500, "parallelism": 2},
            {"batch_size": 50},
            {"batch_size": 1000, "parallelism": 4, "command_timeout": 600},
        )
        assert merged["batch_size"] == 50
        assert merged["parallelism"] == 2
        assert merged["command_timeout"] == 600

    def test_file_overrides_default_flag(self):
        merged = merge_settings({"dry_run": False}, {}, {"dry_run": True})
        assert merged["dry_run"] is False

    def test_policy_conflict(self):
        with pytest.raises(ConfigurationError, match="conflicts"):
            merge_settings({"policy": "prune"}, {"policy": "reassign"}, {})

    def test_policy_agreement_case_insensitive(self):
        merged = merge_settings({"policy": "Prune"}, {"policy": "prune"}, {})
        assert merged["policy"] == "prune"
        assert merged["policy_explicit"] is True

    def test_policy_not_explicit_by_default(self):
        assert merge_settings({}, {}, {"policy": None})["policy_explicit"] is False

    def test_policy_from_file_is_explicit(self):
        assert merge_settings({"policy": "prune"}, {}, {})["policy_explicit"] is True


# ---------------------------------------------------------------------------
# build_context / build_options
# ---------------------------------------------------------------------------

class TestBuildContext:
    def _settings(self, snapshot_dir, **overrides):
        settings = {
            "db_dsn": "host=localhost dbname=uat",
            "source_env": "PROD",
            "snapshot_path": str(snapshot_dir),
            "match_rules": ["email_exact", "fallback"],
            "fallback_user_id": 999,
            "policy_explicit": False,
        }
        settings.update(overrides)
        return settings

    @pytest.mark.parametrize("key", ["db_dsn", "source_env", "snapshot_path"])
    def test_required(self, snapshot_dir, key):
        with pytest.raises(ConfigurationError, match=key):
            build_context(self._settings(snapshot_dir, **{key: None}))

    def test_defaults(self, snapshot_dir):
        ctx = build_context(self._settings(snapshot_dir))
        assert ctx.user_table == "public.User"
        assert ctx.user_id_column == "Id"
        assert ctx.dry_run is True
        assert ctx.batch_size == 1000
        assert ctx.policy is RemapUsersPolicy.REASSIGN

    def test_default_rules(self, snapshot_dir):
        ctx = build_context(self._settings(snapshot_dir, match_rules=None, fallback_user_id=None))
        assert [r.value for r in ctx.matching_rules] == list(DEFAULT_MATCH_RULES)
        assert ctx.policy is RemapUsersPolicy.PRUNE

    def test_policy_ignored_unless_explicit(self, snapshot_dir):
        ctx = build_context(self._settings(snapshot_dir, policy="prune"))
        assert ctx.policy is RemapUsersPolicy.REASSIGN

    def test_explicit_policy(self, snapshot_dir):
        ctx = build_context(self._settings(snapshot_dir, policy="prune", policy_explicit=True))
        assert ctx.policy is RemapUsersPolicy.PRUNE
        assert ctx.policy_was_explicit

    def test_rules_resolved(self, snapshot_dir):
        ctx = build_context(self._settings(snapshot_dir, match_rules=["username"], fallback_user_id=None))
        assert ctx.matching_rules == (RemapUsersMatchRule.USER_NAME,)

    def test_user_map_path(self, snapshot_dir, tmp_path):
        ctx = build_context(self._settings(snapshot_dir, user_map=str(tmp_path / "map.csv")))
        assert ctx.user_map_path == (tmp_path / "map.csv").resolve()


class TestBuildOptions:
    def test_defaults(self):
        options = build_options({})
        assert options.require_dry_run_approval is True
        assert options.manifest_path is None
        assert options.max_dry_run_age == DEFAULT_MAX_DRY_RUN_AGE

    def test_values(self, tmp_path):
        options = build_options({
            "require_dry_run_approval": False,
            "manifest": str(tmp_path / "m.json"),
            "max_dry_run_age_hours": 1.5,
        })
        assert options.require_dry_run_approval is False
        assert options.manifest_path == tmp_path / "m.json"
        assert options.max_dry_run_age == timedelta(minutes=90)

    def test_non_positive_age(self):
        with pytest.raises(ConfigurationError, match="max_dry_run_age_hours"):
            build_options({"max_dry_run_age_hours": 0})
