"""Shared unit-test fixtures: a snapshot directory and a context factory."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from remap_users.context import RemapUsersContext


@pytest.fixture
def snapshot_dir(tmp_path: Path) -> Path:
    snap = tmp_path / "snapshot"
    snap.mkdir()
    (snap / "public.User.json").write_text('[{"Id": 1}, {"Id": 2}]', encoding="utf-8")
    (snap / "public.Order.json").write_text('[{"Id": 10, "CreatedBy": 1}]', encoding="utf-8")
    return snap


@pytest.fixture
def make_ctx(snapshot_dir: Path, tmp_path: Path) -> Callable[..., RemapUsersContext]:
    def _make(**overrides) -> RemapUsersContext:
        kwargs = dict(
            source_environment="PROD",
            connection_string="host=localhost dbname=uat",
            snapshot_path=snapshot_dir,
            user_table="User",
            matching_rules=("email_exact", "fallback"),
            fallback_user_id=999,
            artifact_directory=tmp_path / "artifacts",
        )
        kwargs.update(overrides)
        return RemapUsersContext(**kwargs)
    return _make
