"""remap_users.manifest

Run-parameter fingerprinting and the dry-run manifest that can authorize a
later commit run.

A dry run writes ``dry-run.manifest.json``. A commit run reloads it and calls
``RemapUsersRunManifest.matches_for_commit`` which only accepts when:
  - the manifest was produced by a dry run,
  - the candidate run is a commit (not another dry run),
  - every run parameter matches exactly (snapshot fingerprint included),
  - ``as_of_utc - executed_at_utc <= max_age``.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from remap_users.shared import DryRunApprovalError

MANIFEST_FILE_NAME = "dry-run.manifest.json"
HASH_FILE_NAME = "dry-run.hash"


# ---------------------------------------------------------------------------
# Snapshot fingerprint
# ---------------------------------------------------------------------------

def snapshot_fingerprint_lines(snapshot_path: Path) -> list[str]:
    """Return one ``relative|size|mtime_ns`` line per file under ``snapshot_path``.

    Directories are walked recursively and ordered case-insensitively by
    relative path. A single file yields its own line; a missing path yields
    a ``missing:`` marker so the hash still changes when it appears.
    """
    if snapshot_path.is_dir():
        root = snapshot_path.resolve()
        files = [p for p in root.rglob("*") if p.is_file()]
        rel = sorted(
            ((p.relative_to(root).as_posix(), p) for p in files),
            key=lambda pair: (pair[0].casefold(), pair[0]),
        )
        lines = []
        for relative, path in rel:
            try:
                st = path.stat()
            except OSError as exc:
                lines.append(f"error:{type(exc).__name__}:{relative}")
                continue
            lines.append(f"{relative}|{st.st_size}|{st.st_mtime_ns}")
        return lines
    if snapshot_path.is_file():
        st = snapshot_path.stat()
        return [f"{snapshot_path.name}|{st.st_size}|{st.st_mtime_ns}"]
    return [f"missing:{snapshot_path}"]


def compute_snapshot_fingerprint(snapshot_path: Path) -> str:
    joined = "\n".join(snapshot_fingerprint_lines(snapshot_path))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Run parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemapUsersRunParameters:
    """The parameters that must match between an approved dry run and a commit."""

    source_environment: str
    snapshot_path: str
    snapshot_fingerprint: str
    matching_rules: tuple[str, ...]
    policy: str
    include_pii: bool
    rebuild_map: bool
    user_table: str
    batch_size: int
    command_timeout_seconds: int
    parallelism: int
    fallback_user_id: int | None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["matching_rules"] = list(self.matching_rules)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemapUsersRunParameters":
        fallback = data.get("fallback_user_id")
        return cls(
            source_environment=str(data["source_environment"]),
            snapshot_path=str(data["snapshot_path"]),
            snapshot_fingerprint=str(data["snapshot_fingerprint"]),
            matching_rules=tuple(str(r) for r in data["matching_rules"]),
            policy=str(data["policy"]),
            include_pii=bool(data["include_pii"]),
            rebuild_map=bool(data["rebuild_map"]),
            user_table=str(data["user_table"]),
            batch_size=int(data["batch_size"]),
            command_timeout_seconds=int(data["command_timeout_seconds"]),
            parallelism=int(data["parallelism"]),
            fallback_user_id=int(fallback) if fallback is not None else None,
        )

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON form; stable across processes."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemapUsersRunManifest:
    parameters: RemapUsersRunParameters
    executed_at_utc: datetime
    dry_run: bool

    @property
    def parameters_hash(self) -> str:
        return self.parameters.compute_hash()

    def matches_for_commit(
        self,
        parameters: RemapUsersRunParameters,
        *,
        is_dry_run: bool,
        as_of_utc: datetime,
        max_age: timedelta,
    ) -> bool:
        """Return True when this dry-run manifest may authorize ``parameters``."""
        if not self.dry_run or is_dry_run:
            return False
        if self.parameters != parameters:
            return False
        return as_of_utc - self.executed_at_utc <= max_age

    def mismatched_fields(self, parameters: RemapUsersRunParameters) -> list[str]:
        mine = self.parameters.to_dict()
        theirs = parameters.to_dict()
        return sorted(k for k in mine if mine[k] != theirs.get(k))

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameters": self.parameters.to_dict(),
            "parameters_hash": self.parameters_hash,
            "executed_at_utc": self.executed_at_utc.isoformat(),
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemapUsersRunManifest":
        executed = datetime.fromisoformat(data["executed_at_utc"])
        if executed.tzinfo is None:
            executed = executed.replace(tzinfo=timezone.utc)
        return cls(
            parameters=RemapUsersRunParameters.from_dict(data["parameters"]),
            executed_at_utc=executed,
            dry_run=bool(data["dry_run"]),
        )


def write_manifest(manifest: RemapUsersRunManifest, directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / MANIFEST_FILE_NAME
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(manifest.to_dict(), indent=2), encoding="utf-8")
    os.replace(tmp, path)
    (directory / HASH_FILE_NAME).write_text(manifest.parameters_hash, encoding="utf-8")
    return path


def load_manifest(path: Path) -> RemapUsersRunManifest | None:
    """Return the manifest at ``path``, or None when no file exists.

    Raises:
        DryRunApprovalError: The file exists but is not a readable manifest.
    """
    if not path.is_file():
        return None
    try:
        return RemapUsersRunManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (ValueError, KeyError, TypeError) as exc:
        raise DryRunApprovalError(f"dry-run manifest {path} is unreadable: {exc}") from exc
