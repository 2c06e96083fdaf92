"""remap_users.telemetry

Structured step telemetry. Every event is kept in memory (for
``session.log``) and forwarded to the standard ``logging`` module.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetryEntry:
    timestamp: datetime
    step: str
    event: str
    duration: timedelta | None
    message: str
    metadata: dict[str, str] | None = None
    exception_type: str | None = None
    exception_message: str | None = None

    def format_line(self) -> str:
        parts = [self.timestamp.isoformat(), self.step, self.event]
        if self.duration is not None:
            parts.append(f"duration={self.duration.total_seconds():.3f}s")
        if self.metadata:
            parts.append("metadata=" + ";".join(f"{k}={v}" for k, v in self.metadata.items()))
        if self.message:
            parts.append(f"message={self.message}")
        if self.exception_type:
            parts.append(f"exception={self.exception_type}: {self.exception_message}")
        return " ".join(parts)


def _format(step: str, message: str, metadata: Mapping[str, object] | None) -> str:
    if not metadata:
        return f"[{step}] {message}"
    kv = ", ".join(f"{k}={v}" for k, v in metadata.items())
    return f"[{step}] {message} ({kv})"


class RemapUsersTelemetry:
    """Thread-safe recorder of step events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[TelemetryEntry] = []
        self._started: dict[str, datetime] = {}

    @property
    def entries(self) -> list[TelemetryEntry]:
        with self._lock:
            return list(self._entries)

    def _append(self, entry: TelemetryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def step_started(self, step: str) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._started[step] = now
        self._append(TelemetryEntry(now, step, "started", None, "Step started."))
        log.debug("remap-users step %s started", step)

    def step_completed(self, step: str) -> timedelta | None:
        now = datetime.now(timezone.utc)
        with self._lock:
            start = self._started.get(step)
        duration = now - start if start is not None else None
        self._append(TelemetryEntry(now, step, "completed", duration, "Step completed."))
        if duration is not None:
            log.info("remap-users step %s completed in %.3fs", step, duration.total_seconds())
        else:
            log.info("remap-users step %s completed", step)
        return duration

    def step_skipped(self, step: str, reason: str) -> None:
        self._append(TelemetryEntry(datetime.now(timezone.utc), step, "skipped", None, reason))
        log.info("remap-users step %s skipped: %s", step, reason)

    def info(self, step: str, message: str, metadata: Mapping[str, object] | None = None) -> None:
        md = {k: str(v) for k, v in metadata.items()} if metadata else None
        self._append(TelemetryEntry(datetime.now(timezone.utc), step, "info", None, message, md))
        log.info("%s", _format(step, message, metadata))

    def warning(self, step: str, message: str, metadata: Mapping[str, object] | None = None) -> None:
        md = {k: str(v) for k, v in metadata.items()} if metadata else None
        self._append(TelemetryEntry(datetime.now(timezone.utc), step, "warning", None, message, md))
        log.warning("%s", _format(step, message, metadata))

    def error(
        self,
        step: str,
        message: str,
        exc: BaseException,
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        md = {k: str(v) for k, v in metadata.items()} if metadata else None
        self._append(TelemetryEntry(
            datetime.now(timezone.utc), step, "error", None, message, md,
            type(exc).__name__, str(exc),
        ))
        log.error("%s", _format(step, message, metadata), exc_info=exc)
