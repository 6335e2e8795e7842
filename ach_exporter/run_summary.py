from __future__ import annotations

import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Sequence

import openpyxl

from ach_exporter.portal.merchants import Merchant

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime | None) -> str | None:
    if not value:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_status(raw: str | None) -> str:
    normalized = (raw or "ok").lower()
    if normalized in {"warn", "warning"}:
        return "warning"
    if normalized == "error":
        return "error"
    return "ok"


def count_workbook_rows(path: Path) -> int | None:
    """Return the number of non-empty data rows below the header row."""

    if path.suffix.lower() != ".xlsx":
        return None
    try:
        workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except Exception:
        logger.warning("could not open exported workbook", extra={"path": str(path)})
        return None
    try:
        sheet = workbook.active
        rows = 0
        for values in sheet.iter_rows(min_row=2, values_only=True):
            if any(value not in (None, "") for value in values):
                rows += 1
        return rows
    finally:
        workbook.close()


@dataclass
class RunSummary:
    run_id: str
    report_date: str
    timezone: str
    portal: str
    range_start: str
    range_end: str
    merchants: Sequence[Merchant]
    output_folder: str
    screenshots_folder: str
    started_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None
    status: str = "running"
    failure: Dict[str, Any] | None = None
    export: Dict[str, Any] = field(default_factory=dict)
    mfa: Dict[str, Any] = field(default_factory=dict)
    email: Dict[str, Any] = field(default_factory=lambda: {"sent": False})
    merchant_status: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    phase_counters: MutableMapping[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"ok": 0, "warning": 0, "error": 0})
    )
    issues: deque[str] = field(default_factory=lambda: deque(maxlen=10))

    def __post_init__(self) -> None:
        for merchant in self.merchants:
            self.merchant_status.setdefault(
                merchant.id,
                {"id": merchant.id, "name": merchant.name, "status": "pending", "files": [], "error": None},
            )

    def record_log_event(self, payload: Mapping[str, Any]) -> None:
        phase = payload.get("phase")
        if not phase:
            return
        status = _normalize_status(payload.get("status"))
        self.phase_counters[phase][status] += 1
        if status in {"warning", "error"}:
            detail = f"{phase}: {payload.get('message') or phase}"
            if detail not in self.issues:
                self.issues.append(detail)

    def record_mfa(self, **details: Any) -> None:
        self.mfa.update(details)

    def record_export(self, path: Path, *, rows: int | None, missing_mids: Sequence[str] = ()) -> None:
        self.export = {"path": str(path), "rows": rows}
        missing = set(missing_mids)
        for mid, entry in self.merchant_status.items():
            if mid in missing:
                entry.update(status="missing", error="MID chip could not be added")
            else:
                entry.update(status="ok", files=[str(path)])

    def record_email(self, result: Mapping[str, Any]) -> None:
        self.email = dict(result)

    def record_failure(self, *, kind: str, error: str, hint: str | None = None, artifacts: Mapping[str, str] | None = None) -> None:
        self.failure = {"kind": kind, "error": error, "hint": hint, "artifacts": dict(artifacts or {})}
        for entry in self.merchant_status.values():
            if entry["status"] == "pending":
                entry.update(status="failed", error=error)

    def finalize(self, *, finished_at: datetime | None = None) -> None:
        self.finished_at = finished_at or _utc_now()
        self.status = "error" if self.failure else "ok"

    def totals(self) -> Dict[str, int]:
        statuses = [entry["status"] for entry in self.merchant_status.values()]
        files = {path for entry in self.merchant_status.values() for path in entry["files"]}
        succeeded = statuses.count("ok")
        return {
            "requested": len(statuses),
            "succeeded": succeeded,
            "failed": len(statuses) - succeeded,
            "files": sum(len(entry["files"]) for entry in self.merchant_status.values()),
            "unique_files": len(files),
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "date": self.report_date,
            "timezone": self.timezone,
            "portal": self.portal,
            "range": {"start": self.range_start, "end": self.range_end},
            "started_at": _format_ts(self.started_at),
            "finished_at": _format_ts(self.finished_at),
            "totals": self.totals(),
            "merchants": list(self.merchant_status.values()),
            "export": dict(self.export),
            "mfa": dict(self.mfa),
            "email": dict(self.email),
            "failure": self.failure,
            "phases": {phase: dict(counts) for phase, counts in self.phase_counters.items()},
            "issues": list(self.issues),
            "artifacts": {"folder": self.output_folder, "screenshots": self.screenshots_folder},
        }

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.as_dict(), indent=2, default=str), encoding="utf-8")
        return path
