import json

import openpyxl

from ach_exporter.portal.merchants import Merchant
from ach_exporter.run_summary import RunSummary, count_workbook_rows


def _summary(tmp_path) -> RunSummary:
    return RunSummary(
        run_id="run-1",
        report_date="2026-03-01",
        timezone="America/New_York",
        portal="https://portal.elevateqs.com",
        range_start="2026-03-01",
        range_end="2026-03-01",
        merchants=[Merchant("840100065415", "Acme"), Merchant("840100065416")],
        output_folder=str(tmp_path),
        screenshots_folder=str(tmp_path / "shots"),
    )


def test_count_workbook_rows_skips_header_and_blank_rows(tmp_path) -> None:
    path = tmp_path / "net-ach-2-mids.xlsx"
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.append(["MID", "Net"])
    sheet.append(["840100065415", 10.5])
    sheet.append([None, None])
    sheet.append(["840100065416", 4])
    workbook.save(path)

    assert count_workbook_rows(path) == 2


def test_count_workbook_rows_ignores_other_formats(tmp_path) -> None:
    path = tmp_path / "export.csv"
    path.write_text("a\n", encoding="utf-8")

    assert count_workbook_rows(path) is None
    assert count_workbook_rows(tmp_path / "broken.xlsx") is None


def test_successful_run_marks_exported_merchants(tmp_path) -> None:
    summary = _summary(tmp_path)
    export = tmp_path / "net-ach-2-mids.xlsx"

    summary.record_export(export, rows=12, missing_mids=["840100065416"])
    summary.record_email({"sent": True})
    summary.finalize()
    payload = summary.as_dict()

    assert payload["status"] == "ok"
    assert payload["export"] == {"path": str(export), "rows": 12}
    assert payload["totals"]["succeeded"] == 1
    assert payload["merchants"][1]["status"] == "missing"
    assert payload["email"] == {"sent": True}


def test_failure_marks_pending_merchants_and_keeps_kind(tmp_path) -> None:
    summary = _summary(tmp_path)

    summary.record_failure(kind="code_timeout", error="no code", hint="check filters", artifacts={"screenshot": "a.png"})
    summary.finalize()
    payload = summary.as_dict()

    assert payload["status"] == "error"
    assert payload["failure"]["kind"] == "code_timeout"
    assert payload["failure"]["artifacts"] == {"screenshot": "a.png"}
    assert {entry["status"] for entry in payload["merchants"]} == {"failed"}


def test_log_events_feed_phase_counters_and_issues(tmp_path) -> None:
    summary = _summary(tmp_path)

    summary.record_log_event({"phase": "mfa", "status": "ok", "message": "found"})
    summary.record_log_event({"phase": "mfa", "status": "warn", "message": "Mailbox unavailable"})
    summary.record_log_event({"phase": "mfa", "status": "warn", "message": "Mailbox unavailable"})
    summary.record_log_event({"message": "no phase"})

    payload = summary.as_dict()
    assert payload["phases"]["mfa"] == {"ok": 1, "warning": 2, "error": 0}
    assert payload["issues"] == ["mfa: Mailbox unavailable"]


def test_write_creates_json_file(tmp_path) -> None:
    summary = _summary(tmp_path)
    summary.finalize()

    path = summary.write(tmp_path / "2026-03-01" / "run-summary.json")

    assert json.loads(path.read_text(encoding="utf-8"))["run_id"] == "run-1"
