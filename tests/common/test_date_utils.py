from datetime import date, datetime, timezone

import pytest

from ach_exporter.common.date_utils import ReportRange, format_for_portal, get_timezone, resolve_report_range

# 03:30 UTC on 2 March is still 1 March in New York.
REFERENCE = datetime(2026, 3, 2, 3, 30, tzinfo=timezone.utc)


def test_yesterday_is_computed_in_report_timezone() -> None:
    report_range = resolve_report_range(tz_name="America/New_York", reference=REFERENCE)

    assert report_range == ReportRange(date(2026, 2, 28), date(2026, 2, 28))
    assert report_range.folder_name == "2026-02-28"


def test_today_mode() -> None:
    report_range = resolve_report_range(mode="today", tz_name="UTC", reference=REFERENCE)

    assert report_range == ReportRange(date(2026, 3, 2), date(2026, 3, 2))


def test_start_override_alone_is_a_single_day() -> None:
    report_range = resolve_report_range(start_override="2026-01-15", reference=REFERENCE)

    assert report_range == ReportRange(date(2026, 1, 15), date(2026, 1, 15))


def test_end_override_alone_starts_today() -> None:
    report_range = resolve_report_range(tz_name="UTC", end_override="03/05/2026", reference=REFERENCE)

    assert report_range == ReportRange(date(2026, 3, 2), date(2026, 3, 5))


def test_end_before_start_is_rejected() -> None:
    with pytest.raises(ValueError, match="before START"):
        resolve_report_range(start_override="2026-03-02", end_override="2026-03-01")


def test_unparseable_override_is_rejected() -> None:
    with pytest.raises(ValueError, match="Invalid START"):
        resolve_report_range(start_override="not a date")


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown timezone"):
        get_timezone("Mars/Olympus_Mons")


def test_portal_formats() -> None:
    assert format_for_portal(date(2026, 3, 1), "YMD") == "2026-03-01"
    assert format_for_portal(date(2026, 3, 1), "mdy") == "03/01/2026"
    with pytest.raises(ValueError):
        format_for_portal(date(2026, 3, 1), "DMY")
