"""Timezone-aware report date helpers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

DEFAULT_TIMEZONE = "America/New_York"
PORTAL_DATE_FORMATS = {"YMD": "%Y-%m-%d", "MDY": "%m/%d/%Y"}


@dataclass(frozen=True)
class ReportRange:
    start: date
    end: date

    @property
    def folder_name(self) -> str:
        return self.start.isoformat()


def get_timezone(name: str | None = None) -> ZoneInfo:
    """Return the report timezone (``DATE_TZ``), defaulting to US Eastern."""

    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


def aware_now(tz: ZoneInfo | None = None) -> datetime:
    """Return ``datetime.now`` in the report timezone."""

    return datetime.now(tz or get_timezone())


def _parse_override(value: str, *, label: str) -> date:
    try:
        return date_parser.parse(value).date()
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"Invalid {label} date: {value}") from exc


def resolve_report_range(
    *,
    mode: str = "yesterday",
    tz_name: str | None = None,
    start_override: str | None = None,
    end_override: str | None = None,
    reference: datetime | None = None,
) -> ReportRange:
    """Return the report date range.

    ``START``/``END`` overrides win when either is set; a missing ``END``
    repeats ``START`` and a missing ``START`` means today. Otherwise the range
    is a single day: yesterday (the default) or today in the report timezone.
    """

    tz = get_timezone(tz_name)
    current = reference.astimezone(tz) if reference else aware_now(tz)

    if start_override or end_override:
        start = _parse_override(start_override, label="START") if start_override else current.date()
        end = _parse_override(end_override, label="END") if end_override else start
        if end < start:
            raise ValueError(f"END date {end.isoformat()} is before START date {start.isoformat()}")
        return ReportRange(start=start, end=end)

    day = current.date()
    if mode.lower() == "yesterday":
        day -= timedelta(days=1)
    return ReportRange(start=day, end=day)


def format_for_portal(value: date, date_format: str = "YMD") -> str:
    """Render ``value`` the way the portal's date inputs expect it."""

    try:
        pattern = PORTAL_DATE_FORMATS[date_format.upper()]
    except KeyError as exc:
        raise ValueError(f"Unsupported date format: {date_format!r}") from exc
    return value.strftime(pattern)
