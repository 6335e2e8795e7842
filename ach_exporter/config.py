"""
CONFIG.PY: SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read environment variables.

Values come from the process environment, with a ``.env`` file at the
project root loaded first (OS env overrides it). Blank values count as
unset and fall back to the documented defaults. Malformed values raise
``ConfigError`` at load time so a bad deployment fails before the browser
or the mailbox is touched.

To use a config value, import:

    from ach_exporter.config import get_config

Do not access os.getenv directly from any other module.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[1]

load_dotenv(PROJECT_ROOT / ".env")

if os.getenv("DEBUG_CONFIG") == "1":
    print("[CONFIG] Loaded .env from:", PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

DEFAULT_PORTAL_BASE = "https://portal.elevateqs.com"
DEFAULT_LOGIN_PATHS = "/Account/Login,/login,/Login.aspx,/Account/LogOn,/Account/SignIn"
DEFAULT_SUBJECT_FILTER = "Elevate MFA Code"
MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 8
TLS_VERSIONS = {"TLSv1", "TLSv1.1", "TLSv1.2", "TLSv1.3"}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _fail(message: str) -> ConfigError:
    logger.error(message)
    return ConfigError(message)


def _get(env: Mapping[str, str], key: str, default: str | None = None) -> str | None:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _parse_bool(value: str | None, *, key: str, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise _fail(f"Config key {key} must be a boolean string; got {value!r}")


def _parse_int(value: str | None, *, key: str, default: int, minimum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        raise _fail(f"Config key {key} must be an integer; got {value!r}")
    if minimum is not None and parsed < minimum:
        raise _fail(f"Config key {key} must be >= {minimum}; got {parsed}")
    return parsed


def _parse_list(value: str | None) -> list[str]:
    if not value:
        return []
    tokens = re.split(r"[,\n]", value)
    return [token.strip() for token in tokens if token and token.strip()]


def _clean_url(value: str, *, key: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped.lower().startswith(("http://", "https://")):
        raise _fail(f"Config key {key} must be an http(s) URL; got {value!r}")
    return stripped


def _resolve_path(value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return path


def default_code_regex(code_length: int) -> str:
    return rf"(?<!\d)\d{{{code_length}}}(?!\d)"


def _detect_headless(env: Mapping[str, str]) -> bool:
    raw = _get(env, "HEADLESS")
    if raw is not None:
        return _parse_bool(raw, key="HEADLESS", default=True)
    running_in_docker = Path("/.dockerenv").exists()
    return running_in_docker or not _get(env, "DISPLAY")


@dataclass(slots=True, frozen=True)
class ImapSettings:
    host: str
    port: int
    secure: bool
    username: str
    password: str
    mailboxes: tuple[str, ...]
    tls_min_version: str = "TLSv1.2"
    tls_servername: str | None = None
    connect_timeout_s: float = 15.0
    socket_timeout_s: float = 30.0


@dataclass(slots=True, frozen=True)
class MfaSettings:
    sender_filter: str | None = None
    subject_filter: str | None = DEFAULT_SUBJECT_FILTER
    lookback_minutes: int = 60
    only_unseen: bool = False
    code_length: int = 6
    code_regex: str = default_code_regex(6)
    skew_seconds: float = 0.0
    max_scan: int = 60
    max_wait_seconds: float = 90.0
    poll_interval_seconds: float = 3.0
    max_attempts: int = 3
    ready_wait_ms: int = 1000
    clear_timeout_ms: int = 8000


@dataclass(slots=True, frozen=True)
class SmtpSettings:
    enabled: bool
    host: str
    port: int
    secure: bool
    username: str | None
    password: str | None
    sender: str | None
    recipients: tuple[str, ...]
    subject_template: str | None = None
    body_template: str | None = None


@dataclass(slots=True, frozen=True)
class Config:
    portal_base: str
    portal_username: str
    portal_password: str
    login_paths: tuple[str, ...]
    login_retries: int
    login_backoff_ms: int
    nav_timeout_ms: int
    load_state: str
    headless: bool
    slowmo_ms: int
    report_select_path: str
    ach_path: str
    selectors_file: Path | None

    imap: ImapSettings
    mfa: MfaSettings
    smtp: SmtpSettings

    merchants_file: Path
    date_tz: str
    date_mode: str
    date_format: str
    start_override: str | None
    end_override: str | None
    require_all_mids: bool
    mid_final_warn_only: bool
    mid_add_retries: int
    result_timeout_ms: int
    results_timeout_ms: int
    export_timeout_ms: int
    output_dir: Path
    error_dir: Path
    summary_name: str

    job_host: str
    job_port: int
    job_api_key: str | None
    json_log_file: str = field(default="")

    def prerequisite_errors(self) -> list[str]:
        """Return the fatal gaps that must stop a run before any network call."""

        errors: list[str] = []
        if not self.portal_username or not self.portal_password:
            errors.append("ELEVATE_USERNAME and ELEVATE_PASSWORD are required")
        if not self.imap.username or not self.imap.password:
            errors.append("IMAP_USER and IMAP_PASS are required for 2FA code retrieval")
        if not self.imap.host:
            errors.append("IMAP_HOST is required")
        if not self.imap.mailboxes:
            errors.append("At least one mailbox must be configured (IMAP_MAILBOXES)")
        return errors

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Config:
        source: Mapping[str, str] = os.environ if env is None else env

        code_length = _parse_int(_get(source, "IMAP_CODE_LENGTH"), key="IMAP_CODE_LENGTH", default=6)
        if not MIN_CODE_LENGTH <= code_length <= MAX_CODE_LENGTH:
            raise _fail(
                f"Config key IMAP_CODE_LENGTH must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}; got {code_length}"
            )
        code_regex = _get(source, "IMAP_CODE_REGEX", default_code_regex(code_length)) or ""
        try:
            re.compile(code_regex)
        except re.error as exc:
            raise _fail(f"Config key IMAP_CODE_REGEX is not a valid regular expression: {exc}")

        imap_host = _get(source, "IMAP_HOST", "imap.gmail.com") or ""
        imap_user = _get(source, "IMAP_USER", "") or ""
        imap_pass = _get(source, "IMAP_PASS", "") or ""
        mailboxes = _parse_list(_get(source, "IMAP_MAILBOXES") or _get(source, "IMAP_MAILBOX", "INBOX"))
        alt_mailbox = _get(source, "IMAP_ALT_MAILBOX")
        if alt_mailbox and alt_mailbox not in mailboxes:
            mailboxes.append(alt_mailbox)

        tls_min_version = _get(source, "IMAP_TLS_MIN_VERSION", "TLSv1.2") or "TLSv1.2"
        if tls_min_version not in TLS_VERSIONS:
            raise _fail(f"Config key IMAP_TLS_MIN_VERSION must be one of {sorted(TLS_VERSIONS)}; got {tls_min_version!r}")

        imap = ImapSettings(
            host=imap_host,
            port=_parse_int(_get(source, "IMAP_PORT"), key="IMAP_PORT", default=993, minimum=1),
            secure=_parse_bool(_get(source, "IMAP_SECURE"), key="IMAP_SECURE", default=True),
            username=imap_user,
            password=imap_pass,
            mailboxes=tuple(mailboxes),
            tls_min_version=tls_min_version,
            tls_servername=_get(source, "IMAP_TLS_SERVERNAME"),
            connect_timeout_s=_parse_int(
                _get(source, "IMAP_CONN_TIMEOUT_MS"), key="IMAP_CONN_TIMEOUT_MS", default=15000, minimum=1
            )
            / 1000,
            socket_timeout_s=_parse_int(
                _get(source, "IMAP_SOCKET_TIMEOUT_MS"), key="IMAP_SOCKET_TIMEOUT_MS", default=30000, minimum=1
            )
            / 1000,
        )

        mfa = MfaSettings(
            sender_filter=_get(source, "IMAP_FROM_FILTER"),
            subject_filter=_get(source, "IMAP_SUBJECT_FILTER", DEFAULT_SUBJECT_FILTER),
            lookback_minutes=_parse_int(
                _get(source, "IMAP_LOOKBACK_MINUTES"), key="IMAP_LOOKBACK_MINUTES", default=60, minimum=1
            ),
            only_unseen=_parse_bool(_get(source, "IMAP_ONLY_UNSEEN"), key="IMAP_ONLY_UNSEEN", default=False),
            code_length=code_length,
            code_regex=code_regex,
            skew_seconds=_parse_int(_get(source, "IMAP_TIME_SKEW_MS"), key="IMAP_TIME_SKEW_MS", default=0, minimum=0)
            / 1000,
            max_scan=_parse_int(_get(source, "IMAP_MAX_SCAN"), key="IMAP_MAX_SCAN", default=60, minimum=1),
            max_wait_seconds=_parse_int(_get(source, "MFA_MAX_WAIT_MS"), key="MFA_MAX_WAIT_MS", default=90000, minimum=0)
            / 1000,
            poll_interval_seconds=_parse_int(_get(source, "IMAP_POLL_MS"), key="IMAP_POLL_MS", default=3000, minimum=0)
            / 1000,
            max_attempts=_parse_int(_get(source, "MFA_MAX_ATTEMPTS"), key="MFA_MAX_ATTEMPTS", default=3, minimum=1),
            ready_wait_ms=_parse_int(_get(source, "MFA_READY_WAIT_MS"), key="MFA_READY_WAIT_MS", default=1000, minimum=0),
            clear_timeout_ms=_parse_int(
                _get(source, "MFA_CLEAR_TIMEOUT_MS"), key="MFA_CLEAR_TIMEOUT_MS", default=8000, minimum=0
            ),
        )

        smtp_user = _get(source, "SMTP_USER") or imap_user or None
        smtp = SmtpSettings(
            enabled=_parse_bool(_get(source, "EMAIL_ENABLED"), key="EMAIL_ENABLED", default=True),
            host=_get(source, "SMTP_HOST") or re.sub(r"^imap\.", "smtp.", imap_host, flags=re.IGNORECASE),
            port=_parse_int(_get(source, "SMTP_PORT"), key="SMTP_PORT", default=465, minimum=1),
            secure=_parse_bool(_get(source, "SMTP_SECURE"), key="SMTP_SECURE", default=True),
            username=smtp_user,
            password=_get(source, "SMTP_PASS") or imap_pass or None,
            sender=_get(source, "EMAIL_FROM") or smtp_user,
            recipients=tuple(_parse_list(_get(source, "EMAIL_TO"))),
            subject_template=_get(source, "EMAIL_SUBJECT"),
            body_template=_get(source, "EMAIL_BODY"),
        )

        date_mode = (_get(source, "DATE_MODE", "yesterday") or "yesterday").lower()
        if date_mode not in {"yesterday", "today"}:
            raise _fail(f"Config key DATE_MODE must be 'yesterday' or 'today'; got {date_mode!r}")
        date_format = (_get(source, "DATE_FORMAT", "YMD") or "YMD").upper()
        if date_format not in {"YMD", "MDY"}:
            raise _fail(f"Config key DATE_FORMAT must be 'YMD' or 'MDY'; got {date_format!r}")

        selectors_raw = _get(source, "SELECTORS_FILE")

        return cls(
            portal_base=_clean_url(_get(source, "ELEVATE_BASE", DEFAULT_PORTAL_BASE) or "", key="ELEVATE_BASE"),
            portal_username=_get(source, "ELEVATE_USERNAME", "") or "",
            portal_password=_get(source, "ELEVATE_PASSWORD", "") or "",
            login_paths=tuple(_parse_list(_get(source, "LOGIN_PATHS", DEFAULT_LOGIN_PATHS))),
            login_retries=_parse_int(_get(source, "LOGIN_RETRIES"), key="LOGIN_RETRIES", default=3, minimum=1),
            login_backoff_ms=_parse_int(_get(source, "LOGIN_BACKOFF_MS"), key="LOGIN_BACKOFF_MS", default=2000, minimum=0),
            nav_timeout_ms=_parse_int(_get(source, "NAV_TIMEOUT_MS"), key="NAV_TIMEOUT_MS", default=15000, minimum=1),
            load_state=_get(source, "LOAD_STATE", "networkidle") or "networkidle",
            headless=_detect_headless(source),
            slowmo_ms=_parse_int(_get(source, "SLOWMO_MS"), key="SLOWMO_MS", default=0, minimum=0),
            report_select_path=_get(source, "REPORT_SELECT_PATH", "/Reporting/ReportSelect.aspx") or "",
            ach_path=_get(source, "ACH_PATH", "/Reporting/Report.aspx?reportID=25") or "",
            selectors_file=_resolve_path(selectors_raw) if selectors_raw else None,
            imap=imap,
            mfa=mfa,
            smtp=smtp,
            merchants_file=_resolve_path(_get(source, "MERCHANTS_FILE", "merchants.json") or "merchants.json"),
            date_tz=_get(source, "DATE_TZ", "America/New_York") or "America/New_York",
            date_mode=date_mode,
            date_format=date_format,
            start_override=_get(source, "START"),
            end_override=_get(source, "END"),
            require_all_mids=_parse_bool(_get(source, "REQUIRE_ALL_MIDS"), key="REQUIRE_ALL_MIDS", default=True),
            mid_final_warn_only=_parse_bool(
                _get(source, "MID_FINAL_WARN_ONLY"), key="MID_FINAL_WARN_ONLY", default=False
            ),
            mid_add_retries=_parse_int(_get(source, "MID_ADD_RETRIES"), key="MID_ADD_RETRIES", default=2, minimum=0),
            result_timeout_ms=_parse_int(
                _get(source, "RESULT_TIMEOUT_MS"), key="RESULT_TIMEOUT_MS", default=10000, minimum=1
            ),
            results_timeout_ms=_parse_int(
                _get(source, "RESULTS_TIMEOUT_MS"), key="RESULTS_TIMEOUT_MS", default=30000, minimum=1
            ),
            export_timeout_ms=_parse_int(
                _get(source, "EXPORT_TIMEOUT_MS"), key="EXPORT_TIMEOUT_MS", default=90000, minimum=1
            ),
            output_dir=_resolve_path(_get(source, "OUTPUT_DIR", "reports") or "reports"),
            error_dir=_resolve_path(_get(source, "ERROR_DIR", "error_shots") or "error_shots"),
            summary_name=_get(source, "SUMMARY_NAME", "run-summary.json") or "run-summary.json",
            job_host=_get(source, "JOB_HOST", "0.0.0.0") or "0.0.0.0",
            job_port=_parse_int(_get(source, "JOB_PORT"), key="JOB_PORT", default=3889, minimum=1),
            job_api_key=_get(source, "JOB_API_KEY"),
            json_log_file=_get(source, "JSON_LOG_FILE", "") or "",
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    """Load the process-wide configuration once and cache it."""

    return Config.from_env()
