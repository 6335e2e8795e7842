"""End-to-end Net ACH export job.

One run logs into the portal, clears the email 2FA gate when it appears,
selects every configured MID, exports the report for the date range and
emails the file. Every run writes ``run-summary.json`` next to the export,
including the structured failure kind when the run fails.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Sequence

from playwright.async_api import Page, async_playwright

from ach_exporter.common.date_utils import ReportRange, format_for_portal, resolve_report_range
from ach_exporter.config import Config, get_config
from ach_exporter.json_logger import JsonLogger, get_logger, log_event, new_run_id, timed_event
from ach_exporter.mfa.challenge import ChallengeFailed, complete_challenge
from ach_exporter.mfa.clock import Clock
from ach_exporter.mfa.mailbox import MailboxSession
from ach_exporter.mfa.models import ChallengeResult, CodeMatch, MessageRef, SearchSpec
from ach_exporter.mfa.orchestrator import find_code
from ach_exporter.mfa.poller import CodeTimeoutError, wait_for_code
from ach_exporter.notifications import send_report_email
from ach_exporter.portal.browser import capture_artifacts, close_context, launch_browser, open_page
from ach_exporter.portal.errors import ExportError, LoginError, PortalError, ReportError
from ach_exporter.portal.login import login_with_retries
from ach_exporter.portal.merchants import Merchant, MerchantsFileError, load_merchants
from ach_exporter.portal.page_selectors import Selectors, load_selectors
from ach_exporter.portal.reporting import (
    add_mids,
    click_load_report,
    ensure_all_mids_selected,
    export_report,
    goto_advanced_reporting,
    goto_net_ach_details,
    set_date_range,
)
from ach_exporter.portal.twofa import PlaywrightChallengeDriver
from ach_exporter.run_summary import RunSummary, count_workbook_rows


class PrerequisiteError(Exception):
    """Raised when required inputs are missing before a run starts."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("; ".join(errors) or "run prerequisites not satisfied")
        self.errors = list(errors)


@dataclass
class RunInputs:
    merchants: List[Merchant]
    selectors: Selectors
    report_range: ReportRange


@dataclass
class JobOutcome:
    run_id: str
    status: str
    started_at: datetime
    finished_at: datetime
    export_path: str | None = None
    summary_path: str | None = None
    failure_kind: str | None = None
    error: str | None = None
    hint: str | None = None
    email_sent: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "export_path": self.export_path,
            "summary_path": self.summary_path,
            "failure_kind": self.failure_kind,
            "error": self.error,
            "hint": self.hint,
            "email_sent": self.email_sent,
        }


def classify_failure(exc: BaseException) -> tuple[str, str | None]:
    """Map an exception to the failure kind reported to operators."""

    if isinstance(exc, ChallengeFailed):
        return exc.kind, exc.hint
    if isinstance(exc, CodeTimeoutError):
        return exc.kind, exc.hint
    if isinstance(exc, LoginError):
        return "login_failed", None
    if isinstance(exc, ExportError):
        return "export_failed", None
    if isinstance(exc, ReportError):
        return "report_failed", None
    if isinstance(exc, PortalError):
        return "portal_error", None
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled", None
    return "unexpected", None


def prepare_run(config: Config, *, logger: JsonLogger) -> RunInputs:
    """Validate everything that can be checked before the browser starts."""

    errors = config.prerequisite_errors()
    merchants: List[Merchant] = []
    try:
        merchants = load_merchants(config.merchants_file)
    except MerchantsFileError as exc:
        errors.append(str(exc))
    else:
        if not merchants:
            errors.append(f"No merchant IDs found in {config.merchants_file}")

    selectors: Selectors = {}
    try:
        selectors = load_selectors(config.selectors_file)
    except ValueError as exc:
        errors.append(str(exc))

    report_range: ReportRange | None = None
    try:
        report_range = resolve_report_range(
            mode=config.date_mode,
            tz_name=config.date_tz,
            start_override=config.start_override,
            end_override=config.end_override,
        )
    except ValueError as exc:
        errors.append(str(exc))

    if errors or report_range is None:
        for message in errors:
            log_event(logger=logger, phase="prereq", status="error", message=message)
        raise PrerequisiteError(errors)
    return RunInputs(merchants=merchants, selectors=selectors, report_range=report_range)


# ── 2FA ──────────────────────────────────────────────────────────────────────


def build_code_acquirer(
    config: Config,
    session: MailboxSession,
    *,
    logger: JsonLogger,
    clock: Clock | None = None,
) -> Callable[[FrozenSet[MessageRef]], Any]:
    mailboxes = config.imap.mailboxes

    async def acquire(exclude: FrozenSet[MessageRef]) -> CodeMatch:
        def find(spec: SearchSpec) -> CodeMatch | None:
            return find_code(mailboxes, spec, session=session, logger=logger)

        def build_spec(now: datetime) -> SearchSpec:
            return SearchSpec.from_settings(config.mfa, now=now, exclude=exclude)

        return await wait_for_code(
            find,
            build_spec,
            max_wait=config.mfa.max_wait_seconds,
            poll_interval=config.mfa.poll_interval_seconds,
            clock=clock,
            logger=logger,
            run_blocking=session.call,
            on_stall=session.abandon,
        )

    return acquire


async def pass_two_factor(
    page: Page,
    *,
    config: Config,
    selectors: Selectors,
    logger: JsonLogger,
    summary: RunSummary,
) -> ChallengeResult | None:
    await asyncio.sleep(config.mfa.ready_wait_ms / 1000)
    driver = PlaywrightChallengeDriver(
        page,
        selectors=selectors,
        nav_timeout_ms=config.nav_timeout_ms,
        load_state=config.load_state,
        logger=logger,
    )
    if not await driver.is_challenge_present():
        log_event(logger=logger, phase="mfa", message="2FA screen not detected; continuing")
        summary.record_mfa(required=False)
        return None

    log_event(logger=logger, phase="mfa", message="2FA screen detected; fetching code via IMAP")
    session = MailboxSession(config.imap)
    try:
        result = await complete_challenge(
            driver,
            build_code_acquirer(config, session, logger=logger),
            max_attempts=config.mfa.max_attempts,
            clear_timeout_ms=config.mfa.clear_timeout_ms,
            logger=logger,
        )
    except ChallengeFailed as exc:
        summary.record_mfa(required=True, via="imap", cleared=False, kind=exc.kind, attempts=len(exc.attempts))
        raise
    finally:
        session.release()

    summary.record_mfa(
        required=True,
        via="imap",
        cleared=True,
        attempts=len(result.attempts),
        subject_filter=config.mfa.subject_filter,
        sender_filter=config.mfa.sender_filter,
    )
    return result


async def probe_mailboxes(config: Config, *, logger: JsonLogger) -> CodeMatch | None:
    """Run one search over the configured mailboxes without touching the portal."""

    session = MailboxSession(config.imap)
    spec = SearchSpec.from_settings(config.mfa, now=datetime.now(timezone.utc))
    try:
        return await session.call(find_code, config.imap.mailboxes, spec, session=session, logger=logger)
    finally:
        await session.call(session.close)
        session.release()


# ── Portal flow ──────────────────────────────────────────────────────────────


async def _drive_portal(
    page: Page,
    inputs: RunInputs,
    day_dir: Path,
    *,
    config: Config,
    logger: JsonLogger,
    summary: RunSummary,
) -> tuple[Path, List[str]]:
    selectors = inputs.selectors
    mids = [merchant.id for merchant in inputs.merchants]

    with timed_event(logger=logger, phase="login", message="portal login"):
        await login_with_retries(page, config=config, selectors=selectors, logger=logger)
    await pass_two_factor(page, config=config, selectors=selectors, logger=logger, summary=summary)

    with timed_event(logger=logger, phase="nav", message="open Net ACH report"):
        await goto_advanced_reporting(page, config=config, selectors=selectors, logger=logger)
        await goto_net_ach_details(page, config=config, selectors=selectors, logger=logger)

    with timed_event(logger=logger, phase="mids", message="add MID chips", requested=len(mids)):
        missing = await add_mids(page, mids, config=config, selectors=selectors, logger=logger)
    if config.require_all_mids:
        await ensure_all_mids_selected(page, len(mids), selectors=selectors, logger=logger)

    await set_date_range(page, inputs.report_range, config=config, selectors=selectors, logger=logger)
    await click_load_report(page, config=config, selectors=selectors, logger=logger)
    with timed_event(logger=logger, phase="export", message="export report"):
        export_path = await export_report(
            page, day_dir, len(mids), config=config, selectors=selectors, logger=logger
        )
    return export_path, missing


def _record_failure(
    summary: RunSummary,
    exc: BaseException,
    *,
    artifacts: Dict[str, str],
    logger: JsonLogger,
) -> None:
    kind, hint = classify_failure(exc)
    summary.record_failure(kind=kind, error=str(exc) or type(exc).__name__, hint=hint, artifacts=artifacts)
    log_event(
        logger=logger,
        phase="orchestrator",
        status="error",
        message="Net ACH run failed",
        kind=kind,
        hint=hint,
        error=str(exc),
        exc_type=type(exc).__name__,
        **artifacts,
    )


async def run_net_ach_once(
    config: Config | None = None,
    *,
    run_id: str | None = None,
    logger: JsonLogger | None = None,
    playwright_factory: Callable[[], Any] = async_playwright,
) -> JobOutcome:
    """Run the export job once. Raises :class:`PrerequisiteError` before any network call."""

    config = config or get_config()
    run_id = run_id or new_run_id()
    logger = logger or get_logger(run_id=run_id)
    started_at = datetime.now(timezone.utc)

    inputs = prepare_run(config, logger=logger)
    report_range = inputs.report_range
    day_dir = config.output_dir / report_range.folder_name
    day_dir.mkdir(parents=True, exist_ok=True)
    config.error_dir.mkdir(parents=True, exist_ok=True)

    summary = RunSummary(
        run_id=run_id,
        report_date=report_range.folder_name,
        timezone=config.date_tz,
        portal=config.portal_base,
        range_start=format_for_portal(report_range.start, config.date_format),
        range_end=format_for_portal(report_range.end, config.date_format),
        merchants=inputs.merchants,
        output_folder=str(day_dir),
        screenshots_folder=str(config.error_dir),
    )
    logger.attach_summary(summary)
    log_event(
        logger=logger,
        phase="init",
        message="Net ACH run starting",
        merchants=len(inputs.merchants),
        range_start=summary.range_start,
        range_end=summary.range_end,
        mailboxes=list(config.imap.mailboxes),
    )

    export_path: Path | None = None
    failure: BaseException | None = None
    try:
        async with playwright_factory() as playwright:
            browser = await launch_browser(playwright=playwright, config=config, logger=logger)
            context = None
            page: Page | None = None
            try:
                context, page = await open_page(browser, config=config)
                export_path, missing = await _drive_portal(
                    page, inputs, day_dir, config=config, logger=logger, summary=summary
                )
                rows = await asyncio.to_thread(count_workbook_rows, export_path)
                summary.record_export(export_path, rows=rows, missing_mids=missing)
            except Exception as exc:
                failure = exc
                kind, _ = classify_failure(exc)
                artifacts: Dict[str, str] = {}
                if page is not None:
                    artifacts = await capture_artifacts(page, error_dir=config.error_dir, prefix=kind)
                _record_failure(summary, exc, artifacts=artifacts, logger=logger)
            finally:
                await close_context(context)
                await browser.close()

        if export_path is not None:
            email = await asyncio.to_thread(
                send_report_email,
                config.smtp,
                export_path,
                {
                    "date": summary.report_date,
                    "mid_count": len(inputs.merchants),
                    "start": summary.range_start,
                    "end": summary.range_end,
                    "run_id": run_id,
                    "filename": export_path.name,
                },
                json_logger=logger,
            )
            summary.record_email(email.as_dict())
    except asyncio.CancelledError as exc:
        _record_failure(summary, exc, artifacts={}, logger=logger)
        raise
    except Exception as exc:
        # Browser startup failures land here; portal failures were handled above.
        failure = exc
        _record_failure(summary, exc, artifacts={}, logger=logger)
    finally:
        summary.finalize()
        summary_path = summary.write(day_dir / config.summary_name)
        log_event(logger=logger, phase="summary", message="Summary written", path=str(summary_path))

    kind, hint = classify_failure(failure) if failure else (None, None)
    return JobOutcome(
        run_id=run_id,
        status="error" if failure else "ok",
        started_at=started_at,
        finished_at=summary.finished_at or datetime.now(timezone.utc),
        export_path=str(export_path) if export_path else None,
        summary_path=str(summary_path),
        failure_kind=kind,
        error=str(failure) if failure else None,
        hint=hint,
        email_sent=bool(summary.email.get("sent")),
    )
