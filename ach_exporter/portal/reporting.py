"""Net ACH report: navigation, MID chips, date range, load and export."""

from __future__ import annotations

import asyncio
import contextlib
import re
from pathlib import Path
from typing import Dict, Iterable, List, Set
from urllib.parse import urlparse

from playwright.async_api import Locator, Page

from ach_exporter.common.date_utils import ReportRange, format_for_portal
from ach_exporter.config import DEFAULT_PORTAL_BASE, Config
from ach_exporter.json_logger import JsonLogger, log_event
from ach_exporter.portal.errors import ExportError, ReportError
from ach_exporter.portal.page_selectors import Selectors

MID_TYPE_DELAY_MS = 18
RESULT_DEBOUNCE_SECONDS = 0.35
RESULTS_BOX_WAIT_MS = 2000
CHIP_WAIT_MS = 1500
CHIP_NUDGE_WAIT_MS = 800
RETRY_BACKOFF_SECONDS = 0.4
BETWEEN_ADDS_SECONDS = 0.1
LOAD_CLICK_RETRIES = 3
LOAD_CLICK_BACKOFF_SECONDS = 0.6
CHIP_MID_RE = re.compile(r"\b(\d{6,})\b")


def _origin(url: str) -> str:
    parts = urlparse(url)
    if not parts.scheme or not parts.netloc:
        return DEFAULT_PORTAL_BASE
    return f"{parts.scheme}://{parts.netloc}"


async def _try_click(page: Page, locator: Locator, *, config: Config) -> bool:
    try:
        if not await locator.count():
            return False
    except Exception:
        return False
    target = locator.first
    with contextlib.suppress(Exception):
        await target.scroll_into_view_if_needed()
    for force in (False, True):
        try:
            await target.click(timeout=config.nav_timeout_ms, force=force)
        except Exception:
            continue
        with contextlib.suppress(Exception):
            await page.wait_for_load_state(config.load_state, timeout=config.nav_timeout_ms)
        return True
    return False


# ── Navigation ───────────────────────────────────────────────────────────────


async def goto_advanced_reporting(page: Page, *, config: Config, selectors: Selectors, logger: JsonLogger) -> None:
    reporting = selectors["reporting"]
    advanced = page.locator(reporting["advanced_link"])

    if await _try_click(page, advanced, config=config):
        log_event(logger=logger, phase="nav", message="Opened Advanced Reporting", via="link", url=page.url)
        return

    if reporting.get("query_menu") and await _try_click(page, page.locator(reporting["query_menu"]), config=config):
        await asyncio.sleep(0.3)
        if await _try_click(page, advanced, config=config):
            log_event(logger=logger, phase="nav", message="Opened Advanced Reporting", via="query_menu", url=page.url)
            return

    target = _origin(config.portal_base) + config.report_select_path
    await page.goto(target, wait_until=config.load_state, timeout=config.nav_timeout_ms)
    log_event(logger=logger, phase="nav", message="Opened Advanced Reporting", via="direct_url", url=page.url)


async def goto_net_ach_details(page: Page, *, config: Config, selectors: Selectors, logger: JsonLogger) -> None:
    net_ach = selectors["reporting"].get("net_ach_button")
    if net_ach and await _try_click(page, page.locator(net_ach), config=config):
        log_event(logger=logger, phase="nav", message="Opened Net ACH Details", via="link", url=page.url)
        return

    target = _origin(config.portal_base) + config.ach_path
    await page.goto(target, wait_until=config.load_state, timeout=config.nav_timeout_ms)
    log_event(logger=logger, phase="nav", message="Opened Net ACH Details", via="direct_url", url=page.url)


# ── MID chips ────────────────────────────────────────────────────────────────


async def _clear_input(page: Page, field: Locator) -> None:
    await field.fill("")
    with contextlib.suppress(Exception):
        await page.keyboard.press("Control+A")
        await page.keyboard.press("Backspace")


async def _chip_visible(page: Page, reporting: Dict[str, str], mid: str, timeout_ms: int = CHIP_WAIT_MS) -> bool:
    try:
        await page.locator(reporting["mid_chip"], has_text=mid).first.wait_for(state="visible", timeout=timeout_ms)
        return True
    except Exception:
        return False


async def selected_mids(page: Page, selectors: Selectors) -> Set[str]:
    chip_selector = selectors["reporting"].get("mid_chip")
    if not chip_selector:
        return set()
    try:
        texts = await page.locator(chip_selector).all_text_contents()
    except Exception:
        return set()
    found: Set[str] = set()
    for text in texts:
        match = CHIP_MID_RE.search(text or "")
        if match:
            found.add(match.group(1))
    return found


async def count_selected_mids(page: Page, selectors: Selectors) -> int | None:
    chip_selector = selectors["reporting"].get("mid_chip")
    if not chip_selector:
        return None
    try:
        return await page.locator(chip_selector).count()
    except Exception:
        return None


async def _type_wait_click(page: Page, field: Locator, mid: str, *, config: Config, reporting: Dict[str, str]) -> bool:
    await field.click()
    await _clear_input(page, field)
    await field.press_sequentially(mid, delay=MID_TYPE_DELAY_MS)
    await asyncio.sleep(RESULT_DEBOUNCE_SECONDS)

    container = reporting.get("mid_results_container")
    if container:
        with contextlib.suppress(Exception):
            await page.locator(container).wait_for(
                state="visible", timeout=min(config.result_timeout_ms, RESULTS_BOX_WAIT_MS)
            )

    row = page.locator(reporting["mid_result_item"], has_text=mid).first
    try:
        await row.wait_for(state="visible", timeout=config.result_timeout_ms)
    except Exception:
        # No dropdown row; try committing the typed value directly.
        for key in ("Enter", "Tab"):
            with contextlib.suppress(Exception):
                await field.press(key)
        await asyncio.sleep(0.15)
        return await _chip_visible(page, reporting, mid)

    with contextlib.suppress(Exception):
        await row.scroll_into_view_if_needed()
    try:
        await row.click(timeout=config.nav_timeout_ms)
    except Exception:
        with contextlib.suppress(Exception):
            await row.click(timeout=config.nav_timeout_ms, force=True)
    await asyncio.sleep(0.15)
    return await _chip_visible(page, reporting, mid)


async def _add_one(
    page: Page,
    field: Locator,
    mid: str,
    *,
    config: Config,
    reporting: Dict[str, str],
    retries: int,
    backoff_seconds: float,
) -> bool:
    for attempt in range(retries + 1):
        if await _type_wait_click(page, field, mid, config=config, reporting=reporting):
            return True
        await asyncio.sleep(backoff_seconds * (attempt + 1))
    return False


def _recovery_order(misses: List[str], mids: List[str]) -> List[str]:
    """Retry the last requested MID first; it is the one most often dropped."""

    order = list(misses)
    if mids and mids[-1] in order and order[0] != mids[-1]:
        order.remove(mids[-1])
        order.insert(0, mids[-1])
    return order


async def add_mids(
    page: Page,
    mids: Iterable[str],
    *,
    config: Config,
    selectors: Selectors,
    logger: JsonLogger,
) -> List[str]:
    """Add every MID as a chip and return the ones that could not be added.

    Raises :class:`ReportError` for missing MIDs unless ``MID_FINAL_WARN_ONLY``
    is set.
    """

    requested = [str(mid) for mid in mids]
    reporting = selectors["reporting"]
    if not reporting.get("mid_input"):
        raise ReportError("reporting.mid_input selector is required")

    field = page.locator(reporting["mid_input"]).first
    await field.wait_for(state="visible", timeout=config.nav_timeout_ms)

    existing = await selected_mids(page, selectors)
    misses: List[str] = []
    for mid in requested:
        if mid in existing:
            continue
        ok = await _add_one(
            page,
            field,
            mid,
            config=config,
            reporting=reporting,
            retries=config.mid_add_retries,
            backoff_seconds=RETRY_BACKOFF_SECONDS,
        )
        if not ok:
            # Moving focus away and back occasionally forces the chip to render.
            with contextlib.suppress(Exception):
                await field.blur()
                await asyncio.sleep(0.08)
                await field.focus()
            ok = await _chip_visible(page, reporting, mid, CHIP_NUDGE_WAIT_MS)
        if ok:
            existing.add(mid)
        else:
            misses.append(mid)
        await asyncio.sleep(BETWEEN_ADDS_SECONDS)

    still_missing: List[str] = []
    if misses:
        log_event(logger=logger, phase="mids", status="warn", message="Retrying missed MIDs", missing=misses)
        for mid in _recovery_order(misses, requested):
            ok = await _add_one(
                page,
                field,
                mid,
                config=config,
                reporting=reporting,
                retries=config.mid_add_retries + 1,
                backoff_seconds=RETRY_BACKOFF_SECONDS + 0.15,
            )
            if ok:
                await asyncio.sleep(BETWEEN_ADDS_SECONDS)
            else:
                still_missing.append(mid)

    if still_missing:
        message = f"Some MIDs were not added as chips: {', '.join(still_missing)}"
        if not config.mid_final_warn_only:
            raise ReportError(message)
        log_event(logger=logger, phase="mids", status="warn", message=message, missing=still_missing)

    log_event(
        logger=logger,
        phase="mids",
        message="MID chips added",
        requested=len(requested),
        missing=len(still_missing),
    )
    return still_missing


async def ensure_all_mids_selected(
    page: Page, expected: int, *, selectors: Selectors, logger: JsonLogger
) -> None:
    chip_count = await count_selected_mids(page, selectors)
    log_event(logger=logger, phase="mids", message="Counted MID chips", chips=chip_count, expected=expected)
    if chip_count is not None and chip_count < expected:
        raise ReportError(f"Only {chip_count} of {expected} MIDs appear selected in the UI")


# ── Dates, load, export ──────────────────────────────────────────────────────


async def fill_date_input(page: Page, selector: str, value: str) -> None:
    field = page.locator(selector).first
    await field.click()
    await _clear_input(page, field)
    await field.fill(value)


async def set_date_range(
    page: Page,
    report_range: ReportRange,
    *,
    config: Config,
    selectors: Selectors,
    logger: JsonLogger,
) -> None:
    ach = selectors["ach"]
    start = format_for_portal(report_range.start, config.date_format)
    end = format_for_portal(report_range.end, config.date_format)
    if ach.get("start_date"):
        await fill_date_input(page, ach["start_date"], start)
    if ach.get("end_date"):
        await fill_date_input(page, ach["end_date"], end)
    log_event(logger=logger, phase="dates", message="Date range set", start=start, end=end)


async def click_load_report(page: Page, *, config: Config, selectors: Selectors, logger: JsonLogger) -> None:
    reporting = selectors["reporting"]
    last_error: Exception | None = None
    for attempt in range(1, LOAD_CLICK_RETRIES + 1):
        try:
            button = page.locator(reporting["run_button"]).first
            if not await button.count():
                raise ReportError("Load report button not found")
            with contextlib.suppress(Exception):
                await button.scroll_into_view_if_needed()
            await button.click(timeout=config.nav_timeout_ms)
            with contextlib.suppress(Exception):
                await page.wait_for_load_state(config.load_state, timeout=config.nav_timeout_ms)
            await page.locator(reporting["results_panel"]).wait_for(
                state="attached", timeout=config.results_timeout_ms
            )
            log_event(logger=logger, phase="report", message="Report loaded", attempt=attempt)
            return
        except Exception as exc:
            last_error = exc
            log_event(
                logger=logger,
                phase="report",
                status="warn",
                message="Load report attempt failed",
                attempt=attempt,
                error=str(exc),
            )
            if attempt < LOAD_CLICK_RETRIES:
                await asyncio.sleep(LOAD_CLICK_BACKOFF_SECONDS * attempt)
    raise ReportError(f"Failed to load report after {LOAD_CLICK_RETRIES} attempts: {last_error}") from last_error


def export_filename(mid_count: int, suffix: str = ".xlsx") -> str:
    return f"net-ach-{mid_count}-mids{suffix or '.xlsx'}"


async def export_report(
    page: Page,
    out_dir: Path,
    mid_count: int,
    *,
    config: Config,
    selectors: Selectors,
    logger: JsonLogger,
) -> Path:
    reporting = selectors["reporting"]
    out_dir.mkdir(parents=True, exist_ok=True)

    results = page.locator(reporting["results_panel"])
    try:
        await results.wait_for(state="attached", timeout=config.results_timeout_ms)
    except Exception as exc:
        raise ExportError("Report results panel did not appear") from exc
    with contextlib.suppress(Exception):
        await results.locator(reporting["results_table"]).first.wait_for(
            state="attached", timeout=config.results_timeout_ms
        )

    export = results.locator(reporting["export_button"]).first
    try:
        await export.wait_for(state="attached", timeout=config.results_timeout_ms)
    except Exception as exc:
        raise ExportError("Export control not found in report results") from exc
    with contextlib.suppress(Exception):
        await export.scroll_into_view_if_needed()

    try:
        async with page.expect_download(timeout=config.export_timeout_ms) as download_info:
            await export.click(timeout=config.nav_timeout_ms)
        download = await download_info.value
    except Exception as exc:
        raise ExportError(f"Export download did not start: {exc}") from exc

    out_path = out_dir / export_filename(mid_count, Path(download.suggested_filename or "").suffix)
    await download.save_as(str(out_path))
    log_event(logger=logger, phase="export", message="Report exported", path=str(out_path))
    return out_path
