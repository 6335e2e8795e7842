from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from playwright.async_api import Browser, BrowserContext, Page

from ach_exporter.config import Config
from ach_exporter.json_logger import JsonLogger, log_event

CHROMIUM_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]


async def launch_browser(*, playwright: Any, config: Config, logger: JsonLogger) -> Browser:
    launch_kwargs: Dict[str, Any] = {
        "headless": config.headless,
        "slow_mo": config.slowmo_ms,
        "args": CHROMIUM_ARGS,
    }
    log_event(
        logger=logger,
        phase="init",
        message="Launching Playwright with bundled Chromium",
        headless=config.headless,
        slowmo_ms=config.slowmo_ms,
        load_state=config.load_state,
        nav_timeout_ms=config.nav_timeout_ms,
    )
    return await playwright.chromium.launch(**launch_kwargs)


async def open_page(browser: Browser, *, config: Config) -> tuple[BrowserContext, Page]:
    context = await browser.new_context(accept_downloads=True)
    page = await context.new_page()
    page.set_default_timeout(config.nav_timeout_ms)
    page.set_default_navigation_timeout(config.nav_timeout_ms)
    return context, page


async def close_context(context: BrowserContext | None) -> None:
    if context is None:
        return
    with contextlib.suppress(Exception):
        await context.close()


async def capture_artifacts(page: Page, *, error_dir: Path, prefix: str) -> Dict[str, str]:
    """Save a full-page screenshot and the page HTML for later diagnosis."""

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base_name = f"{prefix}_{timestamp}"
    error_dir.mkdir(parents=True, exist_ok=True)
    screenshot_path = error_dir / f"{base_name}.png"
    html_path = error_dir / f"{base_name}.html"

    extras: Dict[str, str] = {"artifacts_dir": str(error_dir)}

    try:
        await page.screenshot(path=str(screenshot_path), full_page=True)
        extras["screenshot"] = str(screenshot_path)
    except Exception as exc:  # pragma: no cover - depends on browser state
        extras["screenshot_error"] = str(exc)

    try:
        html_content = await page.content()
        html_path.write_text(html_content, encoding="utf-8")
        extras["html_dump"] = str(html_path)
    except Exception as exc:  # pragma: no cover - depends on browser state
        extras["html_error"] = str(exc)

    return extras
