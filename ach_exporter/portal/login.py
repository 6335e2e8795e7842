from __future__ import annotations

import asyncio
import re

from playwright.async_api import Page

from ach_exporter.config import Config
from ach_exporter.json_logger import JsonLogger, log_event
from ach_exporter.portal.errors import LoginError
from ach_exporter.portal.page_selectors import Selectors

LOGIN_PAGE_RE = re.compile(r"login|signin|account", re.IGNORECASE)


def _login_urls(config: Config) -> list[str]:
    base = config.portal_base.rstrip("/")
    return [f"{base}/{path.lstrip('/')}" for path in config.login_paths]


async def _open_login_page(page: Page, *, config: Config, logger: JsonLogger) -> None:
    if "login" in (page.url or "").lower():
        return
    for url in _login_urls(config):
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=config.nav_timeout_ms)
        except Exception as exc:
            log_event(logger=logger, phase="login", status="warn", message="Login path failed", url=url, error=str(exc))
            continue
        try:
            title = await page.title()
        except Exception:
            title = ""
        log_event(logger=logger, phase="login", message="Opened login candidate", url=page.url, title=title)
        if LOGIN_PAGE_RE.search(title or "") or "login" in (page.url or "").lower():
            return


async def _login_form_visible(page: Page, selectors: Selectors) -> bool:
    try:
        return await page.locator(selectors["login"]["password"]).first.is_visible()
    except Exception:
        return False


async def login(page: Page, *, config: Config, selectors: Selectors, logger: JsonLogger) -> None:
    if not config.portal_username or not config.portal_password:
        raise LoginError("Missing ELEVATE_USERNAME or ELEVATE_PASSWORD")

    await _open_login_page(page, config=config, logger=logger)

    login_selectors = selectors["login"]
    await page.locator(login_selectors["username"]).first.fill(config.portal_username, timeout=config.nav_timeout_ms)
    await page.locator(login_selectors["password"]).first.fill(config.portal_password, timeout=config.nav_timeout_ms)
    await page.locator(login_selectors["submit"]).first.click(timeout=config.nav_timeout_ms)
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=config.nav_timeout_ms)
    except Exception:
        pass

    if await _login_form_visible(page, selectors):
        raise LoginError(f"Login form still visible after submit at {page.url}")
    log_event(logger=logger, phase="login", message="Submitted credentials", final_url=page.url)


async def login_with_retries(page: Page, *, config: Config, selectors: Selectors, logger: JsonLogger) -> None:
    attempts = max(1, config.login_retries)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            await asyncio.sleep(config.login_backoff_ms / 1000)
        try:
            await login(page, config=config, selectors=selectors, logger=logger)
            return
        except Exception as exc:
            last_error = exc
            log_event(
                logger=logger,
                phase="login",
                status="warn",
                message="Login attempt failed",
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
    raise LoginError(f"Login failed after {attempts} attempt(s): {last_error}") from last_error
