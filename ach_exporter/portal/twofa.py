from __future__ import annotations

import asyncio

from playwright.async_api import Locator, Page

from ach_exporter.json_logger import JsonLogger, log_event
from ach_exporter.portal.errors import PortalError
from ach_exporter.portal.page_selectors import Selectors

MIN_DIGIT_INPUTS = 4
CLEAR_POLL_SECONDS = 0.25
ERROR_HINT_MAX_CHARS = 200


async def _count(page: Page, selector: str | None) -> int:
    if not selector:
        return 0
    try:
        return await page.locator(selector).count()
    except Exception:
        return 0


class PlaywrightChallengeDriver:
    """Challenge driver for the portal's email passcode screen."""

    def __init__(
        self,
        page: Page,
        *,
        selectors: Selectors,
        nav_timeout_ms: int,
        load_state: str,
        logger: JsonLogger,
    ) -> None:
        self.page = page
        self.selectors = selectors["twofa"]
        self.nav_timeout_ms = nav_timeout_ms
        self.load_state = load_state
        self.logger = logger

    async def is_challenge_present(self) -> bool:
        if await _count(self.page, self.selectors.get("code_input")) > 0:
            return True
        if await _count(self.page, self.selectors.get("digit_inputs")) >= MIN_DIGIT_INPUTS:
            return True
        return await _count(self.page, self.selectors.get("guess")) > 0

    async def _submit(self, fallback: Locator) -> None:
        submit_selector = self.selectors.get("submit")
        clicked = False
        if submit_selector:
            try:
                await self.page.locator(submit_selector).first.click(timeout=self.nav_timeout_ms)
                clicked = True
            except Exception:
                clicked = False
        if not clicked:
            await fallback.press("Enter")
        try:
            await self.page.wait_for_load_state(self.load_state, timeout=self.nav_timeout_ms)
        except Exception:
            pass

    async def submit_code(self, code: str) -> None:
        code_input = self.selectors.get("code_input")
        if await _count(self.page, code_input) > 0:
            field = self.page.locator(code_input).first
            await field.fill(code)
            await self._submit(field)
            return

        digits_selector = self.selectors.get("digit_inputs")
        digit_count = await _count(self.page, digits_selector)
        if digit_count > 1 and len(code) >= digit_count:
            digits = self.page.locator(digits_selector)
            for index in range(digit_count):
                await digits.nth(index).fill(code[index])
            await self._submit(digits.last)
            return

        guess = self.selectors.get("guess")
        if await _count(self.page, guess) > 0:
            field = self.page.locator(guess).first
            await field.fill(code)
            await self._submit(field)
            return

        raise PortalError("2FA code input not found; configure twofa selectors in SELECTORS_FILE")

    async def wait_until_cleared(self, timeout_ms: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while True:
            if not await self.is_challenge_present():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(CLEAR_POLL_SECONDS)

    async def request_resend(self) -> bool:
        resend = self.selectors.get("resend")
        if await _count(self.page, resend) == 0:
            log_event(logger=self.logger, phase="mfa", status="warn", message="No resend control on 2FA screen")
            return False
        await self.page.locator(resend).first.click(timeout=self.nav_timeout_ms)
        return True

    async def error_hint(self) -> str | None:
        error_selector = self.selectors.get("error")
        if await _count(self.page, error_selector) == 0:
            return None
        text = await self.page.locator(error_selector).first.inner_text()
        text = " ".join(text.split())
        return text[:ERROR_HINT_MAX_CHARS] or None
