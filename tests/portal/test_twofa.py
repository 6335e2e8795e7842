import asyncio
import io

import pytest

from ach_exporter.json_logger import JsonLogger
from ach_exporter.portal.errors import PortalError
from ach_exporter.portal.twofa import PlaywrightChallengeDriver

SELECTORS = {
    "twofa": {
        "code_input": "#passcode",
        "digit_inputs": ".digit",
        "guess": "",
        "submit": "#verify",
        "resend": "#resend",
        "error": ".error",
    }
}


class FakeLocator:
    def __init__(self, page, selector: str, index: int | None = None) -> None:
        self.page = page
        self.selector = selector
        self.index = index

    async def count(self) -> int:
        return self.page.counts.get(self.selector, 0)

    @property
    def first(self):
        return FakeLocator(self.page, self.selector, 0)

    @property
    def last(self):
        return FakeLocator(self.page, self.selector, -1)

    def nth(self, index: int):
        return FakeLocator(self.page, self.selector, index)

    async def fill(self, value: str, **_kwargs) -> None:
        self.page.actions.append(("fill", self.selector, self.index, value))

    async def click(self, **_kwargs) -> None:
        if self.selector in self.page.broken_clicks:
            raise Exception(f"click failed: {self.selector}")
        self.page.actions.append(("click", self.selector))
        self.page.on_click(self.selector)

    async def press(self, key: str) -> None:
        self.page.actions.append(("press", self.selector, self.index, key))

    async def inner_text(self) -> str:
        return self.page.texts.get(self.selector, "")


class FakePage:
    def __init__(self, counts, *, texts=None, broken_clicks=(), clears_on=None) -> None:
        self.counts = dict(counts)
        self.texts = texts or {}
        self.broken_clicks = set(broken_clicks)
        self.clears_on = clears_on
        self.actions = []

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def on_click(self, selector: str) -> None:
        if selector == self.clears_on:
            self.counts = {}

    async def wait_for_load_state(self, *_args, **_kwargs) -> None:
        return None


def _driver(page: FakePage) -> PlaywrightChallengeDriver:
    logger = JsonLogger(run_id="test", stream=io.StringIO(), log_file_path=None)
    return PlaywrightChallengeDriver(
        page, selectors=SELECTORS, nav_timeout_ms=1000, load_state="domcontentloaded", logger=logger
    )


def run(coro):
    return asyncio.run(coro)


def test_challenge_detected_from_single_code_input() -> None:
    assert run(_driver(FakePage({"#passcode": 1})).is_challenge_present()) is True


def test_challenge_detected_from_digit_boxes() -> None:
    assert run(_driver(FakePage({".digit": 6})).is_challenge_present()) is True
    assert run(_driver(FakePage({".digit": 2})).is_challenge_present()) is False


def test_submit_fills_single_input_and_clicks_verify() -> None:
    page = FakePage({"#passcode": 1, "#verify": 1})

    run(_driver(page).submit_code("482913"))

    assert page.actions == [("fill", "#passcode", 0, "482913"), ("click", "#verify")]


def test_submit_spreads_code_across_digit_boxes() -> None:
    page = FakePage({".digit": 6, "#verify": 1})

    run(_driver(page).submit_code("482913"))

    fills = [action for action in page.actions if action[0] == "fill"]
    assert [action[3] for action in fills] == list("482913")
    assert [action[2] for action in fills] == list(range(6))


def test_submit_presses_enter_when_verify_button_fails() -> None:
    page = FakePage({"#passcode": 1}, broken_clicks={"#verify"})

    run(_driver(page).submit_code("482913"))

    assert ("press", "#passcode", 0, "Enter") in page.actions


def test_submit_without_any_input_raises() -> None:
    with pytest.raises(PortalError):
        run(_driver(FakePage({})).submit_code("482913"))


def test_wait_until_cleared_sees_challenge_disappear() -> None:
    page = FakePage({"#passcode": 1, "#verify": 1}, clears_on="#verify")
    driver = _driver(page)

    run(driver.submit_code("482913"))

    assert run(driver.wait_until_cleared(1000)) is True


def test_wait_until_cleared_times_out_while_challenge_remains() -> None:
    assert run(_driver(FakePage({"#passcode": 1})).wait_until_cleared(0)) is False


def test_resend_clicks_control_when_present() -> None:
    page = FakePage({"#passcode": 1, "#resend": 1})

    assert run(_driver(page).request_resend()) is True
    assert ("click", "#resend") in page.actions
    assert run(_driver(FakePage({"#passcode": 1})).request_resend()) is False


def test_error_hint_is_collapsed_and_truncated() -> None:
    page = FakePage({".error": 1}, texts={".error": "  Invalid\n   code  " + "x" * 300})

    hint = run(_driver(page).error_hint())

    assert hint.startswith("Invalid code ")
    assert len(hint) == 200
    assert run(_driver(FakePage({})).error_hint()) is None
