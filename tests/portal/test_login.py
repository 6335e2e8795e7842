import asyncio
import io

import pytest

from ach_exporter.json_logger import JsonLogger
from ach_exporter.portal.errors import LoginError
from ach_exporter.portal.login import login, login_with_retries
from ach_exporter.portal.page_selectors import load_selectors


class FakeLocator:
    def __init__(self, page, selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self):
        return self

    async def fill(self, value: str, **_kwargs) -> None:
        self.page.fills.append(value)

    async def click(self, **_kwargs) -> None:
        self.page.submits += 1
        if self.page.accept_after is not None and self.page.submits >= self.page.accept_after:
            self.page.url = "https://portal.elevateqs.com/Home"

    async def is_visible(self) -> bool:
        return "login" in self.page.url.lower()


class FakePage:
    def __init__(self, *, url: str = "about:blank", accept_after: int | None = 1, titles=None) -> None:
        self.url = url
        self.accept_after = accept_after
        self.titles = titles or {}
        self.gotos = []
        self.fills = []
        self.submits = 0

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def goto(self, url: str, **_kwargs) -> None:
        self.gotos.append(url)
        if url.endswith("/login"):
            raise Exception("net::ERR_ABORTED 404")
        self.url = url

    async def title(self) -> str:
        return self.titles.get(self.url, "")

    async def wait_for_load_state(self, *_args, **_kwargs) -> None:
        return None


async def _no_sleep(*_args, **_kwargs) -> None:
    return None


def _logger() -> JsonLogger:
    return JsonLogger(run_id="test", stream=io.StringIO(), log_file_path=None)


def run(coro):
    return asyncio.run(coro)


def test_login_tries_paths_until_a_login_page_loads(make_config) -> None:
    config = make_config(LOGIN_PATHS="/login,/Account/Login")
    page = FakePage()

    run(login(page, config=config, selectors=load_selectors(), logger=_logger()))

    assert page.gotos == ["https://portal.elevateqs.com/login", "https://portal.elevateqs.com/Account/Login"]
    assert page.fills == ["ops-user", "portal-secret"]
    assert page.url.endswith("/Home")


def test_login_raises_when_form_stays_visible(make_config) -> None:
    page = FakePage(url="https://portal.elevateqs.com/Account/Login", accept_after=None)

    with pytest.raises(LoginError):
        run(login(page, config=make_config(), selectors=load_selectors(), logger=_logger()))
    assert page.gotos == []


def test_login_retries_until_success(make_config, monkeypatch) -> None:
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)
    page = FakePage(url="https://portal.elevateqs.com/Account/Login", accept_after=2)

    run(login_with_retries(page, config=make_config(LOGIN_RETRIES="3"), selectors=load_selectors(), logger=_logger()))

    assert page.submits == 2


def test_login_gives_up_after_configured_retries(make_config, monkeypatch) -> None:
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)
    page = FakePage(url="https://portal.elevateqs.com/Account/Login", accept_after=None)

    with pytest.raises(LoginError, match="after 2 attempt"):
        run(login_with_retries(page, config=make_config(LOGIN_RETRIES="2"), selectors=load_selectors(), logger=_logger()))
    assert page.submits == 2
