"""Tests for per-account browser session lifecycle."""

import asyncio
import json

import pytest

from cartwatch.ingest.session_manager import BrowserSessionManager, cookie_signature
from fakes import FakeBrowser

COOKIES = json.dumps([{"name": "cookie2", "value": "abc", "domain": ".taobao.com", "path": "/"}])


@pytest.fixture
def manager(launcher):
    return BrowserSessionManager(launcher=launcher, idle_ttl_seconds=60, keep_open=False, warm_url="")


@pytest.mark.asyncio
async def test_same_account_reuses_session(manager, fake_browser):
    first = await manager.get_or_create_session(1, COOKIES)
    second = await manager.get_or_create_session(1, COOKIES)

    assert first is second
    assert len(fake_browser.contexts) == 1
    assert fake_browser.contexts[0].cookies[0]["name"] == "cookie2"
    assert fake_browser.contexts[0].init_scripts


@pytest.mark.asyncio
async def test_concurrent_creation_yields_one_session(manager, fake_browser):
    sessions = await asyncio.gather(*(manager.get_or_create_session(1, COOKIES) for _ in range(5)))
    assert all(s is sessions[0] for s in sessions)
    assert len(fake_browser.contexts) == 1


@pytest.mark.asyncio
async def test_accounts_get_separate_sessions(manager, fake_browser):
    a = await manager.get_or_create_session(1, COOKIES)
    b = await manager.get_or_create_session(2, COOKIES)
    assert a is not b
    assert len(fake_browser.contexts) == 2


@pytest.mark.asyncio
async def test_cookie_change_rebuilds_session(manager, fake_browser):
    first = await manager.get_or_create_session(1, COOKIES)
    rotated = json.dumps([{"name": "cookie2", "value": "xyz", "domain": ".taobao.com", "path": "/"}])

    second = await manager.get_or_create_session(1, rotated)

    assert second is not first
    assert fake_browser.contexts[0].closed
    assert first.page.closed


@pytest.mark.asyncio
async def test_dead_page_rebuilds_session(manager):
    first = await manager.get_or_create_session(1, COOKIES)
    first.page.broken = True

    second = await manager.get_or_create_session(1, COOKIES)
    assert second is not first

    second.page.closed = True
    third = await manager.get_or_create_session(1, COOKIES)
    assert third is not second


@pytest.mark.asyncio
async def test_dispose_is_idempotent(manager):
    await manager.get_or_create_session(1, COOKIES)
    await manager.dispose_session(1, reason="test")
    await manager.dispose_session(1, reason="test")
    assert not manager.has_session(1)


@pytest.mark.asyncio
async def test_idle_sweep(manager):
    session = await manager.get_or_create_session(1, COOKIES)
    await manager.get_or_create_session(2, COOKIES)
    session.last_used_at -= 120

    assert await manager.sweep_idle() == 1
    assert not manager.has_session(1)
    assert manager.has_session(2)


@pytest.mark.asyncio
async def test_keep_open_skips_idle_sweep(launcher):
    manager = BrowserSessionManager(launcher=launcher, idle_ttl_seconds=60, keep_open=True, warm_url="")
    session = await manager.get_or_create_session(1, COOKIES)
    session.last_used_at -= 120
    assert await manager.sweep_idle() == 0
    assert manager.has_session(1)


@pytest.mark.asyncio
async def test_warm_url_loaded_on_creation(launcher):
    manager = BrowserSessionManager(launcher=launcher, keep_open=False, warm_url="https://cart.example.com/")
    session = await manager.get_or_create_session(1, COOKIES)
    assert session.page.visited == ["https://cart.example.com/"]


@pytest.mark.asyncio
async def test_close_disposes_everything(manager, fake_browser):
    await manager.get_or_create_session(1, COOKIES)
    await manager.close()
    assert manager.list_session_summaries() == []
    assert fake_browser.closed


def test_cookie_signature():
    assert cookie_signature(None) == ""
    assert cookie_signature(COOKIES) == cookie_signature(COOKIES)
    assert cookie_signature(COOKIES) != cookie_signature(COOKIES + " ")


@pytest.fixture
def mode_launcher():
    browsers = {}

    async def launch(headless=True):
        browsers[headless] = FakeBrowser()
        return browsers[headless]

    return launch, browsers


@pytest.mark.asyncio
async def test_visible_session_gets_its_own_browser(mode_launcher):
    launch, browsers = mode_launcher
    manager = BrowserSessionManager(launcher=launch, keep_open=False, warm_url="")

    hidden = await manager.get_or_create_session(1, COOKIES, headless=True)
    visible = await manager.get_or_create_session(2, COOKIES, headless=False)

    assert hidden.headless and not visible.headless
    assert set(browsers) == {True, False}
    assert len(browsers[True].contexts) == 1
    assert len(browsers[False].contexts) == 1


@pytest.mark.asyncio
async def test_mode_change_rebuilds_session(mode_launcher):
    launch, browsers = mode_launcher
    manager = BrowserSessionManager(launcher=launch, keep_open=False, warm_url="")

    first = await manager.get_or_create_session(1, COOKIES, headless=True)
    assert await manager.get_or_create_session(1, COOKIES) is first

    second = await manager.get_or_create_session(1, COOKIES, headless=False)

    assert second is not first
    assert first.page.closed
    assert not second.headless
    assert manager.list_session_summaries()[0]["headless"] is False

    await manager.close()
    assert browsers[True].closed and browsers[False].closed


@pytest.mark.asyncio
async def test_switch_to_moves_human_to_new_page(manager):
    session = await manager.get_or_create_session(1, COOKIES)
    original_human = session.human
    popup = await session.context.new_page()

    session.switch_to(session.page)
    assert session.human is original_human

    session.switch_to(popup)
    assert session.page is popup
    assert session.human is not original_human
    assert session.human.page is popup
