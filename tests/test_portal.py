"""Tests for the portal form flow and page classification, using a scripted page."""
import time

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from conftest import M2_ROW, SEARCH_URL, build_results_table
from tollwatch.errors import NavigationFailed, PortalStructureError, PortalTransientError, ResultWaitTimeout
from tollwatch.fetch.diagnostics import DiagnosticsRecorder
from tollwatch.fetch.endpoints import (
    MOTORBIKE_CHECKBOX,
    NOTICE_NUMBER_INPUT,
    PLATE_INPUT,
    STATE_SELECT,
    SUBMIT_BUTTON,
)
from tollwatch.fetch.portal import PlaywrightPortalDriver
from tollwatch.parse.models import Jurisdiction, SearchQuery


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    async def fill(self, value):
        self.page.actions.append(("fill", self.selector, value))

    async def select_option(self, label=None):
        self.page.actions.append(("select", self.selector, label))

    async def check(self):
        self.page.actions.append(("check", self.selector))

    async def click(self):
        self.page.actions.append(("click", self.selector))


class FakePage:
    def __init__(self, state=None, goto_error=None, wait_error=None, body=""):
        self.url = SEARCH_URL
        self.state = state or {"table": None, "text": ""}
        self.goto_error = goto_error
        self.wait_error = wait_error
        self.body = body
        self.actions = []
        self.timeouts = []

    def set_default_timeout(self, timeout):
        self.timeouts.append(timeout)

    async def goto(self, url, wait_until=None, timeout=None):
        self.timeouts.append(timeout)
        if self.goto_error:
            raise self.goto_error

    async def wait_for_selector(self, selector, timeout=None):
        return object()

    def locator(self, selector):
        return FakeLocator(self, selector)

    async def wait_for_function(self, expression, arg=None, timeout=None, polling=None):
        self.timeouts.append(timeout)
        if self.wait_error:
            raise self.wait_error

    async def evaluate(self, expression, arg=None):
        return self.state

    async def text_content(self, selector, timeout=None):
        return self.body


@pytest.fixture
def driver(tmp_path):
    return PlaywrightPortalDriver(
        diagnostics=DiagnosticsRecorder(debug_dir=tmp_path, enabled=False),
        navigation_timeout=20,
        shell_timeout=10,
        result_timeout=20,
    )


def deadline(seconds=60.0):
    return time.monotonic() + seconds


@pytest.mark.asyncio
async def test_form_is_filled_for_car(driver):
    page = FakePage(state={"table": build_results_table([M2_ROW]), "text": ""})
    query = SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW)

    raw = await driver._search(page, query, deadline())

    assert raw.table_html.startswith('<table id="additionalResults">')
    assert raw.no_results is False
    assert ("fill", PLATE_INPUT, "ABC123") in page.actions
    assert ("select", STATE_SELECT, "New South Wales") in page.actions
    assert ("click", SUBMIT_BUTTON) in page.actions
    assert not any(a[1] in (NOTICE_NUMBER_INPUT, MOTORBIKE_CHECKBOX) for a in page.actions)


@pytest.mark.asyncio
async def test_form_is_filled_for_motorcycle_with_hint(driver):
    page = FakePage(state={"table": None, "text": "Sorry, no trips found"})
    query = SearchQuery(
        plate="MOTO1", jurisdiction=Jurisdiction.QLD, notice_number_hint="TN-1", is_two_wheeler=True
    )

    raw = await driver._search(page, query, deadline())

    assert raw.no_results is True
    assert ("fill", NOTICE_NUMBER_INPUT, "TN-1") in page.actions
    assert ("check", MOTORBIKE_CHECKBOX) in page.actions
    assert ("select", STATE_SELECT, "Queensland") in page.actions


@pytest.mark.asyncio
async def test_table_wins_over_no_results_text(driver):
    page = FakePage(state={"table": build_results_table([M2_ROW]), "text": "No trip history"})
    raw = await driver._search(page, SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW), deadline())
    assert raw.table_html is not None


@pytest.mark.asyncio
async def test_navigation_failure(driver):
    page = FakePage(goto_error=PlaywrightError("net::ERR_CONNECTION_RESET"))
    with pytest.raises(NavigationFailed):
        await driver._search(page, SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW), deadline())


@pytest.mark.asyncio
async def test_result_wait_timeout(driver):
    page = FakePage(wait_error=PlaywrightTimeout("Timeout 20000ms exceeded"), body="Loading...")
    with pytest.raises(ResultWaitTimeout):
        await driver._search(page, SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW), deadline())


@pytest.mark.asyncio
async def test_blocked_page_is_transient(driver):
    page = FakePage(wait_error=PlaywrightTimeout("Timeout"), body="Request unsuccessful. Incapsula incident ID")
    with pytest.raises(PortalTransientError) as exc_info:
        await driver._search(page, SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW), deadline())
    assert not isinstance(exc_info.value, ResultWaitTimeout)


@pytest.mark.asyncio
async def test_unrecognized_page_is_structure_error(driver):
    page = FakePage(state={"table": None, "text": "Welcome to the new portal"})
    with pytest.raises(PortalStructureError):
        await driver._search(page, SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW), deadline())


@pytest.mark.asyncio
async def test_sub_timeouts_clip_to_deadline(driver):
    page = FakePage(state={"table": build_results_table([M2_ROW]), "text": ""})
    await driver._search(page, SearchQuery(plate="ABC123", jurisdiction=Jurisdiction.NSW), deadline(3.0))
    assert all(t <= 3000 for t in page.timeouts)
    assert all(t >= 500 for t in page.timeouts)


def test_step_ms_uses_sub_timeout_when_budget_is_large(driver):
    assert driver._step_ms(10, deadline(60)) == 10000
