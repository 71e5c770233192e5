"""Playwright driver for the toll portal search form."""
import logging
import time
from typing import Optional, Protocol

from playwright.async_api import (
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

from tollwatch.config import config
from tollwatch.errors import (
    NavigationFailed,
    PortalError,
    PortalStructureError,
    PortalTransientError,
    ResultWaitTimeout,
)
from tollwatch.fetch.diagnostics import DiagnosticsRecorder
from tollwatch.fetch.endpoints import (
    BROWSER_ARGS,
    EXTRA_HEADERS,
    MOTORBIKE_CHECKBOX,
    NOTICE_NUMBER_INPUT,
    PLATE_INPUT,
    RESULTS_TABLE,
    STATE_SELECT,
    SUBMIT_BUTTON,
    VIEWPORT,
    get_search_url,
    get_state_label,
)
from tollwatch.parse.models import RawPortalResult, SearchQuery
from tollwatch.parse.page_state import NO_RESULTS_PHRASES, is_blocked_page, is_no_results_page

logger = logging.getLogger(__name__)

# Resolves once either terminal condition holds, so neither wait can race the other
TERMINAL_STATE_PREDICATE = """
([selector, phrases]) => {
    if (document.querySelector(selector)) return true;
    const text = ((document.body && document.body.textContent) || '').toLowerCase();
    return phrases.some((phrase) => text.includes(phrase));
}
"""

PAGE_STATE_SCRIPT = """
([selector]) => {
    const table = document.querySelector(selector);
    return {
        table: table ? table.outerHTML : null,
        text: (document.body && document.body.textContent) || '',
    };
}
"""

MIN_STEP_SECONDS = 0.5


class PortalDriver(Protocol):
    """Anything that can run one portal search and return raw markup."""

    async def acquire(self, query: SearchQuery, timeout_budget: float) -> RawPortalResult:
        ...


def _first_line(error: BaseException) -> str:
    text = str(error).strip()
    return text.splitlines()[0][:300] if text else type(error).__name__


class PlaywrightPortalDriver:
    """Drives a fresh headless Chromium per search; the browser is closed on every path."""

    def __init__(
        self,
        diagnostics: Optional[DiagnosticsRecorder] = None,
        headless: bool = config.PORTAL_HEADLESS,
        navigation_timeout: float = config.PORTAL_NAVIGATION_TIMEOUT,
        shell_timeout: float = config.PORTAL_SHELL_TIMEOUT,
        result_timeout: float = config.PORTAL_RESULT_TIMEOUT,
        user_agent: str = config.PORTAL_USER_AGENT,
    ):
        self.diagnostics = diagnostics or DiagnosticsRecorder()
        self.headless = headless
        self.navigation_timeout = navigation_timeout
        self.shell_timeout = shell_timeout
        self.result_timeout = result_timeout
        self.user_agent = user_agent

    async def acquire(self, query: SearchQuery, timeout_budget: float) -> RawPortalResult:
        """Run one search. Raises a PortalError subclass on failure."""
        deadline = time.monotonic() + timeout_budget
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=self.headless, args=BROWSER_ARGS)
            page: Optional[Page] = None
            try:
                context = await browser.new_context(
                    user_agent=self.user_agent,
                    viewport=VIEWPORT,
                    locale="en-AU",
                    extra_http_headers=EXTRA_HEADERS,
                )
                page = await context.new_page()
                return await self._search(page, query, deadline)
            except PortalError as e:
                await self.diagnostics.capture(
                    page, f"{type(e).__name__}-{query.plate}", {"error": str(e)}
                )
                raise
            except PlaywrightError as e:
                await self.diagnostics.capture(
                    page, f"browser-error-{query.plate}", {"error": _first_line(e)}
                )
                url = page.url if page is not None else None
                raise PortalTransientError(f"Browser error: {_first_line(e)}", url=url) from e
            finally:
                try:
                    await browser.close()
                except PlaywrightError as e:
                    logger.warning(f"Failed to close browser cleanly: {_first_line(e)}")

    def _step_ms(self, sub_timeout: float, deadline: float) -> int:
        """Sub-timeout clipped to what is left of the attempt budget."""
        remaining = max(deadline - time.monotonic(), MIN_STEP_SECONDS)
        return int(min(sub_timeout, remaining) * 1000)

    async def _search(self, page: Page, query: SearchQuery, deadline: float) -> RawPortalResult:
        search_url = get_search_url()
        page.set_default_timeout(self._step_ms(self.shell_timeout, deadline))

        logger.info(f"Navigating to toll portal for plate {query.plate} ({query.jurisdiction.value})")
        try:
            await page.goto(
                search_url,
                wait_until="domcontentloaded",
                timeout=self._step_ms(self.navigation_timeout, deadline),
            )
            await page.wait_for_selector(PLATE_INPUT, timeout=self._step_ms(self.shell_timeout, deadline))
        except PlaywrightError as e:
            raise NavigationFailed(f"Search page did not load: {_first_line(e)}", url=page.url) from e

        logger.debug(f"Form ready at {page.url}, filling details")
        await page.locator(PLATE_INPUT).fill(query.plate)
        await page.locator(STATE_SELECT).select_option(label=get_state_label(query.jurisdiction))
        if query.notice_number_hint:
            await page.locator(NOTICE_NUMBER_INPUT).fill(query.notice_number_hint)
        if query.is_two_wheeler:
            await page.locator(MOTORBIKE_CHECKBOX).check()

        logger.debug("Submitting search")
        await page.locator(SUBMIT_BUTTON).click()

        try:
            await page.wait_for_function(
                TERMINAL_STATE_PREDICATE,
                arg=[RESULTS_TABLE, list(NO_RESULTS_PHRASES)],
                timeout=self._step_ms(self.result_timeout, deadline),
                polling=500,
            )
        except PlaywrightTimeout as e:
            body = await self._body_text(page)
            if is_blocked_page(body):
                raise PortalTransientError("Portal blocked the automated session", url=page.url) from e
            raise ResultWaitTimeout(
                "Search request timed out - website may be experiencing issues", url=page.url
            ) from e

        state = await page.evaluate(PAGE_STATE_SCRIPT, [RESULTS_TABLE])
        final_url = page.url
        if state.get("table"):
            logger.info(f"Results table found for plate {query.plate}")
            return RawPortalResult(final_url=final_url, table_html=state["table"])
        if is_no_results_page(state.get("text")):
            logger.info(f"No toll notices found for plate {query.plate}")
            return RawPortalResult.empty(final_url)
        if is_blocked_page(state.get("text")):
            raise PortalTransientError("Portal blocked the automated session", url=final_url)
        raise PortalStructureError(
            "Results table not found - website may have changed structure", url=final_url
        )

    async def _body_text(self, page: Page) -> str:
        try:
            return await page.text_content("body", timeout=1000) or ""
        except PlaywrightError:
            return ""
