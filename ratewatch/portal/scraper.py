"""Browser-driven price lookup on the partner booking portal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

import ratewatch.portal.selectors as selectors
from ratewatch.errors import PageLoadError
from ratewatch.logging_config import get_logger
from ratewatch.playwright_env import (
    close_browser,
    context_kwargs,
    launch_browser,
    navigation_timeout_ms,
    selector_timeout_ms,
    suggestion_timeout_ms,
    type_delay_ms,
)
from ratewatch.pricing import parse_price_token
from ratewatch.sessions import AuthSession, SessionStore

LOGGER = get_logger(__name__)

_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None", "no_restriction": "None"}
_COOKIE_KEYS = ("name", "value", "domain", "path", "expires", "httpOnly", "secure")

_SCAN_RESULTS_JS = """
({itemSelector, nameSelector, priceSelector, name}) => {
  const wanted = name.toLowerCase();
  for (const item of document.querySelectorAll(itemSelector)) {
    const nameEl = item.matches(nameSelector) ? item : item.querySelector(nameSelector);
    const label = nameEl
      ? (nameEl.getAttribute('data-hotel-name') || nameEl.textContent || '')
      : '';
    if (!label.toLowerCase().includes(wanted)) {
      continue;
    }
    const priceEl = item.querySelector(priceSelector);
    const priceText = priceEl
      ? (priceEl.getAttribute('data-price') || priceEl.textContent || '')
      : '';
    return {name: label.trim(), priceText: priceText.trim()};
  }
  return null;
}
"""


@dataclass(frozen=True)
class PortalSettings:
    """Portal URLs and fixed search inputs."""

    login_url: str
    search_url: str
    authenticated_url_fragment: str
    destination: str = "Makkah"
    date_format: str = "%d/%m/%Y"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "PortalSettings":
        portal = config.get("portal") or {}
        return cls(
            login_url=str(portal["login_url"]),
            search_url=str(portal["search_url"]),
            authenticated_url_fragment=str(portal["authenticated_url_fragment"]),
            destination=str(portal.get("destination") or "Makkah"),
            date_format=str(portal.get("date_format") or "%d/%m/%Y"),
        )


@dataclass(frozen=True)
class SearchResult:
    """Outcome of one (entity, stay date) lookup."""

    price: float | None
    available: bool


def normalize_cookies(cookies: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Reduce exported cookies to the fields a browser context accepts."""

    cleaned: list[dict[str, Any]] = []
    for cookie in cookies:
        if not cookie.get("name") or cookie.get("value") is None or not cookie.get("domain"):
            continue
        entry = {key: cookie[key] for key in _COOKIE_KEYS if key in cookie}
        entry.setdefault("path", "/")
        expires = entry.get("expires")
        if isinstance(expires, bool) or not isinstance(expires, (int, float)):
            entry.pop("expires", None)
        same_site = _SAME_SITE.get(str(cookie.get("sameSite", "")).lower())
        if same_site:
            entry["sameSite"] = same_site
        cleaned.append(entry)
    return cleaned


class PortalScraper:
    """Drive one browser page through login and repeated price searches.

    Usage is strictly sequential: ``initialize`` once, ``authenticate`` once,
    any number of ``search`` calls, then ``shutdown``. The browser belongs to
    this instance alone.
    """

    def __init__(
        self,
        owner_id: int | str,
        session_store: SessionStore,
        settings: PortalSettings,
        *,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self.owner_id = owner_id
        self._session_store = session_store
        self._settings = settings
        self._playwright_factory = playwright_factory
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def __aenter__(self) -> "PortalScraper":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """Launch Chromium and restore the owner's stored session, if any."""

        LOGGER.info("Initializing browser | owner=%s", self.owner_id)
        self._playwright = await self._playwright_factory().start()
        self._browser = await launch_browser(self._playwright)

        kwargs = context_kwargs()
        stored = self._session_store.load(self.owner_id)
        if stored is not None:
            state = stored.storage_state()
            state["cookies"] = normalize_cookies(state["cookies"])
            kwargs["storage_state"] = state
            LOGGER.info(
                "Restoring saved session | owner=%s | cookies=%d",
                self.owner_id,
                len(state["cookies"]),
            )

        self._context = await self._browser.new_context(**kwargs)
        self._page = await self._context.new_page()

    async def shutdown(self) -> None:
        """Close page resources; safe to call more than once."""

        context, browser, playwright = self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None

        if context is not None:
            try:
                await context.close()
            except Exception as exc:
                LOGGER.debug("Context close failed | owner=%s | error=%s", self.owner_id, exc)
        await close_browser(browser)
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:
                LOGGER.debug("Playwright stop failed | owner=%s | error=%s", self.owner_id, exc)
        if browser is not None:
            LOGGER.info("Browser closed | owner=%s", self.owner_id)

    def _require_page(self) -> Any:
        if self._page is None:
            raise RuntimeError("Page not initialized")
        return self._page

    async def _goto(self, url: str) -> None:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="networkidle", timeout=navigation_timeout_ms())
        except PlaywrightTimeoutError:
            LOGGER.info("Navigation did not settle; continuing | url=%s", url)

    async def _settle(self, timeout_ms: int | None = None) -> None:
        page = self._require_page()
        try:
            await page.wait_for_load_state(
                "networkidle", timeout=timeout_ms or navigation_timeout_ms()
            )
        except PlaywrightTimeoutError:
            LOGGER.debug("Page did not reach network idle; continuing")

    def _on_authenticated_surface(self) -> bool:
        return self._settings.authenticated_url_fragment in (self._require_page().url or "")

    async def _persist_session(self) -> None:
        state = await self._context.storage_state()
        session = AuthSession.create(
            state.get("cookies") or [],
            origins=state.get("origins") or [],
            lifetime=self._session_store.lifetime,
        )
        self._session_store.save(self.owner_id, session)

    async def authenticate(self, username: str, password: str) -> bool:
        """Log in unless the restored session is still valid.

        Returns False when the login form or the post-login search surface
        cannot be found. Browser errors other than wait timeouts propagate.
        """

        page = self._require_page()
        LOGGER.info("Attempting login | owner=%s", self.owner_id)
        await self._goto(self._settings.login_url)

        if self._on_authenticated_surface():
            LOGGER.info("Already logged in (session valid) | owner=%s", self.owner_id)
            return True

        username_input = await page.query_selector(selectors.USERNAME_INPUT)
        password_input = await page.query_selector(selectors.PASSWORD_INPUT)
        if username_input is None or password_input is None:
            LOGGER.info("Login form not found; checking search surface | owner=%s", self.owner_id)
            await self._goto(self._settings.search_url)
            marker = await page.query_selector(selectors.DESTINATION_INPUT)
            if marker is None:
                LOGGER.warning("Login surface unavailable | owner=%s", self.owner_id)
                return False
            return True

        await username_input.type(username, delay=type_delay_ms())
        await password_input.type(password, delay=type_delay_ms())
        submit = await page.query_selector(selectors.LOGIN_SUBMIT)
        if submit is not None:
            await submit.click()
        else:
            await password_input.press("Enter")
        await self._settle()

        try:
            await page.wait_for_selector(selectors.DESTINATION_INPUT, timeout=selector_timeout_ms())
        except PlaywrightTimeoutError:
            LOGGER.warning("Search page marker not found after login | owner=%s", self.owner_id)
            return False

        LOGGER.info("Login successful | owner=%s", self.owner_id)
        await self._persist_session()
        return True

    async def search(
        self,
        entity_name: str,
        check_in: date,
        check_out: date,
    ) -> SearchResult | None:
        """Look up the nightly price of *entity_name*.

        Returns ``SearchResult(None, False)`` when the hotel is not listed or
        shows no price, and ``None`` when the page itself could not be driven.
        """

        self._require_page()
        LOGGER.info("Searching | entity=%s | check_in=%s", entity_name, check_in.isoformat())
        try:
            return await self._search(entity_name, check_in, check_out)
        except (PlaywrightError, PageLoadError) as exc:
            LOGGER.warning(
                "Search failed | entity=%s | check_in=%s | error=%s",
                entity_name,
                check_in.isoformat(),
                exc,
            )
            return None

    async def _search(self, entity_name: str, check_in: date, check_out: date) -> SearchResult:
        page = self._require_page()
        search_url = self._settings.search_url
        await self._goto(search_url)

        try:
            destination = await page.wait_for_selector(
                selectors.DESTINATION_INPUT, timeout=selector_timeout_ms()
            )
        except PlaywrightTimeoutError as exc:
            raise PageLoadError("Destination input not found", url=search_url) from exc
        if destination is None:
            raise PageLoadError("Destination input not found", url=search_url)

        await destination.click()
        await destination.fill("")
        await destination.type(self._settings.destination, delay=type_delay_ms())
        await self._pick_destination()

        await self._enter_date(selectors.CHECK_IN_INPUT, check_in)
        await self._enter_date(selectors.CHECK_OUT_INPUT, check_out)

        search_button = await page.query_selector(selectors.SEARCH_BUTTON)
        if search_button is None:
            raise PageLoadError("Search button not found", url=search_url, entity=entity_name)
        await search_button.click()
        await self._settle()

        try:
            await page.wait_for_selector(selectors.RESULT_ITEM, timeout=selector_timeout_ms())
        except PlaywrightTimeoutError:
            LOGGER.info("No result items rendered | entity=%s", entity_name)

        name_filter = await page.query_selector(selectors.NAME_FILTER_INPUT)
        if name_filter is not None:
            await name_filter.click()
            await name_filter.type(entity_name, delay=type_delay_ms())
            await self._settle(suggestion_timeout_ms())

        match = await page.evaluate(
            _SCAN_RESULTS_JS,
            {
                "itemSelector": selectors.RESULT_ITEM,
                "nameSelector": selectors.RESULT_NAME,
                "priceSelector": selectors.RESULT_PRICE,
                "name": entity_name,
            },
        )
        price = parse_price_token((match or {}).get("priceText"))
        if price is None:
            LOGGER.info("No price found | entity=%s | check_in=%s", entity_name, check_in.isoformat())
            return SearchResult(price=None, available=False)

        LOGGER.info(
            "Found price | entity=%s | check_in=%s | price=%s",
            entity_name,
            check_in.isoformat(),
            price,
        )
        return SearchResult(price=price, available=True)

    async def _pick_destination(self) -> None:
        page = self._require_page()
        try:
            await page.wait_for_selector(
                selectors.DESTINATION_SUGGESTION, timeout=suggestion_timeout_ms()
            )
        except PlaywrightTimeoutError:
            LOGGER.debug("No destination suggestions shown")
            return

        wanted = self._settings.destination.lower()
        for option in await page.query_selector_all(selectors.DESTINATION_SUGGESTION):
            text = (await option.text_content()) or ""
            if wanted in text.lower():
                await option.click()
                break

        try:
            await page.wait_for_selector(
                selectors.DESTINATION_SUGGESTION,
                state="hidden",
                timeout=suggestion_timeout_ms(),
            )
        except PlaywrightTimeoutError:
            LOGGER.debug("Destination suggestions still visible; continuing")

    async def _enter_date(self, selector: str, day: date) -> None:
        page = self._require_page()
        field = await page.query_selector(selector)
        if field is None:
            LOGGER.debug("Date input missing | selector=%s", selector)
            return
        await field.click()
        await field.fill("")
        await field.type(day.strftime(self._settings.date_format), delay=type_delay_ms())
