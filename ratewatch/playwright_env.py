"""Centralised helpers for Playwright launch and wait configuration."""

from __future__ import annotations

import os
import shlex
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import Browser, Playwright

from ratewatch.logging_config import get_logger

LOGGER = get_logger(__name__)

_FALSE_VALUES = {"0", "false", "no", "off"}


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def headless_enabled() -> bool:
    """Return True if Playwright should run in headless mode."""

    return _as_bool(os.getenv("RATEWATCH_HEADLESS"), True)


def navigation_timeout_ms() -> int:
    """Upper bound for a single navigation wait."""

    return max(1000, _env_int("RATEWATCH_NAV_TIMEOUT_MS", 30000))


def selector_timeout_ms() -> int:
    """Upper bound for waiting on a single element to appear."""

    return max(1000, _env_int("RATEWATCH_SELECTOR_TIMEOUT_MS", 15000))


def suggestion_timeout_ms() -> int:
    """Upper bound for autocomplete/filter widgets to react to typing."""

    return max(250, _env_int("RATEWATCH_SUGGESTION_TIMEOUT_MS", 5000))


def type_delay_ms() -> int:
    """Per-keystroke delay used when typing into portal inputs."""

    return max(0, _env_int("RATEWATCH_TYPE_DELAY_MS", 50))


def _proxy_config() -> dict[str, str] | None:
    raw = os.getenv("RATEWATCH_PROXY")
    if not raw:
        return None
    parsed = urlparse(raw)
    if not parsed.scheme:
        return {"server": f"http://{raw}"}
    return {"server": raw}


def launch_kwargs() -> dict[str, Any]:
    """Return kwargs passed to chromium.launch."""

    args = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
    ]
    extra_args = os.getenv("RATEWATCH_CHROMIUM_ARGS")
    if extra_args:
        args.extend(shlex.split(extra_args))

    kwargs: dict[str, Any] = {
        "headless": headless_enabled(),
        "args": args,
    }

    channel = os.getenv("RATEWATCH_BROWSER_CHANNEL")
    if channel:
        kwargs["channel"] = channel

    proxy = _proxy_config()
    if proxy:
        kwargs["proxy"] = proxy

    return kwargs


def context_kwargs() -> dict[str, Any]:
    """Return kwargs passed to browser.new_context (before storage state)."""

    kwargs: dict[str, Any] = {
        "viewport": {"width": 1280, "height": 720},
        "locale": "en-US",
    }
    if _as_bool(os.getenv("RATEWATCH_IGNORE_HTTPS_ERRORS"), False):
        kwargs["ignore_https_errors"] = True
    user_agent = (os.getenv("USER_AGENT") or "").strip()
    if user_agent:
        kwargs["user_agent"] = user_agent
    return kwargs


async def launch_browser(playwright: Playwright) -> Browser:
    """Launch Chromium according to env overrides."""

    return await playwright.chromium.launch(**launch_kwargs())


async def close_browser(browser: Browser | None) -> None:
    """Close the provided browser without raising."""

    if browser is None:
        return
    try:
        await browser.close()
    except Exception as exc:
        LOGGER.debug("Browser close failed: %s", exc)
