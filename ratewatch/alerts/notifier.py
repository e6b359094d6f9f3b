"""Alert notification helper utilities."""

from __future__ import annotations

import html
import os
import time
from typing import Iterable

import requests
from tenacity import retry, stop_after_attempt, wait_exponential

from ratewatch.logging_config import get_logger
from ratewatch.storage.models_sql import Alert

LOGGER = get_logger(__name__)


class Notifier:
    """Send alerts via Telegram or SendGrid when credentials are present."""

    def __init__(self, *, currency: str = "SAR") -> None:
        self._telegram_token = os.getenv("TELEGRAM_BOT_TOKEN")
        self._telegram_chat = os.getenv("TELEGRAM_CHAT_ID")
        self._sendgrid_key = os.getenv("SENDGRID_API_KEY")
        self._sendgrid_to = os.getenv("SENDGRID_TO")
        self._sendgrid_from = os.getenv("SENDGRID_FROM")
        self._currency = currency
        self._last_send = 0.0

    def notify_competitor_cheaper(self, alert: Alert, entity_name: str) -> None:
        """Send a competitor-cheaper alert when transport is configured."""

        lines = self._build_lines(alert, entity_name)
        self._dispatch(f"Competitor cheaper: {entity_name} {alert.date.isoformat()}", lines)

    def _build_lines(self, alert: Alert, entity_name: str) -> list[str]:
        lines = [f"Competitor cheaper: {entity_name}"]
        lines.append(f"Date: {alert.date.isoformat()}")
        lines.append(f"Your price: {self._format_price(alert.custom_price)}")
        lines.append(f"Competitor base: {self._format_price(alert.competitor_base_price)}")
        lines.append(f"Difference: {self._format_price(alert.difference)}")
        return lines

    def _dispatch(self, subject: str, lines: list[str]) -> None:
        transport = None
        try:
            if self._telegram_token and self._telegram_chat:
                transport = "telegram"
                self._send_telegram(lines)
            elif self._sendgrid_key and self._sendgrid_to and self._sendgrid_from:
                transport = "sendgrid"
                self._send_sendgrid(subject, lines)
            else:
                LOGGER.debug("Alert (noop): %s", " | ".join(lines))
        except Exception as exc:  # pragma: no cover - retries exhausted
            LOGGER.warning("Alert delivery failed via %s: %s", transport, exc)

    def _throttle(self) -> None:
        elapsed = time.monotonic() - self._last_send
        if elapsed < 1:
            time.sleep(1 - elapsed)
        self._last_send = time.monotonic()

    @retry(wait=wait_exponential(multiplier=0.5, max=10), stop=stop_after_attempt(5), reraise=True)
    def _send_telegram(self, lines: Iterable[str]) -> None:
        self._throttle()
        url = f"https://api.telegram.org/bot{self._telegram_token}/sendMessage"
        payload = {
            "chat_id": self._telegram_chat,
            "text": "\n".join(lines),
            "disable_web_page_preview": True,
        }
        response = requests.post(url, json=payload, timeout=8)
        if response.status_code >= 400:
            raise RuntimeError(f"HTTP {response.status_code}")

    @retry(wait=wait_exponential(multiplier=0.5, max=10), stop=stop_after_attempt(5), reraise=True)
    def _send_sendgrid(self, subject: str, lines: list[str]) -> None:
        self._throttle()
        body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
        payload = {
            "from": {"email": self._sendgrid_from},
            "personalizations": [{"to": [{"email": self._sendgrid_to}], "subject": subject}],
            "content": [{"type": "text/html", "value": body}],
        }
        headers = {"Authorization": f"Bearer {self._sendgrid_key}"}
        response = requests.post(
            "https://api.sendgrid.com/v3/mail/send",
            json=payload,
            headers=headers,
            timeout=8,
        )
        if response.status_code >= 300:
            raise RuntimeError(f"HTTP {response.status_code}")

    def _format_price(self, value: float | None) -> str:
        if value is None:
            return "-"
        return f"{value:,.0f} {self._currency}"
