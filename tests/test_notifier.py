from __future__ import annotations

from datetime import date

from ratewatch.alerts import notifier as notifier_module
from ratewatch.alerts.notifier import Notifier
from ratewatch.storage.models_sql import Alert


class DummyResponse:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code


def _alert() -> Alert:
    return Alert(
        owner_id=1,
        entity_id=3,
        date=date(2026, 2, 20),
        custom_price=1220.0,
        competitor_base_price=1200.0,
        difference=-20.0,
        alert_type="price_lower",
        active=True,
    )


def _clear_transport_env(monkeypatch) -> None:
    for name in (
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
        "SENDGRID_API_KEY",
        "SENDGRID_TO",
        "SENDGRID_FROM",
    ):
        monkeypatch.delenv(name, raising=False)


def test_build_lines_formats_prices(monkeypatch) -> None:
    _clear_transport_env(monkeypatch)
    lines = Notifier()._build_lines(_alert(), "VOCO")
    assert lines == [
        "Competitor cheaper: VOCO",
        "Date: 2026-02-20",
        "Your price: 1,220 SAR",
        "Competitor base: 1,200 SAR",
        "Difference: -20 SAR",
    ]


def test_without_transport_nothing_is_sent(monkeypatch) -> None:
    _clear_transport_env(monkeypatch)
    calls = []
    monkeypatch.setattr(notifier_module.requests, "post", lambda *a, **k: calls.append(a))
    Notifier().notify_competitor_cheaper(_alert(), "VOCO")
    assert calls == []


def test_telegram_delivery(monkeypatch) -> None:
    _clear_transport_env(monkeypatch)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "token")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    calls = []

    def fake_post(url, json=None, timeout=None, **kwargs):
        calls.append((url, json))
        return DummyResponse()

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)
    Notifier().notify_competitor_cheaper(_alert(), "VOCO")

    assert len(calls) == 1
    url, payload = calls[0]
    assert url == "https://api.telegram.org/bottoken/sendMessage"
    assert payload["chat_id"] == "42"
    assert payload["text"].startswith("Competitor cheaper: VOCO")
