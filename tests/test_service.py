from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from ratewatch.crypto import CredentialCipher
from ratewatch.errors import StorageUnavailableError, ValidationError
from ratewatch.service import TrackerService
from ratewatch.sessions import SessionStore
from ratewatch.storage import repo
from ratewatch.telemetry import RunTelemetry

DAY = date(2026, 2, 16)
CIPHER = CredentialCipher("service-test-key")


@pytest.fixture()
def service(session_factory, tmp_path) -> TrackerService:
    return TrackerService(
        session_factory,
        SessionStore(tmp_path / "sessions"),
        CIPHER,
        RunTelemetry(),
    )


def _observe(session_factory, entity_id: int, day: date, display_price: float) -> None:
    with session_factory() as session:
        repo.insert_observation(session, repo.build_observation(entity_id, day, display_price, True))
        session.commit()


def test_credentials_are_encrypted_at_rest(service, session_factory) -> None:
    service.save_credentials(1, "agent", "portal-pass")

    with session_factory() as session:
        stored = repo.get_credential(session, 1)
        assert stored.encrypted_secret != "portal-pass"
        assert CIPHER.decrypt(stored.encrypted_secret) == "portal-pass"

    info = service.get_credentials(1)
    assert info["username"] == "agent"
    assert info["sync_status"] == "idle"
    assert "encrypted_secret" not in info
    assert service.delete_credentials(1) is True
    assert service.get_credentials(1) is None


def test_credentials_require_fields(service) -> None:
    with pytest.raises(ValidationError):
        service.save_credentials(1, "  ", "pass")
    with pytest.raises(ValidationError):
        service.save_credentials(1, "agent", "")


def test_entity_management(service) -> None:
    created = service.add_entity("VOCO", "voco")
    assert created["group_label"] == "Makkah"
    with pytest.raises(ValidationError):
        service.add_entity("VOCO again", "voco")

    service.rename_entity(created["id"], "VOCO Makkah")
    assert [entity["display_name"] for entity in service.list_entities()] == ["VOCO Makkah"]
    with pytest.raises(ValidationError):
        service.rename_entity(999, "Ghost")


def test_date_ranges_are_validated(service) -> None:
    entity = service.add_entity("VOCO", "voco")
    with pytest.raises(ValidationError):
        service.price_history(entity["id"], "2026-03-01", "2026-02-01")
    with pytest.raises(ValidationError):
        service.price_comparison(1, "16/02/2026", "2026-02-20")
    with pytest.raises(ValidationError):
        service.price_history(999, "2026-02-01", "2026-02-02")


def test_prices_and_comparison(service, session_factory) -> None:
    entity = service.add_entity("VOCO", "voco")
    _observe(session_factory, entity["id"], DAY, 210.0)

    assert service.competitor_base_price(entity["id"], DAY) == 200
    assert service.competitor_base_price(entity["id"], "2026-02-17") is None
    assert service.latest_prices()[0]["base_price"] == 200
    history = service.price_history(entity["id"], DAY, DAY)
    assert history[0]["display_price"] == 210.0

    service.set_custom_price(1, entity["id"], DAY, 180.0)
    rows = service.price_comparison(1, DAY, DAY)
    assert rows[0]["status"] == "winning"
    assert rows[0]["difference"] == 20


def test_custom_price_reevaluates_alerts(service, session_factory) -> None:
    entity = service.add_entity("VOCO", "voco")
    _observe(session_factory, entity["id"], DAY, 210.0)

    saved = service.set_custom_price(1, entity["id"], DAY, 220.0)
    assert saved["competitor_base_price"] == 200
    assert saved["alert_id"] is not None
    alerts = service.list_alerts(1)
    assert len(alerts) == 1
    assert alerts[0]["difference"] == -20
    assert service.get_custom_price(1, entity["id"], DAY) == 220.0

    assert service.dismiss_alert(saved["alert_id"]) is True
    assert service.dismiss_alert(saved["alert_id"]) is True
    assert service.dismiss_alert(12345) is False
    assert service.list_alerts(1) == []

    no_alert = service.set_custom_price(1, entity["id"], DAY, 190.0)
    assert no_alert["alert_id"] is None


def test_custom_price_validation(service) -> None:
    entity = service.add_entity("VOCO", "voco")
    for amount in (0, -10, "100", True):
        with pytest.raises(ValidationError):
            service.set_custom_price(1, entity["id"], DAY, amount)
    with pytest.raises(ValidationError):
        service.set_custom_price(1, 999, DAY, 100.0)


def test_session_import_status_and_export(service) -> None:
    now = datetime.now(timezone.utc)
    payload = {
        "cookies": [{"name": "sid", "value": "abc", "domain": ".portal.test", "path": "/"}],
        "timestamp": int(now.timestamp() * 1000),
        "expiresAt": int((now + timedelta(days=15)).timestamp() * 1000),
    }

    empty = service.session_status(1)
    assert empty == {
        "has_session": False,
        "days_remaining": None,
        "needs_verification": True,
        "expires_at": None,
    }

    service.import_session(1, json.dumps(payload))
    status = service.session_status(1)
    assert status["has_session"] is True
    assert status["days_remaining"] == 15
    assert status["needs_verification"] is False
    assert status["expires_at"] is not None
    assert json.loads(service.export_session(1))["cookies"] == payload["cookies"]

    with pytest.raises(ValidationError):
        service.import_session(2, json.dumps({"expiresAt": payload["expiresAt"]}))
    with pytest.raises(ValidationError):
        service.import_session(2, "")


def test_sync_status_and_history(service, session_factory) -> None:
    assert service.sync_status(1) is None
    with session_factory() as session:
        repo.create_sync_run(session, 1, total_entities=14, total_dates=20)
        session.commit()

    status = service.sync_status(1)
    assert status["status"] == "running"
    assert status["total_entities"] == 14
    assert len(service.sync_history(1)) == 1
    with pytest.raises(ValidationError):
        service.sync_history(1, limit=0)


def test_trigger_sync_requires_scheduler(service) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(service.trigger_sync(1))


def test_telemetry_snapshot(service) -> None:
    snapshot = service.telemetry_snapshot()
    assert snapshot["total_cycles"] == 0
    assert snapshot["success_rate"] == "0%"


def test_storage_failures_are_wrapped(service, monkeypatch) -> None:
    def broken(session):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repo, "list_entities", broken)
    with pytest.raises(StorageUnavailableError):
        service.list_entities()
