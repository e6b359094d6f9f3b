from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from ratewatch.sessions import AuthSession, SessionStore

T0 = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
COOKIES = [{"name": "sid", "value": "abc", "domain": ".dotwconnect.com", "path": "/"}]


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _store(tmp_path, clock: Clock) -> SessionStore:
    return SessionStore(tmp_path / "sessions", clock=clock)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def test_save_and_load_roundtrip(tmp_path) -> None:
    clock = Clock(T0)
    store = _store(tmp_path, clock)
    store.save(7, AuthSession.create(COOKIES, now=T0, local_storage={"k": "v"}))

    loaded = store.load(7)
    assert loaded is not None
    assert loaded.cookies == COOKIES
    assert loaded.created_at == T0
    assert loaded.expires_at == T0 + timedelta(days=15)
    assert loaded.local_storage == {"k": "v"}
    assert loaded.storage_state() == {"cookies": COOKIES, "origins": []}


def test_missing_session(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    assert store.load(1) is None
    assert store.days_remaining(1) is None
    assert store.needs_verification(1) is True
    assert store.export_payload(1) is None


def test_days_remaining_counts_down(tmp_path) -> None:
    clock = Clock(T0)
    store = _store(tmp_path, clock)
    store.save(1, AuthSession.create(COOKIES, now=T0))

    assert store.days_remaining(1) == 15
    clock.now = T0 + timedelta(days=1)
    assert store.days_remaining(1) == 14
    clock.now = T0 + timedelta(days=14, hours=23)
    assert store.days_remaining(1) == 1


def test_session_expires_and_is_removed(tmp_path) -> None:
    clock = Clock(T0)
    store = _store(tmp_path, clock)
    store.save(1, AuthSession.create(COOKIES, now=T0))
    blob = tmp_path / "sessions" / "1.json"
    assert blob.exists()

    clock.now = T0 + timedelta(days=15, seconds=1)
    assert store.load(1) is None
    assert not blob.exists()


def test_needs_verification_after_lifetime(tmp_path) -> None:
    clock = Clock(T0)
    store = _store(tmp_path, clock)
    store.save(1, AuthSession.create(COOKIES, now=T0))

    assert store.needs_verification(1) is False
    clock.now = T0 + timedelta(days=15)
    assert store.needs_verification(1) is True


def test_delete_is_idempotent(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    store.save(1, AuthSession.create(COOKIES, now=T0))
    store.delete(1)
    store.delete(1)
    assert store.load(1) is None


def test_corrupt_blob_is_discarded(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    directory = tmp_path / "sessions"
    directory.mkdir()
    (directory / "3.json").write_text("{not json", encoding="utf-8")

    assert store.load(3) is None
    assert not (directory / "3.json").exists()


def test_import_valid_payload(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    payload = {
        "cookies": COOKIES,
        "localStorage": {"lang": "en"},
        "timestamp": _ms(T0 - timedelta(days=2)),
        "expiresAt": _ms(T0 + timedelta(days=13)),
    }

    assert store.import_payload(5, json.dumps(payload)) is True
    assert store.days_remaining(5) == 13
    exported = json.loads(store.export_payload(5))
    assert exported["cookies"] == COOKIES
    assert exported["localStorage"] == {"lang": "en"}
    assert exported["expiresAt"] == payload["expiresAt"]


def test_import_clamps_expiry_to_lifetime(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    payload = {
        "cookies": COOKIES,
        "timestamp": _ms(T0),
        "expiresAt": _ms(T0 + timedelta(days=90)),
    }
    assert store.import_payload(5, json.dumps(payload)) is True
    assert store.load(5).expires_at == T0 + timedelta(days=15)


def test_import_without_cookies_keeps_prior_state(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    store.save(5, AuthSession.create(COOKIES, now=T0))
    before = (tmp_path / "sessions" / "5.json").read_text(encoding="utf-8")

    bad = {"timestamp": _ms(T0), "expiresAt": _ms(T0 + timedelta(days=5))}
    assert store.import_payload(5, json.dumps(bad)) is False
    assert (tmp_path / "sessions" / "5.json").read_text(encoding="utf-8") == before


def test_import_rejects_expired_payload(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    payload = {
        "cookies": COOKIES,
        "timestamp": _ms(T0 - timedelta(days=20)),
        "expiresAt": _ms(T0 - timedelta(days=5)),
    }
    assert store.import_payload(9, json.dumps(payload)) is False
    assert store.load(9) is None


def test_import_rejects_malformed_json(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    assert store.import_payload(9, "not-json") is False
    assert store.import_payload(9, json.dumps(["cookies"])) is False
    assert store.import_payload(9, json.dumps({"cookies": COOKIES})) is False


def test_owner_ids_are_sanitised(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    store.save("../evil", AuthSession.create(COOKIES, now=T0))
    files = [path.name for path in (tmp_path / "sessions").iterdir()]
    assert files == ["_evil.json"]
    assert store.load("../evil") is not None


def test_import_rejects_out_of_range_timestamps(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    assert store.import_payload(1, json.dumps({"cookies": COOKIES, "expiresAt": 1e300})) is False

    near_minimum = _ms(datetime(1, 1, 1, tzinfo=timezone.utc)) + 1000
    assert store.import_payload(1, json.dumps({"cookies": COOKIES, "expiresAt": near_minimum})) is False
    assert store.load(1) is None


def test_stored_blob_with_out_of_range_timestamps_is_discarded(tmp_path) -> None:
    store = _store(tmp_path, Clock(T0))
    directory = tmp_path / "sessions"
    directory.mkdir()
    blob = directory / "4.json"
    blob.write_text(
        json.dumps({"cookies": COOKIES, "timestamp": 1e300, "expiresAt": 1e300}),
        encoding="utf-8",
    )

    assert store.load(4) is None
    assert not blob.exists()
    assert store.needs_verification(4) is True
