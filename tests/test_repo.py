from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from ratewatch.storage import repo
from ratewatch.storage.models_sql import RunStatus, SyncRun, SyncStatus

DAY = date(2026, 2, 16)


def _entity(session, name: str = "VOCO", key: str = "voco"):
    entity = repo.add_entity(session, name, key)
    session.commit()
    return entity


def test_build_observation_derives_base_price() -> None:
    obs = repo.build_observation(1, DAY, 210.0, True)
    assert obs.base_price == 200
    assert obs.display_price == 210.0
    assert obs.available is True
    assert obs.currency == "SAR"


@pytest.mark.parametrize(("price", "available"), [(None, True), (0.0, True), (210.0, False)])
def test_build_observation_without_usable_price(price, available) -> None:
    obs = repo.build_observation(1, DAY, price, available)
    assert obs.available is False
    assert obs.display_price is None
    assert obs.base_price is None


def test_ensure_entity_is_idempotent(db_session) -> None:
    first = repo.ensure_entity(db_session, "VOCO", "voco")
    second = repo.ensure_entity(db_session, "VOCO renamed", "voco")
    assert first.id == second.id
    assert second.display_name == "VOCO"
    assert second.group_label == "Makkah"


def test_duplicate_external_key_rejected(db_session) -> None:
    _entity(db_session)
    with pytest.raises(IntegrityError):
        repo.add_entity(db_session, "Other", "voco")


def test_latest_observation_wins(db_session) -> None:
    entity = _entity(db_session)
    now = datetime(2026, 2, 1, tzinfo=timezone.utc)
    repo.insert_observation(
        db_session, repo.build_observation(entity.id, DAY, 300.0, True, captured_at=now)
    )
    repo.insert_observation(
        db_session,
        repo.build_observation(entity.id, DAY, 210.0, True, captured_at=now + timedelta(minutes=10)),
    )
    repo.insert_observation(
        db_session,
        repo.build_observation(entity.id, DAY + timedelta(days=1), None, False, captured_at=now),
    )
    db_session.commit()

    assert repo.get_competitor_base_price(db_session, entity.id, DAY) == 200
    assert repo.get_competitor_base_price(db_session, entity.id, DAY + timedelta(days=1)) is None
    assert repo.get_competitor_base_price(db_session, entity.id, DAY + timedelta(days=5)) is None

    latest = repo.get_latest_prices(db_session)
    assert [(row["date"], row["base_price"]) for row in latest] == [
        (DAY, 200),
        (DAY + timedelta(days=1), None),
    ]
    assert latest[0]["entity_name"] == "VOCO"
    assert len(repo.get_price_history(db_session, entity.id, DAY, DAY)) == 2
    assert repo.count_observations(db_session) == 3


def test_credentials_upsert_and_status(db_session) -> None:
    repo.upsert_credential(db_session, 1, "agent", "token-a")
    repo.upsert_credential(db_session, 1, "agent2", "token-b")
    repo.upsert_credential(db_session, 2, "other", "token-c")
    db_session.commit()

    credential = repo.get_credential(db_session, 1)
    assert credential.username == "agent2"
    assert credential.encrypted_secret == "token-b"
    assert credential.sync_status == SyncStatus.IDLE.value
    assert repo.list_credential_owners(db_session) == [1, 2]

    repo.set_sync_status(db_session, 1, SyncStatus.ERROR, error="Login failed.")
    assert repo.get_credential(db_session, 1).sync_error == "Login failed."
    repo.set_sync_status(db_session, 99, SyncStatus.ERROR, error="ignored")

    assert repo.delete_credential(db_session, 2) is True
    assert repo.delete_credential(db_session, 2) is False


def test_sync_run_lifecycle(db_session) -> None:
    run = repo.create_sync_run(db_session, 1, total_entities=14, total_dates=20)
    assert run.status == RunStatus.RUNNING.value
    repo.update_run_progress(db_session, run.id, success_count=3, error_count=1)
    repo.finish_sync_run(
        db_session,
        run.id,
        RunStatus.COMPLETED,
        success_count=275,
        error_count=5,
        duration_seconds=42,
    )
    db_session.commit()

    latest = repo.get_latest_sync_run(db_session, 1)
    assert latest.id == run.id
    assert latest.status == "completed"
    assert (latest.success_count, latest.error_count) == (275, 5)
    assert latest.completed_at is not None
    assert repo.get_latest_sync_run(db_session, 2) is None


def test_interrupted_runs_are_failed(db_session) -> None:
    repo.upsert_credential(db_session, 1, "agent", "token")
    repo.set_sync_status(db_session, 1, SyncStatus.SYNCING)
    stale = repo.create_sync_run(db_session, 1, total_entities=1, total_dates=1)
    done = repo.create_sync_run(db_session, 1, total_entities=1, total_dates=1)
    repo.finish_sync_run(
        db_session, done.id, RunStatus.COMPLETED, success_count=1, error_count=0, duration_seconds=1
    )
    queued = SyncRun(owner_id=1, status=RunStatus.PENDING.value)
    db_session.add(queued)
    failed = repo.create_sync_run(db_session, 1, total_entities=1, total_dates=1)
    repo.finish_sync_run(
        db_session,
        failed.id,
        RunStatus.FAILED,
        success_count=0,
        error_count=0,
        duration_seconds=1,
        error_message="Login failed.",
    )
    db_session.commit()

    assert repo.fail_interrupted_runs(db_session) == 2
    assert repo.reset_stale_sync_status(db_session) == 1
    db_session.commit()
    db_session.expire_all()

    assert db_session.get(SyncRun, stale.id).status == "failed"
    assert db_session.get(SyncRun, stale.id).error_message == "Interrupted"
    assert db_session.get(SyncRun, done.id).status == "completed"
    assert db_session.get(SyncRun, queued.id).status == "failed"
    assert db_session.get(SyncRun, failed.id).error_message == "Login failed."
    assert repo.get_credential(db_session, 1).sync_status == "error"


def test_custom_price_upsert(db_session) -> None:
    entity = _entity(db_session)
    repo.upsert_custom_price(db_session, 1, entity.id, DAY, 220.0)
    repo.upsert_custom_price(db_session, 1, entity.id, DAY, 230.0)
    db_session.commit()
    assert repo.get_custom_price(db_session, 1, entity.id, DAY) == 230.0
    assert repo.get_custom_price(db_session, 2, entity.id, DAY) is None


def test_price_comparison_statuses(db_session) -> None:
    entity = _entity(db_session)
    days = [DAY + timedelta(days=offset) for offset in range(4)]
    for day in days[:3]:
        repo.insert_observation(db_session, repo.build_observation(entity.id, day, 210.0, True))
    repo.insert_observation(db_session, repo.build_observation(entity.id, days[3], None, False))
    repo.upsert_custom_price(db_session, 1, entity.id, days[0], 220.0)
    repo.upsert_custom_price(db_session, 1, entity.id, days[1], 180.0)
    repo.upsert_custom_price(db_session, 1, entity.id, days[2], 200.0)
    repo.upsert_custom_price(db_session, 1, entity.id, days[3], 150.0)
    db_session.commit()

    rows = repo.get_price_comparison(db_session, 1, days[0], days[3])
    assert [row["status"] for row in rows] == ["losing", "winning", "equal", "no_price"]
    assert rows[0]["difference"] == -20
    assert rows[3]["difference"] is None

    assert repo.get_price_comparison(db_session, 1, days[1], days[1])[0]["status"] == "winning"
    other_owner = repo.get_price_comparison(db_session, 2, days[0], days[0])
    assert other_owner[0]["status"] == "no_price"
