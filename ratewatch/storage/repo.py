"""Repository helpers for interacting with persistent storage."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, aliased

from ratewatch.pricing import base_price

from .models_sql import (
    Alert,
    Credential,
    CustomPrice,
    PriceObservation,
    RunStatus,
    SyncRun,
    SyncStatus,
    TERMINAL_RUN_STATUSES,
    TrackedEntity,
)


# ==== Tracked entities ====


def add_entity(
    session: Session,
    display_name: str,
    external_key: str,
    *,
    group_label: str = "Makkah",
) -> TrackedEntity:
    entity = TrackedEntity(
        display_name=display_name,
        external_key=external_key,
        group_label=group_label,
    )
    session.add(entity)
    session.flush()
    return entity


def get_entity(session: Session, entity_id: int) -> TrackedEntity | None:
    return session.get(TrackedEntity, entity_id)


def get_entity_by_key(session: Session, external_key: str) -> TrackedEntity | None:
    stmt = select(TrackedEntity).where(TrackedEntity.external_key == external_key)
    return session.execute(stmt).scalar_one_or_none()


def ensure_entity(
    session: Session,
    display_name: str,
    external_key: str,
    *,
    group_label: str = "Makkah",
) -> TrackedEntity:
    """Return the entity for *external_key*, creating it when missing."""

    entity = get_entity_by_key(session, external_key)
    if entity is not None:
        return entity
    return add_entity(session, display_name, external_key, group_label=group_label)


def rename_entity(session: Session, entity_id: int, display_name: str) -> TrackedEntity | None:
    entity = session.get(TrackedEntity, entity_id)
    if entity is None:
        return None
    entity.display_name = display_name
    session.flush()
    return entity


def list_entities(session: Session) -> list[TrackedEntity]:
    stmt = select(TrackedEntity).order_by(TrackedEntity.id.asc())
    return list(session.scalars(stmt))


# ==== Observations ====


def build_observation(
    entity_id: int,
    day: date,
    display_price: float | None,
    available: bool,
    *,
    currency: str = "SAR",
    captured_at: datetime | None = None,
) -> PriceObservation:
    """Return an observation with the base price derived from *display_price*.

    A cell without a usable display price is recorded as unavailable with both
    prices empty.
    """

    derived = base_price(display_price) if available else None
    if derived is None:
        display_price = None
        available = False

    return PriceObservation(
        entity_id=entity_id,
        date=day,
        display_price=display_price,
        base_price=derived,
        currency=currency,
        available=available,
        captured_at=captured_at or datetime.now(timezone.utc),
    )


def insert_observation(session: Session, obs: PriceObservation) -> PriceObservation:
    session.add(obs)
    session.flush()
    return obs


def _latest_observation_statement():
    obs_alias = aliased(PriceObservation)
    row_number = func.row_number().over(
        partition_by=(obs_alias.entity_id, obs_alias.date),
        order_by=(obs_alias.captured_at.desc(), obs_alias.id.desc()),
    )
    base = select(
        obs_alias.id.label("observation_id"),
        obs_alias.entity_id,
        obs_alias.date,
        obs_alias.display_price,
        obs_alias.base_price,
        obs_alias.currency,
        obs_alias.available,
        obs_alias.captured_at,
        row_number.label("rn"),
    )
    subquery = base.subquery()
    stmt = select(subquery).where(subquery.c.rn == 1)
    return stmt, subquery


def get_latest_observation(
    session: Session,
    entity_id: int,
    day: date,
) -> PriceObservation | None:
    stmt = (
        select(PriceObservation)
        .where(PriceObservation.entity_id == entity_id, PriceObservation.date == day)
        .order_by(PriceObservation.captured_at.desc(), PriceObservation.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def get_competitor_base_price(session: Session, entity_id: int, day: date) -> int | None:
    """Return the base price of the freshest observation for the cell."""

    obs = get_latest_observation(session, entity_id, day)
    if obs is None:
        return None
    return obs.base_price


def get_latest_prices(session: Session) -> list[dict[str, object]]:
    """Return the freshest observation for every (entity, date) cell."""

    stmt, subquery = _latest_observation_statement()
    stmt = (
        select(subquery, TrackedEntity.display_name.label("entity_name"))
        .join(TrackedEntity, TrackedEntity.id == subquery.c.entity_id)
        .where(subquery.c.rn == 1)
        .order_by(subquery.c.entity_id.asc(), subquery.c.date.asc())
    )
    return [_row_to_price(row) for row in session.execute(stmt).all()]


def get_price_history(
    session: Session,
    entity_id: int,
    start: date,
    end: date,
) -> list[PriceObservation]:
    """Return every observation for *entity_id* with a stay date in [start, end]."""

    stmt = (
        select(PriceObservation)
        .where(
            PriceObservation.entity_id == entity_id,
            PriceObservation.date >= start,
            PriceObservation.date <= end,
        )
        .order_by(PriceObservation.date.asc(), PriceObservation.captured_at.asc())
    )
    return list(session.scalars(stmt))


def count_observations(session: Session) -> int:
    stmt = select(func.count(PriceObservation.id))
    return int(session.scalar(stmt) or 0)


def _row_to_price(row) -> dict[str, object]:
    return {
        "observation_id": row.observation_id,
        "entity_id": row.entity_id,
        "entity_name": row.entity_name,
        "date": row.date,
        "display_price": row.display_price,
        "base_price": row.base_price,
        "currency": row.currency,
        "available": bool(row.available),
        "captured_at": row.captured_at,
    }


# ==== Credentials ====


def get_credential(session: Session, owner_id: int) -> Credential | None:
    stmt = select(Credential).where(Credential.owner_id == owner_id)
    return session.execute(stmt).scalar_one_or_none()


def upsert_credential(
    session: Session,
    owner_id: int,
    username: str,
    encrypted_secret: str,
) -> Credential:
    credential = get_credential(session, owner_id)
    if credential is None:
        credential = Credential(
            owner_id=owner_id,
            username=username,
            encrypted_secret=encrypted_secret,
            sync_status=SyncStatus.IDLE.value,
        )
        session.add(credential)
    else:
        credential.username = username
        credential.encrypted_secret = encrypted_secret
    session.flush()
    return credential


def delete_credential(session: Session, owner_id: int) -> bool:
    credential = get_credential(session, owner_id)
    if credential is None:
        return False
    session.delete(credential)
    session.flush()
    return True


def list_credential_owners(session: Session) -> list[int]:
    stmt = select(Credential.owner_id).order_by(Credential.owner_id.asc())
    return [row[0] for row in session.execute(stmt)]


def set_sync_status(
    session: Session,
    owner_id: int,
    status: SyncStatus,
    *,
    error: str | None = None,
    synced_at: datetime | None = None,
) -> None:
    credential = get_credential(session, owner_id)
    if credential is None:
        return
    credential.sync_status = status.value
    credential.sync_error = error
    if synced_at is not None:
        credential.last_sync_at = synced_at
    session.flush()


# ==== Sync runs ====


def create_sync_run(
    session: Session,
    owner_id: int,
    *,
    total_entities: int,
    total_dates: int,
) -> SyncRun:
    run = SyncRun(
        owner_id=owner_id,
        status=RunStatus.RUNNING.value,
        total_entities=total_entities,
        total_dates=total_dates,
        success_count=0,
        error_count=0,
        started_at=datetime.now(timezone.utc),
    )
    session.add(run)
    session.flush()
    return run


def finish_sync_run(
    session: Session,
    run_id: int,
    status: RunStatus,
    *,
    success_count: int,
    error_count: int,
    duration_seconds: int,
    error_message: str | None = None,
) -> SyncRun | None:
    run = session.get(SyncRun, run_id)
    if run is None:
        return None
    run.status = status.value
    run.success_count = success_count
    run.error_count = error_count
    run.error_message = error_message
    run.completed_at = datetime.now(timezone.utc)
    run.duration_seconds = duration_seconds
    session.flush()
    return run


def update_run_progress(
    session: Session,
    run_id: int,
    *,
    success_count: int,
    error_count: int,
) -> None:
    stmt = (
        update(SyncRun)
        .where(SyncRun.id == run_id)
        .values(success_count=success_count, error_count=error_count)
    )
    session.execute(stmt)


def fail_interrupted_runs(session: Session, *, message: str = "Interrupted") -> int:
    """Mark runs a previous process left ``pending`` or ``running`` as failed."""

    stmt = (
        update(SyncRun)
        .where(SyncRun.status.not_in(sorted(TERMINAL_RUN_STATUSES)))
        .values(
            status=RunStatus.FAILED.value,
            error_message=message,
            completed_at=datetime.now(timezone.utc),
        )
    )
    result = session.execute(stmt)
    return int(result.rowcount or 0)


def reset_stale_sync_status(session: Session, *, message: str = "Interrupted") -> int:
    """Move credentials stuck in ``syncing`` to ``error``."""

    stmt = (
        update(Credential)
        .where(Credential.sync_status == SyncStatus.SYNCING.value)
        .values(sync_status=SyncStatus.ERROR.value, sync_error=message)
    )
    result = session.execute(stmt)
    return int(result.rowcount or 0)


def get_latest_sync_run(session: Session, owner_id: int) -> SyncRun | None:
    stmt = (
        select(SyncRun)
        .where(SyncRun.owner_id == owner_id)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def list_sync_runs(session: Session, owner_id: int, *, limit: int = 50) -> list[SyncRun]:
    stmt = (
        select(SyncRun)
        .where(SyncRun.owner_id == owner_id)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(limit)
    )
    return list(session.scalars(stmt))


# ==== Custom prices ====


def upsert_custom_price(
    session: Session,
    owner_id: int,
    entity_id: int,
    day: date,
    amount: float,
) -> CustomPrice:
    stmt = select(CustomPrice).where(
        CustomPrice.owner_id == owner_id,
        CustomPrice.entity_id == entity_id,
        CustomPrice.date == day,
    )
    custom = session.execute(stmt).scalar_one_or_none()
    if custom is None:
        custom = CustomPrice(owner_id=owner_id, entity_id=entity_id, date=day, amount=amount)
        session.add(custom)
    else:
        custom.amount = amount
    session.flush()
    return custom


def get_custom_price(
    session: Session,
    owner_id: int,
    entity_id: int,
    day: date,
) -> float | None:
    stmt = select(CustomPrice.amount).where(
        CustomPrice.owner_id == owner_id,
        CustomPrice.entity_id == entity_id,
        CustomPrice.date == day,
    )
    return session.scalar(stmt)


# ==== Alerts ====


def get_active_alert(
    session: Session,
    owner_id: int,
    entity_id: int,
    day: date,
) -> Alert | None:
    stmt = (
        select(Alert)
        .where(
            Alert.owner_id == owner_id,
            Alert.entity_id == entity_id,
            Alert.date == day,
            Alert.active.is_(True),
        )
        .order_by(Alert.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def insert_alert(session: Session, alert: Alert) -> Alert:
    session.add(alert)
    session.flush()
    return alert


def list_active_alerts(session: Session, owner_id: int) -> list[dict[str, object]]:
    stmt = (
        select(Alert, TrackedEntity.display_name)
        .join(TrackedEntity, TrackedEntity.id == Alert.entity_id)
        .where(Alert.owner_id == owner_id, Alert.active.is_(True))
        .order_by(Alert.created_at.asc(), Alert.id.asc())
    )
    return [
        {
            "id": alert.id,
            "entity_id": alert.entity_id,
            "entity_name": name,
            "date": alert.date,
            "custom_price": alert.custom_price,
            "competitor_base_price": alert.competitor_base_price,
            "difference": alert.difference,
            "alert_type": alert.alert_type,
            "created_at": alert.created_at,
        }
        for alert, name in session.execute(stmt).all()
    ]


# ==== Comparison ====


def get_price_comparison(
    session: Session,
    owner_id: int,
    start: date,
    end: date,
) -> list[dict[str, object]]:
    """Join the freshest competitor base prices with the owner's custom prices."""

    _, latest = _latest_observation_statement()
    stmt = (
        select(
            latest.c.entity_id,
            TrackedEntity.display_name.label("entity_name"),
            latest.c.date,
            latest.c.base_price.label("competitor_base_price"),
            CustomPrice.amount.label("custom_price"),
        )
        .join(TrackedEntity, TrackedEntity.id == latest.c.entity_id)
        .join(
            CustomPrice,
            and_(
                CustomPrice.owner_id == owner_id,
                CustomPrice.entity_id == latest.c.entity_id,
                CustomPrice.date == latest.c.date,
            ),
            isouter=True,
        )
        .where(latest.c.rn == 1, latest.c.date >= start, latest.c.date <= end)
        .order_by(latest.c.entity_id.asc(), latest.c.date.asc())
    )

    rows: list[dict[str, object]] = []
    for row in session.execute(stmt).all():
        competitor = row.competitor_base_price
        custom = row.custom_price
        if competitor is None or custom is None:
            difference = None
            status = "no_price"
        else:
            difference = competitor - custom
            if difference < 0:
                status = "losing"
            elif difference > 0:
                status = "winning"
            else:
                status = "equal"
        rows.append(
            {
                "entity_id": row.entity_id,
                "entity_name": row.entity_name,
                "date": row.date,
                "competitor_base_price": competitor,
                "custom_price": custom,
                "difference": difference,
                "status": status,
            }
        )
    return rows
