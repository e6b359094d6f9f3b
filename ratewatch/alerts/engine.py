"""Compare custom prices with competitor base prices and keep the alert set."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from ratewatch.logging_config import get_logger
from ratewatch.storage import repo
from ratewatch.storage.models_sql import Alert, AlertType

LOGGER = get_logger(__name__)


def classify(difference: float) -> AlertType:
    if difference < 0:
        return AlertType.PRICE_LOWER
    if difference > 0:
        return AlertType.PRICE_HIGHER
    return AlertType.PRICE_EQUAL


def evaluate(
    session: Session,
    owner_id: int,
    entity_id: int,
    day: date,
    custom_price: float,
    competitor_base_price: float,
) -> tuple[Alert | None, bool]:
    """Create or refresh the alert for a cell when the competitor is cheaper.

    Returns ``(alert, created)``. When the competitor is not cheaper nothing is
    written and any existing active alert is left untouched.
    """

    difference = competitor_base_price - custom_price
    alert_type = classify(difference)
    if alert_type is not AlertType.PRICE_LOWER:
        return None, False

    now = datetime.now(timezone.utc)
    existing = repo.get_active_alert(session, owner_id, entity_id, day)
    if existing is not None:
        existing.competitor_base_price = competitor_base_price
        existing.difference = difference
        existing.created_at = now
        session.flush()
        LOGGER.debug(
            "Alert refreshed | id=%s | owner=%s | entity=%s | date=%s | diff=%s",
            existing.id,
            owner_id,
            entity_id,
            day,
            difference,
        )
        return existing, False

    alert = repo.insert_alert(
        session,
        Alert(
            owner_id=owner_id,
            entity_id=entity_id,
            date=day,
            custom_price=custom_price,
            competitor_base_price=competitor_base_price,
            difference=difference,
            alert_type=alert_type.value,
            active=True,
            created_at=now,
        ),
    )
    LOGGER.info(
        "Alert created | id=%s | owner=%s | entity=%s | date=%s | diff=%s",
        alert.id,
        owner_id,
        entity_id,
        day,
        difference,
    )
    return alert, True


def dismiss(session: Session, alert_id: int) -> Alert | None:
    """Deactivate an alert; dismissing twice keeps the first timestamp."""

    alert = session.get(Alert, alert_id)
    if alert is None:
        return None
    if alert.active:
        alert.active = False
        alert.dismissed_at = datetime.now(timezone.utc)
        session.flush()
        LOGGER.info("Alert dismissed | id=%s", alert_id)
    return alert
