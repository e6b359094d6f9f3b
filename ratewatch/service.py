"""Boundary operations exposed to callers of the tracking engine.

Every method validates its input before touching storage and translates
SQLAlchemy failures into :class:`StorageUnavailableError`.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ratewatch.alerts import engine as alert_engine
from ratewatch.crypto import CredentialCipher
from ratewatch.errors import StorageUnavailableError, ValidationError
from ratewatch.logging_config import get_logger
from ratewatch.scheduler import SyncResult, SyncScheduler
from ratewatch.sessions import SessionStore
from ratewatch.storage import repo
from ratewatch.storage.models_sql import SyncRun
from ratewatch.telemetry import RunTelemetry

LOGGER = get_logger(__name__)


def _coerce_day(value: date | str, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}: {value!r}") from exc


def _date_range(start: date | str, end: date | str) -> tuple[date, date]:
    start_day = _coerce_day(start, "start date")
    end_day = _coerce_day(end, "end date")
    if end_day < start_day:
        raise ValidationError(f"Date range ends before it starts: {start_day} > {end_day}")
    return start_day, end_day


def _required(value: Any, field_name: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"Missing {field_name}")
    return text


def _run_to_dict(run: SyncRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "owner_id": run.owner_id,
        "status": run.status,
        "total_entities": run.total_entities,
        "total_dates": run.total_dates,
        "success_count": run.success_count,
        "error_count": run.error_count,
        "error_message": run.error_message,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "duration_seconds": run.duration_seconds,
    }


class TrackerService:
    """Facade over storage, sessions, telemetry and the sync scheduler."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        session_store: SessionStore,
        cipher: CredentialCipher,
        telemetry: RunTelemetry,
        scheduler: SyncScheduler | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._session_store = session_store
        self._cipher = cipher
        self._telemetry = telemetry
        self._scheduler = scheduler

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            LOGGER.error("Storage failure | error=%s", exc)
            raise StorageUnavailableError() from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---- credentials -----------------------------------------------------

    def save_credentials(self, owner_id: int, username: str, password: str) -> None:
        username = _required(username, "username")
        if not password:
            raise ValidationError("Missing password")
        encrypted = self._cipher.encrypt(password)
        with self._session_scope() as session:
            repo.upsert_credential(session, owner_id, username, encrypted)
        LOGGER.info("Credentials saved | owner=%s", owner_id)

    def get_credentials(self, owner_id: int) -> dict[str, Any] | None:
        """Return credential metadata; the secret never leaves storage."""

        with self._session_scope() as session:
            credential = repo.get_credential(session, owner_id)
            if credential is None:
                return None
            return {
                "owner_id": credential.owner_id,
                "username": credential.username,
                "last_sync_at": credential.last_sync_at,
                "sync_status": credential.sync_status,
                "sync_error": credential.sync_error,
            }

    def delete_credentials(self, owner_id: int) -> bool:
        with self._session_scope() as session:
            deleted = repo.delete_credential(session, owner_id)
        if deleted:
            LOGGER.info("Credentials deleted | owner=%s", owner_id)
        return deleted

    # ---- tracked entities ------------------------------------------------

    def add_entity(self, display_name: str, external_key: str, group_label: str = "Makkah") -> dict[str, Any]:
        display_name = _required(display_name, "hotel name")
        external_key = _required(external_key, "hotel key")
        try:
            with self._session_scope() as session:
                if repo.get_entity_by_key(session, external_key) is not None:
                    raise ValidationError(f"Hotel already exists: {external_key}")
                entity = repo.add_entity(
                    session, display_name, external_key, group_label=group_label or "Makkah"
                )
                return {
                    "id": entity.id,
                    "display_name": entity.display_name,
                    "external_key": entity.external_key,
                    "group_label": entity.group_label,
                }
        except StorageUnavailableError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ValidationError(f"Hotel already exists: {external_key}") from exc
            raise

    def list_entities(self) -> list[dict[str, Any]]:
        with self._session_scope() as session:
            return [
                {
                    "id": entity.id,
                    "display_name": entity.display_name,
                    "external_key": entity.external_key,
                    "group_label": entity.group_label,
                }
                for entity in repo.list_entities(session)
            ]

    def rename_entity(self, entity_id: int, display_name: str) -> None:
        display_name = _required(display_name, "hotel name")
        with self._session_scope() as session:
            if repo.rename_entity(session, entity_id, display_name) is None:
                raise ValidationError(f"Unknown hotel: {entity_id}")

    # ---- observations ----------------------------------------------------

    def latest_prices(self) -> list[dict[str, Any]]:
        with self._session_scope() as session:
            return repo.get_latest_prices(session)

    def price_history(self, entity_id: int, start: date | str, end: date | str) -> list[dict[str, Any]]:
        start_day, end_day = _date_range(start, end)
        with self._session_scope() as session:
            self._require_entity(session, entity_id)
            return [
                {
                    "id": obs.id,
                    "entity_id": obs.entity_id,
                    "date": obs.date,
                    "display_price": obs.display_price,
                    "base_price": obs.base_price,
                    "currency": obs.currency,
                    "available": obs.available,
                    "captured_at": obs.captured_at,
                }
                for obs in repo.get_price_history(session, entity_id, start_day, end_day)
            ]

    def competitor_base_price(self, entity_id: int, day: date | str) -> int | None:
        stay_date = _coerce_day(day, "date")
        with self._session_scope() as session:
            return repo.get_competitor_base_price(session, entity_id, stay_date)

    def price_comparison(self, owner_id: int, start: date | str, end: date | str) -> list[dict[str, Any]]:
        start_day, end_day = _date_range(start, end)
        with self._session_scope() as session:
            return repo.get_price_comparison(session, owner_id, start_day, end_day)

    # ---- custom prices and alerts ----------------------------------------

    def set_custom_price(self, owner_id: int, entity_id: int, day: date | str, amount: float) -> dict[str, Any]:
        """Store the owner's price for a cell and re-check it against the competitor."""

        stay_date = _coerce_day(day, "date")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            raise ValidationError(f"Invalid price: {amount!r}")

        with self._session_scope() as session:
            self._require_entity(session, entity_id)
            custom = repo.upsert_custom_price(session, owner_id, entity_id, stay_date, float(amount))
            alert = None
            competitor = repo.get_competitor_base_price(session, entity_id, stay_date)
            if competitor is not None:
                alert, _ = alert_engine.evaluate(
                    session, owner_id, entity_id, stay_date, custom.amount, competitor
                )
            return {
                "entity_id": entity_id,
                "date": stay_date,
                "custom_price": custom.amount,
                "competitor_base_price": competitor,
                "alert_id": alert.id if alert is not None else None,
            }

    def get_custom_price(self, owner_id: int, entity_id: int, day: date | str) -> float | None:
        stay_date = _coerce_day(day, "date")
        with self._session_scope() as session:
            return repo.get_custom_price(session, owner_id, entity_id, stay_date)

    def list_alerts(self, owner_id: int) -> list[dict[str, Any]]:
        with self._session_scope() as session:
            return repo.list_active_alerts(session, owner_id)

    def dismiss_alert(self, alert_id: int) -> bool:
        with self._session_scope() as session:
            return alert_engine.dismiss(session, alert_id) is not None

    # ---- sync runs -------------------------------------------------------

    def sync_status(self, owner_id: int) -> dict[str, Any] | None:
        with self._session_scope() as session:
            run = repo.get_latest_sync_run(session, owner_id)
            return _run_to_dict(run) if run is not None else None

    def sync_history(self, owner_id: int, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            raise ValidationError(f"Invalid limit: {limit}")
        with self._session_scope() as session:
            return [_run_to_dict(run) for run in repo.list_sync_runs(session, owner_id, limit=limit)]

    async def trigger_sync(self, owner_id: int) -> SyncResult:
        if self._scheduler is None:
            raise ValidationError("Sync scheduler not configured")
        return await self._scheduler.run_sync(owner_id)

    # ---- sessions --------------------------------------------------------

    def import_session(self, owner_id: int, raw_payload: str | bytes) -> None:
        if not raw_payload:
            raise ValidationError("Missing session data")
        if not self._session_store.import_payload(owner_id, raw_payload):
            raise ValidationError("Failed to upload session", owner_id=owner_id)

    def export_session(self, owner_id: int) -> str | None:
        return self._session_store.export_payload(owner_id)

    def session_status(self, owner_id: int) -> dict[str, Any]:
        session = self._session_store.load(owner_id)
        return {
            "has_session": session is not None,
            "days_remaining": self._session_store.days_remaining(owner_id),
            "needs_verification": self._session_store.needs_verification(owner_id),
            "expires_at": session.expires_at.isoformat() if session is not None else None,
        }

    # ---- telemetry -------------------------------------------------------

    def telemetry_snapshot(self) -> dict[str, Any]:
        return self._telemetry.formatted_stats()

    @staticmethod
    def _require_entity(session: Session, entity_id: int) -> None:
        if repo.get_entity(session, entity_id) is None:
            raise ValidationError(f"Unknown hotel: {entity_id}")
