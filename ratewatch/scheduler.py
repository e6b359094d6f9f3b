"""Periodic synchronisation of competitor prices for every owner."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ratewatch.alerts import engine as alert_engine
from ratewatch.alerts.notifier import Notifier
from ratewatch.crypto import CredentialCipher
from ratewatch.errors import AuthenticationError
from ratewatch.logging_config import get_logger
from ratewatch.portal.scraper import SearchResult
from ratewatch.storage import repo
from ratewatch.storage.models_sql import Alert, RunStatus, SyncStatus
from ratewatch.telemetry import RunTelemetry

LOGGER = get_logger(__name__)

JOB_ID = "portal_sync"


@dataclass
class SyncResult:
    """Summary of one owner's sync run."""

    owner_id: int
    success: bool
    run_id: int | None = None
    total_entities: int = 0
    total_dates: int = 0
    success_count: int = 0
    error_count: int = 0
    duration_seconds: int = 0
    error_message: str | None = None
    skipped: bool = False


class SyncScheduler:
    """Run the entity x date scrape grid for each owner with credentials.

    ``scraper_factory`` receives an owner id and returns an object exposing
    ``initialize``, ``authenticate``, ``search`` and ``shutdown`` coroutines.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cipher: CredentialCipher,
        telemetry: RunTelemetry,
        *,
        dates: Iterable[date],
        scraper_factory: Callable[[int], Any],
        notifier: Notifier | None = None,
        currency: str = "SAR",
        interval_minutes: int = 10,
        owner_filter: Iterable[int] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self.telemetry = telemetry
        self._dates = list(dates)
        self._scraper_factory = scraper_factory
        self._notifier = notifier
        self._currency = currency
        self.interval_minutes = interval_minutes
        self._owner_filter = set(owner_filter) if owner_filter else None
        self._active: set[int] = set()
        self._scheduler: AsyncIOScheduler | None = None

    def is_running(self, owner_id: int) -> bool:
        return owner_id in self._active

    # ---- lifecycle -------------------------------------------------------

    def recover_interrupted(self) -> int:
        """Fail runs a previous process left unfinished."""

        with self._session_factory() as session:
            count = repo.fail_interrupted_runs(session)
            repo.reset_stale_sync_status(session)
            session.commit()
        if count:
            LOGGER.warning("Marked %d interrupted sync run(s) as failed", count)
        return count

    def start(self) -> None:
        """Schedule :meth:`tick` on the running event loop."""

        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._scheduled_tick,
            "interval",
            minutes=self.interval_minutes,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        self._scheduler.start()
        LOGGER.info("Scheduler started | interval=%d min", self.interval_minutes)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        LOGGER.info("Scheduler stopped")

    async def _scheduled_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            LOGGER.exception("Scheduled sync tick failed")

    # ---- runs ------------------------------------------------------------

    async def tick(self) -> list[SyncResult]:
        """Sync every owner with stored credentials, one after another."""

        try:
            with self._session_factory() as session:
                owners = repo.list_credential_owners(session)
        except SQLAlchemyError as exc:
            LOGGER.error("Database not available; skipping sync tick | error=%s", exc)
            return []

        if self._owner_filter is not None:
            missing = sorted(self._owner_filter.difference(owners))
            if missing:
                LOGGER.warning("No credentials stored for owners %s", missing)
            owners = [owner for owner in owners if owner in self._owner_filter]

        if not owners:
            LOGGER.info("No credentials stored; nothing to sync")
            return []

        LOGGER.info("Sync tick | owners=%d", len(owners))
        results = []
        for owner_id in owners:
            results.append(await self.run_sync(owner_id))
        return results

    async def run_sync(self, owner_id: int) -> SyncResult:
        """Run one full grid for *owner_id*; overlapping calls are skipped."""

        if owner_id in self._active:
            LOGGER.warning("Sync already running; skipping | owner=%s", owner_id)
            return SyncResult(
                owner_id=owner_id,
                success=False,
                error_message="Sync already running",
                skipped=True,
            )

        self._active.add(owner_id)
        try:
            return await self._run_sync(owner_id)
        finally:
            self._active.discard(owner_id)

    async def _run_sync(self, owner_id: int) -> SyncResult:
        token = self.telemetry.start_cycle()
        started = time.monotonic()
        result = SyncResult(owner_id=owner_id, success=False, total_dates=len(self._dates))
        scraper = None

        try:
            with self._session_factory() as session:
                credential = repo.get_credential(session, owner_id)
                if credential is None:
                    raise AuthenticationError("No credentials found", owner_id=owner_id)
                entities = [(entity.id, entity.display_name) for entity in repo.list_entities(session)]
                run = repo.create_sync_run(
                    session,
                    owner_id,
                    total_entities=len(entities),
                    total_dates=len(self._dates),
                )
                repo.set_sync_status(session, owner_id, SyncStatus.SYNCING)
                session.commit()
                result.run_id = run.id
                result.total_entities = len(entities)
                username = credential.username
                encrypted_secret = credential.encrypted_secret

            LOGGER.info(
                "Sync started | owner=%s | run=%s | entities=%d | dates=%d",
                owner_id,
                result.run_id,
                result.total_entities,
                result.total_dates,
            )

            scraper = self._scraper_factory(owner_id)
            with self._cipher.revealed(encrypted_secret) as password:
                await scraper.initialize()
                authenticated = await scraper.authenticate(username, password)
            if not authenticated:
                raise AuthenticationError(owner_id=owner_id)

            for entity_id, entity_name in entities:
                for day in self._dates:
                    outcome = await self._scrape_cell(scraper, entity_name, day)
                    if outcome is None:
                        result.error_count += 1
                    else:
                        result.success_count += 1
                    alert = self._record_cell(owner_id, result, entity_id, day, outcome)
                    if alert is not None and self._notifier is not None:
                        await asyncio.to_thread(
                            self._notifier.notify_competitor_cheaper, alert, entity_name
                        )
        except Exception as exc:
            result.error_message = str(exc) or exc.__class__.__name__
            if isinstance(exc, AuthenticationError):
                LOGGER.error("Sync failed | owner=%s | error=%s", owner_id, result.error_message)
            else:
                LOGGER.exception("Sync failed | owner=%s", owner_id)
        else:
            result.success = True
        finally:
            if scraper is not None:
                await self._close_scraper(scraper, owner_id)

        result.duration_seconds = int(round(time.monotonic() - started))
        self._finish(result)
        self.telemetry.end_cycle(token, result.success, result.success_count)

        LOGGER.info(
            "Sync %s | owner=%s | run=%s | success=%d | errors=%d | duration=%ds",
            "completed" if result.success else "failed",
            owner_id,
            result.run_id,
            result.success_count,
            result.error_count,
            result.duration_seconds,
        )
        return result

    async def _scrape_cell(self, scraper: Any, entity_name: str, day: date) -> SearchResult | None:
        try:
            return await scraper.search(entity_name, day, day + timedelta(days=1))
        except Exception as exc:
            LOGGER.warning(
                "Cell failed | entity=%s | date=%s | error=%s",
                entity_name,
                day.isoformat(),
                exc,
            )
            return None

    def _record_cell(
        self,
        owner_id: int,
        result: SyncResult,
        entity_id: int,
        day: date,
        outcome: SearchResult | None,
    ) -> Alert | None:
        """Store one observation and progress; return a newly created alert."""

        created_alert = None
        with self._session_factory() as session:
            observation = repo.insert_observation(
                session,
                repo.build_observation(
                    entity_id,
                    day,
                    outcome.price if outcome is not None else None,
                    bool(outcome is not None and outcome.available),
                    currency=self._currency,
                ),
            )
            repo.update_run_progress(
                session,
                result.run_id,
                success_count=result.success_count,
                error_count=result.error_count,
            )
            custom_price = repo.get_custom_price(session, owner_id, entity_id, day)
            if custom_price is not None and observation.base_price is not None:
                alert, created = alert_engine.evaluate(
                    session,
                    owner_id,
                    entity_id,
                    day,
                    custom_price,
                    observation.base_price,
                )
                if created:
                    created_alert = alert
            session.commit()
        return created_alert

    async def _close_scraper(self, scraper: Any, owner_id: int) -> None:
        try:
            await scraper.shutdown()
        except Exception as exc:
            LOGGER.warning("Scraper shutdown failed | owner=%s | error=%s", owner_id, exc)

    def _finish(self, result: SyncResult) -> None:
        status = RunStatus.COMPLETED if result.success else RunStatus.FAILED
        try:
            with self._session_factory() as session:
                if result.run_id is not None:
                    repo.finish_sync_run(
                        session,
                        result.run_id,
                        status,
                        success_count=result.success_count,
                        error_count=result.error_count,
                        duration_seconds=result.duration_seconds,
                        error_message=result.error_message,
                    )
                if result.success:
                    repo.set_sync_status(
                        session,
                        result.owner_id,
                        SyncStatus.SUCCESS,
                        synced_at=datetime.now(timezone.utc),
                    )
                else:
                    repo.set_sync_status(
                        session,
                        result.owner_id,
                        SyncStatus.ERROR,
                        error=result.error_message,
                    )
                session.commit()
        except SQLAlchemyError as exc:
            LOGGER.error(
                "Unable to record sync outcome | owner=%s | run=%s | error=%s",
                result.owner_id,
                result.run_id,
                exc,
            )
