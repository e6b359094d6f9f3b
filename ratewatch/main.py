"""Command-line interface entry point for the ratewatch engine."""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any, Iterable

from dotenv import load_dotenv
from sqlalchemy.orm import Session, sessionmaker

from ratewatch.alerts.notifier import Notifier
from ratewatch.config import (
    DEFAULT_CONFIG_PATH,
    database_target,
    load_config,
    resolve_dates,
    resolve_entities,
    schedule_minutes,
    session_lifetime,
)
from ratewatch.crypto import CredentialCipher
from ratewatch.errors import RateWatchError
from ratewatch.logging_config import get_logger
from ratewatch.portal.scraper import PortalScraper, PortalSettings
from ratewatch.scheduler import SyncScheduler
from ratewatch.service import TrackerService
from ratewatch.sessions import SessionStore
from ratewatch.storage import repo
from ratewatch.storage.db import get_engine, init_db_safe, make_session
from ratewatch.telemetry import RunTelemetry

LOGGER = get_logger(__name__)

PASSWORD_ENV = "RATEWATCH_PORTAL_PASSWORD"


def _split_assignment(value: str, flag: str) -> tuple[int, str]:
    owner, sep, rest = value.partition("=")
    if not sep or not rest.strip():
        raise argparse.ArgumentTypeError(f"{flag} expects OWNER=VALUE")
    try:
        return int(owner), rest.strip()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{flag}: owner must be an integer") from exc


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the application."""

    parser = argparse.ArgumentParser(
        description="Track competitor hotel rates on the partner portal."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync for every owner instead of on a schedule.",
    )
    parser.add_argument(
        "--owner",
        "--owners",
        dest="owners",
        type=str,
        help="Comma-separated owner ids to restrict syncing to.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "--import-session",
        metavar="OWNER=PATH",
        help="Store a session JSON export for an owner and exit.",
    )
    parser.add_argument(
        "--export-session",
        metavar="OWNER=PATH",
        help="Write the owner's stored session to PATH and exit.",
    )
    parser.add_argument(
        "--session-status",
        metavar="OWNER",
        type=int,
        help="Print the owner's session status and exit.",
    )
    parser.add_argument(
        "--set-credentials",
        metavar="OWNER=USERNAME",
        help=f"Save portal credentials (password read from {PASSWORD_ENV}) and exit.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    owners_arg = args.owners or ""
    try:
        args.owners = [int(part) for part in owners_arg.split(",") if part.strip()]
    except ValueError:
        parser.error("--owner expects comma-separated integer ids")

    for flag in ("import_session", "export_session", "set_credentials"):
        value = getattr(args, flag)
        if value is None:
            continue
        try:
            setattr(args, flag, _split_assignment(value, "--" + flag.replace("_", "-")))
        except argparse.ArgumentTypeError as exc:
            parser.error(str(exc))

    return args


def seed_entities(session_factory: sessionmaker[Session], config: dict[str, Any]) -> int:
    """Insert configured hotels that are not tracked yet; return the new count."""

    created = 0
    with session_factory() as session:
        for spec in resolve_entities(config):
            if repo.get_entity_by_key(session, spec.key) is None:
                created += 1
            repo.ensure_entity(session, spec.name, spec.key, group_label=spec.group)
        session.commit()
    if created:
        LOGGER.info("Seeded %d tracked hotel(s)", created)
    return created


def _run_admin_command(args: argparse.Namespace, service: TrackerService) -> bool:
    """Handle one-shot maintenance flags; return True when one ran."""

    if args.set_credentials:
        owner_id, username = args.set_credentials
        password = os.getenv(PASSWORD_ENV, "")
        service.save_credentials(owner_id, username, password)
        print(f"Credentials saved for owner {owner_id}")
        return True

    if args.import_session:
        owner_id, path_text = args.import_session
        raw = Path(path_text).read_text(encoding="utf-8")
        service.import_session(owner_id, raw)
        print(f"Session imported for owner {owner_id}")
        return True

    if args.export_session:
        owner_id, path_text = args.export_session
        payload = service.export_session(owner_id)
        if payload is None:
            print(f"No valid session for owner {owner_id}")
        else:
            Path(path_text).write_text(payload, encoding="utf-8")
            print(f"Session exported to {path_text}")
        return True

    if args.session_status is not None:
        status = service.session_status(args.session_status)
        for key, value in status.items():
            print(f"{key}: {value}")
        return True

    return False


async def _async_main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    load_dotenv()

    config = load_config(args.config)
    LOGGER.info("Parsed arguments: once=%s owners=%s config=%s", args.once, args.owners, args.config)

    engine = get_engine(database_target(config))
    init_db_safe(engine)
    session_factory = make_session(engine)

    session_store = SessionStore(
        (config.get("sessions") or {}).get("directory") or ".sessions",
        lifetime=session_lifetime(config),
    )
    cipher = CredentialCipher.from_env()
    telemetry = RunTelemetry()
    portal_settings = PortalSettings.from_config(config)
    currency = str((config.get("portal") or {}).get("currency") or "SAR")
    notifier = (
        Notifier(currency=currency) if (config.get("alerts") or {}).get("notify", True) else None
    )

    scheduler = SyncScheduler(
        session_factory,
        cipher,
        telemetry,
        dates=resolve_dates(config),
        scraper_factory=lambda owner_id: PortalScraper(owner_id, session_store, portal_settings),
        notifier=notifier,
        currency=currency,
        interval_minutes=schedule_minutes(config),
        owner_filter=args.owners or None,
    )
    service = TrackerService(session_factory, session_store, cipher, telemetry, scheduler)

    if _run_admin_command(args, service):
        return

    seed_entities(session_factory, config)
    scheduler.recover_interrupted()

    await scheduler.tick()
    LOGGER.info("Telemetry: %s", service.telemetry_snapshot())
    if args.once:
        return

    scheduler.start()
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        LOGGER.info("Shutdown signal received; stopping scheduler")
    finally:
        scheduler.shutdown()


def main() -> None:
    try:
        asyncio.run(_async_main())
    except RateWatchError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive safety
        LOGGER.info("Interrupted by user")


if __name__ == "__main__":
    main()
