"""File-backed store for authenticated portal browser sessions.

Each owner has at most one session blob, ``<directory>/<owner>.json``, holding
the browser transport state (cookies plus optional origin storage) together
with ``timestamp`` (creation) and ``expiresAt`` (expiry), both in epoch
milliseconds. The same JSON shape is used for import and export so a session
captured in a real browser can be uploaded and reused by the scraper.

Expiry is anchored on the creation time: ``expiresAt`` is always
``timestamp + lifetime`` for sessions created here and imported values are
clamped to that bound. A session is *stale* (needs re-verification) once its
age reaches the lifetime and *expired* (deleted on load) once ``now`` passes
``expiresAt``.
"""

from __future__ import annotations

import json
import math
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable

from ratewatch.logging_config import get_logger

LOGGER = get_logger(__name__)

SESSION_LIFETIME = timedelta(days=15)
_DAY_SECONDS = 24 * 60 * 60
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: Any) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected epoch milliseconds, got {value!r}")
    if not math.isfinite(value):
        raise ValueError("timestamp is not finite")
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"timestamp out of range: {value!r}") from exc


@dataclass
class AuthSession:
    """Persisted browser authentication state for one owner."""

    cookies: list[dict[str, Any]]
    created_at: datetime
    expires_at: datetime
    origins: list[dict[str, Any]] = field(default_factory=list)
    local_storage: dict[str, str] | None = None
    session_storage: dict[str, str] | None = None

    @classmethod
    def create(
        cls,
        cookies: list[dict[str, Any]],
        *,
        origins: list[dict[str, Any]] | None = None,
        local_storage: dict[str, str] | None = None,
        session_storage: dict[str, str] | None = None,
        now: datetime | None = None,
        lifetime: timedelta = SESSION_LIFETIME,
    ) -> "AuthSession":
        created = now or _utcnow()
        return cls(
            cookies=list(cookies),
            created_at=created,
            expires_at=created + lifetime,
            origins=list(origins or []),
            local_storage=local_storage,
            session_storage=session_storage,
        )

    def storage_state(self) -> dict[str, Any]:
        """Return the state in the shape ``browser.new_context`` accepts."""

        return {"cookies": list(self.cookies), "origins": list(self.origins)}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "cookies": self.cookies,
            "origins": self.origins,
            "timestamp": _to_ms(self.created_at),
            "expiresAt": _to_ms(self.expires_at),
        }
        if self.local_storage is not None:
            payload["localStorage"] = self.local_storage
        if self.session_storage is not None:
            payload["sessionStorage"] = self.session_storage
        return payload

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        *,
        lifetime: timedelta = SESSION_LIFETIME,
    ) -> "AuthSession":
        """Parse a session payload, raising ``ValueError`` when malformed."""

        if not isinstance(payload, dict):
            raise ValueError("session payload must be a JSON object")

        cookies = payload.get("cookies")
        if not isinstance(cookies, list):
            raise ValueError("missing or invalid cookies")
        if not all(isinstance(cookie, dict) for cookie in cookies):
            raise ValueError("cookies must be objects")

        origins = payload.get("origins") or []
        if not isinstance(origins, list):
            raise ValueError("origins must be a list")

        expires_at = _from_ms(payload.get("expiresAt"))
        raw_created = payload.get("timestamp")
        try:
            created_at = _from_ms(raw_created) if raw_created is not None else expires_at - lifetime
            expires_at = min(expires_at, created_at + lifetime)
        except OverflowError as exc:
            raise ValueError("session timestamps out of range") from exc

        local_storage = payload.get("localStorage")
        session_storage = payload.get("sessionStorage")
        return cls(
            cookies=cookies,
            created_at=created_at,
            expires_at=expires_at,
            origins=origins,
            local_storage=local_storage if isinstance(local_storage, dict) else None,
            session_storage=session_storage if isinstance(session_storage, dict) else None,
        )


class SessionStore:
    """Persist, validate and expire one browser session per owner."""

    def __init__(
        self,
        directory: str | Path,
        *,
        lifetime: timedelta = SESSION_LIFETIME,
        clock: Clock = _utcnow,
    ) -> None:
        self.directory = Path(directory)
        self.lifetime = lifetime
        self._clock = clock

    def _ensure_dir(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, owner_id: int | str) -> Path:
        name = _UNSAFE_CHARS.sub("_", str(owner_id)).strip(".") or "_"
        return self.directory / f"{name}.json"

    def save(self, owner_id: int | str, session: AuthSession) -> None:
        """Write *session* for the owner, replacing any previous one."""

        self._ensure_dir()
        path = self._path(owner_id)
        with NamedTemporaryFile(
            mode="w", encoding="utf-8", dir=str(self.directory), suffix=".tmp", delete=False
        ) as handle:
            json.dump(session.to_payload(), handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
            tmp_name = handle.name
        os.replace(tmp_name, path)
        LOGGER.info("Session saved | owner=%s", owner_id)

    def load(self, owner_id: int | str) -> AuthSession | None:
        """Return the owner's valid session, deleting it when unreadable or expired."""

        self._ensure_dir()
        path = self._path(owner_id)
        if not path.exists():
            LOGGER.debug("No session found | owner=%s", owner_id)
            return None

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            session = AuthSession.from_payload(payload, lifetime=self.lifetime)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Discarding unreadable session | owner=%s | error=%s", owner_id, exc)
            self.delete(owner_id)
            return None

        if self._clock() > session.expires_at:
            LOGGER.info("Session expired | owner=%s", owner_id)
            self.delete(owner_id)
            return None

        return session

    def delete(self, owner_id: int | str) -> None:
        """Remove the owner's session; a missing session is not an error."""

        self._ensure_dir()
        try:
            self._path(owner_id).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.warning("Unable to delete session | owner=%s | error=%s", owner_id, exc)
            return
        LOGGER.info("Session deleted | owner=%s", owner_id)

    def days_remaining(self, owner_id: int | str) -> int | None:
        session = self.load(owner_id)
        if session is None:
            return None
        remaining = (session.expires_at - self._clock()).total_seconds()
        return max(0, math.ceil(remaining / _DAY_SECONDS))

    def needs_verification(self, owner_id: int | str) -> bool:
        session = self.load(owner_id)
        if session is None:
            return True
        return self._clock() - session.created_at >= self.lifetime

    def import_payload(self, owner_id: int | str, raw_payload: str | bytes) -> bool:
        """Validate and store an uploaded session; return False on any rejection."""

        try:
            payload = json.loads(raw_payload)
            session = AuthSession.from_payload(payload, lifetime=self.lifetime)
        except (TypeError, ValueError) as exc:
            LOGGER.error("Rejected session upload | owner=%s | error=%s", owner_id, exc)
            return False

        if self._clock() >= session.expires_at:
            LOGGER.error("Rejected session upload | owner=%s | error=session has expired", owner_id)
            return False

        try:
            self.save(owner_id, session)
        except OSError as exc:
            LOGGER.error("Unable to store uploaded session | owner=%s | error=%s", owner_id, exc)
            return False
        return True

    def export_payload(self, owner_id: int | str) -> str | None:
        session = self.load(owner_id)
        if session is None:
            return None
        return json.dumps(session.to_payload(), ensure_ascii=False, indent=2)
