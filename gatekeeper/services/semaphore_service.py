from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlmodel import Session

from gatekeeper.domain.models import LockRead, Semaphore, as_utc, now_utc
from gatekeeper.infra.db import get_engine
from gatekeeper.infra.repositories import SemaphoreRepository

logger = logging.getLogger(__name__)

MAX_SEMAPHORE_NAME_LENGTH = 255


class SemaphoreError(ValueError):
    pass


class DatabaseSemaphore:
    def __init__(
        self,
        engine: Engine | None = None,
        repository: SemaphoreRepository | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._engine = engine
        self._repository = repository or SemaphoreRepository()
        self._clock = clock

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    def _validate_name(self, name: str) -> None:
        if not name or not name.strip():
            raise SemaphoreError("semaphore name must not be empty")
        if len(name) > MAX_SEMAPHORE_NAME_LENGTH:
            raise SemaphoreError(f"semaphore name is longer than {MAX_SEMAPHORE_NAME_LENGTH} characters")

    def _validate_duration(self, max_duration_seconds: int) -> None:
        if isinstance(max_duration_seconds, bool) or not isinstance(max_duration_seconds, int):
            raise SemaphoreError("max duration must be an integer number of seconds")
        if max_duration_seconds <= 0:
            raise SemaphoreError("max duration must be positive")

    def _to_read(self, row: Semaphore, *, acquired: bool, now: datetime) -> LockRead:
        locked_at = as_utc(row.locked_at)
        return LockRead(
            name=row.name,
            acquired=acquired,
            locked_at=locked_at,
            max_duration_seconds=row.max_duration_seconds,
            duration_since_locked=max((now - locked_at).total_seconds(), 0.0),
        )

    def try_acquire(self, name: str, max_duration_seconds: int) -> LockRead:
        self._validate_name(name)
        self._validate_duration(max_duration_seconds)
        now = self._clock()
        with self._session() as session:
            if self._repository.compare_and_set(session, name, now, max_duration_seconds):
                session.commit()
                logger.debug("semaphore %s taken over from an expired lease", name)
                return LockRead(
                    name=name,
                    acquired=True,
                    locked_at=now,
                    max_duration_seconds=max_duration_seconds,
                    duration_since_locked=0.0,
                )
            if self._repository.insert_if_absent(session, name, now, max_duration_seconds):
                session.commit()
                logger.debug("semaphore %s acquired for %ss", name, max_duration_seconds)
                return LockRead(
                    name=name,
                    acquired=True,
                    locked_at=now,
                    max_duration_seconds=max_duration_seconds,
                    duration_since_locked=0.0,
                )
            session.rollback()
            holder = self._repository.find_by_name(session, name)

        logger.debug("semaphore %s is held elsewhere", name)
        if holder is None:
            return LockRead(name=name, acquired=False)
        return self._to_read(holder, acquired=False, now=now)

    def acquire(self, name: str, max_duration_seconds: int) -> bool:
        return self.try_acquire(name, max_duration_seconds).acquired

    def release(self, name: str) -> None:
        self._validate_name(name)
        with self._session() as session:
            deleted = self._repository.delete_by_name(session, name)
            session.commit()
        if deleted:
            logger.debug("semaphore %s released", name)

    def get_lock(self, name: str) -> LockRead | None:
        self._validate_name(name)
        now = self._clock()
        with self._session() as session:
            row = self._repository.find_by_name(session, name)
        if row is None:
            return None
        # Expired leases still occupy the row until someone takes them over.
        return self._to_read(row, acquired=as_utc(row.expires_at) > now, now=now)
