from __future__ import annotations

import hashlib
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator

from sqlalchemy import event, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import settings
from settlement_engine.services.money import as_utc, utc_now

logger = logging.getLogger("settlement.locks")

_POLL_SECONDS = 0.05
_HELD_KEY = "entity_locks_held"

_REGISTRY_GUARD = threading.Lock()


class EntityLockTimeout(RuntimeError):
    pass


class _SessionLock:
    """Reentrant for the session that holds it, whichever thread that session runs on."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._owner: int | None = None
        self._depth = 0

    def acquire(self, owner: int, timeout: float) -> bool:
        with self._cond:
            if self._owner == owner:
                self._depth += 1
                return True
            if not self._cond.wait_for(lambda: self._owner is None, timeout=max(0.0, timeout)):
                return False
            self._owner = owner
            self._depth = 1
            return True

    def release(self, owner: int) -> None:
        with self._cond:
            if self._owner != owner:
                return
            self._depth -= 1
            if self._depth <= 0:
                self._owner = None
                self._depth = 0
                self._cond.notify_all()


_LOCAL_LOCKS: dict[str, _SessionLock] = {}


def lock_key_for(kind: str, key) -> str:
    return f"{kind}:{key}"


def advisory_key_for(lock_key: str) -> int:
    """Stable signed 64-bit key for pg_advisory_lock."""
    digest = hashlib.sha256(lock_key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def dialect_name(db: Session) -> str:
    try:
        return str(db.get_bind().dialect.name)
    except Exception:
        return ""


def try_pg_advisory_lock(db: Session, key: int, *, xact: bool = False) -> bool:
    """
    Postgres advisory try-lock. On other DBs, returns True (no-op).
    `xact=True` takes the transaction-scoped variant, released at commit/rollback.
    """
    if dialect_name(db) != "postgresql":
        return True
    fn = "pg_try_advisory_xact_lock" if xact else "pg_try_advisory_lock"
    return bool(db.execute(text(f"SELECT {fn}(:k)"), {"k": int(key)}).scalar())


def unlock_pg_advisory_lock(db: Session, key: int) -> None:
    if dialect_name(db) != "postgresql":
        return
    try:
        db.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": int(key)})
    except Exception as exc:
        logger.warning("advisory_unlock_failed", extra={"key": key, "error": str(exc)})


def _local_lock(lock_key: str) -> _SessionLock:
    with _REGISTRY_GUARD:
        lock = _LOCAL_LOCKS.get(lock_key)
        if lock is None:
            lock = _SessionLock()
            _LOCAL_LOCKS[lock_key] = lock
        return lock


def _acquire_lease(db: Session, lock_key: str, owner: str, ttl_seconds: int) -> bool:
    # Leases live in their own short transaction so they are visible to other workers.
    with Session(bind=db.get_bind()) as lease_db:
        now = utc_now()
        existing = (
            lease_db.query(models.EntityLock).filter(models.EntityLock.lock_key == lock_key).first()
        )
        if existing is not None:
            if as_utc(existing.expires_at) > now and existing.owner != owner:
                return False
            existing.owner = owner
            existing.expires_at = now + timedelta(seconds=ttl_seconds)
        else:
            lease_db.add(
                models.EntityLock(
                    lock_key=lock_key,
                    owner=owner,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
        try:
            lease_db.commit()
        except IntegrityError:
            lease_db.rollback()
            return False
        return True


def _release_lease(bind, lock_key: str, owner: str) -> None:
    with Session(bind=bind) as lease_db:
        (
            lease_db.query(models.EntityLock)
            .filter(models.EntityLock.lock_key == lock_key)
            .filter(models.EntityLock.owner == owner)
            .delete(synchronize_session=False)
        )
        lease_db.commit()


def held_lock_keys(db: Session) -> list[str]:
    return [held[0] for held in db.info.get(_HELD_KEY, [])]


@event.listens_for(Session, "after_transaction_end")
def _release_at_transaction_end(session: Session, transaction) -> None:
    if transaction.parent is not None:
        return
    held = session.info.pop(_HELD_KEY, None)
    if not held:
        return
    for lock_key, lease_owner, bind in reversed(held):
        if lease_owner is not None:
            try:
                _release_lease(bind, lock_key, lease_owner)
            except Exception as exc:
                # The lease expires on its own.
                logger.warning("lease_release_failed", extra={"key": lock_key, "error": str(exc)})
        _local_lock(lock_key).release(id(session))


@contextmanager
def entity_lock(
    db: Session,
    kind: str,
    key,
    *,
    timeout_seconds: float | None = None,
) -> Iterator[str]:
    """Serialize work on one entity (deal, proforma) across threads and processes.

    The lock is held until the session's transaction ends (commit or rollback),
    so nobody reads the entity's state before the writer's changes are durable.
    Commit before calling an external service.

    PostgreSQL uses a transaction-scoped advisory lock. SQLite (single process)
    only needs the in-process registry. Other databases additionally take a lease
    row in `entity_locks`.
    """
    if timeout_seconds is None:
        timeout_seconds = float(settings.entity_lock_timeout_seconds)

    lock_key = lock_key_for(kind, key)
    dialect = dialect_name(db)
    deadline = time.monotonic() + float(timeout_seconds)

    # Begin the transaction whose end releases the lock.
    db.connection()

    local = _local_lock(lock_key)
    if not local.acquire(id(db), float(timeout_seconds)):
        raise EntityLockTimeout(f"Timed out waiting for lock {lock_key}")

    lease_owner = None
    try:
        if dialect == "postgresql":
            advisory_key = advisory_key_for(lock_key)
            while not try_pg_advisory_lock(db, advisory_key, xact=True):
                if time.monotonic() >= deadline:
                    raise EntityLockTimeout(f"Timed out waiting for advisory lock {lock_key}")
                time.sleep(_POLL_SECONDS)
        elif dialect not in {"sqlite", ""}:
            owner = uuid.uuid4().hex
            ttl = max(1, int(timeout_seconds) * 2)
            while not _acquire_lease(db, lock_key, owner, ttl):
                if time.monotonic() >= deadline:
                    raise EntityLockTimeout(f"Timed out waiting for lease {lock_key}")
                time.sleep(_POLL_SECONDS)
            lease_owner = owner
    except BaseException:
        local.release(id(db))
        raise

    db.info.setdefault(_HELD_KEY, []).append((lock_key, lease_owner, db.get_bind()))
    yield lock_key
