"""
Violation ledger.

Each report appends a Violation row and bumps the StrikeCounter for
(user, session, resource) in the same transaction. The counter value after
the increment is the violation's sequence number, so concurrent reports for
one key get 1, 2, 3 with no gaps or repeats. The report that reaches the
lock threshold revokes the login session; later reports on that session are
refused with SessionTerminated.
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from contentgate.config import get_settings
from contentgate.exceptions import SessionTerminated
from contentgate.models.user import User
from contentgate.models.user_session import UserSession
from contentgate.models.violation import StrikeCounter, Violation, ViolationKind
from contentgate.services.protection import ProtectionState, state_for

logger = logging.getLogger(__name__)

LOCKOUT_REASON = "violation_lockout"
FILTERS = ("all", "unnotified", "critical")


def resource_key(kind: str, target_id: str) -> str:
    return f"{kind}:{target_id}"


class SessionTerminator(Protocol):
    def terminate(self, db: Session, session_id: str, reason: str) -> None: ...


class RevokeUserSession:
    """Marks the UserSession revoked; every token carrying its id stops working."""

    def terminate(self, db: Session, session_id: str, reason: str) -> None:
        login = db.query(UserSession).filter(UserSession.id == session_id).first()
        if login is None:
            logger.warning("Lockout for unknown session %s", session_id)
            return
        if login.revoked_at is None:
            login.revoked_at = datetime.utcnow()
            login.revoked_reason = reason


class KeyedLocks:
    """One threading.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple, threading.Lock] = {}
        self._users: dict[tuple, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: tuple):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


@dataclass
class ViolationOutcome:
    violation: Violation
    state: ProtectionState

    @property
    def locked(self) -> bool:
        return self.state.locked


class ViolationLedger:
    def __init__(self, terminator: SessionTerminator | None = None, threshold: int | None = None):
        self.terminator = terminator or RevokeUserSession()
        self.threshold = threshold or get_settings().violation_lock_threshold
        self._locks = KeyedLocks()

    def _session_revoked(self, db: Session, session_id: str) -> bool:
        login = db.query(UserSession).filter(UserSession.id == session_id).first()
        return login is not None and login.is_revoked

    def _increment(self, db: Session, user_id: str, session_id: str, key: str) -> int:
        match = (
            StrikeCounter.user_id == user_id,
            StrikeCounter.session_id == session_id,
            StrikeCounter.resource_key == key,
        )
        now = datetime.utcnow()
        updated = db.query(StrikeCounter).filter(*match).update(
            {StrikeCounter.strikes: StrikeCounter.strikes + 1, StrikeCounter.updated_at: now},
            synchronize_session=False,
        )
        if not updated:
            db.add(StrikeCounter(user_id=user_id, session_id=session_id, resource_key=key, strikes=1, updated_at=now))
            try:
                db.flush()
            except IntegrityError:
                # another process created the row first
                db.rollback()
                db.query(StrikeCounter).filter(*match).update(
                    {StrikeCounter.strikes: StrikeCounter.strikes + 1, StrikeCounter.updated_at: now},
                    synchronize_session=False,
                )
        return db.query(StrikeCounter.strikes).filter(*match).scalar()

    def record(
        self,
        db: Session,
        *,
        user_id: str,
        session_id: str,
        key: str,
        kind: ViolationKind,
        occurred_at: datetime | None = None,
    ) -> ViolationOutcome:
        """Append one violation and commit. Raises SessionTerminated once the session is locked."""
        with self._locks.hold((user_id, session_id, key)):
            if self._session_revoked(db, session_id):
                raise SessionTerminated("Session terminated due to repeated protection violations.")
            strikes = self._increment(db, user_id, session_id, key)
            if strikes > self.threshold:
                db.rollback()
                raise SessionTerminated("Session terminated due to repeated protection violations.")

            violation = Violation(
                user_id=user_id,
                session_id=session_id,
                resource_key=key,
                kind=kind.value,
                sequence_number=strikes,
                occurred_at=occurred_at or datetime.utcnow(),
            )
            db.add(violation)
            state = state_for(strikes, self.threshold)
            if state.locked:
                self.terminator.terminate(db, session_id, LOCKOUT_REASON)
            db.commit()
            db.refresh(violation)

        if state.locked:
            logger.warning("Session %s of user %s locked after %d violations on %s", session_id, user_id, strikes, key)
        else:
            logger.info("Violation %d recorded for user %s on %s (%s)", strikes, user_id, key, kind.value)
        return ViolationOutcome(violation=violation, state=state)

    def strikes(self, db: Session, user_id: str, session_id: str, key: str) -> int:
        value = (
            db.query(StrikeCounter.strikes)
            .filter(
                StrikeCounter.user_id == user_id,
                StrikeCounter.session_id == session_id,
                StrikeCounter.resource_key == key,
            )
            .scalar()
        )
        return value or 0

    def query(self, db: Session, filter_by: str = "all", limit: int = 100, offset: int = 0) -> list[tuple[Violation, str | None]]:
        """Newest first, each with the reporting user's email."""
        q = db.query(Violation, User.email).outerjoin(User, User.id == Violation.user_id)
        if filter_by == "unnotified":
            q = q.filter(Violation.notified.is_(False))
        elif filter_by == "critical":
            q = q.filter(Violation.sequence_number >= self.threshold)
        return q.order_by(Violation.recorded_at.desc(), Violation.id.desc()).offset(offset).limit(limit).all()

    def mark_notified(self, db: Session, ids: list[int]) -> int:
        if not ids:
            return 0
        count = (
            db.query(Violation)
            .filter(Violation.id.in_(ids))
            .update({Violation.notified: True}, synchronize_session=False)
        )
        db.commit()
        return count
