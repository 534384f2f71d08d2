"""Session store: one row per generation request, tracking its lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, create_engine, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from landing.errors import ConflictError, SessionStoreError

log = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_SQLITE_PATH = Path("cache/sessions.db")


class SessionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward-only within an attempt. Re-entering PROCESSING from any state is a new
# attempt (queue redelivery or a repeated run); last write wins. PENDING -> FAILED
# covers work that never started (queue unavailable, unusable job payload).
_ALLOWED = {
    SessionStatus.PROCESSING: {
        SessionStatus.PENDING,
        SessionStatus.PROCESSING,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
    },
    SessionStatus.COMPLETED: {SessionStatus.PROCESSING},
    SessionStatus.FAILED: {SessionStatus.PENDING, SessionStatus.PROCESSING},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecord(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(String(32), nullable=False, default=SessionStatus.PENDING.value, index=True)
    payload = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status,
            "payload": self.payload,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


def _make_engine(database_url: str):
    url = database_url
    if not url:
        DEFAULT_SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{DEFAULT_SQLITE_PATH}"
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every thread sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_recycle=1800)


class SessionStore:
    """CRUD over the `sessions` table. Every write is a single-row update keyed by session id."""

    def __init__(self, database_url: str = "") -> None:
        self.engine = _make_engine(database_url)
        self._factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise SessionStoreError(f"session store migration failed: {exc}") from exc

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            log.warning("sessions.ping: failed: %s", exc)
            return False

    def create(self, session_id: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Insert a pending session. A failed session may be resubmitted under the same id."""
        db = self._factory()
        try:
            now = _utcnow()
            existing = db.query(SessionRecord).filter(SessionRecord.session_id == session_id).first()
            if existing is not None:
                if existing.status != SessionStatus.FAILED.value:
                    raise ConflictError(f"session {session_id} already exists")
                existing.status = SessionStatus.PENDING.value
                existing.payload = payload or {}
                existing.result = None
                existing.error = None
                existing.updated_at = now
                db.commit()
                db.refresh(existing)
                log.info("sessions.create: resubmitted failed session=%s", session_id)
                return existing.to_dict()
            record = SessionRecord(
                session_id=session_id,
                status=SessionStatus.PENDING.value,
                payload=payload or {},
                created_at=now,
                updated_at=now,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            log.info("sessions.create: session=%s", session_id)
            return record.to_dict()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError(f"session {session_id} already exists") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise SessionStoreError(f"could not create session {session_id}: {exc}") from exc
        finally:
            db.close()

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        db = self._factory()
        try:
            record = db.query(SessionRecord).filter(SessionRecord.session_id == session_id).first()
            return record.to_dict() if record else None
        except SQLAlchemyError as exc:
            raise SessionStoreError(f"could not read session {session_id}: {exc}") from exc
        finally:
            db.close()

    def _transition(
        self,
        session_id: str,
        status: SessionStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        db = self._factory()
        try:
            record = db.query(SessionRecord).filter(SessionRecord.session_id == session_id).first()
            if record is None:
                raise SessionStoreError(f"unknown session {session_id}")
            current = SessionStatus(record.status)
            if current not in _ALLOWED[status]:
                raise SessionStoreError(f"session {session_id}: illegal transition {current.value} -> {status.value}")
            record.status = status.value
            # result iff completed, error iff failed
            record.result = result if status is SessionStatus.COMPLETED else None
            record.error = error if status is SessionStatus.FAILED else None
            record.updated_at = _utcnow()
            db.commit()
            db.refresh(record)
            log.info("sessions.update: session=%s %s -> %s", session_id, current.value, status.value)
            return record.to_dict()
        except SQLAlchemyError as exc:
            db.rollback()
            raise SessionStoreError(f"could not update session {session_id}: {exc}") from exc
        finally:
            db.close()

    def mark_processing(self, session_id: str) -> Dict[str, Any]:
        return self._transition(session_id, SessionStatus.PROCESSING)

    def mark_completed(self, session_id: str, result: Dict[str, Any]) -> Dict[str, Any]:
        return self._transition(session_id, SessionStatus.COMPLETED, result=result)

    def mark_failed(self, session_id: str, error: str) -> Dict[str, Any]:
        return self._transition(session_id, SessionStatus.FAILED, error=error or "failed")
