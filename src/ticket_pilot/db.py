from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from dataclasses import replace
import json
from threading import RLock
import time
from typing import Any, Callable, Iterator, TypeVar

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from ticket_pilot.domain.events import EventType, normalize_event_type
from ticket_pilot.domain.models import RunRecord, RunStatus
from ticket_pilot.errors import RunNotFoundError
from ticket_pilot.repository import apply_merge, apply_transition

T = TypeVar('T')


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class RunEntity(Base):
    __tablename__ = 'runs'

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    task_id: Mapped[str] = mapped_column(String(255), nullable=False)
    repo_path: Mapped[str] = mapped_column(Text(), nullable=False)
    record_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    updated_at: Mapped[str] = mapped_column(String(64), nullable=False)

    events: Mapped[list['RunEventEntity']] = relationship('RunEventEntity', back_populates='run', cascade='all,delete-orphan')


class RunEventEntity(Base):
    __tablename__ = 'run_events'
    __table_args__ = (
        UniqueConstraint('run_id', 'seq', name='uq_run_events_run_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey('runs.run_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    run: Mapped[RunEntity] = relationship('RunEntity', back_populates='events')


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlRunRepository:
    """Run store keeping each record as one JSON document plus an ordered event log."""

    def __init__(self, db: Database):
        self.db = db
        # read-modify-write of the JSON document is serialized within the process
        self._write_lock = RLock()

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _with_lock_retry(self, name: str, operation: Callable[[], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{name}_retry_exhausted')

    @staticmethod
    def _apply_record(row: RunEntity, record: RunRecord) -> None:
        row.status = record.status.value
        row.task_id = record.input.task_id
        row.repo_path = record.input.repo_path
        row.record_json = json.dumps(record.to_dict(), ensure_ascii=True)
        row.created_at = record.created_at
        row.updated_at = record.updated_at or record.created_at

    @staticmethod
    def _record_from_row(row: RunEntity) -> RunRecord:
        return RunRecord.from_dict(json.loads(row.record_json))

    def put(self, record: RunRecord) -> RunRecord:
        if not record.updated_at:
            record = replace(record, updated_at=record.created_at)

        def operation() -> RunRecord:
            with self.db.session() as session:
                row = session.get(RunEntity, record.run_id)
                if row is None:
                    row = RunEntity(run_id=record.run_id)
                    session.add(row)
                self._apply_record(row, record)
                session.flush()
                return self._record_from_row(row)

        return self._with_lock_retry('put', operation)

    def get(self, run_id: str) -> RunRecord:
        with self.db.session() as session:
            row = session.get(RunEntity, run_id)
            if row is None:
                raise RunNotFoundError(run_id)
            return self._record_from_row(row)

    def list_runs(self, *, limit: int = 100) -> list[RunRecord]:
        with self.db.session() as session:
            rows = session.execute(
                select(RunEntity).order_by(RunEntity.created_at.desc()).limit(max(0, int(limit)))
            ).scalars().all()
            return [self._record_from_row(r) for r in rows]

    def _update(self, name: str, run_id: str, change: Callable[[RunRecord], RunRecord]) -> RunRecord:
        def operation() -> RunRecord:
            with self.db.session() as session:
                row = session.get(RunEntity, run_id, with_for_update=True)
                if row is None:
                    raise RunNotFoundError(run_id)
                updated = change(self._record_from_row(row))
                self._apply_record(row, updated)
                return updated

        with self._write_lock:
            return self._with_lock_retry(name, operation)

    def merge_update(self, run_id: str, /, **fields: Any) -> RunRecord:
        return self._update('merge_update', run_id, lambda current: apply_merge(current, fields))

    def transition(self, run_id: str, status: RunStatus | str, /, **fields: Any) -> RunRecord:
        return self._update('transition', run_id, lambda current: apply_transition(current, status, fields))

    def append_event(self, run_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        now = datetime.now(timezone.utc)
        max_attempts = max(3, self._sqlite_lock_retry_attempts())
        for attempt in range(max_attempts):
            try:
                with self.db.session() as session:
                    if session.get(RunEntity, run_id) is None:
                        raise RunNotFoundError(run_id)
                    next_seq = int(
                        session.execute(
                            select(func.coalesce(func.max(RunEventEntity.seq), 0)).where(RunEventEntity.run_id == run_id)
                        ).scalar_one()
                    ) + 1
                    event = RunEventEntity(
                        run_id=run_id,
                        seq=next_seq,
                        event_type=normalize_event_type(event_type),
                        payload_json=json.dumps(payload, ensure_ascii=True, default=str),
                        created_at=now,
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                if attempt + 1 >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt + 1))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, run_id: str) -> list[dict]:
        with self.db.session() as session:
            if session.get(RunEntity, run_id) is None:
                raise RunNotFoundError(run_id)
            rows = session.execute(
                select(RunEventEntity)
                .where(RunEventEntity.run_id == run_id)
                .order_by(RunEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    @staticmethod
    def _event_to_dict(row: RunEventEntity) -> dict:
        return {
            'seq': row.seq,
            'run_id': row.run_id,
            'type': row.event_type,
            'payload': json.loads(row.payload_json),
            'created_at': _iso_utc(row.created_at),
        }
