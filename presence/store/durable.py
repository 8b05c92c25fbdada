"""
Durable store adapter - SQLAlchemy persistence for sessions.

Two tables:
- closed_sessions: long-term history, unique on the deterministic
  session key so every insert is insert-or-ignore
- open_sessions: checkpoint of in-progress sessions, unique on
  (category, callsign) and maintained with upserts

Inserts use the dialect's native ``ON CONFLICT`` clause (SQLite and
PostgreSQL), which makes concurrent writers (live loop, backfill,
synchronizer) safe without application-level locking.

All SQLAlchemy errors are wrapped at this boundary: reads raise
DurableStoreError, writes raise DurableWriteError.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select, text, and_, not_, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from presence.errors import DurableStoreError, DurableWriteError
from presence.models import Base, ClosedSessionRecord, OpenSessionRecord
from presence.tracking.models import (
    CATEGORY_ATTRIBUTES,
    Category,
    ClosedSession,
    ExclusionRule,
    Identity,
    OpenSession,
    UNKNOWN,
    ensure_utc,
)

logger = logging.getLogger(__name__)

_ATTRIBUTE_COLUMNS = ('frequency', 'facility', 'departure', 'arrival', 'aircraft', 'fir')


@dataclass
class ClosedSessionFilter:
    """Optional predicates for listing closed sessions."""
    cid: Optional[int] = None
    category: Optional[Category] = None
    callsign: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None
    newest_first: bool = False


def _attribute_values(attributes: Dict[str, str]) -> Dict[str, Optional[str]]:
    return {column: attributes.get(column) for column in _ATTRIBUTE_COLUMNS}


def _attributes_from_record(record, category: Category) -> Dict[str, str]:
    attributes = {}
    for column in CATEGORY_ATTRIBUTES[category]:
        value = getattr(record, column, None)
        if value is not None:
            attributes[column] = value
    return attributes


def closed_session_values(session: ClosedSession) -> dict:
    """Column values for a closed_sessions row."""
    return {
        'session_key': session.session_id,
        'category': session.category.value,
        'callsign': session.callsign,
        'cid': session.cid or None,
        'name': session.name,
        **_attribute_values(session.attributes),
        'start': session.start_time,
        'end': session.end_time,
        'minutes': session.duration_minutes,
    }


def open_session_values(session: OpenSession) -> dict:
    """Column values for an open_sessions row."""
    return {
        'category': session.category.value,
        'callsign': session.callsign,
        'cid': session.cid or None,
        'name': session.name,
        **_attribute_values(session.attributes),
        'started_at': session.started_at,
        'last_seen_at': session.last_seen_at,
    }


def closed_session_from_record(record: ClosedSessionRecord) -> ClosedSession:
    """
    Rebuild a domain record from a row.

    The id is recomputed from (category, callsign, start) so it matches
    the id the live loop produced for the same session.
    """
    category = Category(record.category)
    return ClosedSession.from_times(
        Identity(category, record.callsign),
        ensure_utc(record.start),
        ensure_utc(record.end),
        cid=record.cid or 0,
        name=record.name or UNKNOWN,
        attributes=_attributes_from_record(record, category),
        minutes=record.minutes,
    )


def open_session_from_record(record: OpenSessionRecord) -> OpenSession:
    category = Category(record.category)
    started_at = ensure_utc(record.started_at)
    return OpenSession(
        identity=Identity(category, record.callsign),
        started_at=started_at,
        last_seen_at=max(started_at, ensure_utc(record.last_seen_at)),
        cid=record.cid or 0,
        name=record.name or UNKNOWN,
        attributes=_attributes_from_record(record, category),
    )


class SqlDurableStore:
    """
    Durable store backed by a SQLAlchemy session factory.

    The factory is injected so tests can hand in an in-memory SQLite
    engine and the batch jobs can share one engine per process.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> 'SqlDurableStore':
        from presence.models import build_engine, build_session_factory
        return cls(build_session_factory(build_engine(url, echo=echo)))

    @property
    def bind(self):
        return self.session_factory.kw.get('bind')

    @property
    def dialect(self) -> str:
        bind = self.bind
        return bind.dialect.name if bind is not None else 'unknown'

    # -------------------------------------------------------------------------
    # Session scopes
    # -------------------------------------------------------------------------

    @contextmanager
    def _read(self) -> Iterator[Session]:
        try:
            with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise DurableStoreError(f'Durable store query failed: {e}') from e

    @contextmanager
    def _write(self) -> Iterator[Session]:
        try:
            with self.session_factory() as session:
                yield session
                session.commit()
        except SQLAlchemyError as e:
            raise DurableWriteError(f'Durable store write failed: {e}') from e

    # -------------------------------------------------------------------------
    # Schema / health
    # -------------------------------------------------------------------------

    def init_schema(self) -> None:
        """Create tables if they don't exist."""
        try:
            Base.metadata.create_all(bind=self.bind)
        except SQLAlchemyError as e:
            raise DurableStoreError(f'Schema initialization failed: {e}') from e
        logger.info(f'Durable store schema ready ({self.dialect})')

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self._read() as session:
                session.execute(text('SELECT 1'))
            return True
        except DurableStoreError as e:
            logger.warning(f'Durable store ping failed: {e}')
            return False

    # -------------------------------------------------------------------------
    # Closed sessions
    # -------------------------------------------------------------------------

    def _insert_ignore(self, session: Session, values: dict) -> bool:
        """Insert one closed session row; False if the key already exists."""
        dialect = session.get_bind().dialect.name
        if dialect == 'sqlite':
            stmt = sqlite_insert(ClosedSessionRecord).values(**values)
        elif dialect == 'postgresql':
            stmt = pg_insert(ClosedSessionRecord).values(**values)
        else:
            return self._insert_ignore_generic(session, values)

        stmt = stmt.on_conflict_do_nothing(index_elements=['session_key'])
        result = session.execute(stmt)
        return bool(result.rowcount)

    @staticmethod
    def _insert_ignore_generic(session: Session, values: dict) -> bool:
        exists = session.scalar(
            select(ClosedSessionRecord.id).where(
                ClosedSessionRecord.session_key == values['session_key']
            )
        )
        if exists is not None:
            return False
        try:
            with session.begin_nested():
                session.add(ClosedSessionRecord(**values))
        except IntegrityError:
            return False
        return True

    def insert_closed_session(self, closed: ClosedSession) -> bool:
        """
        Insert a closed session, ignoring duplicates.

        Returns True if a row was written, False if the session key was
        already present.
        """
        with self._write() as session:
            return self._insert_ignore(session, closed_session_values(closed))

    def insert_closed_sessions(self, sessions: Iterable[ClosedSession]) -> Tuple[int, int]:
        """
        Insert many closed sessions in one transaction.

        Returns (inserted, duplicates).
        """
        inserted = 0
        duplicates = 0
        with self._write() as session:
            for closed in sessions:
                if self._insert_ignore(session, closed_session_values(closed)):
                    inserted += 1
                else:
                    duplicates += 1
        return inserted, duplicates

    def list_closed_sessions(
        self,
        filter: Optional[ClosedSessionFilter] = None,
    ) -> List[ClosedSession]:
        """List closed sessions, oldest start first unless newest_first is set."""
        filter = filter or ClosedSessionFilter()
        stmt = select(ClosedSessionRecord)

        if filter.cid is not None:
            stmt = stmt.where(ClosedSessionRecord.cid == filter.cid)
        if filter.category is not None:
            stmt = stmt.where(ClosedSessionRecord.category == filter.category.value)
        if filter.callsign:
            stmt = stmt.where(ClosedSessionRecord.callsign == filter.callsign)
        if filter.since is not None:
            stmt = stmt.where(ClosedSessionRecord.start >= filter.since)
        if filter.until is not None:
            stmt = stmt.where(ClosedSessionRecord.start < filter.until)

        if filter.newest_first:
            stmt = stmt.order_by(ClosedSessionRecord.end.desc(), ClosedSessionRecord.id.desc())
        else:
            stmt = stmt.order_by(ClosedSessionRecord.start, ClosedSessionRecord.id)

        if filter.limit:
            stmt = stmt.limit(filter.limit)

        with self._read() as session:
            records = session.scalars(stmt).all()

        sessions = []
        for record in records:
            try:
                sessions.append(closed_session_from_record(record))
            except ValueError as e:
                logger.warning(f'Skipping unreadable durable row {record.session_key}: {e}')
        return sessions

    def latest_callsign(self, cid: int, exclusion: Optional[ExclusionRule] = None) -> Optional[str]:
        """Most recent non-excluded callsign used by a member, if any."""
        if not cid:
            return None
        exclusion = exclusion or ExclusionRule()

        stmt = (
            select(ClosedSessionRecord.category, ClosedSessionRecord.callsign)
            .where(ClosedSessionRecord.cid == cid)
            .order_by(ClosedSessionRecord.end.desc(), ClosedSessionRecord.id.desc())
        )
        with self._read() as session:
            for category, callsign in session.execute(stmt):
                if not exclusion.excludes(Category(category), callsign):
                    return callsign
        return None

    def _excluded_clause(self, exclusion: ExclusionRule):
        upper_callsign = func.upper(ClosedSessionRecord.callsign)
        suffix_matches = [
            upper_callsign.endswith(suffix.upper(), autoescape=True)
            for suffix in exclusion.suffixes
        ]
        if not suffix_matches:
            return None
        return and_(
            ClosedSessionRecord.category == Category.CONTROLLER.value,
            or_(*suffix_matches),
        )

    def counts(self, exclusion: Optional[ExclusionRule] = None) -> dict:
        """
        Row counts plus minutes/sessions per category.

        Pseudo-sessions are counted in ``closed_sessions`` but not in the
        per-category totals.
        """
        exclusion = exclusion or ExclusionRule()
        excluded = self._excluded_clause(exclusion)

        totals_stmt = select(
            ClosedSessionRecord.category,
            func.count(ClosedSessionRecord.id),
            func.coalesce(func.sum(ClosedSessionRecord.minutes), 0),
        ).group_by(ClosedSessionRecord.category)
        if excluded is not None:
            totals_stmt = totals_stmt.where(not_(excluded))

        with self._read() as session:
            closed_rows = session.scalar(select(func.count(ClosedSessionRecord.id))) or 0
            open_rows = session.scalar(select(func.count(OpenSessionRecord.id))) or 0
            per_category = session.execute(totals_stmt).all()

        result = {
            'closed_sessions': closed_rows,
            'open_sessions': open_rows,
            'total_minutes': {c.value: 0 for c in Category},
            'total_sessions': {c.value: 0 for c in Category},
        }
        for category, count, minutes in per_category:
            if category in result['total_sessions']:
                result['total_sessions'][category] = int(count)
                result['total_minutes'][category] = int(minutes or 0)
        return result

    # -------------------------------------------------------------------------
    # Open sessions
    # -------------------------------------------------------------------------

    def upsert_open_session(self, open_session: OpenSession) -> None:
        """Create or refresh the checkpoint row for an open session."""
        values = open_session_values(open_session)
        update_columns = [k for k in values if k not in ('category', 'callsign')]

        with self._write() as session:
            dialect = session.get_bind().dialect.name
            if dialect in ('sqlite', 'postgresql'):
                insert_fn = sqlite_insert if dialect == 'sqlite' else pg_insert
                stmt = insert_fn(OpenSessionRecord).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=['category', 'callsign'],
                    set_={column: stmt.excluded[column] for column in update_columns},
                )
                session.execute(stmt)
                return

            record = session.scalar(
                select(OpenSessionRecord).where(
                    OpenSessionRecord.category == values['category'],
                    OpenSessionRecord.callsign == values['callsign'],
                )
            )
            if record is None:
                session.add(OpenSessionRecord(**values))
            else:
                for column in update_columns:
                    setattr(record, column, values[column])

    def delete_open_session(self, identity: Identity) -> bool:
        """Remove a checkpoint row. Returns True if a row was deleted."""
        with self._write() as session:
            result = session.execute(
                delete(OpenSessionRecord).where(
                    OpenSessionRecord.category == identity.category.value,
                    OpenSessionRecord.callsign == identity.callsign,
                )
            )
            return bool(result.rowcount)

    def list_open_sessions(self) -> List[OpenSession]:
        with self._read() as session:
            records = session.scalars(
                select(OpenSessionRecord).order_by(OpenSessionRecord.started_at)
            ).all()

        sessions = []
        for record in records:
            try:
                sessions.append(open_session_from_record(record))
            except ValueError as e:
                logger.warning(f'Skipping unreadable open session row {record.callsign}: {e}')
        return sessions
