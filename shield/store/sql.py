"""SQLAlchemy-backed store (PostgreSQL in production, SQLite for local runs).

Schema is created with ``create_all`` on startup; migrations are out of
scope.  ``serialized(key)`` writes the key's row in ``engine_locks`` inside
a transaction, which takes a row lock on PostgreSQL and the database write
lock on SQLite; either way concurrent engine instances queue on the same
key until the transaction commits.  Operations issued inside a
``serialized`` block share that transaction.
"""

import functools
import threading
import uuid
from contextlib import contextmanager
from typing import Optional

import structlog
from sqlalchemy import (
    JSON, Boolean, Float, Integer, String, Text, case, cast, create_engine, delete, func,
    insert, select, update,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from shield.errors import ConcurrencyConflict, StoreUnavailable
from shield.models import (
    Alert, AlertLevel, AlertStatus, IdentityRecord, Membership, RequestEvent,
)
from shield.store.base import (
    ALERTS, EVENTS, HOUR_SECONDS, IDENTITY_RECORDS, EventStore, IdentifierStats,
)

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


class EventRow(Base):
    __tablename__ = "request_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(255), index=True)
    ip: Mapped[str] = mapped_column(String(64), index=True)
    api_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    endpoint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[float] = mapped_column(Float, index=True)
    response_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admitted: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class IdentityRow(Base):
    __tablename__ = "identity_records"

    subject: Mapped[str] = mapped_column(String(255), primary_key=True)
    membership: Mapped[str] = mapped_column(String(20), index=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)
    expires_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
    violation_count: Mapped[int] = mapped_column(Integer, default=0)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    component: Mapped[str] = mapped_column(String(50), index=True)
    level: Mapped[str] = mapped_column(String(20), index=True)
    type: Mapped[str] = mapped_column(String(100))
    message: Mapped[str] = mapped_column(Text)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20), index=True)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[float] = mapped_column(Float, index=True)
    updated_at: Mapped[float] = mapped_column(Float)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    acknowledged_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_escalated_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


class LockRow(Base):
    __tablename__ = "engine_locks"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


_TRANSIENT = (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)


def _translate_errors(fn):
    """Surface connection loss / lock timeouts as StoreUnavailable."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except _TRANSIENT as e:
            logger.warning("store_unavailable", operation=fn.__name__,
                           error=str(getattr(e, "orig", None) or e))
            raise StoreUnavailable("store unreachable", operation=fn.__name__) from e

    return wrapper


class SqlEventStore(EventStore):

    def __init__(self, url: str, timeout: float = 2.0, create_schema: bool = True):
        self.url = url
        self.timeout = timeout
        self.engine = create_engine(url, **_engine_options(url, timeout))
        self._local = threading.local()
        if create_schema:
            try:
                Base.metadata.create_all(self.engine)
            except _TRANSIENT as e:
                raise StoreUnavailable("could not initialize schema", url=_redact(url)) from e

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self):
        current = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return
        with Session(self.engine, expire_on_commit=False) as session:
            with session.begin():
                yield session

    @contextmanager
    def serialized(self, key):
        if getattr(self._local, "session", None) is not None:
            # Re-entrant: the enclosing transaction already holds a lock.
            with self._session() as session:
                self._acquire(session, key)
                yield
            return
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                with session.begin():
                    self._acquire(session, key)
                    self._local.session = session
                    try:
                        yield
                    finally:
                        self._local.session = None
        except _TRANSIENT as e:
            raise StoreUnavailable("could not serialize on key", key=key) from e

    def _acquire(self, session, key):
        holder = uuid.uuid4().hex
        result = session.execute(
            update(LockRow).where(LockRow.key == key).values(holder=holder)
        )
        if result.rowcount:
            return
        # First use of this key.  Whoever inserts second falls through to
        # the update, which blocks until the first transaction commits.
        self._insert_ignore(session, LockRow, {"key": key, "holder": holder}, "key")
        session.execute(update(LockRow).where(LockRow.key == key).values(holder=holder))

    def _insert_ignore(self, session, model, values, index) -> int:
        """INSERT ... ON CONFLICT DO NOTHING; returns rows inserted."""
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=[index])
        elif dialect == "sqlite":
            stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=[index])
        else:
            column = getattr(model, index)
            if session.scalar(select(func.count()).select_from(model).where(column == values[index])):
                return 0
            stmt = insert(model).values(**values)
        return session.execute(stmt).rowcount or 0

    # ------------------------------------------------------------------
    # Request events
    # ------------------------------------------------------------------

    @_translate_errors
    def insert_event(self, event):
        with self._session() as s:
            last = s.scalar(
                select(func.max(EventRow.timestamp)).where(EventRow.identifier == event.identifier)
            )
            ts = max(event.timestamp, last) if last is not None else event.timestamp
            row = EventRow(
                identifier=event.identifier, ip=event.ip, api_key=event.api_key,
                endpoint=event.endpoint, timestamp=ts,
                response_code=event.response_code, user_agent=event.user_agent,
                admitted=event.admitted,
            )
            s.add(row)
            s.flush()
            return _event(row)

    @_translate_errors
    def mark_denied(self, event_id):
        with self._session() as s:
            s.execute(update(EventRow).where(EventRow.id == event_id).values(admitted=False))

    @_translate_errors
    def count_events(self, identifier, since, endpoint=None):
        stmt = select(func.count()).select_from(EventRow).where(
            EventRow.identifier == identifier, EventRow.timestamp >= since,
            EventRow.admitted.is_(True),
        )
        if endpoint is not None:
            stmt = stmt.where(EventRow.endpoint == endpoint)
        with self._session() as s:
            return s.scalar(stmt) or 0

    @_translate_errors
    def oldest_event_time(self, identifier, since):
        with self._session() as s:
            return s.scalar(
                select(func.min(EventRow.timestamp)).where(
                    EventRow.identifier == identifier, EventRow.timestamp >= since,
                    EventRow.admitted.is_(True),
                )
            )

    @_translate_errors
    def query_events(self, ip=None, identifier=None, since=None, until=None):
        stmt = select(EventRow).order_by(EventRow.id)
        if ip is not None:
            stmt = stmt.where(EventRow.ip == ip)
        if identifier is not None:
            stmt = stmt.where(EventRow.identifier == identifier)
        if since is not None:
            stmt = stmt.where(EventRow.timestamp >= since)
        if until is not None:
            stmt = stmt.where(EventRow.timestamp <= until)
        with self._session() as s:
            return [_event(r) for r in s.scalars(stmt)]

    @_translate_errors
    def hourly_counts(self, since, ip=None, identifier=None):
        bucket = self._hour_bucket().label("hour")
        stmt = (
            select(bucket, func.count())
            .where(EventRow.timestamp >= since)
            .group_by(bucket)
            .order_by(bucket)
        )
        if ip is not None:
            stmt = stmt.where(EventRow.ip == ip)
        if identifier is not None:
            stmt = stmt.where(EventRow.identifier == identifier)
        with self._session() as s:
            return {float(int(hour) * HOUR_SECONDS): n for hour, n in s.execute(stmt)}

    def _hour_bucket(self):
        # SQLite has no floor(); its integer cast truncates, which is the
        # same thing for positive epochs.  PostgreSQL's cast rounds.
        hours = EventRow.timestamp / HOUR_SECONDS
        if self.engine.dialect.name == "sqlite":
            return cast(hours, Integer)
        return func.floor(hours)

    @_translate_errors
    def active_ips(self, since):
        stmt = (
            select(EventRow.ip).where(EventRow.timestamp >= since)
            .distinct().order_by(EventRow.ip)
        )
        with self._session() as s:
            return list(s.scalars(stmt))

    @_translate_errors
    def delete_events(self, ip, endpoint=None):
        stmt = delete(EventRow).where(EventRow.ip == ip)
        if endpoint is not None:
            stmt = stmt.where(EventRow.endpoint == endpoint)
        with self._session() as s:
            return s.execute(stmt).rowcount or 0

    @_translate_errors
    def event_stats(self, since, ip=None, endpoint=None, limit=20):
        count = func.count().label("request_count")
        denied = func.sum(case((EventRow.admitted.is_(False), 1), else_=0))
        stmt = (
            select(
                EventRow.identifier, func.min(EventRow.ip), count,
                func.min(EventRow.timestamp), func.max(EventRow.timestamp), denied,
            )
            .where(EventRow.timestamp >= since)
            .group_by(EventRow.identifier)
            .order_by(count.desc(), EventRow.identifier)
            .limit(limit)
        )
        if ip is not None:
            stmt = stmt.where(EventRow.ip == ip)
        if endpoint is not None:
            stmt = stmt.where(EventRow.endpoint == endpoint)
        with self._session() as s:
            return [
                IdentifierStats(identifier, row_ip, n, first, last, int(n_denied or 0))
                for identifier, row_ip, n, first, last, n_denied in s.execute(stmt)
            ]

    # ------------------------------------------------------------------
    # Identity records
    # ------------------------------------------------------------------

    @_translate_errors
    def get_identity_record(self, subject):
        with self._session() as s:
            row = s.get(IdentityRow, subject)
            return _record(row) if row else None

    @_translate_errors
    def upsert_identity_record(self, record, expected_version):
        values = dict(
            membership=record.membership.value, reason=record.reason,
            created_at=record.created_at, updated_at=record.updated_at,
            expires_at=record.expires_at, violation_count=record.violation_count,
            source=record.source, created_by=record.created_by,
        )
        with self._session() as s:
            if expected_version is None:
                inserted = self._insert_ignore(
                    s, IdentityRow, {"subject": record.subject, "version": 1, **values}, "subject",
                )
                if inserted != 1:
                    raise ConcurrencyConflict(
                        "identity record created concurrently", subject=record.subject,
                    )
                return record.copy(version=1)

            result = s.execute(
                update(IdentityRow)
                .where(IdentityRow.subject == record.subject,
                       IdentityRow.version == expected_version)
                .values(version=expected_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(
                    "identity record changed concurrently",
                    subject=record.subject, expected=expected_version,
                )
            return record.copy(version=expected_version + 1)

    @_translate_errors
    def list_identity_records(self, membership=None):
        stmt = select(IdentityRow).order_by(IdentityRow.subject)
        if membership is not None:
            stmt = stmt.where(IdentityRow.membership == Membership(membership).value)
        with self._session() as s:
            return [_record(r) for r in s.scalars(stmt)]

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @_translate_errors
    def insert_alert(self, alert):
        with self._session() as s:
            s.add(AlertRow(
                id=alert.id, component=alert.component, level=alert.level.value,
                type=alert.type, message=alert.message, metadata_=dict(alert.metadata),
                status=alert.status.value, escalation_level=alert.escalation_level,
                occurrence_count=alert.occurrence_count, created_at=alert.created_at,
                updated_at=alert.updated_at, version=1,
            ))
        return alert.copy(version=1)

    @_translate_errors
    def get_alert(self, alert_id):
        with self._session() as s:
            row = s.get(AlertRow, alert_id)
            return _alert(row) if row else None

    @_translate_errors
    def find_active_alert(self, component, type, level, since):
        stmt = (
            select(AlertRow)
            .where(
                AlertRow.status == AlertStatus.ACTIVE.value,
                AlertRow.component == component,
                AlertRow.type == type,
                AlertRow.level == AlertLevel(level).value,
                AlertRow.created_at >= since,
            )
            .order_by(AlertRow.created_at.desc())
            .limit(1)
        )
        with self._session() as s:
            row = s.scalars(stmt).first()
            return _alert(row) if row else None

    @_translate_errors
    def update_alert(self, alert, expected_version):
        with self._session() as s:
            result = s.execute(
                update(AlertRow)
                .where(AlertRow.id == alert.id, AlertRow.version == expected_version)
                .values(
                    message=alert.message, metadata_=dict(alert.metadata),
                    status=alert.status.value, escalation_level=alert.escalation_level,
                    occurrence_count=alert.occurrence_count, updated_at=alert.updated_at,
                    acknowledged_by=alert.acknowledged_by,
                    acknowledged_at=alert.acknowledged_at,
                    resolved_by=alert.resolved_by, resolved_at=alert.resolved_at,
                    last_escalated_at=alert.last_escalated_at,
                    version=expected_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(
                    "alert changed concurrently", alert_id=alert.id,
                    expected=expected_version,
                )
        return alert.copy(version=expected_version + 1)

    @_translate_errors
    def query_alerts(self, flt):
        stmt = select(AlertRow).order_by(AlertRow.created_at.desc(), AlertRow.id.desc())
        if flt.component is not None:
            stmt = stmt.where(AlertRow.component == flt.component)
        if flt.level is not None:
            stmt = stmt.where(AlertRow.level == AlertLevel(flt.level).value)
        if flt.type is not None:
            stmt = stmt.where(AlertRow.type == flt.type)
        if flt.status is not None:
            stmt = stmt.where(AlertRow.status == AlertStatus(flt.status).value)
        if flt.since is not None:
            stmt = stmt.where(AlertRow.created_at >= flt.since)
        if flt.until is not None:
            stmt = stmt.where(AlertRow.created_at <= flt.until)
        if flt.limit:
            stmt = stmt.limit(flt.limit)
        with self._session() as s:
            return [_alert(r) for r in s.scalars(stmt)]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    @_translate_errors
    def purge_expired(self, table, before):
        if table == EVENTS:
            stmt = delete(EventRow).where(EventRow.timestamp < before)
        elif table == ALERTS:
            stmt = delete(AlertRow).where(
                AlertRow.status == AlertStatus.RESOLVED.value,
                AlertRow.resolved_at.is_not(None),
                AlertRow.resolved_at < before,
            )
        elif table == IDENTITY_RECORDS:
            stmt = delete(IdentityRow).where(
                IdentityRow.membership == Membership.NONE.value,
                IdentityRow.violation_count == 0,
                IdentityRow.updated_at < before,
            )
        else:
            raise ValueError(f"Unknown table: {table}")
        with self._session() as s:
            return s.execute(stmt).rowcount or 0

    def close(self):
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _engine_options(url: str, timeout: float) -> dict:
    options = {"pool_timeout": timeout, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        options = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
    elif url.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": max(int(timeout), 1),
            "options": f"-c statement_timeout={int(timeout * 1000)} "
                       f"-c lock_timeout={int(timeout * 1000)}",
        }
    return options


def _redact(url: str) -> str:
    if "@" not in url:
        return url
    scheme, rest = url.split("://", 1)
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def _event(row: EventRow) -> RequestEvent:
    return RequestEvent(
        id=row.id, identifier=row.identifier, ip=row.ip, api_key=row.api_key,
        endpoint=row.endpoint, timestamp=row.timestamp,
        response_code=row.response_code, user_agent=row.user_agent,
        admitted=bool(row.admitted),
    )


def _record(row: IdentityRow) -> IdentityRecord:
    return IdentityRecord(
        subject=row.subject, membership=Membership(row.membership), reason=row.reason,
        created_at=row.created_at, updated_at=row.updated_at,
        expires_at=row.expires_at, violation_count=row.violation_count,
        source=row.source, created_by=row.created_by, version=row.version,
    )


def _alert(row: AlertRow) -> Alert:
    return Alert(
        id=row.id, component=row.component, level=AlertLevel(row.level),
        type=row.type, message=row.message, metadata=dict(row.metadata_ or {}),
        status=AlertStatus(row.status), escalation_level=row.escalation_level,
        occurrence_count=row.occurrence_count, created_at=row.created_at,
        updated_at=row.updated_at, acknowledged_by=row.acknowledged_by,
        acknowledged_at=row.acknowledged_at, resolved_by=row.resolved_by,
        resolved_at=row.resolved_at, last_escalated_at=row.last_escalated_at,
        version=row.version,
    )
