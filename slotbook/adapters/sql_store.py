"""
Relational store built on SQLAlchemy.

Two tables, ``availability_rules`` and ``bookings``. All timestamps are
written and read as UTC. The "one confirmed booking per user and start"
rule is backed by a partial unique index, and the locked lookup uses
``SELECT ... FOR UPDATE`` where the database supports it. SQLite has no
row locks, so its transactions start with ``BEGIN IMMEDIATE`` and writers
run one at a time.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import pendulum
from pendulum import DateTime
from sqlalchemy import (
    Boolean,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    select,
    text,
    update,
)
from sqlalchemy import DateTime as SADateTime
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.types import TypeDecorator

from ..domain.exceptions import ConflictError
from ..domain.models import AvailabilityRule, Booking, BookingStatus, utc_now
from .storage import ScopedTransaction

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware column that always round-trips as a UTC pendulum DateTime."""

    impl = SADateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        utc = pendulum.instance(value, tz="UTC").in_timezone("UTC")
        plain = datetime(
            utc.year, utc.month, utc.day,
            utc.hour, utc.minute, utc.second, utc.microsecond,
        )
        # SQLite stores text without offsets
        if dialect.name == "sqlite":
            return plain
        return plain.replace(tzinfo=timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return pendulum.instance(value, tz="UTC").in_timezone("UTC")


class RuleRow(Base):
    __tablename__ = "availability_rules"

    # Surrogate key keeps rules in creation order
    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    day_of_week: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[str] = mapped_column(String(8))
    end_time: Mapped[str] = mapped_column(String(8))
    slot_length_minutes: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(Text, default="")
    available: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())

    def to_domain(self) -> AvailabilityRule:
        return AvailabilityRule(
            id=self.id,
            user_id=self.user_id,
            day_of_week=self.day_of_week,
            start_time=self.start_time,
            end_time=self.end_time,
            slot_length_minutes=self.slot_length_minutes,
            title=self.title or "",
            available=bool(self.available),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class BookingRow(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_user_id_start_at", "user_id", "start_at"),
        Index(
            "uq_bookings_user_id_start_at_confirmed",
            "user_id",
            "start_at",
            unique=True,
            sqlite_where=text("status = 'confirmed'"),
            postgresql_where=text("status = 'confirmed'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255))
    candidate_email: Mapped[str] = mapped_column(String(320))
    start_at: Mapped[datetime] = mapped_column(UTCDateTime())
    end_at: Mapped[datetime] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(String(16), default=BookingStatus.CONFIRMED.value)
    source: Mapped[str] = mapped_column(Text, default="")
    booking_type: Mapped[str] = mapped_column("type", Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    title: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime())

    def to_domain(self) -> Booking:
        return Booking(
            id=self.id,
            user_id=self.user_id,
            candidate_email=self.candidate_email,
            start_at=self.start_at,
            end_at=self.end_at,
            status=BookingStatus(self.status),
            source=self.source or "",
            booking_type=self.booking_type or "",
            description=self.description or "",
            title=self.title or "",
            created_at=self.created_at,
        )


def _use_immediate_transactions(engine: Engine) -> None:
    """Make pysqlite emit ``BEGIN IMMEDIATE`` instead of its lazy implicit BEGIN."""

    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlStorage:
    """Storage over any SQLAlchemy engine (PostgreSQL in production, SQLite locally)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlStorage":
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            _use_immediate_transactions(engine)
        else:
            engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        logger.debug("Created %s engine", engine.dialect.name)
        return cls(engine)

    @classmethod
    def from_config(cls, config) -> "SqlStorage":
        """Build a store from an ``AppConfig``."""
        return cls.from_url(config.database_url, echo=config.echo_sql)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Database schema ensured on %s", self.engine.url.render_as_string(hide_password=True))

    def begin(self) -> "SqlTransaction":
        return SqlTransaction(self._session_factory())

    def dispose(self) -> None:
        self.engine.dispose()


class SqlTransaction(ScopedTransaction):
    """One ``Session`` per transaction, never shared between callers."""

    def __init__(self, session: Session) -> None:
        super().__init__()
        self.session = session
        self.rules = SqlRuleRepository(session)
        self.bookings = SqlBookingRepository(session)

    def _do_commit(self) -> None:
        self.session.commit()

    def _do_rollback(self) -> None:
        self.session.rollback()

    def _close(self) -> None:
        self.session.close()


class SqlRuleRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def insert(self, rule: AvailabilityRule) -> str:
        now = utc_now()
        row = RuleRow(
            id=str(uuid.uuid4()),
            user_id=rule.user_id,
            day_of_week=rule.day_of_week,
            start_time=rule.start_time,
            end_time=rule.end_time,
            slot_length_minutes=rule.slot_length_minutes,
            title=rule.title,
            available=rule.available,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        self._session.flush()
        return row.id

    def _row(self, user_id: str, rule_id: str) -> Optional[RuleRow]:
        stmt = select(RuleRow).where(RuleRow.id == rule_id, RuleRow.user_id == user_id)
        return self._session.scalars(stmt).first()

    def get(self, user_id: str, rule_id: str) -> Optional[AvailabilityRule]:
        row = self._row(user_id, rule_id)
        return row.to_domain() if row is not None else None

    def list(self, user_id: str) -> List[AvailabilityRule]:
        stmt = select(RuleRow).where(RuleRow.user_id == user_id).order_by(RuleRow.pk)
        return [row.to_domain() for row in self._session.scalars(stmt)]

    def update(self, rule: AvailabilityRule) -> Optional[AvailabilityRule]:
        row = self._row(rule.user_id, rule.id)
        if row is None:
            return None
        row.day_of_week = rule.day_of_week
        row.start_time = rule.start_time
        row.end_time = rule.end_time
        row.slot_length_minutes = rule.slot_length_minutes
        row.title = rule.title
        row.available = rule.available
        row.updated_at = utc_now()
        self._session.flush()
        return row.to_domain()


class SqlBookingRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def list(
        self,
        user_id: str,
        start: Optional[DateTime] = None,
        end: Optional[DateTime] = None,
    ) -> List[Booking]:
        stmt = select(BookingRow).where(
            BookingRow.user_id == user_id,
            BookingRow.status != BookingStatus.CANCELLED.value,
        )
        if start is not None and end is not None:
            stmt = stmt.where(BookingRow.start_at >= start, BookingRow.start_at < end)
        stmt = stmt.order_by(BookingRow.start_at)
        return [row.to_domain() for row in self._session.scalars(stmt)]

    def list_confirmed_in_range(
        self,
        user_id: str,
        start: DateTime,
        end: DateTime,
    ) -> List[Booking]:
        stmt = select(BookingRow).where(
            BookingRow.user_id == user_id,
            BookingRow.status == BookingStatus.CONFIRMED.value,
            BookingRow.start_at >= start,
            BookingRow.start_at < end,
        )
        return [row.to_domain() for row in self._session.scalars(stmt)]

    def find_confirmed_at(
        self,
        user_id: str,
        start: DateTime,
        lock: bool = False,
    ) -> Optional[str]:
        stmt = select(BookingRow.id).where(
            BookingRow.user_id == user_id,
            BookingRow.status == BookingStatus.CONFIRMED.value,
            BookingRow.start_at == start,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self._session.scalars(stmt).first()

    def insert(self, booking: Booking) -> Booking:
        row = BookingRow(
            id=str(uuid.uuid4()),
            user_id=booking.user_id,
            candidate_email=booking.candidate_email,
            start_at=booking.start_at,
            end_at=booking.end_at,
            status=BookingStatus.CONFIRMED.value,
            source=booking.source,
            booking_type=booking.booking_type,
            description=booking.description,
            title=booking.title,
            created_at=utc_now(),
        )
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise ConflictError("slot already booked") from exc
        return row.to_domain()

    def get_status(self, booking_id: str) -> Optional[BookingStatus]:
        stmt = select(BookingRow.status).where(BookingRow.id == booking_id)
        status = self._session.scalars(stmt).first()
        return BookingStatus(status) if status is not None else None

    def cancel(self, booking_id: str) -> int:
        stmt = (
            update(BookingRow)
            .where(
                BookingRow.id == booking_id,
                BookingRow.status != BookingStatus.CANCELLED.value,
            )
            .values(status=BookingStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(stmt)
        return result.rowcount
