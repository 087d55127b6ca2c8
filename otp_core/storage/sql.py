"""
SQLAlchemy OTP Store
====================
Durable OTP store on any async SQLAlchemy engine (PostgreSQL via asyncpg,
SQLite via aiosqlite, ...).

Every operation runs in its own transaction. Mutations are single set-based
statements, so concurrent writers on the same identity serialize in the
database instead of in this process.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from sqlalchemy import Boolean, DateTime, Index, Integer, String, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import structlog

from ..clock import Clock, SystemClock, ensure_utc
from ..exceptions import StorageUnavailableError
from ..masking import mask_identity
from ..models import OtpRecord

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for otp_core SQLAlchemy models."""
    pass


class OtpRecordRow(Base):
    """Table row for one OTP record. Holds the hash and salt, never the code."""
    __tablename__ = "otp_records"
    __table_args__ = (
        Index("ix_otp_records_identity_used_expires_at", "identity", "used", "expires_at"),
    )
    
    # Surrogate key; also breaks created_at ties in insertion order
    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    identity: Mapped[str] = mapped_column(String(256), index=True, nullable=False)
    code_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    salt: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


def _to_record(row: OtpRecordRow) -> OtpRecord:
    return OtpRecord(
        id=row.id,
        identity=row.identity,
        code_hash=row.code_hash,
        salt=row.salt,
        created_at=ensure_utc(row.created_at),
        expires_at=ensure_utc(row.expires_at),
        max_attempts=row.max_attempts,
        attempt_count=row.attempt_count,
        used=row.used,
        verified_at=ensure_utc(row.verified_at) if row.verified_at else None,
        version=row.version,
    )


class SQLAlchemyOTPStore:
    """
    Database-backed OTP store.
    
    Example:
        store = SQLAlchemyOTPStore.from_url("postgresql+asyncpg://...")
        await store.create_schema()  # tests and local runs; use migrations in production
        engine = OTPEngine(store)
    """
    
    backend = "sql"
    
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[Clock] = None,
        retention_grace_seconds: int = 86400,
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory
        self._engine = engine
        self.clock = clock or SystemClock()
        self.retention_grace = timedelta(seconds=retention_grace_seconds)
    
    @classmethod
    def from_url(
        cls,
        database_url: str,
        clock: Optional[Clock] = None,
        retention_grace_seconds: int = 86400,
        **engine_kwargs,
    ) -> "SQLAlchemyOTPStore":
        """
        Create a store with its own engine and session factory.
        
        Args:
            database_url: Async connection string (postgresql+asyncpg://..., sqlite+aiosqlite://...)
            clock: Time source for the activity predicate
            retention_grace_seconds: How long expired records are kept before purge
            **engine_kwargs: Passed to create_async_engine (pool_size, echo, ...)
        """
        engine = create_async_engine(database_url, **engine_kwargs)
        session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return cls(
            session_factory,
            clock=clock,
            retention_grace_seconds=retention_grace_seconds,
            engine=engine,
        )
    
    async def create_schema(self) -> None:
        """Create the otp_records table if it does not exist."""
        if self._engine is None:
            raise RuntimeError("Store was built from a session factory; create the schema with your migrations.")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    
    async def close(self) -> None:
        """Dispose the engine created by from_url()."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
    
    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Session with a transaction that commits on success and rolls back on error."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("otp_store_failed", backend=self.backend, operation=operation, error=type(e).__name__)
            raise StorageUnavailableError(str(e), backend=self.backend, operation=operation) from e
    
    async def save(self, record: OtpRecord) -> None:
        async with self._transaction("save") as session:
            session.add(OtpRecordRow(
                id=record.id,
                identity=record.identity,
                code_hash=record.code_hash,
                salt=record.salt,
                created_at=record.created_at,
                expires_at=record.expires_at,
                max_attempts=record.max_attempts,
                attempt_count=record.attempt_count,
                used=record.used,
                verified_at=record.verified_at,
                version=record.version,
            ))
        
        logger.info(
            "otp_record_saved",
            identity=mask_identity(record.identity),
            record_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
    
    async def get_active(self, identity: str) -> Optional[OtpRecord]:
        now = self.clock.now()
        stmt = (
            select(OtpRecordRow)
            .where(OtpRecordRow.identity == identity)
            .where(OtpRecordRow.used.is_(False))
            .where(OtpRecordRow.attempt_count < OtpRecordRow.max_attempts)
            .where(OtpRecordRow.expires_at > now)
            .order_by(OtpRecordRow.created_at.desc(), OtpRecordRow.pk.desc())
            .limit(1)
        )
        async with self._transaction("get_active") as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            record = _to_record(row) if row is not None else None
        
        # The database clock and column types are not trusted for the predicate
        if record is None or not record.is_active(now):
            return None
        return record
    
    async def get_latest_inactive(self, identity: str) -> Optional[OtpRecord]:
        now = self.clock.now()
        stmt = (
            select(OtpRecordRow)
            .where(OtpRecordRow.identity == identity)
            .where(or_(
                OtpRecordRow.used.is_(True),
                OtpRecordRow.attempt_count >= OtpRecordRow.max_attempts,
                OtpRecordRow.expires_at <= now,
            ))
            .order_by(OtpRecordRow.created_at.desc(), OtpRecordRow.pk.desc())
            .limit(1)
        )
        async with self._transaction("get_latest_inactive") as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_record(row) if row is not None else None
    
    async def update(self, record: OtpRecord) -> bool:
        stmt = (
            update(OtpRecordRow)
            .where(OtpRecordRow.id == record.id)
            .where(OtpRecordRow.version == record.version)
            .values(
                attempt_count=record.attempt_count,
                used=record.used,
                verified_at=record.verified_at,
                version=OtpRecordRow.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("update") as session:
            result = await session.execute(stmt)
        
        if result.rowcount != 1:
            logger.warning("otp_record_update_conflict", backend=self.backend, record_id=record.id)
            return False
        record.version += 1
        return True
    
    async def invalidate_all(self, identity: str) -> int:
        stmt = (
            update(OtpRecordRow)
            .where(OtpRecordRow.identity == identity)
            .where(OtpRecordRow.used.is_(False))
            .values(used=True, version=OtpRecordRow.version + 1)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("invalidate_all") as session:
            result = await session.execute(stmt)
        
        count = result.rowcount or 0
        logger.info("otp_records_invalidated", identity=mask_identity(identity), count=count)
        return count
    
    async def purge_expired(self) -> int:
        cutoff = self.clock.now() - self.retention_grace
        stmt = (
            delete(OtpRecordRow)
            .where(OtpRecordRow.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("purge_expired") as session:
            result = await session.execute(stmt)
        
        count = result.rowcount or 0
        if count > 0:
            logger.info("otp_records_purged", backend=self.backend, count=count)
        return count
