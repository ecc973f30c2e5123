from typing import List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import func

from .kv_store import KeyValueStore, LedgerTransaction, StoreError, TransactionLedger

Base = declarative_base()

DEFAULT_DSN = "sqlite+aiosqlite:///./treasury.db"


class KVEntry(Base):
    __tablename__ = "kv_entries"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class LedgerEntry(Base):
    __tablename__ = "ledger_transactions"
    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=func.now())


async def create_engine_and_sessionmaker(dsn=None):
    dsn = dsn or DEFAULT_DSN
    engine = create_async_engine(dsn, echo=False, future=True)
    async_session = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, async_session


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlKeyValueStore(KeyValueStore):
    def __init__(self, sessionmaker):
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(select(KVEntry.value).where(KVEntry.key == key))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(KVEntry, key)
                if row is None:
                    session.add(KVEntry(key=key, value=value))
                else:
                    row.value = value
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        try:
            async with self._sessionmaker() as session:
                if expected is None:
                    session.add(KVEntry(key=key, value=value))
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        return False
                    return True
                result = await session.execute(
                    update(KVEntry)
                    .where(KVEntry.key == key, KVEntry.value == expected)
                    .values(value=value)
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e


class SqlTransactionLedger(TransactionLedger):
    def __init__(self, sessionmaker):
        self._sessionmaker = sessionmaker

    async def insert_transaction(self, txn: LedgerTransaction) -> str:
        try:
            async with self._sessionmaker() as session:
                session.add(
                    LedgerEntry(
                        id=txn.id,
                        type=txn.type,
                        amount_cents=txn.amount_cents,
                        description=txn.description,
                        timestamp=txn.timestamp,
                    )
                )
                await session.commit()
                return txn.id
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def recent_transactions(self, limit: int = 50) -> List[LedgerTransaction]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(LedgerEntry).order_by(LedgerEntry.timestamp.desc()).limit(max(1, limit))
            )
            return [
                LedgerTransaction(
                    id=row.id,
                    type=row.type,
                    amount_cents=row.amount_cents,
                    description=row.description,
                    timestamp=row.timestamp,
                )
                for row in result.scalars().all()
            ]
