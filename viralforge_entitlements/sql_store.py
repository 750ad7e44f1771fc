"""
SQLAlchemy-backed usage store.

Tables:
- usage_accounts: one row per user (plan, comped_until, usage_reset_at)
- usage_counters: one row per (user, feature) with used and bonus counts

Increments are a single UPDATE ... SET used = used + n so concurrent writers
never lose counts; a first increment that loses the row-insert race is retried
as an UPDATE. Blocking session work runs in a worker thread.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import StorePersistenceError, StoreReadError
from .models import FeatureKey, UsageRecord, normalize_key
from .resolver import utcnow
from .store import DEFAULT_RESET_INTERVAL_DAYS, UsageStore, reset_interval

logger = logging.getLogger(__name__)

INCREMENT_ATTEMPTS = 2

Base = declarative_base()


class UsageAccount(Base):
    """Per-user plan state for the current billing period."""

    __tablename__ = "usage_accounts"

    user_id = Column(String(255), primary_key=True)
    plan = Column(String(64), nullable=False, default="free")
    usage_reset_at = Column(DateTime(timezone=True), nullable=False)
    comped_until = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UsageAccount(user_id={self.user_id}, plan={self.plan})>"


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    user_id = Column(
        String(255),
        ForeignKey("usage_accounts.user_id", ondelete="CASCADE"),
        primary_key=True,
    )
    feature = Column(String(64), primary_key=True)
    used = Column(Integer, nullable=False, default=0)
    bonus = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<UsageCounter(user_id={self.user_id}, feature={self.feature}, used={self.used})>"


class SqlUsageStore(UsageStore):
    """Usage counters in a relational database."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        reset_interval_days: int = DEFAULT_RESET_INTERVAL_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._reset_interval = reset_interval(reset_interval_days)
        self._clock = clock or utcnow

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "SqlUsageStore":
        engine = create_engine(database_url, pool_pre_ping=True)
        Base.metadata.create_all(engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        return cls(factory, **kwargs)

    # -- sync helpers (run in a worker thread) --

    def _fetch(self, user_id: str) -> Optional[UsageRecord]:
        with self._session_factory() as session:
            account = session.get(UsageAccount, user_id)
            if account is None:
                return None
            counters = session.execute(
                select(UsageCounter).where(UsageCounter.user_id == user_id)
            ).scalars().all()
            return UsageRecord(
                user_id=account.user_id,
                plan=account.plan,
                usage_reset_at=account.usage_reset_at,
                comped_until=account.comped_until,
                used={c.feature: c.used for c in counters},
                bonus={c.feature: c.bonus for c in counters},
            )

    def _ensure_account(self, session: Session, user_id: str) -> None:
        if session.get(UsageAccount, user_id) is None:
            session.add(
                UsageAccount(
                    user_id=user_id,
                    plan="free",
                    usage_reset_at=self._clock() + self._reset_interval,
                )
            )
            session.flush()

    def _put(self, record: UsageRecord) -> None:
        with self._session_factory() as session:
            try:
                account = session.get(UsageAccount, record.user_id)
                if account is None:
                    account = UsageAccount(user_id=record.user_id)
                    session.add(account)
                account.plan = record.plan
                account.usage_reset_at = record.usage_reset_at
                account.comped_until = record.comped_until
                session.flush()

                session.query(UsageCounter).filter(UsageCounter.user_id == record.user_id).delete()
                for feature in sorted(set(record.used) | set(record.bonus)):
                    session.add(
                        UsageCounter(
                            user_id=record.user_id,
                            feature=feature,
                            used=record.used_for(feature),
                            bonus=record.bonus_for(feature),
                        )
                    )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorePersistenceError(record.user_id, "record write failed", cause=e) from e

    def _apply_increment(self, session: Session, user_id: str, feature: str, amount: int) -> None:
        self._ensure_account(session, user_id)
        result = session.execute(
            update(UsageCounter)
            .where(UsageCounter.user_id == user_id, UsageCounter.feature == feature)
            .values(used=UsageCounter.used + amount)
        )
        if result.rowcount == 0:
            session.add(UsageCounter(user_id=user_id, feature=feature, used=amount, bonus=0))
        session.commit()

    def _increment(self, user_id: str, feature: str, amount: int) -> None:
        # A concurrent first increment can insert the account or counter row
        # between our read and our insert; the retry then takes the UPDATE path.
        for attempt in range(INCREMENT_ATTEMPTS):
            with self._session_factory() as session:
                try:
                    self._apply_increment(session, user_id, feature, amount)
                    return
                except IntegrityError as e:
                    session.rollback()
                    if attempt + 1 == INCREMENT_ATTEMPTS:
                        raise StorePersistenceError(
                            user_id, f"increment of {feature} failed", cause=e
                        ) from e
                    logger.info(
                        "Usage row created concurrently, retrying increment",
                        extra={"user_id": user_id, "feature": feature},
                    )
                except SQLAlchemyError as e:
                    session.rollback()
                    raise StorePersistenceError(user_id, f"increment of {feature} failed", cause=e) from e

    def _reset(self, user_id: str, next_reset_at: datetime) -> None:
        with self._session_factory() as session:
            try:
                account = session.get(UsageAccount, user_id)
                if account is None:
                    return
                session.execute(
                    update(UsageCounter).where(UsageCounter.user_id == user_id).values(used=0)
                )
                account.usage_reset_at = next_reset_at
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorePersistenceError(user_id, "usage reset failed", cause=e) from e

    # -- UsageStore --

    async def put(self, record: UsageRecord) -> None:
        await asyncio.to_thread(self._put, record)

    async def fetch_usage_record(self, user_id: str) -> Optional[UsageRecord]:
        try:
            return await asyncio.to_thread(self._fetch, user_id)
        except SQLAlchemyError as e:
            logger.warning("Usage store read failed", extra={"user_id": user_id, "error": str(e)})
            raise StoreReadError(user_id, "usage record read failed", cause=e) from e

    async def increment_usage(self, user_id: str, feature: FeatureKey, amount: int = 1) -> None:
        await asyncio.to_thread(self._increment, user_id, normalize_key(feature), amount)

    async def reset_usage(self, user_id: str, next_reset_at: datetime) -> None:
        await asyncio.to_thread(self._reset, user_id, next_reset_at)
