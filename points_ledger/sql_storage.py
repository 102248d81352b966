import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import (
    DuplicateAwardError,
    InsufficientBalanceError,
    LedgerServiceError,
    NotFoundError,
    TransientError,
)
from .models import AwardRecord, Membership, MembershipRole, Redemption, Reward
from .tables import AwardRow, Base, MembershipRow, RedemptionRow, RewardRow

logger = logging.getLogger(__name__)

_REWARD_FIELDS = ("name", "description", "points_required", "is_active")


def make_engine(database_url: str, pool_timeout: float = 5.0) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": pool_timeout}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_timeout=pool_timeout, pool_pre_ping=True)


class SqlStorage:
    """
    Balance Store and Reward Catalog over a relational database.

    Balance changes are a single conditional UPDATE: the row is only touched
    when ``points + delta >= 0``, and the table's CHECK constraint backs
    that up. Nothing reads a balance and writes it back.

    An engine on ``StaticPool`` (in-memory SQLite) hands every session the
    same DBAPI connection, so one session's commit or rollback would end
    another thread's transaction. Sessions on such an engine run one at a
    time, from first statement to commit or rollback.
    """

    def __init__(self, engine: Engine, create_schema: bool = True, lock_timeout: float = 5.0):
        self.engine = engine
        self.lock_timeout = lock_timeout
        self._connection_lock = Lock() if isinstance(engine.pool, StaticPool) else None
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, pool_timeout: float = 5.0) -> "SqlStorage":
        return cls(make_engine(database_url, pool_timeout), lock_timeout=pool_timeout)

    @contextmanager
    def _exclusive_connection(self) -> Iterator[None]:
        if self._connection_lock is None:
            yield
            return
        if not self._connection_lock.acquire(timeout=self.lock_timeout):
            raise TransientError(f"Timed out after {self.lock_timeout}s waiting for the shared connection")
        try:
            yield
        finally:
            self._connection_lock.release()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._exclusive_connection():
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except (OperationalError, PoolTimeoutError) as e:
                session.rollback()
                logger.warning("Storage call failed, caller may retry: %s", e)
                raise TransientError(str(e)) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @staticmethod
    def _membership_row(session: Session, user_id: UUID, group_id: UUID) -> Optional[MembershipRow]:
        return session.execute(
            select(MembershipRow).where(
                MembershipRow.user_id == user_id,
                MembershipRow.group_id == group_id,
            )
        ).scalar_one_or_none()

    # Memberships / balances

    def add_membership(
        self,
        user_id: UUID,
        group_id: UUID,
        role: MembershipRole = MembershipRole.MEMBER,
        points: int = 0,
    ) -> Membership:
        membership = Membership(
            user_id=user_id, group_id=group_id, role=role,
            joined_at=datetime.now(timezone.utc), points=points,
        )
        with self._session() as session:
            session.add(MembershipRow(
                user_id=user_id, group_id=group_id, role=membership.role.value,
                joined_at=membership.joined_at, points=points,
            ))
            try:
                session.flush()
            except IntegrityError as e:
                raise LedgerServiceError(f"User {user_id} is already a member of group {group_id}") from e
        return membership

    def get_membership(self, user_id: UUID, group_id: UUID) -> Membership:
        with self._session() as session:
            row = self._membership_row(session, user_id, group_id)
            if row is None:
                raise NotFoundError(f"User {user_id} is not a member of group {group_id}")
            return Membership.model_validate(row)

    def get_balance(self, user_id: UUID, group_id: UUID) -> int:
        return self.get_membership(user_id, group_id).points

    def adjust_balance(self, user_id: UUID, group_id: UUID, delta: int) -> int:
        stmt = (
            update(MembershipRow)
            .where(
                MembershipRow.user_id == user_id,
                MembershipRow.group_id == group_id,
                MembershipRow.points + delta >= 0,
            )
            .values(points=MembershipRow.points + delta)
            .returning(MembershipRow.points)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            new_balance = session.execute(stmt).scalar_one_or_none()
            if new_balance is None:
                row = self._membership_row(session, user_id, group_id)
                if row is None:
                    raise NotFoundError(f"User {user_id} is not a member of group {group_id}")
                raise InsufficientBalanceError(row.points, -delta)
        logger.debug("Balance of %s in %s adjusted by %+d to %d", user_id, group_id, delta, new_balance)
        return new_balance

    # Award records

    def claim_award(self, award: AwardRecord) -> AwardRecord:
        with self._session() as session:
            session.add(AwardRow(**award.model_dump()))
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateAwardError(award.user_id, award.challenge_id) from e
        return award

    def release_award(self, award_id: UUID) -> None:
        with self._session() as session:
            session.execute(delete(AwardRow).where(AwardRow.id == award_id))

    def get_award(self, user_id: UUID, challenge_id: UUID) -> Optional[AwardRecord]:
        with self._session() as session:
            row = session.execute(
                select(AwardRow).where(AwardRow.user_id == user_id, AwardRow.challenge_id == challenge_id)
            ).scalar_one_or_none()
            return AwardRecord.model_validate(row) if row else None

    def list_awards(self, user_id: UUID, group_id: Optional[UUID] = None) -> list[AwardRecord]:
        query = select(AwardRow).where(AwardRow.user_id == user_id)
        if group_id is not None:
            query = query.where(AwardRow.group_id == group_id)
        with self._session() as session:
            rows = session.execute(query.order_by(AwardRow.seq)).scalars().all()
            return [AwardRecord.model_validate(r) for r in rows]

    # Reward catalog

    def add_reward(
        self,
        group_id: UUID,
        name: str,
        points_required: int,
        description: Optional[str] = None,
        created_by: Optional[UUID] = None,
        is_active: bool = True,
    ) -> Reward:
        now = datetime.now(timezone.utc)
        reward = Reward(
            id=uuid4(), group_id=group_id, name=name, description=description,
            points_required=points_required, is_active=is_active,
            created_by=created_by, created_at=now, updated_at=now,
        )
        with self._session() as session:
            session.add(RewardRow(**reward.model_dump()))
        return reward

    def get_reward(self, reward_id: UUID) -> Reward:
        with self._session() as session:
            row = session.get(RewardRow, reward_id)
            if row is None:
                raise NotFoundError(f"Reward {reward_id} not found")
            return Reward.model_validate(row)

    def list_rewards(self, group_id: UUID, active_only: bool = True) -> list[Reward]:
        query = select(RewardRow).where(RewardRow.group_id == group_id)
        if active_only:
            query = query.where(RewardRow.is_active.is_(True))
        with self._session() as session:
            rows = session.execute(query.order_by(RewardRow.created_at.desc())).scalars().all()
            return [Reward.model_validate(r) for r in rows]

    def update_reward(self, reward_id: UUID, **changes) -> Reward:
        unknown = set(changes) - set(_REWARD_FIELDS)
        if unknown:
            raise LedgerServiceError(f"Cannot update reward fields: {', '.join(sorted(unknown))}")
        with self._session() as session:
            row = session.get(RewardRow, reward_id)
            if row is None:
                raise NotFoundError(f"Reward {reward_id} not found")
            updated = Reward.model_validate({
                **Reward.model_validate(row).model_dump(), **changes,
                "updated_at": datetime.now(timezone.utc),
            })
            for key in (*changes, "updated_at"):
                setattr(row, key, getattr(updated, key))
        return updated

    # Redemptions

    def insert_redemption(self, redemption: Redemption) -> Redemption:
        with self._session() as session:
            session.add(RedemptionRow(**redemption.model_dump()))
        return redemption

    def list_redemptions(
        self,
        user_id: Optional[UUID] = None,
        group_id: Optional[UUID] = None,
        reward_id: Optional[UUID] = None,
    ) -> list[Redemption]:
        query = select(RedemptionRow)
        if user_id is not None:
            query = query.where(RedemptionRow.user_id == user_id)
        if group_id is not None:
            query = query.where(RedemptionRow.group_id == group_id)
        if reward_id is not None:
            query = query.where(RedemptionRow.reward_id == reward_id)
        with self._session() as session:
            rows = session.execute(query.order_by(RedemptionRow.seq.desc())).scalars().all()
            return [Redemption.model_validate(r) for r in rows]
