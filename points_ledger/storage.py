import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Iterator, Optional
from uuid import UUID, uuid4

from .errors import (
    DuplicateAwardError,
    InsufficientBalanceError,
    LedgerServiceError,
    NotFoundError,
    TransientError,
)
from .models import AwardRecord, Membership, MembershipRole, Redemption, Reward

logger = logging.getLogger(__name__)

DEMO_GROUP_ID = UUID("77777777-7777-7777-7777-777777777777")
DEMO_ADMIN_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_MEMBER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")

_REWARD_FIELDS = ("name", "description", "points_required", "is_active")


class InMemoryStorage:
    """
    Process-local Balance Store and Reward Catalog.

    Every mutation runs under a single lock, so ``adjust_balance`` is a
    conditional update: the non-negativity check and the write happen in the
    same critical section and no caller ever writes back a balance it read
    earlier.
    """

    def __init__(self, lock_timeout: float = 5.0, seed: bool = False):
        self.lock_timeout = lock_timeout
        self._lock = Lock()
        self.memberships: dict[tuple[UUID, UUID], dict] = {}
        self.rewards: dict[UUID, dict] = {}
        self.redemptions: list[dict] = []
        self.awards: dict[UUID, dict] = {}
        self.award_index: dict[tuple[UUID, UUID], UUID] = {}
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.add_membership(DEMO_ADMIN_ID, DEMO_GROUP_ID, role=MembershipRole.ADMIN, points=150)
        self.add_membership(DEMO_MEMBER_ID, DEMO_GROUP_ID, points=40)
        self.add_reward(
            DEMO_GROUP_ID, "Pick the next movie", 60,
            description="Winner chooses what the group watches", created_by=DEMO_ADMIN_ID,
        )
        self.add_reward(
            DEMO_GROUP_ID, "Skip a chore", 100, created_by=DEMO_ADMIN_ID,
        )

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise TransientError(f"Timed out after {self.lock_timeout}s waiting for the ledger lock")
        try:
            yield
        finally:
            self._lock.release()

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
        with self._locked():
            if (user_id, group_id) in self.memberships:
                raise LedgerServiceError(f"User {user_id} is already a member of group {group_id}")
            self.memberships[(user_id, group_id)] = membership.model_dump()
        return membership

    def get_membership(self, user_id: UUID, group_id: UUID) -> Membership:
        with self._locked():
            data = self.memberships.get((user_id, group_id))
            if not data:
                raise NotFoundError(f"User {user_id} is not a member of group {group_id}")
            return Membership(**data)

    def get_balance(self, user_id: UUID, group_id: UUID) -> int:
        return self.get_membership(user_id, group_id).points

    def adjust_balance(self, user_id: UUID, group_id: UUID, delta: int) -> int:
        with self._locked():
            data = self.memberships.get((user_id, group_id))
            if not data:
                raise NotFoundError(f"User {user_id} is not a member of group {group_id}")
            new_balance = data["points"] + delta
            if new_balance < 0:
                raise InsufficientBalanceError(data["points"], -delta)
            data["points"] = new_balance
        logger.debug("Balance of %s in %s adjusted by %+d to %d", user_id, group_id, delta, new_balance)
        return new_balance

    # Award records

    def claim_award(self, award: AwardRecord) -> AwardRecord:
        key = (award.user_id, award.challenge_id)
        with self._locked():
            if key in self.award_index:
                raise DuplicateAwardError(award.user_id, award.challenge_id)
            self.awards[award.id] = award.model_dump()
            self.award_index[key] = award.id
        return award

    def release_award(self, award_id: UUID) -> None:
        with self._locked():
            data = self.awards.pop(award_id, None)
            if data:
                self.award_index.pop((data["user_id"], data["challenge_id"]), None)

    def get_award(self, user_id: UUID, challenge_id: UUID) -> Optional[AwardRecord]:
        with self._locked():
            award_id = self.award_index.get((user_id, challenge_id))
            if award_id:
                return AwardRecord(**self.awards[award_id])
        return None

    def list_awards(self, user_id: UUID, group_id: Optional[UUID] = None) -> list[AwardRecord]:
        with self._locked():
            return [
                AwardRecord(**a) for a in self.awards.values()
                if a["user_id"] == user_id and (group_id is None or a["group_id"] == group_id)
            ]

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
        with self._locked():
            self.rewards[reward.id] = reward.model_dump()
        return reward

    def get_reward(self, reward_id: UUID) -> Reward:
        with self._locked():
            data = self.rewards.get(reward_id)
            if not data:
                raise NotFoundError(f"Reward {reward_id} not found")
            return Reward(**data)

    def list_rewards(self, group_id: UUID, active_only: bool = True) -> list[Reward]:
        with self._locked():
            rewards = [
                Reward(**r) for r in reversed(list(self.rewards.values()))
                if r["group_id"] == group_id and (r["is_active"] or not active_only)
            ]
        return rewards

    def update_reward(self, reward_id: UUID, **changes) -> Reward:
        unknown = set(changes) - set(_REWARD_FIELDS)
        if unknown:
            raise LedgerServiceError(f"Cannot update reward fields: {', '.join(sorted(unknown))}")
        with self._locked():
            data = self.rewards.get(reward_id)
            if not data:
                raise NotFoundError(f"Reward {reward_id} not found")
            updated = Reward(**{**data, **changes, "updated_at": datetime.now(timezone.utc)})
            self.rewards[reward_id] = updated.model_dump()
        return updated

    # Redemptions

    def insert_redemption(self, redemption: Redemption) -> Redemption:
        with self._locked():
            self.redemptions.append(redemption.model_dump())
        return redemption

    def list_redemptions(
        self,
        user_id: Optional[UUID] = None,
        group_id: Optional[UUID] = None,
        reward_id: Optional[UUID] = None,
    ) -> list[Redemption]:
        with self._locked():
            rows = list(self.redemptions)
        return [
            Redemption(**r) for r in reversed(rows)
            if (user_id is None or r["user_id"] == user_id)
            and (group_id is None or r["group_id"] == group_id)
            and (reward_id is None or r["reward_id"] == reward_id)
        ]
