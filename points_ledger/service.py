import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID, uuid4

from .errors import (
    DuplicateAwardError,
    InsufficientBalanceError,
    LedgerServiceError,
    MembershipRequiredError,
    NotFoundError,
    PersistenceError,
    RewardInactiveError,
    TransientError,
)
from .models import (
    AvailableReward,
    AwardPointsRequest,
    AwardRecord,
    AwardResponse,
    GroupStatistics,
    LifetimePoints,
    MembershipBalance,
    RedeemCheck,
    RedeemRequest,
    Redemption,
    RedemptionHistoryResponse,
    SubmissionApproval,
)
from .sql_storage import SqlStorage
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

Storage = Union[InMemoryStorage, SqlStorage]


class AwardEngine:
    """Credits challenge points, at most once per (user, challenge)."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def award_points(
        self,
        user_id: UUID,
        group_id: UUID,
        amount: int,
        challenge_id: UUID,
        submission_id: Optional[UUID] = None,
    ) -> AwardResponse:
        if amount <= 0:
            raise LedgerServiceError(f"Award amount must be positive, got {amount}")

        try:
            self.storage.get_membership(user_id, group_id)
        except NotFoundError as e:
            raise MembershipRequiredError(
                f"User {user_id} must be a member of group {group_id} to earn points"
            ) from e

        award = AwardRecord(
            id=uuid4(),
            user_id=user_id,
            group_id=group_id,
            challenge_id=challenge_id,
            submission_id=submission_id,
            points=amount,
            awarded_at=datetime.now(timezone.utc),
        )

        # The claim is taken before the credit so that a second approval
        # racing this one cannot also pass the dedup check.
        try:
            self.storage.claim_award(award)
        except DuplicateAwardError:
            return self._duplicate_response(user_id, group_id, challenge_id)

        try:
            balance_after = self.storage.adjust_balance(user_id, group_id, amount)
        except NotFoundError as e:
            self._release_claim(award, e)
            raise MembershipRequiredError(
                f"User {user_id} must be a member of group {group_id} to earn points"
            ) from e
        except Exception as e:
            self._release_claim(award, e)
            raise

        logger.info(
            "Awarded %d points to user %s in group %s for challenge %s (balance %d)",
            amount, user_id, group_id, challenge_id, balance_after,
        )
        return AwardResponse(
            award=award,
            balance_after=balance_after,
            message="Points awarded successfully",
        )

    def _duplicate_response(self, user_id: UUID, group_id: UUID, challenge_id: UUID) -> AwardResponse:
        existing = self.storage.get_award(user_id, challenge_id)
        if existing is None:
            raise TransientError(f"Award for challenge {challenge_id} changed while being read, retry")
        balance = self.storage.get_balance(existing.user_id, existing.group_id)
        logger.info(
            "Duplicate award ignored: user %s already received %d points for challenge %s",
            user_id, existing.points, challenge_id,
        )
        return AwardResponse(
            award=existing,
            balance_after=balance,
            duplicate=True,
            message=(
                "Points already awarded for this challenge (idempotent return); "
                "balance is as of this request and may not yet include an award still being credited"
            ),
        )

    def _release_claim(self, award: AwardRecord, cause: BaseException) -> None:
        try:
            self.storage.release_award(award.id)
        except Exception as release_error:
            logger.critical(
                "Award %s for challenge %s was claimed but never credited and could not be released: %s",
                award.id, award.challenge_id, release_error,
            )
            raise PersistenceError(
                f"Award for challenge {award.challenge_id} is recorded without a matching credit",
                restored=False,
                cause=cause,
            ) from release_error
        logger.warning("Released award claim %s after failed credit: %s", award.id, cause)


class RedemptionEngine:
    """Spends points on rewards. The debit itself is the atomic guard."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def redeem(self, user_id: UUID, reward_id: UUID) -> Redemption:
        reward = self.storage.get_reward(reward_id)
        if not reward.is_active:
            raise RewardInactiveError(f"Reward {reward.name!r} is no longer available")

        # Captured once; later price edits do not affect this redemption.
        price = reward.points_required

        try:
            current_balance = self.storage.get_balance(user_id, reward.group_id)
        except NotFoundError as e:
            raise MembershipRequiredError(
                f"User {user_id} is not a member of group {reward.group_id}"
            ) from e

        if current_balance < price:
            logger.warning(
                "Redemption of %s by %s rejected: balance %d, required %d",
                reward_id, user_id, current_balance, price,
            )
            raise InsufficientBalanceError(current_balance, price)

        try:
            balance_after = self.storage.adjust_balance(user_id, reward.group_id, -price)
        except InsufficientBalanceError as e:
            logger.warning(
                "Redemption of %s by %s lost a race for the balance: balance %d, required %d",
                reward_id, user_id, e.current_balance, e.required_points,
            )
            raise

        redemption = Redemption(
            id=uuid4(),
            user_id=user_id,
            reward_id=reward.id,
            group_id=reward.group_id,
            points_spent=price,
            redeemed_at=datetime.now(timezone.utc),
        )
        try:
            self.storage.insert_redemption(redemption)
        except Exception as e:
            self._refund(redemption, e)

        logger.info(
            "User %s redeemed %r for %d points (balance %d)",
            user_id, reward.name, price, balance_after,
        )
        return redemption

    def _refund(self, redemption: Redemption, cause: BaseException) -> None:
        try:
            self.storage.adjust_balance(redemption.user_id, redemption.group_id, redemption.points_spent)
        except Exception as refund_error:
            logger.critical(
                "Redemption %s was debited %d points but neither recorded nor refunded for user %s in group %s",
                redemption.id, redemption.points_spent, redemption.user_id, redemption.group_id,
            )
            raise PersistenceError(
                "Failed to record redemption and failed to refund points; manual reconciliation required",
                restored=False,
                cause=cause,
            ) from refund_error
        logger.error(
            "Failed to record redemption %s, refunded %d points: %s",
            redemption.id, redemption.points_spent, cause,
        )
        raise PersistenceError(
            "Failed to record redemption; points were refunded",
            restored=True,
            cause=cause,
        ) from cause

    def can_redeem(self, user_id: UUID, reward_id: UUID) -> RedeemCheck:
        reward = self.storage.get_reward(reward_id)
        try:
            user_points = self.storage.get_balance(user_id, reward.group_id)
        except NotFoundError as e:
            raise MembershipRequiredError(
                f"User {user_id} is not a member of group {reward.group_id}"
            ) from e
        return RedeemCheck(
            reward_id=reward.id,
            can_redeem=reward.is_active and user_points >= reward.points_required,
            is_active=reward.is_active,
            user_points=user_points,
            required_points=reward.points_required,
        )


class LedgerQueryFacade:
    """Read-only views over balances, rewards, redemptions and awards."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def get_balance(self, user_id: UUID, group_id: UUID) -> MembershipBalance:
        return MembershipBalance(
            user_id=user_id,
            group_id=group_id,
            points=self.storage.get_balance(user_id, group_id),
        )

    def get_available_rewards(self, user_id: UUID, group_id: UUID) -> list[AvailableReward]:
        user_points = self.storage.get_balance(user_id, group_id)
        return [
            AvailableReward(
                reward=reward,
                can_afford=user_points >= reward.points_required,
                user_points=user_points,
            )
            for reward in self.storage.list_rewards(group_id, active_only=True)
        ]

    def get_redemption_history(
        self,
        user_id: UUID,
        group_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RedemptionHistoryResponse:
        if limit < 1 or offset < 0:
            raise LedgerServiceError(f"Invalid page: limit={limit}, offset={offset}")
        redemptions = self.storage.list_redemptions(user_id=user_id, group_id=group_id)
        return RedemptionHistoryResponse(
            user_id=user_id,
            group_id=group_id,
            redemptions=redemptions[offset:offset + limit],
            total_count=len(redemptions),
        )

    def get_group_statistics(self, group_id: UUID) -> GroupStatistics:
        redemptions = self.storage.list_redemptions(group_id=group_id)
        names = {r.id: r.name for r in self.storage.list_rewards(group_id, active_only=False)}

        by_reward: dict[str, int] = {}
        for redemption in redemptions:
            name = names.get(redemption.reward_id, str(redemption.reward_id))
            by_reward[name] = by_reward.get(name, 0) + 1

        return GroupStatistics(
            group_id=group_id,
            total_redemptions=len(redemptions),
            total_points_spent=sum(r.points_spent for r in redemptions),
            unique_redeemers=len({r.user_id for r in redemptions}),
            redemptions_by_reward=by_reward,
        )

    def get_reward_redemptions(self, reward_id: UUID) -> list[Redemption]:
        reward = self.storage.get_reward(reward_id)
        return self.storage.list_redemptions(reward_id=reward.id)

    def get_lifetime_points(self, user_id: UUID, group_id: Optional[UUID] = None) -> LifetimePoints:
        # Sum of everything ever awarded; spending does not reduce it.
        awards = self.storage.list_awards(user_id, group_id)
        return LifetimePoints(
            user_id=user_id,
            group_id=group_id,
            total_points=sum(a.points for a in awards),
            completed_challenges=len(awards),
        )


class LedgerService:
    def __init__(self, storage: Optional[Storage] = None):
        self.storage = storage or InMemoryStorage()
        self.awards = AwardEngine(self.storage)
        self.redemptions = RedemptionEngine(self.storage)
        self.queries = LedgerQueryFacade(self.storage)

    def award_points(self, request: AwardPointsRequest) -> AwardResponse:
        return self.awards.award_points(
            request.user_id,
            request.group_id,
            request.amount,
            request.challenge_id,
            request.submission_id,
        )

    def approve_submission(self, approval: SubmissionApproval) -> AwardResponse:
        logger.info(
            "Submission %s for challenge %s approved for user %s",
            approval.submission_id, approval.challenge_id, approval.user_id,
        )
        return self.awards.award_points(
            approval.user_id,
            approval.group_id,
            approval.points,
            approval.challenge_id,
            approval.submission_id,
        )

    def redeem(self, request: RedeemRequest) -> Redemption:
        return self.redemptions.redeem(request.user_id, request.reward_id)

    def can_redeem(self, user_id: UUID, reward_id: UUID) -> RedeemCheck:
        return self.redemptions.can_redeem(user_id, reward_id)

    def get_balance(self, user_id: UUID, group_id: UUID) -> MembershipBalance:
        return self.queries.get_balance(user_id, group_id)

    def get_available_rewards(self, user_id: UUID, group_id: UUID) -> list[AvailableReward]:
        return self.queries.get_available_rewards(user_id, group_id)

    def get_redemption_history(
        self,
        user_id: UUID,
        group_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RedemptionHistoryResponse:
        return self.queries.get_redemption_history(user_id, group_id, limit, offset)

    def get_group_statistics(self, group_id: UUID) -> GroupStatistics:
        return self.queries.get_group_statistics(group_id)

    def get_reward_redemptions(self, reward_id: UUID) -> list[Redemption]:
        return self.queries.get_reward_redemptions(reward_id)

    def get_lifetime_points(self, user_id: UUID, group_id: Optional[UUID] = None) -> LifetimePoints:
        return self.queries.get_lifetime_points(user_id, group_id)
