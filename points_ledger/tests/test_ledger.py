"""
Unit Tests for the Points Ledger

Tests cover:
1. Award flow and idempotency
2. Redemption flow
3. Compensation when a redemption cannot be recorded
4. Query views
"""

import pytest
from uuid import UUID, uuid4

from points_ledger.errors import (
    InsufficientBalanceError,
    LedgerServiceError,
    MembershipRequiredError,
    NotFoundError,
    PersistenceError,
    RewardInactiveError,
)
from points_ledger.models import (
    AwardPointsRequest,
    MembershipRole,
    RedeemRequest,
    SubmissionApproval,
)
from points_ledger.service import LedgerService
from points_ledger.storage import InMemoryStorage


# Test constants
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
GROUP_ID = UUID("77777777-7777-7777-7777-777777777777")
OTHER_GROUP_ID = UUID("88888888-8888-8888-8888-888888888888")
CHALLENGE_ID = UUID("33333333-3333-3333-3333-333333333333")


def make_service(points: int = 0) -> LedgerService:
    storage = InMemoryStorage()
    storage.add_membership(USER_ID, GROUP_ID, points=points)
    return LedgerService(storage)


class TestAwardFlow:
    """Tests for crediting challenge points."""

    def test_award_points_success(self):
        """Test a fresh award credits the balance."""
        service = make_service(points=10)

        response = service.award_points(AwardPointsRequest(
            user_id=USER_ID,
            group_id=GROUP_ID,
            challenge_id=CHALLENGE_ID,
            amount=25,
        ))

        assert response.duplicate is False
        assert response.balance_after == 35
        assert response.award.challenge_id == CHALLENGE_ID
        assert service.get_balance(USER_ID, GROUP_ID).points == 35

    def test_approved_twice_awards_once(self):
        """Test approving the same challenge twice credits exactly once."""
        service = make_service()
        approval = SubmissionApproval(
            submission_id=uuid4(),
            challenge_id=CHALLENGE_ID,
            user_id=USER_ID,
            group_id=GROUP_ID,
            points=25,
        )

        first = service.approve_submission(approval)
        second = service.approve_submission(approval)

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.award.id == first.award.id
        assert "already awarded" in second.message.lower()
        assert service.get_balance(USER_ID, GROUP_ID).points == 25

    def test_duplicate_while_first_credit_in_flight(self):
        """Test a duplicate arriving mid-credit is a no-op that reports the pre-credit balance."""
        approval = SubmissionApproval(
            submission_id=uuid4(),
            challenge_id=CHALLENGE_ID,
            user_id=USER_ID,
            group_id=GROUP_ID,
            points=25,
        )
        nested = []

        class InterleavingStorage(InMemoryStorage):
            def adjust_balance(self, user_id, group_id, delta):
                if not nested:
                    nested.append(service.approve_submission(approval))
                return super().adjust_balance(user_id, group_id, delta)

        storage = InterleavingStorage()
        storage.add_membership(USER_ID, GROUP_ID)
        service = LedgerService(storage)

        first = service.approve_submission(approval)

        assert first.duplicate is False
        assert first.balance_after == 25
        assert nested[0].duplicate is True
        assert nested[0].balance_after == 0
        assert "still being credited" in nested[0].message
        assert storage.get_balance(USER_ID, GROUP_ID) == 25

    def test_different_challenges_accumulate(self):
        """Test awards for different challenges add up."""
        service = make_service()

        for amount in (10, 15, 20):
            service.award_points(AwardPointsRequest(
                user_id=USER_ID, group_id=GROUP_ID, challenge_id=uuid4(), amount=amount,
            ))

        assert service.get_balance(USER_ID, GROUP_ID).points == 45

    def test_award_requires_membership(self):
        """Test awarding a non-member fails and leaves no award record."""
        service = make_service()

        with pytest.raises(MembershipRequiredError):
            service.award_points(AwardPointsRequest(
                user_id=OTHER_USER_ID, group_id=GROUP_ID, challenge_id=CHALLENGE_ID, amount=25,
            ))

        assert service.storage.get_award(OTHER_USER_ID, CHALLENGE_ID) is None

    def test_membership_required_is_not_found(self):
        """Test callers catching NotFoundError also see membership failures."""
        service = make_service()

        with pytest.raises(NotFoundError):
            service.awards.award_points(OTHER_USER_ID, GROUP_ID, 5, CHALLENGE_ID)

    def test_award_amount_must_be_positive(self):
        """Test the engine rejects non-positive amounts."""
        service = make_service()

        with pytest.raises(LedgerServiceError):
            service.awards.award_points(USER_ID, GROUP_ID, 0, CHALLENGE_ID)

    def test_claim_released_when_credit_fails(self):
        """Test a failed credit does not leave the challenge marked as awarded."""

        class FailingCreditStorage(InMemoryStorage):
            def adjust_balance(self, user_id, group_id, delta):
                raise NotFoundError("membership vanished")

        storage = FailingCreditStorage()
        storage.add_membership(USER_ID, GROUP_ID)
        service = LedgerService(storage)

        with pytest.raises(MembershipRequiredError):
            service.awards.award_points(USER_ID, GROUP_ID, 25, CHALLENGE_ID)

        assert storage.get_award(USER_ID, CHALLENGE_ID) is None


class TestRedemptionFlow:
    """Tests for spending points on rewards."""

    def test_redeem_success(self):
        """Test redeeming with enough points debits the price."""
        service = make_service(points=100)
        reward = service.storage.add_reward(GROUP_ID, "Movie night", 60)

        redemption = service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        assert redemption.points_spent == 60
        assert redemption.group_id == GROUP_ID
        assert service.get_balance(USER_ID, GROUP_ID).points == 40
        history = service.get_redemption_history(USER_ID)
        assert history.total_count == 1
        assert history.redemptions[0].id == redemption.id

    def test_redeem_insufficient_balance(self):
        """Test the error reports both amounts and nothing changes."""
        service = make_service(points=40)
        reward = service.storage.add_reward(GROUP_ID, "Movie night", 60)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        assert exc_info.value.current_balance == 40
        assert exc_info.value.required_points == 60
        assert str(exc_info.value) == "Insufficient points. You have 40 points but need 60 points."
        assert service.get_balance(USER_ID, GROUP_ID).points == 40
        assert service.get_redemption_history(USER_ID).total_count == 0

    def test_redeem_inactive_reward(self):
        """Test inactive rewards cannot be redeemed regardless of balance."""
        service = make_service(points=1000)
        reward = service.storage.add_reward(GROUP_ID, "Retired", 10, is_active=False)

        with pytest.raises(RewardInactiveError):
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        assert service.get_balance(USER_ID, GROUP_ID).points == 1000

    def test_redeem_unknown_reward(self):
        """Test redeeming a reward that does not exist."""
        service = make_service(points=100)

        with pytest.raises(NotFoundError):
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=uuid4()))

    def test_redeem_requires_membership(self):
        """Test redeeming a reward from a group the user is not in."""
        service = make_service(points=100)
        reward = service.storage.add_reward(OTHER_GROUP_ID, "Elsewhere", 10)

        with pytest.raises(MembershipRequiredError):
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

    def test_points_spent_is_price_at_redemption(self):
        """Test later price changes do not rewrite past redemptions."""
        service = make_service(points=100)
        reward = service.storage.add_reward(GROUP_ID, "Coffee", 30)

        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))
        service.storage.update_reward(reward.id, points_required=50)
        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        spent = [r.points_spent for r in service.get_redemption_history(USER_ID).redemptions]
        assert spent == [50, 30]
        assert service.get_balance(USER_ID, GROUP_ID).points == 20

    def test_stale_affordability_check_cannot_overdraw(self):
        """Test the debit rejects a redemption that passed the check on a stale balance."""

        class StaleReadStorage(InMemoryStorage):
            def get_balance(self, user_id, group_id):
                return 100

        storage = StaleReadStorage()
        storage.add_membership(USER_ID, GROUP_ID, points=40)
        reward = storage.add_reward(GROUP_ID, "Movie night", 60)
        service = LedgerService(storage)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        assert exc_info.value.current_balance == 40
        assert storage.get_membership(USER_ID, GROUP_ID).points == 40
        assert storage.list_redemptions() == []

    def test_can_redeem(self):
        """Test the read-only affordability check."""
        service = make_service(points=50)
        cheap = service.storage.add_reward(GROUP_ID, "Cheap", 50)
        pricey = service.storage.add_reward(GROUP_ID, "Pricey", 51)
        retired = service.storage.add_reward(GROUP_ID, "Retired", 1, is_active=False)

        assert service.can_redeem(USER_ID, cheap.id).can_redeem is True
        assert service.can_redeem(USER_ID, pricey.id).can_redeem is False
        check = service.can_redeem(USER_ID, retired.id)
        assert check.can_redeem is False
        assert check.is_active is False
        assert check.user_points == 50


class TestRedemptionCompensation:
    """Tests for refunding a debit when the redemption cannot be stored."""

    def test_failed_insert_refunds_points(self):
        """Test a failed insert restores the balance and raises PersistenceError."""

        class FailingInsertStorage(InMemoryStorage):
            def insert_redemption(self, redemption):
                raise RuntimeError("disk full")

        storage = FailingInsertStorage()
        storage.add_membership(USER_ID, GROUP_ID, points=100)
        reward = storage.add_reward(GROUP_ID, "Movie night", 60)
        service = LedgerService(storage)

        with pytest.raises(PersistenceError) as exc_info:
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        assert exc_info.value.restored is True
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert storage.get_balance(USER_ID, GROUP_ID) == 100
        assert storage.list_redemptions() == []

    def test_failed_refund_is_flagged(self):
        """Test a failed refund is reported as unrestored."""

        class BrokenStorage(InMemoryStorage):
            def insert_redemption(self, redemption):
                raise RuntimeError("disk full")

            def adjust_balance(self, user_id, group_id, delta):
                if delta > 0:
                    raise RuntimeError("connection lost")
                return super().adjust_balance(user_id, group_id, delta)

        storage = BrokenStorage()
        storage.add_membership(USER_ID, GROUP_ID, points=100)
        reward = storage.add_reward(GROUP_ID, "Movie night", 60)
        service = LedgerService(storage)

        with pytest.raises(PersistenceError) as exc_info:
            service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        assert exc_info.value.restored is False
        assert storage.get_balance(USER_ID, GROUP_ID) == 40


class TestQueries:
    """Tests for the read-only views."""

    def test_available_rewards(self):
        """Test only active rewards are listed, newest first, with affordability."""
        service = make_service(points=50)
        service.storage.add_reward(GROUP_ID, "Cheap", 20)
        service.storage.add_reward(GROUP_ID, "Retired", 5, is_active=False)
        service.storage.add_reward(GROUP_ID, "Pricey", 80)
        service.storage.add_reward(OTHER_GROUP_ID, "Other group", 1)

        available = service.get_available_rewards(USER_ID, GROUP_ID)

        assert [a.reward.name for a in available] == ["Pricey", "Cheap"]
        assert [a.can_afford for a in available] == [False, True]
        assert all(a.user_points == 50 for a in available)

    def test_available_rewards_requires_membership(self):
        """Test non-members get NotFoundError."""
        service = make_service()

        with pytest.raises(NotFoundError):
            service.get_available_rewards(OTHER_USER_ID, GROUP_ID)

    def test_redemption_history_filters_and_pages(self):
        """Test history is most recent first and can be filtered by group."""
        service = make_service(points=100)
        service.storage.add_membership(USER_ID, OTHER_GROUP_ID, points=100)
        here = service.storage.add_reward(GROUP_ID, "Here", 10)
        there = service.storage.add_reward(OTHER_GROUP_ID, "There", 10)

        first = service.redeem(RedeemRequest(user_id=USER_ID, reward_id=here.id))
        second = service.redeem(RedeemRequest(user_id=USER_ID, reward_id=there.id))
        third = service.redeem(RedeemRequest(user_id=USER_ID, reward_id=here.id))

        everything = service.get_redemption_history(USER_ID)
        assert [r.id for r in everything.redemptions] == [third.id, second.id, first.id]

        in_group = service.get_redemption_history(USER_ID, GROUP_ID)
        assert [r.id for r in in_group.redemptions] == [third.id, first.id]

        page = service.get_redemption_history(USER_ID, limit=1, offset=1)
        assert [r.id for r in page.redemptions] == [second.id]
        assert page.total_count == 3

    def test_redemption_history_rejects_negative_page(self):
        """Test negative offsets and non-positive limits are refused, not sliced from the end."""
        service = make_service(points=100)

        with pytest.raises(LedgerServiceError):
            service.get_redemption_history(USER_ID, offset=-1)
        with pytest.raises(LedgerServiceError):
            service.get_redemption_history(USER_ID, limit=0)

    def test_group_statistics(self):
        """Test aggregate counts over a group's redemptions."""
        storage = InMemoryStorage()
        storage.add_membership(USER_ID, GROUP_ID, role=MembershipRole.ADMIN, points=100)
        storage.add_membership(OTHER_USER_ID, GROUP_ID, points=100)
        storage.add_membership(USER_ID, OTHER_GROUP_ID, points=100)
        coffee = storage.add_reward(GROUP_ID, "Coffee", 10)
        movie = storage.add_reward(GROUP_ID, "Movie", 30)
        elsewhere = storage.add_reward(OTHER_GROUP_ID, "Elsewhere", 50)
        service = LedgerService(storage)

        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=coffee.id))
        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=coffee.id))
        service.redeem(RedeemRequest(user_id=OTHER_USER_ID, reward_id=movie.id))
        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=elsewhere.id))

        stats = service.get_group_statistics(GROUP_ID)

        assert stats.total_redemptions == 3
        assert stats.total_points_spent == 50
        assert stats.unique_redeemers == 2
        assert stats.redemptions_by_reward == {"Coffee": 2, "Movie": 1}

    def test_reward_redemptions(self):
        """Test the per-reward admin view."""
        service = make_service(points=100)
        service.storage.add_membership(OTHER_USER_ID, GROUP_ID, points=100)
        reward = service.storage.add_reward(GROUP_ID, "Coffee", 10)

        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))
        service.redeem(RedeemRequest(user_id=OTHER_USER_ID, reward_id=reward.id))

        redemptions = service.get_reward_redemptions(reward.id)
        assert [r.user_id for r in redemptions] == [OTHER_USER_ID, USER_ID]

        with pytest.raises(NotFoundError):
            service.get_reward_redemptions(uuid4())

    def test_lifetime_points_ignore_spending(self):
        """Test lifetime points count awards and are not reduced by redemptions."""
        service = make_service()
        service.storage.add_membership(USER_ID, OTHER_GROUP_ID)
        reward = service.storage.add_reward(GROUP_ID, "Coffee", 20)

        service.awards.award_points(USER_ID, GROUP_ID, 25, uuid4())
        service.awards.award_points(USER_ID, OTHER_GROUP_ID, 10, uuid4())
        service.redeem(RedeemRequest(user_id=USER_ID, reward_id=reward.id))

        lifetime = service.get_lifetime_points(USER_ID)
        assert lifetime.total_points == 35
        assert lifetime.completed_challenges == 2
        assert service.get_lifetime_points(USER_ID, GROUP_ID).total_points == 25
        assert service.get_balance(USER_ID, GROUP_ID).points == 5


class TestStorage:
    """Tests for the in-memory balance store."""

    def test_adjust_balance_never_goes_negative(self):
        """Test a debit larger than the balance is rejected without writing."""
        storage = InMemoryStorage()
        storage.add_membership(USER_ID, GROUP_ID, points=10)

        with pytest.raises(InsufficientBalanceError):
            storage.adjust_balance(USER_ID, GROUP_ID, -11)

        assert storage.adjust_balance(USER_ID, GROUP_ID, -10) == 0
        assert storage.get_balance(USER_ID, GROUP_ID) == 0

    def test_adjust_unknown_membership(self):
        """Test adjusting a missing membership."""
        storage = InMemoryStorage()

        with pytest.raises(NotFoundError):
            storage.adjust_balance(USER_ID, GROUP_ID, 5)

    def test_duplicate_membership_rejected(self):
        """Test one membership per (user, group)."""
        storage = InMemoryStorage()
        storage.add_membership(USER_ID, GROUP_ID)

        with pytest.raises(LedgerServiceError):
            storage.add_membership(USER_ID, GROUP_ID)

    def test_update_reward_rejects_unknown_fields(self):
        """Test only catalog fields can be changed."""
        storage = InMemoryStorage()
        reward = storage.add_reward(GROUP_ID, "Coffee", 10)

        with pytest.raises(LedgerServiceError):
            storage.update_reward(reward.id, group_id=OTHER_GROUP_ID)

        updated = storage.update_reward(reward.id, is_active=False)
        assert updated.is_active is False
        assert updated.updated_at >= reward.updated_at

    def test_seed_data(self):
        """Test the demo seed creates a group with members and rewards."""
        storage = InMemoryStorage(seed=True)

        assert len(storage.memberships) == 2
        assert len(storage.rewards) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
