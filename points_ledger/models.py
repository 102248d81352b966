from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class MembershipRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class Membership(BaseModel):
    user_id: UUID
    group_id: UUID
    role: MembershipRole = MembershipRole.MEMBER
    joined_at: datetime
    points: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)


class Reward(BaseModel):
    id: UUID
    group_id: UUID
    name: str
    description: Optional[str] = None
    points_required: int = Field(..., gt=0)
    is_active: bool = True
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Redemption(BaseModel):
    id: UUID
    user_id: UUID
    reward_id: UUID
    group_id: UUID
    points_spent: int
    redeemed_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class AwardRecord(BaseModel):
    id: UUID
    user_id: UUID
    group_id: UUID
    challenge_id: UUID
    submission_id: Optional[UUID] = None
    points: int
    awarded_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class AwardPointsRequest(BaseModel):
    user_id: UUID
    group_id: UUID
    challenge_id: UUID
    amount: int = Field(..., gt=0, description="Points credited for the challenge")
    submission_id: Optional[UUID] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "group_id": "77777777-7777-7777-7777-777777777777",
            "challenge_id": "33333333-3333-3333-3333-333333333333",
            "amount": 25
        }
    })


class SubmissionApproval(BaseModel):
    submission_id: UUID
    challenge_id: UUID
    user_id: UUID
    group_id: UUID
    points: int = Field(..., gt=0)


class RedeemRequest(BaseModel):
    user_id: UUID
    reward_id: UUID


class AwardResponse(BaseModel):
    award: AwardRecord
    balance_after: int = Field(
        ...,
        description="Balance read when this request finished. For a duplicate whose first award "
                    "is still being credited it does not include that award yet.",
    )
    duplicate: bool = False
    message: str


class MembershipBalance(BaseModel):
    user_id: UUID
    group_id: UUID
    points: int


class RedeemCheck(BaseModel):
    reward_id: UUID
    can_redeem: bool
    is_active: bool
    user_points: int
    required_points: int


class AvailableReward(BaseModel):
    reward: Reward
    can_afford: bool
    user_points: int


class RedemptionHistoryResponse(BaseModel):
    user_id: UUID
    group_id: Optional[UUID] = None
    redemptions: list[Redemption]
    total_count: int


class GroupStatistics(BaseModel):
    group_id: UUID
    total_redemptions: int
    total_points_spent: int
    unique_redeemers: int
    redemptions_by_reward: dict[str, int] = Field(default_factory=dict)


class LifetimePoints(BaseModel):
    user_id: UUID
    group_id: Optional[UUID] = None
    total_points: int
    completed_challenges: int
