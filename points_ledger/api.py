from typing import Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, build_storage, configure_logging
from .errors import (
    InsufficientBalanceError,
    LedgerServiceError,
    NotFoundError,
    PersistenceError,
    RewardInactiveError,
    TransientError,
)
from .models import (
    AvailableReward,
    AwardPointsRequest,
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
from .service import LedgerService


def error_to_http(error: LedgerServiceError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InsufficientBalanceError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(error),
                "current_balance": error.current_balance,
                "required_points": error.required_points,
            },
        )
    if isinstance(error, RewardInactiveError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, TransientError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    if isinstance(error, PersistenceError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(error), "restored": error.restored},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def create_app(service: Optional[LedgerService] = None, root_path: str = "") -> FastAPI:
    if service is None:
        settings = Settings()
        configure_logging(settings)
        service = LedgerService(build_storage(settings))

    app = FastAPI(
        title="Points Ledger API",
        description="Group point balances, challenge awards and reward redemptions",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger_service = service

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "points-ledger"}

    @app.post("/awards", response_model=AwardResponse, status_code=status.HTTP_201_CREATED, tags=["Awards"])
    def award_points(request: AwardPointsRequest, response: Response) -> AwardResponse:
        try:
            result = service.award_points(request)
        except LedgerServiceError as e:
            raise error_to_http(e)
        if result.duplicate:
            response.status_code = status.HTTP_200_OK
        return result

    @app.post("/submissions/approve", response_model=AwardResponse, tags=["Awards"])
    def approve_submission(approval: SubmissionApproval) -> AwardResponse:
        try:
            return service.approve_submission(approval)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.post("/redemptions", response_model=Redemption, status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
    def redeem_reward(request: RedeemRequest) -> Redemption:
        try:
            return service.redeem(request)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/rewards/{reward_id}/check", response_model=RedeemCheck, tags=["Rewards"])
    def check_redeem(reward_id: UUID, user_id: UUID) -> RedeemCheck:
        try:
            return service.can_redeem(user_id, reward_id)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/rewards/{reward_id}/redemptions", response_model=list[Redemption], tags=["Rewards"])
    def get_reward_redemptions(reward_id: UUID) -> list[Redemption]:
        try:
            return service.get_reward_redemptions(reward_id)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/groups/{group_id}/members/{user_id}/balance", response_model=MembershipBalance, tags=["Groups"])
    def get_balance(group_id: UUID, user_id: UUID) -> MembershipBalance:
        try:
            return service.get_balance(user_id, group_id)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/groups/{group_id}/members/{user_id}/rewards", response_model=list[AvailableReward], tags=["Groups"])
    def get_available_rewards(group_id: UUID, user_id: UUID) -> list[AvailableReward]:
        try:
            return service.get_available_rewards(user_id, group_id)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/groups/{group_id}/statistics", response_model=GroupStatistics, tags=["Groups"])
    def get_group_statistics(group_id: UUID) -> GroupStatistics:
        try:
            return service.get_group_statistics(group_id)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/users/{user_id}/redemptions", response_model=RedemptionHistoryResponse, tags=["Users"])
    def get_redemption_history(
        user_id: UUID,
        group_id: Optional[UUID] = None,
        limit: int = Query(50, ge=1),
        offset: int = Query(0, ge=0),
    ) -> RedemptionHistoryResponse:
        try:
            return service.get_redemption_history(user_id, group_id, limit, offset)
        except LedgerServiceError as e:
            raise error_to_http(e)

    @app.get("/users/{user_id}/lifetime-points", response_model=LifetimePoints, tags=["Users"])
    def get_lifetime_points(user_id: UUID, group_id: Optional[UUID] = None) -> LifetimePoints:
        try:
            return service.get_lifetime_points(user_id, group_id)
        except LedgerServiceError as e:
            raise error_to_http(e)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
