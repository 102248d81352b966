from typing import Optional
from uuid import UUID


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class MembershipRequiredError(NotFoundError):
    pass


class RewardInactiveError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, current_balance: int, required_points: int):
        self.current_balance = current_balance
        self.required_points = required_points
        super().__init__(
            f"Insufficient points. You have {current_balance} points "
            f"but need {required_points} points."
        )


class DuplicateAwardError(LedgerServiceError):
    def __init__(self, user_id: UUID, challenge_id: UUID):
        self.user_id = user_id
        self.challenge_id = challenge_id
        super().__init__(f"Points for challenge {challenge_id} were already awarded to user {user_id}")


class TransientError(LedgerServiceError):
    """Storage call failed for a retryable reason (timeout, lost connection)."""


class PersistenceError(LedgerServiceError):
    """
    A multi-step mutation failed part way through.

    ``restored`` tells whether the compensating step brought the balance
    back. When it is False the balance and the redemption history disagree
    and need manual reconciliation.
    """

    def __init__(self, message: str, restored: bool = True, cause: Optional[BaseException] = None):
        self.restored = restored
        self.cause = cause
        super().__init__(message)
