"""Service-layer exceptions.

Routers translate these into HTTP responses; services raise them and never
return partial state.
"""

from __future__ import annotations


class QuestlineError(Exception):
    """Base class for every domain error."""

    error_code = "questline_error"


# --- Quests -----------------------------------------------------------------


class QuestNotFound(QuestlineError, LookupError):
    error_code = "quest_not_found"


class AlreadyCompleted(QuestlineError, ValueError):
    """The quest log entry was finalized before this call."""

    error_code = "already_completed"

    def __init__(self, log_id: int, xp_awarded: int | None) -> None:
        self.log_id = log_id
        self.xp_awarded = xp_awarded or 0
        super().__init__(f"Quest {log_id} already completed")


class InvalidReflection(QuestlineError, ValueError):
    error_code = "invalid_reflection"


class ProfileNotFound(QuestlineError, LookupError):
    error_code = "profile_not_found"


class NotAuthenticated(QuestlineError, PermissionError):
    error_code = "not_authenticated"


class NotPermitted(QuestlineError, PermissionError):
    error_code = "not_permitted"


# --- Streaks + power-ups ------------------------------------------------------


class NoStreakToRecover(QuestlineError, ValueError):
    error_code = "no_streak_to_recover"


class RecoveryWindowExpired(QuestlineError, ValueError):
    error_code = "recovery_window_expired"


class NoStreakInsurance(QuestlineError, ValueError):
    error_code = "no_streak_insurance"


class PowerUpNotFound(QuestlineError, LookupError):
    error_code = "power_up_not_found"


class PowerUpAlreadyUsed(QuestlineError, ValueError):
    error_code = "power_up_already_used"


# --- Challenges + teams -----------------------------------------------------


class ChallengeNotFound(QuestlineError, LookupError):
    error_code = "challenge_not_found"


class TeamNotFound(QuestlineError, LookupError):
    error_code = "team_not_found"


class FriendRequestNotFound(QuestlineError, LookupError):
    error_code = "friend_request_not_found"


class InvalidJoin(QuestlineError, ValueError):
    """Join request breaks an eligibility rule (partner, friendship, capacity, dates)."""

    error_code = "invalid_join"


class ConstraintViolation(QuestlineError, ValueError):
    """A uniqueness rule was hit; the message is safe to show to users."""

    error_code = "already_exists"


class RewardAlreadyIssued(QuestlineError, ValueError):
    error_code = "reward_already_issued"

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Reward {idempotency_key} already issued")


# --- Payments ---------------------------------------------------------------


class PaymentProofNotFound(QuestlineError, LookupError):
    error_code = "payment_proof_not_found"


class TransactionNotFound(QuestlineError, LookupError):
    error_code = "transaction_not_found"


class AlreadyApproved(QuestlineError, ValueError):
    """Benign: the proof was approved earlier. Reported as idempotent success."""

    error_code = "already_approved"


class ProofAlreadyReviewed(QuestlineError, ValueError):
    error_code = "proof_already_reviewed"

    def __init__(self, proof_id: int, status: str) -> None:
        self.proof_id = proof_id
        self.status = status
        super().__init__(f"Payment proof {proof_id} is already {status}")


class PartialActivationError(QuestlineError, RuntimeError):
    """Feature activation failed after approval started; the review was rolled back."""

    error_code = "partial_activation"

    def __init__(self, proof_id: int, step: str, activated: list[str], cause: str) -> None:
        self.proof_id = proof_id
        self.step = step
        self.activated = activated
        self.cause = cause
        super().__init__(
            f"Activation of proof {proof_id} failed at {step}: {cause}"
        )
