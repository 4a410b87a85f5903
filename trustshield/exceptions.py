"""
Domain exceptions for TrustShield.

Eligibility denials are not exceptions: they come back as an
EligibilityResult so callers can show the reason directly.
"""

from typing import List, Optional


# Shown to users when a risk check blocks them. Thresholds stay private.
GENERIC_BLOCK_MESSAGE = "Additional verification required"


class TrustShieldError(Exception):
    """Base class for all TrustShield errors."""


class ReviewValidationError(TrustShieldError):
    """Submitted review data is malformed (rating range, missing field)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class RiskBlocked(TrustShieldError):
    """A CRITICAL risk assessment refused the operation."""

    def __init__(self, transaction_id: str, flagged_users: List[str], risk_score: float):
        super().__init__(GENERIC_BLOCK_MESSAGE)
        self.transaction_id = transaction_id
        self.flagged_users = flagged_users
        self.risk_score = risk_score

    @property
    def public_message(self) -> str:
        return GENERIC_BLOCK_MESSAGE


class DecryptionFailure(TrustShieldError):
    """A concealed review could not be decrypted (corrupted ciphertext or lost key)."""

    def __init__(self, transaction_id: str, reviewer_id: str, reason: str):
        super().__init__(f"Cannot decrypt review {transaction_id}/{reviewer_id}: {reason}")
        self.transaction_id = transaction_id
        self.reviewer_id = reviewer_id
        self.reason = reason


class StorageError(TrustShieldError):
    """Transient persistence failure. Safe to retry."""


class NotFoundError(TrustShieldError):
    """A referenced record does not exist."""
