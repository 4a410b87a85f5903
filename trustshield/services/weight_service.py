"""
Review weighting.

A review starts at 1.0 and is scaled by multiplicative modifiers for the
reviewer's account, the trade value, the reviewer's own standing and account
age. The result is clamped to [min_review_weight, max_review_weight].
"""

from typing import Optional

from trustshield.config import settings
from trustshield.schemas.domain import (
    AccountType,
    ReviewerReputation,
    ReviewSubmission,
    ReviewWeight,
    RiskAnalysisReport,
)
from trustshield.utils.risk_levels import weight_multiplier_for
from trustshield.utils.severity import clamp


def _clamp_weight(weight: float) -> float:
    return clamp(weight, settings.min_review_weight, settings.max_review_weight)


def compute_weight(
    review: ReviewSubmission,
    reviewer_account_type: AccountType,
    transaction_value: Optional[float],
    reviewer_reputation: Optional[ReviewerReputation],
    is_verified_transaction: bool,
    reviewer_account_age_days: Optional[float],
) -> ReviewWeight:
    """
    Args:
        review: The submission being weighted
        reviewer_account_type: Account type of the reviewer
        transaction_value: Estimated value in USD, if known
        reviewer_reputation: The reviewer's own rating and review count
        is_verified_transaction: Trade confirmed in person or by location check
        reviewer_account_age_days: Reviewer account age; None counts as brand new

    Returns:
        ReviewWeight with the clamped weight and the names of applied modifiers
    """
    weight = 1.0
    modifiers = []

    if reviewer_account_type == AccountType.BUSINESS_VERIFIED:
        weight *= 1.2
        modifiers.append("verified_business")
    elif reviewer_account_type == AccountType.UNVERIFIED:
        weight *= 0.5
        modifiers.append("unverified_account")
    elif reviewer_account_type == AccountType.SUSPENDED:
        weight *= 0.1
        modifiers.append("suspended_account")

    if transaction_value is not None:
        if transaction_value > settings.high_value_threshold:
            weight *= 1.5
            modifiers.append("high_value_transaction")
        elif transaction_value < settings.low_value_threshold:
            weight *= 0.5
            modifiers.append("low_value_transaction")

    if (
        reviewer_reputation is not None
        and reviewer_reputation.average_rating >= settings.trusted_reviewer_min_rating
        and reviewer_reputation.total_reviews >= settings.trusted_reviewer_min_reviews
    ):
        weight *= 1.3
        modifiers.append("trusted_reviewer")

    age_days = reviewer_account_age_days if reviewer_account_age_days is not None else 0.0

    # The new-reviewer penalty already covers the youngest accounts; age decay
    # only applies past it.
    if age_days < settings.new_reviewer_days:
        weight *= 0.6
        modifiers.append("new_reviewer")
    elif age_days < 30:
        weight *= 0.6
        modifiers.append("account_age_under_30_days")
    elif age_days < 90:
        weight *= 0.8
        modifiers.append("account_age_under_90_days")

    if is_verified_transaction:
        weight *= 1.4
        modifiers.append("verified_transaction")

    return ReviewWeight(weight=_clamp_weight(weight), modifiers=modifiers)


def apply_risk_adjustment(weight: ReviewWeight, report: Optional[RiskAnalysisReport]) -> ReviewWeight:
    """Scale a weight by the penalty for the report's risk level (HIGH x0.5, MEDIUM x0.75)."""
    if report is None:
        return weight
    multiplier = weight_multiplier_for(report.risk_level)
    if multiplier == 1.0:
        return weight
    return ReviewWeight(
        weight=_clamp_weight(weight.weight * multiplier),
        modifiers=weight.modifiers + [f"risk_{report.risk_level.value.lower()}"],
    )
