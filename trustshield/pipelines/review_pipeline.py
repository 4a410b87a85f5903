"""
Review submission pipeline.

eligibility -> tracking -> risk -> weight -> concealed storage -> reveal -> reputation

Risk side effects live here:
- CRITICAL: both accounts flagged and audit-logged, submission refused with a
  generic message (RiskBlocked) until a moderator allows the transaction
- HIGH: weight x0.5, review held for manual moderation
- MEDIUM: weight x0.75
Scam reports are always sent to moderation.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from trustshield.exceptions import ReviewValidationError, RiskBlocked
from trustshield.models.review import Review
from trustshield.pipelines.risk_pipeline import RiskAggregator
from trustshield.schemas.domain import (
    TERMINAL_PAIR_STATES,
    ModerationPriority,
    RiskAnalysisReport,
    RiskLevel,
    ReviewSubmission,
    SubmissionOutcome,
    TransactionStatus,
)
from trustshield.services.blind_review_service import BlindReviewCoordinator
from trustshield.services.device_pattern_service import DevicePatternDetector
from trustshield.services.eligibility_service import check_eligibility_for, get_transaction
from trustshield.services.ip_pattern_service import IpPatternDetector, IpReputationProvider
from trustshield.services.location_pattern_service import LocationPatternDetector
from trustshield.services.moderation_service import enqueue_moderation, flag_accounts, has_risk_override
from trustshield.services.profile_service import ProfileAccessor
from trustshield.services.reputation_service import ReputationService
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.services.weight_service import apply_risk_adjustment, compute_weight
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import StructuredLogger, metrics, track_operation

logger = StructuredLogger(__name__)


class ReviewPipeline:
    def __init__(
        self,
        db: Session,
        profiles: ProfileAccessor,
        master_key: Optional[bytes] = None,
        notifier=None,
        cache=None,
        ip_reputation: Optional[IpReputationProvider] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.profiles = profiles
        self.now = now

        self.repository = TrackingRepository(db)
        self.device_detector = DevicePatternDetector(self.repository)
        self.ip_detector = IpPatternDetector(self.repository, reputation_provider=ip_reputation)
        self.location_detector = LocationPatternDetector(self.repository, now=now)
        self.aggregator = RiskAggregator(
            self.device_detector,
            self.ip_detector,
            self.location_detector,
            cache=cache,
            shares_contact_info=profiles.shares_contact_info,
            now=now,
        )
        self.reputation = ReputationService(db, profiles, now=now)
        self.coordinator = BlindReviewCoordinator(
            db,
            master_key=master_key,
            notifier=notifier,
            on_reveal=self.reputation.recompute_for_reviews,
            now=now,
        )

    def analyze_risk(self, transaction_id: str, user_a: str, user_b: str) -> RiskAnalysisReport:
        return self.aggregator.analyze_transaction_risk(
            transaction_id,
            user_a,
            user_b,
            account_age_lookup=self.profiles.get_account_age_days,
            trading_partners_lookup=self.profiles.get_trading_partners,
        )

    def _track(
        self,
        user_id: str,
        device_fingerprint: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ):
        if device_fingerprint:
            self.device_detector.track_device_usage(
                user_id, device_fingerprint, ip_address=ip_address, user_agent=user_agent, action="review"
            )
        if ip_address:
            self.ip_detector.track_ip_usage(user_id, ip_address, action="review")

    def _block(self, submission: ReviewSubmission, report: RiskAnalysisReport):
        users = [submission.reviewer_id, submission.target_user_id]
        self.repository.record_patterns(report.detected_patterns)
        # Moderators lift the block by resolving this item with ALLOW
        enqueue_moderation(
            self.db,
            reason="critical_review_risk",
            priority=ModerationPriority.URGENT,
            related_accounts=users,
            evidence=self._evidence(report),
            transaction_id=submission.transaction_id,
            reviewer_id=submission.reviewer_id,
            commit=False,
        )
        flag_accounts(
            self.db,
            users,
            reason="critical_review_risk",
            transaction_id=submission.transaction_id,
            details={
                "risk_score": round(report.overall_risk_score, 3),
                "patterns": [p.type.value for p in report.detected_patterns],
            },
        )
        metrics.increment("reviews.blocked")
        logger.warning(
            "Review blocked by risk check",
            transaction_id=submission.transaction_id,
            reviewer_id=submission.reviewer_id,
            risk_score=report.overall_risk_score,
        )
        raise RiskBlocked(submission.transaction_id, users, report.overall_risk_score)

    @staticmethod
    def _evidence(report: RiskAnalysisReport, modifiers=None) -> dict:
        evidence = {
            "risk_level": report.risk_level.value,
            "risk_score": round(report.overall_risk_score, 3),
            "patterns": [p.type.value for p in report.detected_patterns],
        }
        if modifiers is not None:
            evidence["modifiers"] = modifiers
        return evidence

    @track_operation("reviews.submit")
    def submit_review(
        self,
        submission: ReviewSubmission,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SubmissionOutcome:
        transaction = get_transaction(self.db, submission.transaction_id)
        if transaction is not None and not (
            transaction.involves(submission.reviewer_id) and transaction.involves(submission.target_user_id)
        ):
            raise ReviewValidationError("Reviewer and target must be the transaction's parties", field="target_user_id")

        eligibility = check_eligibility_for(
            self.db,
            self.profiles,
            submission.reviewer_id,
            submission.target_user_id,
            submission.transaction_id,
            now=self.now,
        )
        if not eligibility.allowed:
            metrics.increment("reviews.ineligible")
            return SubmissionOutcome(
                transaction_id=submission.transaction_id,
                reviewer_id=submission.reviewer_id,
                accepted=False,
                eligibility=eligibility,
            )

        self._track(submission.reviewer_id, device_fingerprint, ip_address, user_agent)
        # Reports cached before this tracking event would miss it
        self.aggregator.cache.invalidate_user(submission.reviewer_id)
        self.aggregator.cache.invalidate_user(submission.target_user_id)

        report = self.analyze_risk(submission.transaction_id, submission.reviewer_id, submission.target_user_id)
        overridden = False
        if report.risk_level == RiskLevel.CRITICAL:
            overridden = has_risk_override(self.db, submission.transaction_id)
            if overridden:
                logger.info("Risk block lifted by moderator override", transaction_id=submission.transaction_id)
            else:
                self._block(submission, report)

        weight = compute_weight(
            submission,
            reviewer_account_type=self.profiles.get_account_type(submission.reviewer_id),
            transaction_value=transaction.estimated_value,
            reviewer_reputation=self.reputation.reviewer_reputation(submission.reviewer_id),
            is_verified_transaction=bool(transaction.location_confirmed),
            reviewer_account_age_days=self.profiles.get_account_age_days(submission.reviewer_id),
        )
        weight = apply_risk_adjustment(weight, report)

        is_scam_report = submission.declared_outcome == TransactionStatus.SCAM
        needs_moderation = is_scam_report or report.risk_level == RiskLevel.HIGH

        state = self.coordinator.submit(
            submission,
            weight=weight.weight,
            is_verified=bool(transaction.location_confirmed),
            moderation_status="pending" if needs_moderation else None,
        )

        # Only an accepted review leaves moderation data behind
        if report.risk_level == RiskLevel.HIGH or overridden:
            self.repository.record_patterns(report.detected_patterns)
        if needs_moderation:
            enqueue_moderation(
                self.db,
                reason="scam_report" if is_scam_report else "high_risk_review",
                priority=ModerationPriority.URGENT if is_scam_report else ModerationPriority.HIGH,
                related_accounts=[submission.reviewer_id, submission.target_user_id],
                evidence=self._evidence(report, weight.modifiers),
                transaction_id=submission.transaction_id,
                reviewer_id=submission.reviewer_id,
            )

        revealed_ids = []
        if state in TERMINAL_PAIR_STATES:
            revealed_ids = [
                r.id
                for r in self.db.query(Review).filter(Review.transaction_id == submission.transaction_id).all()
            ]

        logger.info(
            "Review submitted",
            transaction_id=submission.transaction_id,
            reviewer_id=submission.reviewer_id,
            weight=weight.weight,
            state=state.value,
            risk_level=report.risk_level.value,
        )
        return SubmissionOutcome(
            transaction_id=submission.transaction_id,
            reviewer_id=submission.reviewer_id,
            accepted=True,
            state=state,
            weight=weight.weight,
            eligibility=eligibility,
            revealed_review_ids=revealed_ids,
            moderation_required=needs_moderation,
            risk_report=report,
        )
