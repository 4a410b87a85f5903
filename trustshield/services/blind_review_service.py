"""
Blind review coordination.

Both parties' reviews stay encrypted until the second one arrives or the
reveal deadline passes, so neither side can retaliate after reading the
other's review.

Per transaction pair:
    awaiting_first -> awaiting_second -> revealed
                                      -> revealed_by_deadline (sweep)

Each pair gets its own AES-256-GCM key, stored only wrapped with the Fernet
master key. The reveal is a compare-and-set on the pair's state, so two
concurrent reveals (second submission racing the sweep, or two sweeps)
publish the reviews exactly once.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from trustshield.config import settings
from trustshield.exceptions import DecryptionFailure, ReviewValidationError, StorageError
from trustshield.models.review import PendingReview, Review, ReviewPair
from trustshield.schemas.domain import (
    TERMINAL_PAIR_STATES,
    ModerationPriority,
    ReviewPairState,
    ReviewSubmission,
)
from trustshield.services.moderation_service import enqueue_moderation
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

NONCE_BYTES = 12

RevealCallback = Callable[[Session, List[Review]], None]


def load_master_key(configured: Optional[str] = None) -> bytes:
    """The Fernet master key from settings, or a throwaway one outside production."""
    key = configured if configured is not None else settings.review_master_key
    if key:
        return key.encode() if isinstance(key, str) else key
    if settings.is_production:
        raise RuntimeError("TRUSTSHIELD_REVIEW_MASTER_KEY must be set in production")
    logging.getLogger(__name__).warning(
        "No review master key configured - generating an ephemeral one; concealed reviews will not survive a restart"
    )
    return Fernet.generate_key()


class BlindReviewCoordinator:
    def __init__(
        self,
        db: Session,
        master_key: Optional[bytes] = None,
        notifier=None,
        on_reveal: Optional[RevealCallback] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self._fernet = Fernet(master_key or load_master_key())
        self.notifier = notifier
        self.on_reveal = on_reveal
        self.now = now

    # ==========================================================================
    # CRYPTO
    # ==========================================================================

    @staticmethod
    def _aad(transaction_id: str, reviewer_id: str) -> bytes:
        return f"{transaction_id}:{reviewer_id}".encode()

    def _unwrap(self, pair: ReviewPair) -> bytes:
        try:
            return self._fernet.decrypt(pair.wrapped_key)
        except InvalidToken as e:
            raise DecryptionFailure(pair.transaction_id, "*", "pair key cannot be unwrapped") from e

    def _encrypt(self, key: bytes, submission: ReviewSubmission):
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(key).encrypt(
            nonce,
            submission.to_json().encode(),
            self._aad(submission.transaction_id, submission.reviewer_id),
        )
        return nonce, ciphertext

    def _decrypt(self, key: bytes, pending: PendingReview) -> ReviewSubmission:
        try:
            raw = AESGCM(key).decrypt(
                pending.nonce,
                pending.ciphertext,
                self._aad(pending.transaction_id, pending.reviewer_id),
            )
        except InvalidTag as e:
            raise DecryptionFailure(pending.transaction_id, pending.reviewer_id, "authentication failed") from e
        try:
            return ReviewSubmission.from_json(raw.decode())
        except (ValueError, TypeError, KeyError, ReviewValidationError) as e:
            raise DecryptionFailure(pending.transaction_id, pending.reviewer_id, f"malformed payload: {e}") from e

    # ==========================================================================
    # PAIRS
    # ==========================================================================

    def get_pair(self, transaction_id: str) -> Optional[ReviewPair]:
        return self.db.query(ReviewPair).filter(ReviewPair.transaction_id == transaction_id).first()

    def open_pair(self, transaction_id: str) -> ReviewPair:
        """Create the pair record for a transaction in awaiting_first. Idempotent."""
        pair = self.get_pair(transaction_id)
        if pair is not None:
            return pair
        now = self.now()
        pair = ReviewPair(
            transaction_id=transaction_id,
            state=ReviewPairState.AWAITING_FIRST.value,
            wrapped_key=self._fernet.encrypt(AESGCM.generate_key(bit_length=256)),
            created_at=now,
            reveal_deadline=now + timedelta(days=settings.reveal_deadline_days),
        )
        self.db.add(pair)
        try:
            self.db.commit()
        except IntegrityError:
            # Opened concurrently by the other party
            self.db.rollback()
            return self.get_pair(transaction_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("Failed to open review pair") from e
        return pair

    def pending_reviews(self, transaction_id: str) -> List[PendingReview]:
        return (
            self.db.query(PendingReview)
            .filter(PendingReview.transaction_id == transaction_id)
            .order_by(PendingReview.submitted_at)
            .all()
        )

    # ==========================================================================
    # SUBMIT
    # ==========================================================================

    def submit(
        self,
        submission: ReviewSubmission,
        weight: float,
        is_verified: bool = False,
        moderation_status: Optional[str] = None,
    ) -> ReviewPairState:
        """
        Store a review concealed. The second party's submission reveals both.

        Returns:
            The pair state after this submission
        """
        pair = self.get_pair(submission.transaction_id) or self.open_pair(submission.transaction_id)
        state = ReviewPairState(pair.state)
        if state in TERMINAL_PAIR_STATES:
            raise ReviewValidationError("Reviews for this transaction are already published", field="transaction_id")

        existing = self.pending_reviews(submission.transaction_id)
        if any(p.reviewer_id == submission.reviewer_id for p in existing):
            raise ReviewValidationError("Already reviewed this transaction", field="reviewer_id")

        now = self.now()
        key = self._unwrap(pair)
        nonce, ciphertext = self._encrypt(key, submission)
        self.db.add(
            PendingReview(
                transaction_id=submission.transaction_id,
                reviewer_id=submission.reviewer_id,
                target_user_id=submission.target_user_id,
                nonce=nonce,
                ciphertext=ciphertext,
                weight=weight,
                is_verified=is_verified,
                moderation_status=moderation_status,
                submitted_at=now,
                reveal_deadline=now + timedelta(days=settings.reveal_deadline_days),
            )
        )

        if state == ReviewPairState.AWAITING_FIRST:
            pair.state = ReviewPairState.AWAITING_SECOND.value
            pair.reveal_deadline = now + timedelta(days=settings.reveal_deadline_days)

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ReviewValidationError("Already reviewed this transaction", field="reviewer_id") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("Failed to store concealed review") from e

        metrics.increment("reviews.concealed")
        logger.info(
            "Review concealed",
            transaction_id=submission.transaction_id,
            reviewer_id=submission.reviewer_id,
        )

        if state == ReviewPairState.AWAITING_SECOND:
            revealed = self.reveal(submission.transaction_id, ReviewPairState.REVEALED)
            if revealed is not None:
                return ReviewPairState.REVEALED
            refreshed = self.get_pair(submission.transaction_id)
            return ReviewPairState(refreshed.state)
        return ReviewPairState.AWAITING_SECOND

    # ==========================================================================
    # REVEAL
    # ==========================================================================

    def reveal(self, transaction_id: str, target_state: ReviewPairState) -> Optional[List[Review]]:
        """
        Publish the pair's concealed reviews.

        Returns:
            The visible reviews created, or None if another caller already
            revealed this pair.
        """
        now = self.now()
        try:
            result = self.db.execute(
                update(ReviewPair)
                .where(
                    ReviewPair.transaction_id == transaction_id,
                    ReviewPair.state == ReviewPairState.AWAITING_SECOND.value,
                )
                .values(state=target_state.value, revealed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                return None

            pair = self.get_pair(transaction_id)
            self.db.refresh(pair)
            published = []
            for pending in self.pending_reviews(transaction_id):
                if pending.revealed:
                    continue
                pending.revealed = True
                pending.revealed_at = now
                review = self._publish(pair, pending, now)
                if review is not None:
                    published.append(review)

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to reveal reviews for {transaction_id}") from e

        metrics.increment(f"reviews.{target_state.value}", len(published))
        logger.info(
            "Reviews revealed",
            transaction_id=transaction_id,
            state=target_state.value,
            count=len(published),
        )

        if self.on_reveal is not None and published:
            self.on_reveal(self.db, published)
        if self.notifier is not None:
            for review in published:
                payload = {"transaction_id": transaction_id, "review_id": review.id}
                self.notifier.notify(review.target_user_id, "review_revealed", payload)
                self.notifier.notify(review.reviewer_id, "review_revealed", payload)
        return published

    def _publish(self, pair: ReviewPair, pending: PendingReview, now: datetime) -> Optional[Review]:
        """Decrypt one concealed review into a visible one. A corrupt review is dropped and sent to moderation."""
        try:
            submission = self._decrypt(self._unwrap(pair), pending)
        except DecryptionFailure as e:
            metrics.increment("reviews.decryption_failed")
            logger.error(
                "Dropping undecryptable review",
                transaction_id=pending.transaction_id,
                reviewer_id=pending.reviewer_id,
                reason=e.reason,
            )
            enqueue_moderation(
                self.db,
                reason="review_decryption_failed",
                priority=ModerationPriority.HIGH,
                related_accounts=[pending.reviewer_id, pending.target_user_id],
                evidence={"reason": e.reason},
                transaction_id=pending.transaction_id,
                reviewer_id=pending.reviewer_id,
                commit=False,
            )
            return None

        review = Review(
            transaction_id=submission.transaction_id,
            reviewer_id=submission.reviewer_id,
            target_user_id=submission.target_user_id,
            rating=submission.rating,
            text=submission.text,
            declared_outcome=submission.declared_outcome.value,
            weight=pending.weight,
            is_visible=pending.moderation_status != "rejected",
            is_verified=bool(pending.is_verified),
            moderation_status=pending.moderation_status,
            submitted_at=pending.submitted_at,
            revealed_at=now,
        )
        self.db.add(review)
        self.db.flush()
        return review

    def reveal_expired(self, limit: Optional[int] = None) -> int:
        """
        Reveal every pair whose deadline has passed while waiting for the
        second review. Safe to run concurrently and repeatedly.

        Returns:
            Number of reviews made visible by this call
        """
        query = (
            self.db.query(ReviewPair.transaction_id)
            .filter(
                ReviewPair.state == ReviewPairState.AWAITING_SECOND.value,
                ReviewPair.reveal_deadline <= self.now(),
            )
            .order_by(ReviewPair.reveal_deadline)
        )
        if limit:
            query = query.limit(limit)
        due = [row[0] for row in query.all()]

        total = 0
        for transaction_id in due:
            published = self.reveal(transaction_id, ReviewPairState.REVEALED_BY_DEADLINE)
            if published:
                total += len(published)
        if due:
            logger.info("Reveal sweep finished", pairs=len(due), reviews=total)
        return total
