"""Tests for the moderation queue and account flags."""

import pytest

from trustshield.exceptions import NotFoundError, ReviewValidationError
from trustshield.models.moderation import AuditLogEntry
from trustshield.models.review import Review
from trustshield.schemas.domain import (
    ModerationDecision,
    ModerationPriority,
    ReviewSubmission,
    TransactionStatus,
)
from trustshield.services.blind_review_service import BlindReviewCoordinator
from trustshield.services.reputation_service import ReputationService
from trustshield.services.moderation_service import (
    active_flags,
    clear_flags,
    enqueue_moderation,
    flag_accounts,
    get_moderation_stats,
    grant_risk_override,
    has_risk_override,
    list_moderation_items,
    resolve_moderation_item,
)


class TestModerationQueue:
    def test_enqueue_and_list(self, db):
        item = enqueue_moderation(
            db,
            reason="scam_reported",
            priority=ModerationPriority.URGENT,
            related_accounts=["alice", "bob"],
            evidence={"rating": 1},
            transaction_id="tx-1",
        )

        assert item.id is not None
        assert item.status == "open"
        items = list_moderation_items(db)
        assert [i.id for i in items] == [item.id]
        assert items[0].evidence == {"rating": 1}

    def test_filter_by_priority(self, db):
        enqueue_moderation(db, "scam_reported", ModerationPriority.URGENT, ["a"])
        enqueue_moderation(db, "high_risk_review", ModerationPriority.HIGH, ["b"])

        urgent = list_moderation_items(db, priority="urgent")
        assert [i.reason for i in urgent] == ["scam_reported"]

    def test_resolve(self, db):
        item = enqueue_moderation(db, "high_risk_review", ModerationPriority.HIGH, ["a"])
        resolved = resolve_moderation_item(db, item.id, status="dismissed", notes="false positive")

        assert resolved.status == "dismissed"
        assert resolved.resolution_notes == "false positive"
        assert resolved.resolved_at is not None
        assert list_moderation_items(db) == []

    def test_resolve_missing_item(self, db):
        with pytest.raises(NotFoundError):
            resolve_moderation_item(db, 999)

    def test_stats(self, db):
        enqueue_moderation(db, "scam_reported", ModerationPriority.URGENT, ["a"])
        enqueue_moderation(db, "scam_reported", ModerationPriority.URGENT, ["b"])
        done = enqueue_moderation(db, "high_risk_review", ModerationPriority.HIGH, ["c"])
        resolve_moderation_item(db, done.id)

        stats = get_moderation_stats(db)
        assert stats["total"] == 3
        assert stats["by_status"] == {"open": 2, "resolved": 1}
        assert stats["open_by_priority"] == {"urgent": 2}


class TestAccountFlags:
    def test_flags_are_audit_logged(self, db):
        flags = flag_accounts(db, ["alice", "bob"], reason="critical_risk", transaction_id="tx-1", details={"score": 0.9})

        assert len(flags) == 2
        assert [f.user_id for f in active_flags(db, "alice")] == ["alice"]
        entries = db.query(AuditLogEntry).order_by(AuditLogEntry.user_id).all()
        assert [e.user_id for e in entries] == ["alice", "bob"]
        assert entries[0].action == "account_flagged:critical_risk"
        assert entries[0].details == {"transaction_id": "tx-1", "score": 0.9}

    def test_clear_flags(self, db):
        flag_accounts(db, ["alice"], reason="critical_risk")
        flag_accounts(db, ["alice"], reason="critical_risk")

        assert clear_flags(db, "alice") == 2
        assert active_flags(db, "alice") == []
        assert clear_flags(db, "alice") == 0
        actions = [e.action for e in db.query(AuditLogEntry).all()]
        assert actions.count("account_flags_cleared") == 1


def review_item(db, reviewer="alice", transaction_id="tx-1"):
    return enqueue_moderation(
        db,
        "high_risk_review",
        ModerationPriority.HIGH,
        [reviewer, "bob"],
        transaction_id=transaction_id,
        reviewer_id=reviewer,
    )


class TestModeratorDecisions:
    @pytest.fixture
    def published(self, db, clock):
        review = Review(
            transaction_id="tx-1",
            reviewer_id="alice",
            target_user_id="bob",
            rating=1,
            declared_outcome=TransactionStatus.DONE.value,
            weight=0.4,
            moderation_status="pending",
            revealed_at=clock(),
        )
        db.add(review)
        db.commit()
        return review

    def test_approve_keeps_review_visible(self, db, published):
        item = resolve_moderation_item(db, review_item(db).id, decision=ModerationDecision.APPROVE)

        assert item.decision == "approve"
        assert item.review_id == published.id
        assert published.moderation_status == "approved"
        assert published.is_visible is True

    def test_reject_hides_review_and_recomputes(self, db, profiles, published):
        reputation = ReputationService(db, profiles)
        assert reputation.recompute("bob").total_reviews == 1

        resolve_moderation_item(
            db,
            review_item(db).id,
            decision=ModerationDecision.REJECT,
            on_reviews_changed=reputation.recompute_for_reviews,
        )

        assert published.is_visible is False
        assert published.moderation_status == "rejected"
        assert reputation.get_reputation("bob").total_reviews == 0
        assert db.query(AuditLogEntry).filter(AuditLogEntry.action == "moderation_reject").count() == 1

    def test_reject_before_reveal_carries_into_reveal(self, db, master_key, clock):
        coordinator = BlindReviewCoordinator(db, master_key=master_key, now=clock)

        def write(reviewer, target, moderation_status=None):
            coordinator.submit(
                ReviewSubmission(
                    transaction_id="tx-1",
                    reviewer_id=reviewer,
                    target_user_id=target,
                    rating=1,
                    declared_outcome=TransactionStatus.DONE,
                ),
                weight=1.0,
                moderation_status=moderation_status,
            )

        write("alice", "bob", moderation_status="pending")
        resolve_moderation_item(db, review_item(db).id, decision=ModerationDecision.REJECT)
        write("bob", "alice")

        visibility = {r.reviewer_id: r.is_visible for r in db.query(Review).all()}
        assert visibility == {"alice": False, "bob": True}

    def test_decision_needs_a_linked_review(self, db):
        item = enqueue_moderation(db, "scam_report", ModerationPriority.URGENT, ["alice"])
        with pytest.raises(ReviewValidationError):
            resolve_moderation_item(db, item.id, decision=ModerationDecision.APPROVE)
        with pytest.raises(ReviewValidationError):
            resolve_moderation_item(db, item.id, decision=ModerationDecision.ALLOW)

    def test_missing_review(self, db):
        with pytest.raises(NotFoundError):
            resolve_moderation_item(db, review_item(db).id, decision=ModerationDecision.REJECT)


class TestRiskOverrides:
    def test_allow_grants_override(self, db):
        item = enqueue_moderation(
            db, "critical_review_risk", ModerationPriority.URGENT, ["alice", "bob"], transaction_id="tx-9"
        )
        assert has_risk_override(db, "tx-9") is False

        resolve_moderation_item(db, item.id, decision=ModerationDecision.ALLOW, notes="verified by phone")

        assert has_risk_override(db, "tx-9") is True
        assert has_risk_override(db, "tx-1") is False

    def test_grant_is_idempotent(self, db):
        first = grant_risk_override(db, "tx-9")
        second = grant_risk_override(db, "tx-9")
        assert first is second
        assert db.query(AuditLogEntry).filter(AuditLogEntry.action == "risk_override_granted").count() == 1
