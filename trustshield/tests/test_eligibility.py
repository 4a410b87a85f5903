"""Tests for review eligibility."""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from trustshield.models.review import PendingReview, Review
from trustshield.schemas.domain import ReviewPairState, TransactionStatus
from trustshield.services.eligibility_service import (
    check_eligibility,
    check_eligibility_for,
    count_recent_reviews,
    find_reviewable_transaction,
    has_already_reviewed,
)


class TestCheckEligibility:
    """Tests for the pure eligibility rules."""

    @pytest.fixture
    def accessors(self, clock):
        """Accessors for a reviewable transaction and an established reviewer."""
        transactions = {
            "tx1": SimpleNamespace(status=TransactionStatus.DONE, completed_at=clock() - timedelta(days=2)),
        }
        state = {"reviewed": set(), "age": 60.0, "recent": 0}
        return {
            "get_transaction": transactions.get,
            "has_already_reviewed": lambda uid, tx: (uid, tx) in state["reviewed"],
            "get_account_age_days": lambda uid: state["age"],
            "count_recent_reviews": lambda uid, since: state["recent"],
            "now": clock,
            "_transactions": transactions,
            "_state": state,
        }

    def _check(self, accessors, reviewer="alice", target="bob", tx="tx1"):
        kwargs = {k: v for k, v in accessors.items() if not k.startswith("_")}
        return check_eligibility(reviewer, target, tx, **kwargs)

    def test_eligible_review(self, accessors):
        """A completed transaction and an established reviewer may review."""
        result = self._check(accessors)
        assert result.allowed is True
        assert result.reason is None
        assert result.requires_verification is False

    def test_cannot_review_yourself(self, accessors):
        result = self._check(accessors, reviewer="alice", target="alice")
        assert result.allowed is False
        assert result.reason == "Cannot review yourself"

    def test_transaction_not_found(self, accessors):
        result = self._check(accessors, tx="missing")
        assert result.allowed is False
        assert result.reason == "Transaction not found"

    def test_published_pair_closes_review_period(self, accessors):
        accessors["get_pair_state"] = lambda tx: ReviewPairState.REVEALED_BY_DEADLINE
        result = self._check(accessors)
        assert result.allowed is False
        assert result.reason.startswith("Review period closed")

    def test_open_pair_does_not_block(self, accessors):
        accessors["get_pair_state"] = lambda tx: ReviewPairState.AWAITING_SECOND
        assert self._check(accessors).allowed is True

    def test_transaction_not_completed(self, accessors, clock):
        accessors["_transactions"]["tx2"] = SimpleNamespace(status="pending", completed_at=None)
        result = self._check(accessors, tx="tx2")
        assert result.allowed is False
        assert result.reason == "Transaction not completed - status: pending"

    def test_scam_reports_are_reviewable(self, accessors, clock):
        """Fraud can be reported on a transaction that never completed."""
        accessors["_transactions"]["tx3"] = SimpleNamespace(status="scam", completed_at=None)
        assert self._check(accessors, tx="tx3").allowed is True

    def test_already_reviewed(self, accessors):
        accessors["_state"]["reviewed"].add(("alice", "tx1"))
        result = self._check(accessors)
        assert result.allowed is False
        assert result.reason == "Already reviewed this transaction"

    def test_review_window_expired(self, accessors, clock):
        accessors["_transactions"]["old"] = SimpleNamespace(
            status=TransactionStatus.DONE, completed_at=clock() - timedelta(days=91)
        )
        result = self._check(accessors, tx="old")
        assert result.allowed is False
        assert "Review window expired" in result.reason

    def test_account_too_new(self, accessors):
        accessors["_state"]["age"] = 3.0
        result = self._check(accessors)
        assert result.allowed is False
        assert result.reason == "Account too new to review (must be 14+ days old)"

    def test_unknown_account_age_is_too_new(self, accessors):
        accessors["_state"]["age"] = None
        assert self._check(accessors).allowed is False

    def test_rate_limit_requires_verification(self, accessors):
        """Reaching the daily review limit asks for verification."""
        accessors["_state"]["recent"] = 5
        result = self._check(accessors)
        assert result.allowed is False
        assert result.requires_verification is True

    def test_below_rate_limit_allowed(self, accessors):
        accessors["_state"]["recent"] = 4
        assert self._check(accessors).allowed is True

    def test_first_failing_rule_wins(self, accessors):
        """Self-review is reported even when the transaction is missing too."""
        result = self._check(accessors, reviewer="bob", target="bob", tx="missing")
        assert result.reason == "Cannot review yourself"


class TestEligibilityWithDatabase:
    """Tests for eligibility wired to the database."""

    def _pending(self, db, tx_id, reviewer, target, submitted_at):
        db.add(
            PendingReview(
                transaction_id=tx_id,
                reviewer_id=reviewer,
                target_user_id=target,
                nonce=b"0" * 12,
                ciphertext=b"sealed",
                submitted_at=submitted_at,
                reveal_deadline=submitted_at + timedelta(days=14),
            )
        )
        db.commit()

    def test_sixth_review_in_a_day_requires_verification(self, db, profiles, clock, make_account, make_transaction):
        """Five reviews in the last 24 hours block the sixth until the reviewer verifies."""
        make_account("reviewer", age_days=60)
        for i in range(6):
            make_account(f"partner{i}", age_days=60)
            make_transaction(f"tx{i}", "reviewer", f"partner{i}")

        for i in range(5):
            result = check_eligibility_for(db, profiles, "reviewer", f"partner{i}", f"tx{i}", now=clock)
            assert result.allowed is True
            self._pending(db, f"tx{i}", "reviewer", f"partner{i}", clock() - timedelta(hours=5 - i))

        result = check_eligibility_for(db, profiles, "reviewer", "partner5", "tx5", now=clock)
        assert result.allowed is False
        assert result.requires_verification is True

    def test_old_reviews_do_not_count(self, db, clock):
        self._pending(db, "tx1", "reviewer", "bob", clock() - timedelta(hours=30))
        assert count_recent_reviews(db, "reviewer", clock() - timedelta(hours=24)) == 0

    def test_revealed_reviews_counted_once(self, db, clock):
        """A review that is both pending and visible counts once."""
        submitted = clock() - timedelta(hours=1)
        self._pending(db, "tx1", "reviewer", "bob", submitted)
        db.add(
            Review(
                transaction_id="tx1",
                reviewer_id="reviewer",
                target_user_id="bob",
                rating=5,
                declared_outcome="done",
                submitted_at=submitted,
            )
        )
        db.commit()
        assert count_recent_reviews(db, "reviewer", clock() - timedelta(hours=24)) == 1

    def test_pending_review_counts_as_reviewed(self, db, clock):
        self._pending(db, "tx1", "reviewer", "bob", clock())
        assert has_already_reviewed(db, "reviewer", "tx1") is True
        assert has_already_reviewed(db, "bob", "tx1") is False

    def test_find_reviewable_transaction(self, db, make_transaction):
        """The most recent completed, unreviewed transaction between two users is found."""
        make_transaction("older", "alice", "bob", completed_days_ago=10)
        make_transaction("newer", "bob", "alice", completed_days_ago=2)
        make_transaction("open", "alice", "bob", status=TransactionStatus.PENDING, completed_days_ago=None)

        assert find_reviewable_transaction(db, "alice", "bob").id == "newer"

    def test_find_reviewable_skips_reviewed(self, db, clock, make_transaction):
        make_transaction("older", "alice", "bob", completed_days_ago=10)
        make_transaction("newer", "alice", "bob", completed_days_ago=2)
        self._pending(db, "newer", "alice", "bob", clock())

        assert find_reviewable_transaction(db, "alice", "bob").id == "older"
        assert find_reviewable_transaction(db, "alice", "carol") is None
