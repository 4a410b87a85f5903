"""
Moderation queue, audit log and account flags.

Functions take the caller's session and commit, like the feedback service
they sit next to.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from trustshield.exceptions import NotFoundError, ReviewValidationError
from trustshield.models.moderation import AccountFlag, AuditLogEntry, ModerationItem, RiskOverride
from trustshield.models.review import PendingReview, Review
from trustshield.schemas.domain import ModerationDecision, ModerationPriority
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import metrics

logger = logging.getLogger(__name__)

ReviewsCallback = Callable[[Session, List[Review]], None]


def enqueue_moderation(
    db: Session,
    reason: str,
    priority: ModerationPriority,
    related_accounts: List[str],
    evidence: Optional[Dict[str, Any]] = None,
    transaction_id: Optional[str] = None,
    review_id: Optional[int] = None,
    reviewer_id: Optional[str] = None,
    commit: bool = True,
) -> ModerationItem:
    item = ModerationItem(
        reason=reason,
        priority=priority.value,
        related_accounts=list(related_accounts),
        evidence=evidence or {},
        transaction_id=transaction_id,
        reviewer_id=reviewer_id,
        review_id=review_id,
        created_at=utcnow(),
    )
    db.add(item)
    if commit:
        db.commit()
        db.refresh(item)
    metrics.increment(f"moderation.enqueued.{priority.value}")
    logger.info(f"Moderation item queued: {reason} ({priority.value}) for {related_accounts}")
    return item


def list_moderation_items(
    db: Session,
    status: str = "open",
    priority: Optional[str] = None,
    limit: int = 50,
) -> List[ModerationItem]:
    query = db.query(ModerationItem).filter(ModerationItem.status == status)
    if priority:
        query = query.filter(ModerationItem.priority == priority)
    return query.order_by(ModerationItem.created_at.desc()).limit(limit).all()


def resolve_moderation_item(
    db: Session,
    item_id: int,
    status: str = "resolved",
    notes: Optional[str] = None,
    decision: Optional[ModerationDecision] = None,
    on_reviews_changed: Optional[ReviewsCallback] = None,
) -> ModerationItem:
    """
    Close a moderation item, optionally applying a decision.

    APPROVE and REJECT act on the review the item was raised for, whether it
    is still concealed or already visible. ALLOW grants a risk override for the
    item's transaction. Reviews that changed are handed to on_reviews_changed
    (reputation recompute) after the commit.
    """
    item = db.query(ModerationItem).filter(ModerationItem.id == item_id).first()
    if item is None:
        raise NotFoundError(f"Moderation item {item_id} not found")

    changed: List[Review] = []
    if decision in (ModerationDecision.APPROVE, ModerationDecision.REJECT):
        changed = _apply_review_decision(db, item, decision)
    elif decision == ModerationDecision.ALLOW:
        if not item.transaction_id:
            raise ReviewValidationError("Moderation item has no transaction to allow", field="decision")
        grant_risk_override(db, item.transaction_id, moderation_item_id=item.id, notes=notes, commit=False)

    item.status = status
    item.decision = decision.value if decision else None
    item.resolution_notes = notes
    item.resolved_at = utcnow()
    if decision:
        write_audit_log(
            db,
            action=f"moderation_{decision.value}",
            user_id=item.reviewer_id,
            details={"item_id": item.id, "transaction_id": item.transaction_id, "notes": notes},
            commit=False,
        )
    db.commit()
    db.refresh(item)

    if decision:
        metrics.increment(f"moderation.decision.{decision.value}")
    if on_reviews_changed is not None and changed:
        on_reviews_changed(db, changed)
    return item


def _apply_review_decision(db: Session, item: ModerationItem, decision: ModerationDecision) -> List[Review]:
    if not item.transaction_id or not item.reviewer_id:
        raise ReviewValidationError("Moderation item is not linked to a review", field="decision")

    moderation_status = "approved" if decision == ModerationDecision.APPROVE else "rejected"
    pending = (
        db.query(PendingReview)
        .filter(PendingReview.transaction_id == item.transaction_id, PendingReview.reviewer_id == item.reviewer_id)
        .first()
    )
    review = (
        db.query(Review)
        .filter(Review.transaction_id == item.transaction_id, Review.reviewer_id == item.reviewer_id)
        .first()
    )
    if pending is None and review is None:
        raise NotFoundError(f"No review by {item.reviewer_id} on {item.transaction_id}")

    # A concealed review carries the decision into the reveal
    if pending is not None:
        pending.moderation_status = moderation_status
    if review is None:
        return []
    review.moderation_status = moderation_status
    review.is_visible = decision == ModerationDecision.APPROVE
    item.review_id = review.id
    return [review]


def grant_risk_override(
    db: Session,
    transaction_id: str,
    moderation_item_id: Optional[int] = None,
    notes: Optional[str] = None,
    commit: bool = True,
) -> RiskOverride:
    """Let reviews for a blocked transaction through the CRITICAL risk check. Idempotent."""
    override = db.query(RiskOverride).filter(RiskOverride.transaction_id == transaction_id).first()
    if override is None:
        override = RiskOverride(
            transaction_id=transaction_id,
            moderation_item_id=moderation_item_id,
            notes=notes,
            granted_at=utcnow(),
        )
        db.add(override)
        write_audit_log(db, action="risk_override_granted", details={"transaction_id": transaction_id}, commit=False)
        logger.warning(f"Risk override granted for transaction {transaction_id}")
    if commit:
        db.commit()
    return override


def has_risk_override(db: Session, transaction_id: str) -> bool:
    return db.query(RiskOverride.transaction_id).filter(RiskOverride.transaction_id == transaction_id).first() is not None


def write_audit_log(
    db: Session,
    action: str,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AuditLogEntry:
    entry = AuditLogEntry(user_id=user_id, action=action, details=details or {}, created_at=utcnow())
    db.add(entry)
    if commit:
        db.commit()
    return entry


def flag_accounts(
    db: Session,
    user_ids: List[str],
    reason: str,
    transaction_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> List[AccountFlag]:
    """Flag accounts and audit-log each flag in one commit."""
    flags = []
    for user_id in user_ids:
        flag = AccountFlag(user_id=user_id, reason=reason, transaction_id=transaction_id, created_at=utcnow())
        db.add(flag)
        flags.append(flag)
        write_audit_log(
            db,
            action=f"account_flagged:{reason}",
            user_id=user_id,
            details={"transaction_id": transaction_id, **(details or {})},
            commit=False,
        )
    db.commit()
    metrics.increment("accounts.flagged", len(flags))
    logger.warning(f"Flagged accounts {user_ids} for {reason}")
    return flags


def active_flags(db: Session, user_id: str) -> List[AccountFlag]:
    return (
        db.query(AccountFlag)
        .filter(AccountFlag.user_id == user_id, AccountFlag.cleared_at.is_(None))
        .all()
    )


def clear_flags(db: Session, user_id: str) -> int:
    flags = active_flags(db, user_id)
    for flag in flags:
        flag.cleared_at = utcnow()
    if flags:
        write_audit_log(db, action="account_flags_cleared", user_id=user_id, commit=False)
    db.commit()
    return len(flags)


def get_moderation_stats(db: Session) -> Dict[str, Any]:
    items = db.query(ModerationItem).all()
    by_status: Dict[str, int] = {}
    by_priority: Dict[str, int] = {}
    for item in items:
        by_status[item.status] = by_status.get(item.status, 0) + 1
        if item.status == "open":
            by_priority[item.priority] = by_priority.get(item.priority, 0) + 1
    return {"total": len(items), "by_status": by_status, "open_by_priority": by_priority}
