"""
Admin API endpoints for TrustShield operations.

Includes:
- Moderation queue and account flags
- Detected risk patterns
- Maintenance (retention purge, reputation batches, cache)
- Metrics and monitoring
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from typing import List, Optional

from trustshield.api.security import verify_api_token
from trustshield.database import get_db
from trustshield.exceptions import NotFoundError, ReviewValidationError, StorageError
from trustshield.models.risk_pattern import RiskPatternRecord
from trustshield.schemas.api_schemas import (
    ModerationItemResponse,
    PatternStatusRequest,
    ResolveModerationRequest,
)
from trustshield.schemas.domain import ModerationDecision
from trustshield.services.moderation_service import (
    active_flags,
    clear_flags,
    get_moderation_stats,
    list_moderation_items,
    resolve_moderation_item,
)
from trustshield.services.profile_service import DatabaseProfileAccessor
from trustshield.services.reputation_service import ReputationService
from trustshield.services.retention_service import purge_expired_tracking
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import metrics


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_api_token)],
)

MODERATION_RESOLUTIONS = {"resolved", "dismissed"}
PATTERN_STATUSES = {"pending", "resolved", "dismissed"}


def _moderation_response(item) -> ModerationItemResponse:
    return ModerationItemResponse(
        id=item.id,
        priority=item.priority,
        reason=item.reason,
        status=item.status,
        related_accounts=item.related_accounts or [],
        evidence=item.evidence or {},
        transaction_id=item.transaction_id,
        reviewer_id=item.reviewer_id,
        decision=item.decision,
        created_at=item.created_at,
    )


def _pattern_dict(record: RiskPatternRecord) -> dict:
    return {
        "id": record.id,
        "type": record.pattern_type,
        "severity": record.severity,
        "description": record.description,
        "affected_users": record.affected_users or [],
        "evidence": record.evidence or {},
        "status": record.status,
        "detected_at": record.detected_at.isoformat() if record.detected_at else None,
    }


# ============== MODERATION ENDPOINTS ==============


@router.get("/moderation", response_model=List[ModerationItemResponse])
def list_moderation(
    status_filter: str = "open",
    priority: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List moderation items, newest first."""
    items = list_moderation_items(db, status=status_filter, priority=priority, limit=limit)
    return [_moderation_response(item) for item in items]


@router.post("/moderation/{item_id}/resolve", response_model=ModerationItemResponse)
def resolve_moderation(item_id: int, request: ResolveModerationRequest, db: Session = Depends(get_db)):
    if request.status not in MODERATION_RESOLUTIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status '{request.status}'. Must be one of {sorted(MODERATION_RESOLUTIONS)}.",
        )
    decision = None
    if request.decision is not None:
        try:
            decision = ModerationDecision(request.decision)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid decision '{request.decision}'. Must be one of {[d.value for d in ModerationDecision]}.",
            )

    reputation = ReputationService(db, DatabaseProfileAccessor(db))
    try:
        item = resolve_moderation_item(
            db,
            item_id,
            status=request.status,
            notes=request.notes,
            decision=decision,
            on_reviews_changed=reputation.recompute_for_reviews,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ReviewValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return _moderation_response(item)


@router.get("/moderation/stats")
def moderation_stats(db: Session = Depends(get_db)):
    return get_moderation_stats(db)


# ============== ACCOUNT FLAGS ==============


@router.get("/flags/{user_id}")
def get_flags(user_id: str, db: Session = Depends(get_db)):
    """Active (uncleared) flags on an account."""
    return {
        "user_id": user_id,
        "flags": [
            {
                "id": flag.id,
                "reason": flag.reason,
                "transaction_id": flag.transaction_id,
                "created_at": flag.created_at.isoformat() if flag.created_at else None,
            }
            for flag in active_flags(db, user_id)
        ],
    }


@router.delete("/flags/{user_id}")
def remove_flags(user_id: str, db: Session = Depends(get_db)):
    cleared = clear_flags(db, user_id)
    return {"message": f"Cleared {cleared} flag(s)", "user_id": user_id, "cleared": cleared}


# ============== RISK PATTERNS ==============


@router.get("/patterns/{user_id}")
def list_patterns(user_id: str, limit: int = 50, offset: int = 0, db: Session = Depends(get_db)):
    """Risk patterns recorded against a user, newest first."""
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    records = TrackingRepository(db).patterns_for_user(user_id, limit=limit, offset=offset)
    return {
        "user_id": user_id,
        "patterns": [_pattern_dict(r) for r in records],
        "next_offset": offset + len(records) if len(records) == limit else None,
    }


@router.put("/patterns/{pattern_id}/status")
def update_pattern_status(pattern_id: int, request: PatternStatusRequest, db: Session = Depends(get_db)):
    if request.status not in PATTERN_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status '{request.status}'. Must be one of {sorted(PATTERN_STATUSES)}.",
        )
    record = db.query(RiskPatternRecord).filter(RiskPatternRecord.id == pattern_id).first()
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Pattern {pattern_id} not found")

    record.status = request.status
    record.resolved_at = None if request.status == "pending" else utcnow()
    db.commit()
    return _pattern_dict(record)


# ============== MAINTENANCE ==============


@router.post("/retention/purge")
def run_retention_purge(db: Session = Depends(get_db)):
    """Delete tracking data and risk patterns past their retention windows."""
    try:
        counts = purge_expired_tracking(db)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return {"message": "Retention purge complete", "purged": counts}


@router.post("/reputation/batch")
def run_reputation_batch(cursor: Optional[str] = None, batch_size: Optional[int] = None, db: Session = Depends(get_db)):
    """Recompute one batch of reputations. Pass the returned cursor to continue."""
    service = ReputationService(db, DatabaseProfileAccessor(db))
    try:
        processed, next_cursor = service.recompute_batch(cursor, batch_size)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return {"processed": processed, "next_cursor": next_cursor}


@router.get("/tracking/stats")
def tracking_stats(db: Session = Depends(get_db)):
    return TrackingRepository(db).count_events()


@router.post("/cache/clear")
def clear_cache(request: Request):
    cache = request.app.state.report_cache
    cleared = cache.size
    cache.clear()
    return {"message": "Risk report cache cleared", "cleared": cleared}


# ============== METRICS ENDPOINTS ==============


@router.get("/metrics")
async def get_metrics():
    """Get current application metrics."""
    return metrics.get_stats()


@router.post("/metrics/reset")
async def reset_metrics():
    """Reset all metrics (use with caution)."""
    metrics.reset()
    return {"message": "Metrics reset successfully"}
