import uuid
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from trustshield.config import settings
from trustshield.database import Base, engine, get_db
from trustshield.exceptions import ReviewValidationError, RiskBlocked, StorageError
# Every table must be registered before create_all
import trustshield.models.account  # noqa: F401
import trustshield.models.moderation  # noqa: F401
import trustshield.models.reputation  # noqa: F401
import trustshield.models.review  # noqa: F401
import trustshield.models.risk_pattern  # noqa: F401
import trustshield.models.tracking  # noqa: F401
import trustshield.models.transaction  # noqa: F401
from trustshield.schemas.api_schemas import (
    BadgeCheckResponse,
    BadgeResponse,
    DeviceTrackRequest,
    EligibilityRequest,
    EligibilityResponse,
    IpTrackRequest,
    LocationTrackRequest,
    PatternResponse,
    ReputationResponse,
    ReviewableTransactionResponse,
    ReviewResponse,
    ReviewSubmitRequest,
    ReviewSubmitResponse,
    RiskAnalyzeRequest,
    RiskReportResponse,
    SweepResponse,
    TrackingResponse,
    WeightRequest,
    WeightResponse,
)
from trustshield.schemas.domain import ReputationBadge, ReviewSubmission
from trustshield.pipelines.review_pipeline import ReviewPipeline
from trustshield.services.blind_review_service import load_master_key
from trustshield.services.cache_service import ReportCache
from trustshield.services.eligibility_service import check_eligibility_for, find_reviewable_transaction, get_transaction
from trustshield.services.ip_pattern_service import IpReputationProvider
from trustshield.services.notification_service import NotificationDispatcher
from trustshield.services.profile_service import DatabaseProfileAccessor
from trustshield.services.reputation_service import check_badge_eligibility
from trustshield.services.weight_service import apply_risk_adjustment, compute_weight
from trustshield.tasks.sweeps import SweepScheduler
from trustshield.api.security import verify_api_token, check_rate_limit
from trustshield.api.admin import router as admin_router
from trustshield.utils.geo import is_valid_coordinate
from trustshield.utils.logging_config import metrics, request_id_var, StructuredLogger, init_logging

# Initialize structured logging
init_logging()

logger = StructuredLogger(__name__)

Base.metadata.create_all(bind=engine)

# Process-wide collaborators shared by every request
review_master_key = load_master_key()
report_cache = ReportCache()
ip_reputation = IpReputationProvider()
notifier = NotificationDispatcher()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeps = None
    if settings.run_sweeps:
        sweeps = SweepScheduler(master_key=review_master_key, notifier=notifier)
        sweeps.start()
    yield
    if sweeps is not None:
        sweeps.shutdown()
    notifier.shutdown(wait=False)


# Create app with metadata
app = FastAPI(
    title="TrustShield API",
    version="0.1.0",
    description="Trust and anti-abuse reputation engine for peer-to-peer marketplaces",
    docs_url="/docs" if settings.debug else None,  # Disable docs in production
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Request id middleware, ties log lines of one request together
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# Rate limit headers middleware
@app.middleware("http")
async def add_rate_limit_headers(request: Request, call_next):
    response = await call_next(request)
    if hasattr(request.state, "rate_limit_remaining"):
        response.headers["X-RateLimit-Limit"] = str(request.state.rate_limit_limit)
        response.headers["X-RateLimit-Remaining"] = str(request.state.rate_limit_remaining)
    return response


def get_pipeline(db: Session = Depends(get_db)) -> ReviewPipeline:
    return ReviewPipeline(
        db,
        DatabaseProfileAccessor(db),
        master_key=review_master_key,
        notifier=notifier,
        cache=report_cache,
        ip_reputation=ip_reputation,
    )


def _client_ip(request: Request):
    return request.client.host if request.client else None


def _patterns(patterns) -> list:
    return [PatternResponse(**p.to_dict()) for p in patterns]


def _storage_unavailable(e: StorageError) -> HTTPException:
    logger.error("Storage unavailable", error=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Storage temporarily unavailable. Please retry.",
    )


app.state.report_cache = report_cache

# Include admin router
app.include_router(admin_router)


@app.get("/health")
def health():
    """Health check endpoint - no auth required."""
    return {"status": "ok"}


@app.get("/status")
def status_info():
    """
    API status and configuration info.
    Useful for debugging and monitoring.
    """
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "auth_enabled": bool(settings.api_token),
        "rate_limit": {
            "requests": settings.rate_limit_requests,
            "window_seconds": settings.rate_limit_window,
        },
        "sweeps_enabled": settings.run_sweeps,
        "cached_reports": report_cache.size,
    }


# ============== ELIGIBILITY ==============


@app.post(
    "/eligibility",
    response_model=EligibilityResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def eligibility(request: EligibilityRequest, db: Session = Depends(get_db)):
    result = check_eligibility_for(
        db,
        DatabaseProfileAccessor(db),
        request.reviewer_id,
        request.target_user_id,
        request.transaction_id,
    )
    return EligibilityResponse(
        allowed=result.allowed,
        reason=result.reason,
        requires_verification=result.requires_verification,
    )


@app.get(
    "/eligibility/{user_id}/with/{other_user_id}",
    response_model=ReviewableTransactionResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def reviewable_transaction(user_id: str, other_user_id: str, db: Session = Depends(get_db)):
    """Find the transaction a user can still review with another user, if any."""
    transaction = find_reviewable_transaction(db, user_id, other_user_id)
    if transaction is None:
        return ReviewableTransactionResponse(eligible=False)

    result = check_eligibility_for(db, DatabaseProfileAccessor(db), user_id, other_user_id, transaction.id)
    return ReviewableTransactionResponse(
        transaction_id=transaction.id,
        completed_at=transaction.completed_at,
        eligible=result.allowed,
    )


# ============== RISK ==============


@app.post(
    "/risk/analyze",
    response_model=RiskReportResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def analyze_risk(request: RiskAnalyzeRequest, pipeline: ReviewPipeline = Depends(get_pipeline)):
    if request.user_a == request.user_b:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="user_a and user_b must be different users.",
        )
    report = pipeline.analyze_risk(request.transaction_id, request.user_a, request.user_b)
    return RiskReportResponse(**report.to_dict())


# ============== REVIEWS ==============


@app.post(
    "/weight",
    response_model=WeightResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def weight(request: WeightRequest, pipeline: ReviewPipeline = Depends(get_pipeline)):
    """Preview the weight a review would receive, without storing anything."""
    try:
        submission = ReviewSubmission(
            transaction_id=request.transaction_id,
            reviewer_id=request.reviewer_id,
            target_user_id=request.target_user_id,
            rating=request.rating,
            declared_outcome=request.declared_outcome,
        )
    except ReviewValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    transaction = get_transaction(pipeline.db, request.transaction_id)
    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found.")

    profiles = pipeline.profiles
    result = compute_weight(
        submission,
        reviewer_account_type=profiles.get_account_type(request.reviewer_id),
        transaction_value=transaction.estimated_value,
        reviewer_reputation=pipeline.reputation.reviewer_reputation(request.reviewer_id),
        is_verified_transaction=bool(transaction.location_confirmed),
        reviewer_account_age_days=profiles.get_account_age_days(request.reviewer_id),
    )

    risk_level = None
    if request.include_risk:
        report = pipeline.analyze_risk(request.transaction_id, request.reviewer_id, request.target_user_id)
        result = apply_risk_adjustment(result, report)
        risk_level = report.risk_level.value

    return WeightResponse(weight=result.weight, modifiers=result.modifiers, risk_level=risk_level)


@app.post(
    "/reviews/submit",
    response_model=ReviewSubmitResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def submit_review(
    request: ReviewSubmitRequest,
    http_request: Request,
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    try:
        submission = ReviewSubmission(
            transaction_id=request.transaction_id,
            reviewer_id=request.reviewer_id,
            target_user_id=request.target_user_id,
            rating=request.rating,
            declared_outcome=request.declared_outcome,
            text=request.text,
        )
        outcome = pipeline.submit_review(
            submission,
            device_fingerprint=request.device_fingerprint,
            ip_address=_client_ip(http_request),
            user_agent=request.user_agent or http_request.headers.get("user-agent"),
        )
    except ReviewValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RiskBlocked as e:
        # Never tell the submitter which signals fired
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.public_message)
    except StorageError as e:
        raise _storage_unavailable(e)

    if not outcome.accepted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "reason": outcome.message,
                "requires_verification": bool(outcome.eligibility and outcome.eligibility.requires_verification),
            },
        )

    return ReviewSubmitResponse(
        transaction_id=outcome.transaction_id,
        state=outcome.state.value,
        weight=outcome.weight,
        moderation_required=outcome.moderation_required,
        revealed_review_ids=outcome.revealed_review_ids,
        message=outcome.message,
    )


@app.post(
    "/reviews/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(verify_api_token)],
)
def reveal_sweep(pipeline: ReviewPipeline = Depends(get_pipeline)):
    """Publish every concealed review whose reveal deadline has passed."""
    try:
        revealed = pipeline.coordinator.reveal_expired()
    except StorageError as e:
        raise _storage_unavailable(e)
    metrics.increment("sweeps.reveal.manual")
    return SweepResponse(revealed=revealed)


def _review_response(review) -> ReviewResponse:
    return ReviewResponse(
        id=review.id,
        transaction_id=review.transaction_id,
        reviewer_id=review.reviewer_id,
        target_user_id=review.target_user_id,
        rating=review.rating,
        text=review.text,
        declared_outcome=review.declared_outcome,
        weight=review.weight,
        is_verified=bool(review.is_verified),
        moderation_status=review.moderation_status,
        revealed_at=review.revealed_at,
    )


@app.get(
    "/reviews/user/{user_id}",
    response_model=List[ReviewResponse],
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def reviews_for_user(user_id: str, limit: int = 20, offset: int = 0, pipeline: ReviewPipeline = Depends(get_pipeline)):
    """Visible reviews a user has received, newest first."""
    limit = max(1, min(limit, 100))
    reviews = pipeline.reputation.reviews_for_user(user_id, limit=limit, offset=max(0, offset))
    return [_review_response(r) for r in reviews]


@app.get(
    "/reviews/transaction/{transaction_id}",
    response_model=List[ReviewResponse],
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def reviews_for_transaction(transaction_id: str, pipeline: ReviewPipeline = Depends(get_pipeline)):
    """Both reviews of a transaction once revealed; concealed reviews are never listed."""
    return [_review_response(r) for r in pipeline.reputation.reviews_for_transaction(transaction_id)]


# ============== REPUTATION ==============


@app.get(
    "/reputation/{user_id}",
    response_model=ReputationResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def get_reputation(user_id: str, pipeline: ReviewPipeline = Depends(get_pipeline)):
    try:
        score = pipeline.reputation.get_reputation(user_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    return ReputationResponse(**score.to_dict())


@app.post(
    "/reputation/{user_id}/recompute",
    response_model=ReputationResponse,
    dependencies=[Depends(verify_api_token)],
)
def recompute_reputation(user_id: str, pipeline: ReviewPipeline = Depends(get_pipeline)):
    try:
        score = pipeline.reputation.recompute(user_id)
    except StorageError as e:
        raise _storage_unavailable(e)
    return ReputationResponse(**score.to_dict())


@app.get(
    "/reputation/{user_id}/badges",
    response_model=List[BadgeResponse],
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def get_badges(user_id: str, pipeline: ReviewPipeline = Depends(get_pipeline)):
    badges = []
    for row in pipeline.reputation.stored_badges(user_id):
        try:
            description = ReputationBadge(row.badge).description
        except ValueError:
            description = row.badge
        badges.append(BadgeResponse(badge=row.badge, description=description, earned_at=row.earned_at))
    return badges


@app.get(
    "/reputation/{user_id}/badges/{badge}",
    response_model=BadgeCheckResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def check_badge(user_id: str, badge: str, pipeline: ReviewPipeline = Depends(get_pipeline)):
    """Whether the user currently qualifies for a badge, against their stored reputation."""
    try:
        wanted = ReputationBadge(badge)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown badge '{badge}'")
    reputation = pipeline.reputation.get_reputation(user_id)
    eligible = check_badge_eligibility(user_id, wanted, reputation, pipeline.profiles)
    return BadgeCheckResponse(badge=wanted.value, eligible=eligible)


@app.get(
    "/reputation/{user_id}/statistics",
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def review_statistics(user_id: str, pipeline: ReviewPipeline = Depends(get_pipeline)):
    return pipeline.reputation.review_statistics(user_id)


# ============== TRACKING ==============


@app.post(
    "/tracking/device",
    response_model=TrackingResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def track_device(
    request: DeviceTrackRequest,
    http_request: Request,
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    try:
        pattern = pipeline.device_detector.track_device_usage(
            request.user_id,
            request.device_fingerprint,
            ip_address=request.ip_address or _client_ip(http_request),
            user_agent=request.user_agent or http_request.headers.get("user-agent"),
            action=request.action,
        )
    except StorageError as e:
        raise _storage_unavailable(e)
    report_cache.invalidate_user(request.user_id)
    return TrackingResponse(recorded=True, patterns=_patterns([pattern] if pattern else []))


@app.post(
    "/tracking/ip",
    response_model=TrackingResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def track_ip(request: IpTrackRequest, pipeline: ReviewPipeline = Depends(get_pipeline)):
    try:
        pattern = pipeline.ip_detector.track_ip_usage(
            request.user_id,
            request.ip_address,
            action=request.action,
            country=request.country,
        )
    except StorageError as e:
        raise _storage_unavailable(e)
    report_cache.invalidate_user(request.user_id)
    return TrackingResponse(recorded=True, patterns=_patterns([pattern] if pattern else []))


@app.post(
    "/tracking/location",
    response_model=TrackingResponse,
    dependencies=[Depends(verify_api_token), Depends(check_rate_limit)],
)
def track_location(request: LocationTrackRequest, pipeline: ReviewPipeline = Depends(get_pipeline)):
    try:
        patterns = pipeline.location_detector.track_location_change(
            request.user_id,
            request.new_latitude,
            request.new_longitude,
            old_latitude=request.old_latitude,
            old_longitude=request.old_longitude,
        )
    except StorageError as e:
        raise _storage_unavailable(e)
    recorded = is_valid_coordinate(request.new_latitude, request.new_longitude)
    report_cache.invalidate_user(request.user_id)
    return TrackingResponse(recorded=recorded, patterns=_patterns(patterns))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("trustshield.api.server:app", host="0.0.0.0", port=8000, reload=settings.debug and not settings.is_production)
