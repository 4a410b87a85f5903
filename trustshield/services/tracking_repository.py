"""
Tracking repository.

Reads and writes the raw device, IP and location events the detectors work
from, plus the append-only risk pattern log.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Iterable

from sqlalchemy import func, and_, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trustshield.exceptions import StorageError
from trustshield.models.tracking import DeviceTrackingEvent, IpTrackingEvent, LocationChange
from trustshield.models.risk_pattern import RiskPatternRecord, RiskPatternSubject
from trustshield.schemas.domain import (
    DevicePatternAnalysis,
    IpPatternAnalysis,
    LocationChangeRecord,
    SuspiciousPattern,
)
from trustshield.utils.clock import utcnow, to_naive_utc

logger = logging.getLogger(__name__)


class TrackingRepository:
    """SQLAlchemy-backed store for tracking events and detected patterns."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, what: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist {what}: {e}")
            raise StorageError(f"Failed to persist {what}") from e

    # ==========================================================================
    # WRITES
    # ==========================================================================

    def record_device_event(
        self,
        user_id: str,
        device_fingerprint: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        action: str = "login",
        at: Optional[datetime] = None,
    ) -> DeviceTrackingEvent:
        event = DeviceTrackingEvent(
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            action=action,
            created_at=to_naive_utc(at) or utcnow(),
        )
        self.db.add(event)
        self._commit("device event")
        return event

    def record_ip_event(
        self,
        user_id: str,
        ip_address: str,
        action: str = "login",
        at: Optional[datetime] = None,
        is_vpn: bool = False,
        is_proxy: bool = False,
        is_tor: bool = False,
        is_datacenter: bool = False,
        country: Optional[str] = None,
    ) -> IpTrackingEvent:
        event = IpTrackingEvent(
            user_id=user_id,
            ip_address=ip_address,
            action=action,
            created_at=to_naive_utc(at) or utcnow(),
            is_vpn=is_vpn,
            is_proxy=is_proxy,
            is_tor=is_tor,
            is_datacenter=is_datacenter,
            country=country,
        )
        self.db.add(event)
        self._commit("ip event")
        return event

    def record_location_change(
        self,
        user_id: str,
        new_latitude: float,
        new_longitude: float,
        old_latitude: Optional[float] = None,
        old_longitude: Optional[float] = None,
        at: Optional[datetime] = None,
    ) -> LocationChange:
        change = LocationChange(
            user_id=user_id,
            old_latitude=old_latitude,
            old_longitude=old_longitude,
            new_latitude=new_latitude,
            new_longitude=new_longitude,
            changed_at=to_naive_utc(at) or utcnow(),
        )
        self.db.add(change)
        self._commit("location change")
        return change

    def record_patterns(self, patterns: Iterable[SuspiciousPattern]) -> int:
        count = 0
        for pattern in patterns:
            record = RiskPatternRecord(
                pattern_type=pattern.type.value,
                severity=pattern.severity.value,
                description=pattern.description,
                affected_users=list(pattern.affected_users),
                evidence=dict(pattern.evidence),
                detected_at=utcnow(),
            )
            record.subjects = [RiskPatternSubject(user_id=u) for u in dict.fromkeys(pattern.affected_users)]
            self.db.add(record)
            count += 1
        if count:
            self._commit("risk patterns")
        return count

    # ==========================================================================
    # DEVICE QUERIES
    # ==========================================================================

    def device_fingerprints_for_user(self, user_id: str) -> List[str]:
        rows = (
            self.db.query(DeviceTrackingEvent.device_fingerprint)
            .filter(DeviceTrackingEvent.user_id == user_id)
            .distinct()
            .all()
        )
        return sorted(r[0] for r in rows)

    def device_analysis(self, device_fingerprint: str) -> Optional[DevicePatternAnalysis]:
        events = (
            self.db.query(DeviceTrackingEvent)
            .filter(DeviceTrackingEvent.device_fingerprint == device_fingerprint)
            .order_by(DeviceTrackingEvent.created_at)
            .all()
        )
        if not events:
            return None

        users = sorted({e.user_id for e in events})
        user_agent = next((e.user_agent for e in reversed(events) if e.user_agent), None)
        return DevicePatternAnalysis(
            device_fingerprint=device_fingerprint,
            associated_user_ids=users,
            first_seen_at=events[0].created_at,
            last_seen_at=events[-1].created_at,
            total_accounts=len(users),
            user_agent=user_agent,
        )

    def shared_devices(self, user_a: str, user_b: str) -> List[str]:
        a = set(self.device_fingerprints_for_user(user_a))
        b = set(self.device_fingerprints_for_user(user_b))
        return sorted(a & b)

    # ==========================================================================
    # IP QUERIES
    # ==========================================================================

    def ip_addresses_for_user(self, user_id: str) -> List[str]:
        rows = (
            self.db.query(IpTrackingEvent.ip_address)
            .filter(IpTrackingEvent.user_id == user_id)
            .distinct()
            .all()
        )
        return sorted(r[0] for r in rows)

    def ip_analysis(self, ip_address: str) -> Optional[IpPatternAnalysis]:
        events = (
            self.db.query(IpTrackingEvent)
            .filter(IpTrackingEvent.ip_address == ip_address)
            .order_by(IpTrackingEvent.created_at)
            .all()
        )
        if not events:
            return None

        users = sorted({e.user_id for e in events})
        return IpPatternAnalysis(
            ip_address=ip_address,
            associated_user_ids=users,
            first_seen_at=events[0].created_at,
            last_seen_at=events[-1].created_at,
            total_accounts=len(users),
            is_vpn=any(e.is_vpn for e in events),
            is_proxy=any(e.is_proxy for e in events),
            is_tor=any(e.is_tor for e in events),
            is_datacenter=any(e.is_datacenter for e in events),
            country=events[-1].country,
        )

    def ip_activity(self, ip_address: str) -> List[IpTrackingEvent]:
        return (
            self.db.query(IpTrackingEvent)
            .filter(IpTrackingEvent.ip_address == ip_address)
            .order_by(IpTrackingEvent.created_at)
            .all()
        )

    def shared_ips(self, user_a: str, user_b: str) -> List[str]:
        a = set(self.ip_addresses_for_user(user_a))
        b = set(self.ip_addresses_for_user(user_b))
        return sorted(a & b)

    # ==========================================================================
    # LOCATION QUERIES
    # ==========================================================================

    @staticmethod
    def _to_record(row: LocationChange) -> LocationChangeRecord:
        return LocationChangeRecord(
            user_id=row.user_id,
            new_latitude=row.new_latitude,
            new_longitude=row.new_longitude,
            changed_at=row.changed_at,
            old_latitude=row.old_latitude,
            old_longitude=row.old_longitude,
        )

    def location_changes(self, user_id: str, limit: Optional[int] = None) -> List[LocationChangeRecord]:
        """Changes for a user in chronological order. With limit, the most recent N."""
        query = self.db.query(LocationChange).filter(LocationChange.user_id == user_id)
        if limit is not None:
            rows = query.order_by(LocationChange.changed_at.desc(), LocationChange.id.desc()).limit(limit).all()
            rows.reverse()
        else:
            rows = query.order_by(LocationChange.changed_at, LocationChange.id).all()
        return [self._to_record(r) for r in rows]

    def location_changes_between(self, start: datetime, end: datetime) -> List[LocationChangeRecord]:
        rows = (
            self.db.query(LocationChange)
            .filter(and_(LocationChange.changed_at >= start, LocationChange.changed_at <= end))
            .order_by(LocationChange.changed_at, LocationChange.id)
            .all()
        )
        return [self._to_record(r) for r in rows]

    def current_location(self, user_id: str) -> Optional[LocationChangeRecord]:
        row = (
            self.db.query(LocationChange)
            .filter(LocationChange.user_id == user_id)
            .order_by(LocationChange.changed_at.desc(), LocationChange.id.desc())
            .first()
        )
        return self._to_record(row) if row else None

    # ==========================================================================
    # PATTERN LOG & RETENTION
    # ==========================================================================

    def patterns_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[RiskPatternRecord]:
        return (
            self.db.query(RiskPatternRecord)
            .join(RiskPatternSubject, RiskPatternSubject.pattern_id == RiskPatternRecord.id)
            .filter(RiskPatternSubject.user_id == user_id)
            .order_by(RiskPatternRecord.detected_at.desc(), RiskPatternRecord.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def purge(self, tracking_cutoff: datetime, pattern_cutoff: datetime) -> Dict[str, int]:
        """Delete tracking rows older than tracking_cutoff and patterns older than pattern_cutoff."""
        counts = {}
        try:
            counts["device"] = self.db.execute(
                delete(DeviceTrackingEvent).where(DeviceTrackingEvent.created_at < tracking_cutoff)
            ).rowcount
            counts["ip"] = self.db.execute(
                delete(IpTrackingEvent).where(IpTrackingEvent.created_at < tracking_cutoff)
            ).rowcount
            counts["location"] = self.db.execute(
                delete(LocationChange).where(LocationChange.changed_at < tracking_cutoff)
            ).rowcount
            expired = select(RiskPatternRecord.id).where(RiskPatternRecord.detected_at < pattern_cutoff)
            self.db.execute(delete(RiskPatternSubject).where(RiskPatternSubject.pattern_id.in_(expired)))
            counts["patterns"] = self.db.execute(
                delete(RiskPatternRecord).where(RiskPatternRecord.detected_at < pattern_cutoff)
            ).rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError("Retention purge failed") from e
        self._commit("retention purge")
        return counts

    def count_events(self) -> Dict[str, int]:
        return {
            "device": self.db.query(func.count(DeviceTrackingEvent.id)).scalar() or 0,
            "ip": self.db.query(func.count(IpTrackingEvent.id)).scalar() or 0,
            "location": self.db.query(func.count(LocationChange.id)).scalar() or 0,
            "patterns": self.db.query(func.count(RiskPatternRecord.id)).scalar() or 0,
        }
