"""
Location pattern detection over profile location changes.

Checks:
- Impossible movement (too far, too fast)
- Location hopping between distant places within a day
- Frequent profile location changes
- Several accounts converging on one area within a day
- Two accounts sitting in the same area, or moving in lockstep
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from trustshield.config import settings
from trustshield.schemas.domain import (
    LocationChangeAnalysis,
    LocationChangeRecord,
    PatternSeverity,
    PatternType,
    SuspiciousPattern,
)
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.utils.clock import utcnow
from trustshield.utils.geo import (
    geocell,
    haversine_km,
    haversine_meters,
    is_valid_coordinate,
    neighbor_span,
    wrapped_lon_cells,
)
from trustshield.utils.severity import clamp

logger = logging.getLogger(__name__)


class SpatioTemporalIndex:
    """
    Buckets location changes by (time bucket, geocell) so "who moved near
    here around this time" only scans neighboring buckets.
    """

    def __init__(self, bucket: timedelta):
        self.bucket_seconds = bucket.total_seconds()
        self._buckets: Dict[Tuple[int, int, int], List[LocationChangeRecord]] = defaultdict(list)

    def _time_bucket(self, at: datetime) -> int:
        return int(at.timestamp() // self.bucket_seconds)

    def add(self, change: LocationChangeRecord):
        lat_cell, lon_cell = geocell(change.new_latitude, change.new_longitude)
        self._buckets[(self._time_bucket(change.changed_at), lat_cell, lon_cell)].append(change)

    def query(
        self,
        latitude: float,
        longitude: float,
        start: datetime,
        end: datetime,
        radius_km: float,
    ) -> List[LocationChangeRecord]:
        lat_cell, lon_cell = geocell(latitude, longitude)
        lat_span, lon_span = neighbor_span(latitude, radius_km)

        lon_cells = wrapped_lon_cells(lon_cell, lon_span)

        found = []
        for t in range(self._time_bucket(start), self._time_bucket(end) + 1):
            for dlat in range(-lat_span, lat_span + 1):
                for lon in lon_cells:
                    for change in self._buckets.get((t, lat_cell + dlat, lon), ()):
                        if not start <= change.changed_at <= end:
                            continue
                        if haversine_km(latitude, longitude, change.new_latitude, change.new_longitude) <= radius_km:
                            found.append(change)
        return found


class LocationPatternDetector:
    def __init__(self, repository: TrackingRepository, now: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.now = now

    # ==========================================================================
    # SINGLE USER
    # ==========================================================================

    def analyze_location_changes(self, user_id: str) -> Optional[LocationChangeAnalysis]:
        changes = self.repository.location_changes(user_id)
        if not changes:
            return None

        findings: List[str] = []
        distances: List[float] = []
        hopping = False
        impossible = False

        for previous, current in zip(changes, changes[1:]):
            distance_km = haversine_km(
                previous.new_latitude, previous.new_longitude,
                current.new_latitude, current.new_longitude,
            )
            hours = (current.changed_at - previous.changed_at).total_seconds() / 3600.0
            distances.append(distance_km)

            if distance_km > settings.impossible_movement_km and hours < settings.impossible_movement_hours:
                impossible = True
                findings.append(f"Impossible movement: {distance_km:.0f}km in {hours:.1f}h")
            elif distance_km > settings.location_hopping_km and hours < 24:
                hopping = True
                findings.append(f"Location hop: {distance_km:.0f}km in {hours:.1f}h")

        since = self.now() - timedelta(days=settings.frequent_changes_days)
        recent = [c for c in changes if c.changed_at >= since]
        frequent = len(recent) >= settings.frequent_changes_count
        if frequent:
            findings.append(f"{len(recent)} location changes in {settings.frequent_changes_days} days")

        return LocationChangeAnalysis(
            user_id=user_id,
            changes=changes,
            findings=findings,
            average_distance_km=sum(distances) / len(distances) if distances else None,
            max_distance_km=max(distances) if distances else 0.0,
            location_hopping_detected=hopping,
            impossible_movement_detected=impossible,
            frequent_changes_detected=frequent,
        )

    def detect_location_patterns(self, user_id: str) -> List[SuspiciousPattern]:
        """Single-user anomalies, most severe first."""
        analysis = self.analyze_location_changes(user_id)
        if analysis is None:
            return []

        patterns: List[SuspiciousPattern] = []
        summary = "; ".join(analysis.findings)

        if analysis.impossible_movement_detected:
            patterns.append(
                SuspiciousPattern(
                    type=PatternType.LOCATION_SPOOFING,
                    description="Impossible location changes detected",
                    severity=PatternSeverity.HIGH,
                    affected_users=[user_id],
                    evidence={"findings": summary, "max_distance_km": f"{analysis.max_distance_km:.2f}"},
                )
            )
        if analysis.location_hopping_detected and not analysis.impossible_movement_detected:
            patterns.append(
                SuspiciousPattern(
                    type=PatternType.LOCATION_HOPPING,
                    description="Location hopping detected",
                    severity=PatternSeverity.MEDIUM,
                    affected_users=[user_id],
                    evidence={"findings": summary, "avg_distance_km": f"{analysis.average_distance_km or 0.0:.2f}"},
                )
            )
        if analysis.frequent_changes_detected:
            patterns.append(
                SuspiciousPattern(
                    type=PatternType.FREQUENT_LOCATION_CHANGES,
                    description="Frequent profile location changes",
                    severity=PatternSeverity.MEDIUM,
                    affected_users=[user_id],
                    evidence={"change_count": str(len(analysis.changes)), "findings": summary},
                )
            )
        return patterns

    def calculate_location_risk_score(self, user_id: str, extra_pattern_count: int = 0) -> float:
        """
        0.5 for impossible movement, 0.3 for hopping, 0.2 for frequent changes,
        plus 0.1 for each additional location pattern involving the user.
        """
        analysis = self.analyze_location_changes(user_id)
        score = 0.0
        if analysis is not None:
            if analysis.impossible_movement_detected:
                score += 0.5
            if analysis.location_hopping_detected:
                score += 0.3
            if analysis.frequent_changes_detected:
                score += 0.2
        score += 0.1 * extra_pattern_count
        return clamp(score)

    # ==========================================================================
    # MULTI USER
    # ==========================================================================

    def check_coordinated_location_change(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        at: Optional[datetime] = None,
    ) -> Optional[SuspiciousPattern]:
        """
        Accounts that moved to within the configured radius of (latitude,
        longitude) during the window ending at ``at``.
        """
        anchor = at or self.now()
        window = timedelta(hours=settings.coordinated_change_window_hours)
        start = anchor - window

        index = SpatioTemporalIndex(bucket=window)
        for change in self.repository.location_changes_between(start, anchor):
            index.add(change)

        nearby = index.query(latitude, longitude, start, anchor, settings.coordinated_change_radius_km)
        users = sorted({c.user_id for c in nearby})
        if user_id not in users or len(users) < settings.coordinated_change_min_users:
            return None

        hours = settings.coordinated_change_window_hours
        return SuspiciousPattern(
            type=PatternType.COORDINATED_LOCATION_CHANGE,
            description=f"{len(users)} users changed to the same area in {hours} hours",
            severity=(
                PatternSeverity.HIGH
                if len(users) >= settings.coordinated_change_high_users
                else PatternSeverity.MEDIUM
            ),
            affected_users=users,
            evidence={
                "user_count": str(len(users)),
                "time_window_hours": str(hours),
                "radius_km": str(settings.coordinated_change_radius_km),
                "target_area": f"{latitude:.4f}, {longitude:.4f}",
            },
        )

    def detect_coordinated_changes(self, user_id: str) -> Optional[SuspiciousPattern]:
        """Coordinated-change check anchored at the user's latest location change."""
        latest = self.repository.current_location(user_id)
        if latest is None:
            return None
        return self.check_coordinated_location_change(
            user_id, latest.new_latitude, latest.new_longitude, at=latest.changed_at
        )

    def distance_between_users_meters(self, user_a: str, user_b: str) -> Optional[float]:
        loc_a = self.repository.current_location(user_a)
        loc_b = self.repository.current_location(user_b)
        if loc_a is None or loc_b is None:
            return None
        return haversine_meters(loc_a.new_latitude, loc_a.new_longitude, loc_b.new_latitude, loc_b.new_longitude)

    def check_location_proximity(self, user_a: str, user_b: str) -> Optional[SuspiciousPattern]:
        distance = self.distance_between_users_meters(user_a, user_b)
        if distance is None or distance >= settings.proximity_collusion_km * 1000:
            return None

        return SuspiciousPattern(
            type=PatternType.PROXIMITY_COLLUSION,
            description=f"Users are in the same general location ({distance / 1000:.1f}km apart)",
            severity=PatternSeverity.MEDIUM,
            affected_users=[user_a, user_b],
            evidence={"distance_km": f"{distance / 1000:.2f}"},
        )

    def check_location_pattern_similarity(self, user_a: str, user_b: str) -> Optional[SuspiciousPattern]:
        changes_a = self.repository.location_changes(user_a, limit=10)
        changes_b = self.repository.location_changes(user_b, limit=10)
        if len(changes_a) < 3 or len(changes_b) < 3:
            return None

        matches = []
        for a in changes_a:
            for b in changes_b:
                distance_km = haversine_km(a.new_latitude, a.new_longitude, b.new_latitude, b.new_longitude)
                hours = abs((a.changed_at - b.changed_at).total_seconds()) / 3600.0
                if distance_km < 50 and hours < 24:
                    matches.append(f"{distance_km:.1f}km apart, {hours:.0f}h apart")

        if len(matches) < 3:
            return None

        return SuspiciousPattern(
            type=PatternType.COORDINATED_LOCATION_CHANGE,
            description="Similar location change patterns between accounts",
            severity=PatternSeverity.HIGH,
            affected_users=[user_a, user_b],
            evidence={"matching_patterns": str(len(matches)), "examples": "; ".join(matches[:3])},
        )

    # ==========================================================================
    # TRACKING
    # ==========================================================================

    def track_location_change(
        self,
        user_id: str,
        new_latitude: float,
        new_longitude: float,
        old_latitude: Optional[float] = None,
        old_longitude: Optional[float] = None,
        at: Optional[datetime] = None,
    ) -> List[SuspiciousPattern]:
        """
        Record a profile location change and persist any patterns it reveals.
        Invalid new coordinates are ignored; invalid old coordinates are dropped.
        """
        if not is_valid_coordinate(new_latitude, new_longitude):
            logger.debug(f"Ignoring invalid location for {user_id}: {new_latitude}, {new_longitude}")
            return []
        if not is_valid_coordinate(old_latitude, old_longitude):
            old_latitude = old_longitude = None

        change = self.repository.record_location_change(
            user_id=user_id,
            new_latitude=new_latitude,
            new_longitude=new_longitude,
            old_latitude=old_latitude,
            old_longitude=old_longitude,
            at=at,
        )

        patterns = self.detect_location_patterns(user_id)
        coordinated = self.check_coordinated_location_change(
            user_id, new_latitude, new_longitude, at=change.changed_at
        )
        if coordinated is not None:
            patterns.append(coordinated)
        if patterns:
            self.repository.record_patterns(patterns)
        return patterns
