"""
IP pattern detection.

Mirrors the device detector over IP addresses, and adds anonymizer
detection (VPN, proxy, Tor, datacenter ranges) resolved when an address is
first tracked.
"""

import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from trustshield.config import settings
from trustshield.schemas.domain import PatternSeverity, PatternType, SuspiciousPattern
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.utils.severity import ladder, severity_weighted_score

logger = logging.getLogger(__name__)


@dataclass
class IpReputation:
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    is_datacenter: bool = False
    country: Optional[str] = None


class IpReputationProvider:
    """
    Classifies addresses against configured CIDR blocks and Tor exit nodes.

    Subclass and override ``lookup`` to back this with a commercial feed.
    """

    def __init__(
        self,
        vpn_cidrs: Optional[Sequence[str]] = None,
        proxy_cidrs: Optional[Sequence[str]] = None,
        tor_exit_nodes: Optional[Sequence[str]] = None,
        datacenter_cidrs: Optional[Sequence[str]] = None,
    ):
        self._vpn = self._networks(settings.vpn_cidrs_list if vpn_cidrs is None else vpn_cidrs)
        self._proxy = self._networks(settings.proxy_cidrs_list if proxy_cidrs is None else proxy_cidrs)
        self._datacenter = self._networks(
            settings.datacenter_cidrs_list if datacenter_cidrs is None else datacenter_cidrs
        )
        tor = settings.tor_exit_nodes_list if tor_exit_nodes is None else tor_exit_nodes
        self._tor = {str(ipaddress.ip_address(addr)) for addr in tor}

    @staticmethod
    def _networks(cidrs: Sequence[str]) -> list:
        return [ipaddress.ip_network(cidr, strict=False) for cidr in cidrs]

    def lookup(self, ip_address: str) -> IpReputation:
        try:
            addr = ipaddress.ip_address(ip_address)
        except ValueError:
            logger.debug(f"Unparseable IP address: {ip_address}")
            return IpReputation()

        return IpReputation(
            is_vpn=any(addr in net for net in self._vpn),
            is_proxy=any(addr in net for net in self._proxy),
            is_tor=str(addr) in self._tor,
            is_datacenter=any(addr in net for net in self._datacenter),
        )


class IpPatternDetector:
    """
    Detects IP-level abuse.

    Checks:
    - Excessive switching between addresses
    - Anonymizing networks (Tor, proxy, VPN, datacenter)
    - Several accounts on one address
    - Several accounts acting from one address within a short window
    """

    def __init__(
        self,
        repository: TrackingRepository,
        reputation_provider: Optional[IpReputationProvider] = None,
        max_ips_per_user: Optional[int] = None,
        coordinated_window_minutes: Optional[int] = None,
    ):
        self.repository = repository
        self.reputation_provider = reputation_provider or IpReputationProvider()
        self.max_ips_per_user = max_ips_per_user or settings.max_ips_per_user
        self.coordinated_window = timedelta(
            minutes=coordinated_window_minutes or settings.coordinated_ip_window_minutes
        )

    @staticmethod
    def _sharing_severity(account_count: int) -> PatternSeverity:
        return ladder(account_count, medium_floor=3, high_above=5, critical_above=10)

    def detect_ip_patterns(self, user_id: str) -> List[SuspiciousPattern]:
        patterns: List[SuspiciousPattern] = []
        addresses = self.repository.ip_addresses_for_user(user_id)

        if len(addresses) > self.max_ips_per_user:
            if len(addresses) > 50:
                severity = PatternSeverity.HIGH
            elif len(addresses) > 30:
                severity = PatternSeverity.MEDIUM
            else:
                severity = PatternSeverity.LOW
            patterns.append(
                SuspiciousPattern(
                    type=PatternType.VPN_ABUSE,
                    description=f"User switched between {len(addresses)} IP addresses",
                    severity=severity,
                    affected_users=[user_id],
                    evidence={"ip_count": str(len(addresses))},
                )
            )

        for address in addresses:
            analysis = self.repository.ip_analysis(address)
            if analysis is None:
                continue

            anonymizer = self._anonymizer_pattern(user_id, analysis)
            if anonymizer is not None:
                patterns.append(anonymizer)

            if analysis.total_accounts >= settings.ip_sharing_min_accounts:
                patterns.append(
                    SuspiciousPattern(
                        type=PatternType.IP_SHARING,
                        description=f"IP address shared by {analysis.total_accounts} accounts",
                        severity=self._sharing_severity(analysis.total_accounts),
                        affected_users=list(analysis.associated_user_ids),
                        evidence={"ip_address": address, "account_count": str(analysis.total_accounts)},
                    )
                )

            coordinated = self.detect_coordinated_activity(address)
            if coordinated is not None:
                patterns.append(coordinated)

        return patterns

    @staticmethod
    def _anonymizer_pattern(user_id: str, analysis) -> Optional[SuspiciousPattern]:
        if analysis.is_tor:
            kind, severity = "Tor exit node", PatternSeverity.HIGH
        elif analysis.is_proxy:
            kind, severity = "proxy", PatternSeverity.MEDIUM
        elif analysis.is_vpn:
            kind, severity = "VPN", PatternSeverity.LOW
        elif analysis.is_datacenter:
            kind, severity = "datacenter range", PatternSeverity.INFO
        else:
            return None

        evidence = {"ip_address": analysis.ip_address, "network": kind}
        if analysis.country:
            evidence["country"] = analysis.country
        return SuspiciousPattern(
            type=PatternType.VPN_ABUSE,
            description=f"Activity through {kind}",
            severity=severity,
            affected_users=[user_id],
            evidence=evidence,
        )

    def detect_coordinated_activity(self, ip_address: str) -> Optional[SuspiciousPattern]:
        """
        Largest number of distinct accounts seen on an address inside any
        window of the configured length.
        """
        events = self.repository.ip_activity(ip_address)
        if len(events) < settings.coordinated_ip_min_accounts:
            return None

        best_users: set = set()
        best_start: Optional[datetime] = None
        start = 0
        for end in range(len(events)):
            while events[end].created_at - events[start].created_at > self.coordinated_window:
                start += 1
            users = {e.user_id for e in events[start:end + 1]}
            if len(users) > len(best_users):
                best_users = users
                best_start = events[start].created_at

        if len(best_users) < settings.coordinated_ip_min_accounts:
            return None

        window_minutes = int(self.coordinated_window.total_seconds() // 60)
        return SuspiciousPattern(
            type=PatternType.COORDINATED_REVIEWS,
            description=f"{len(best_users)} accounts active from one IP within {window_minutes} minutes",
            severity=self._sharing_severity(len(best_users)),
            affected_users=sorted(best_users),
            evidence={
                "ip_address": ip_address,
                "account_count": str(len(best_users)),
                "window_start": best_start.isoformat(),
            },
        )

    def check_ip_sharing(self, user_a: str, user_b: str) -> Optional[SuspiciousPattern]:
        shared = self.repository.shared_ips(user_a, user_b)
        if not shared:
            return None

        if len(shared) > 2:
            severity = PatternSeverity.CRITICAL
        elif len(shared) == 2:
            severity = PatternSeverity.HIGH
        else:
            severity = PatternSeverity.MEDIUM

        return SuspiciousPattern(
            type=PatternType.IP_SHARING,
            description=f"Users share {len(shared)} IP address(es)",
            severity=severity,
            affected_users=[user_a, user_b],
            evidence={"shared_ips": ",".join(shared), "shared_count": str(len(shared))},
        )

    def calculate_ip_risk_score(self, patterns: List[SuspiciousPattern]) -> float:
        return severity_weighted_score(patterns)

    def track_ip_usage(
        self,
        user_id: str,
        ip_address: str,
        action: str = "login",
        at: Optional[datetime] = None,
        country: Optional[str] = None,
    ) -> Optional[SuspiciousPattern]:
        """Record an IP sighting enriched with reputation data; persist any coordinated pattern it completes."""
        reputation = self.reputation_provider.lookup(ip_address)
        previous = self.repository.ip_analysis(ip_address)
        newcomer = previous is None or user_id not in previous.associated_user_ids
        self.repository.record_ip_event(
            user_id=user_id,
            ip_address=ip_address,
            action=action,
            at=at,
            is_vpn=reputation.is_vpn,
            is_proxy=reputation.is_proxy,
            is_tor=reputation.is_tor,
            is_datacenter=reputation.is_datacenter,
            country=country or reputation.country,
        )
        pattern = self.detect_coordinated_activity(ip_address)
        # Only a new account on the address can grow the group, so repeat visits are not re-logged
        if pattern is not None and newcomer:
            self.repository.record_patterns([pattern])
            logger.warning(
                f"Coordinated activity on {ip_address}: {pattern.evidence['account_count']} accounts"
            )
        return pattern
