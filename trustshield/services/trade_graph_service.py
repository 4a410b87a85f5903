"""
Trade graph analysis.

Builds an undirected graph of who has traded with whom around a pair of
users and looks for closed groups that mostly trade among themselves.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

import networkx as nx

from trustshield.config import settings
from trustshield.schemas.domain import PatternSeverity, PatternType, SuspiciousPattern

logger = logging.getLogger(__name__)

TradingPartnersLookup = Callable[[str], Iterable[str]]


class TradeGraphAnalyzer:
    def __init__(
        self,
        trading_partners_lookup: TradingPartnersLookup,
        min_ring_size: Optional[int] = None,
        max_external_ratio: Optional[float] = None,
    ):
        self.trading_partners_lookup = trading_partners_lookup
        self.min_ring_size = min_ring_size or settings.wash_ring_min_size
        self.max_external_ratio = (
            max_external_ratio if max_external_ratio is not None else settings.wash_ring_max_external_ratio
        )
        self._partners: Dict[str, Set[str]] = {}

    def partners(self, user_id: str) -> Set[str]:
        if user_id not in self._partners:
            self._partners[user_id] = {p for p in self.trading_partners_lookup(user_id) if p != user_id}
        return self._partners[user_id]

    def build_graph(self, seeds: Iterable[str], depth: int = 2) -> nx.Graph:
        """Graph of trades reachable within ``depth`` hops of the seed users."""
        G = nx.Graph()
        frontier = set(seeds)
        G.add_nodes_from(frontier)
        visited: Set[str] = set()

        for _ in range(depth):
            next_frontier: Set[str] = set()
            for user in frontier:
                if user in visited:
                    continue
                visited.add(user)
                for partner in self.partners(user):
                    G.add_edge(user, partner)
                    if partner not in visited:
                        next_frontier.add(partner)
            frontier = next_frontier
        return G

    def check_no_other_connections(self, user_a: str, user_b: str) -> Optional[SuspiciousPattern]:
        """Two users who trade with each other and hardly anyone else."""
        partners_a = self.partners(user_a)
        partners_b = self.partners(user_b)
        limit = settings.min_trades_for_diversity

        if user_b not in partners_a and user_a not in partners_b:
            return None
        if len(partners_a) >= limit or len(partners_b) >= limit:
            return None

        return SuspiciousPattern(
            type=PatternType.NO_OTHER_CONNECTIONS,
            description="Users trade mainly with each other",
            severity=PatternSeverity.MEDIUM,
            affected_users=[user_a, user_b],
            evidence={
                "partners_a": str(len(partners_a)),
                "partners_b": str(len(partners_b)),
            },
        )

    def detect_wash_rings(self, user_a: str, user_b: str) -> List[SuspiciousPattern]:
        """
        Closed trading groups around the pair.

        Candidates are the connected components of the graph's 2-core (every
        member trades with at least two others in the group). A candidate is a
        ring when it is large enough and few of its members' trades leave it.
        """
        G = self.build_graph([user_a, user_b])
        core = nx.k_core(G, 2)
        patterns = []

        for component in nx.connected_components(core):
            if user_a not in component and user_b not in component:
                continue
            if len(component) < self.min_ring_size:
                continue

            internal = core.subgraph(component).number_of_edges()
            external = sum(len(self.partners(member) - component) for member in component)
            ratio = external / (internal + external) if (internal + external) else 0.0
            if ratio >= self.max_external_ratio:
                continue

            members = sorted(component)
            logger.info(f"Wash trading ring of {len(members)} accounts (external ratio {ratio:.2f})")
            patterns.append(
                SuspiciousPattern(
                    type=PatternType.WASH_TRADING,
                    description=f"Closed trading ring of {len(members)} accounts",
                    severity=PatternSeverity.HIGH if len(members) < 5 else PatternSeverity.CRITICAL,
                    affected_users=members,
                    evidence={
                        "ring_size": str(len(members)),
                        "internal_trades": str(internal),
                        "external_trades": str(external),
                        "external_ratio": f"{ratio:.2f}",
                    },
                )
            )
        return patterns

    def analyze_pair(self, user_a: str, user_b: str) -> List[SuspiciousPattern]:
        patterns = []
        closed = self.check_no_other_connections(user_a, user_b)
        if closed is not None:
            patterns.append(closed)
        patterns.extend(self.detect_wash_rings(user_a, user_b))
        return patterns
