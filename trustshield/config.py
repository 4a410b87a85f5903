from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = "dev"  # "dev", "prod"
    debug: bool = True

    # ==========================================================================
    # DATABASE
    # ==========================================================================
    database_url: str = "sqlite:///./trustshield.db"

    # ==========================================================================
    # API SECURITY
    # ==========================================================================
    api_token: str = ""  # Required in production, optional in dev
    api_token_header: str = "X-API-Key"

    # ==========================================================================
    # RATE LIMITING
    # ==========================================================================
    rate_limit_requests: int = 60  # Max requests per window
    rate_limit_window: int = 60  # Window in seconds (60 = per minute)

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: str = "*"  # Comma-separated origins, or "*" for all

    # ==========================================================================
    # REVIEW ELIGIBILITY
    # ==========================================================================
    review_window_days: int = 90  # Must review within N days of completion
    min_reviewer_account_age_days: int = 14
    max_reviews_per_day: int = 5  # Reaching this asks for verification

    # ==========================================================================
    # REVIEW WEIGHTING
    # ==========================================================================
    high_value_threshold: float = 1000.0  # Value > this = high-value trade
    low_value_threshold: float = 10.0  # Value < this = low-value trade
    trusted_reviewer_min_rating: float = 4.5
    trusted_reviewer_min_reviews: int = 50
    new_reviewer_days: int = 7
    min_review_weight: float = 0.1
    max_review_weight: float = 2.0

    # ==========================================================================
    # RISK LEVEL THRESHOLDS (0-1 scale)
    # ==========================================================================
    risk_low_threshold: float = 0.2  # Score >= this = LOW (below = MINIMAL)
    risk_medium_threshold: float = 0.4
    risk_high_threshold: float = 0.6
    risk_critical_threshold: float = 0.8
    new_account_days: int = 30  # Both accounts younger than this = risk factor

    # ==========================================================================
    # PATTERN DETECTION
    # ==========================================================================
    max_devices_per_user: int = 5
    max_ips_per_user: int = 20
    ip_sharing_min_accounts: int = 3  # More than 2 accounts on one IP
    coordinated_ip_min_accounts: int = 3
    coordinated_ip_window_minutes: int = 60
    vpn_cidrs: str = ""  # Comma-separated CIDR blocks known to be VPN exits
    proxy_cidrs: str = ""
    tor_exit_nodes: str = ""  # Comma-separated addresses
    datacenter_cidrs: str = ""

    # ==========================================================================
    # LOCATION ANALYSIS
    # ==========================================================================
    impossible_movement_km: float = 500.0
    impossible_movement_hours: float = 6.0
    location_hopping_km: float = 50.0
    frequent_changes_count: int = 5
    frequent_changes_days: int = 30
    coordinated_change_radius_km: float = 50.0
    coordinated_change_window_hours: int = 24
    coordinated_change_min_users: int = 3
    coordinated_change_high_users: int = 5
    proximity_collusion_km: float = 10.0
    same_location_meters: float = 100.0

    # ==========================================================================
    # TRADE GRAPH
    # ==========================================================================
    min_trades_for_diversity: int = 5  # Below this the diversity score is neutral
    wash_ring_min_size: int = 3
    wash_ring_max_external_ratio: float = 0.2

    # ==========================================================================
    # BLIND REVIEWS
    # ==========================================================================
    reveal_deadline_days: int = 14
    review_master_key: str = ""  # Fernet key wrapping per-pair review keys

    # ==========================================================================
    # BACKGROUND SWEEPS & RETENTION
    # ==========================================================================
    run_sweeps: bool = False  # Start the sweep scheduler inside the API process
    sweep_interval_hours: int = 24
    tracking_retention_days: int = 90
    risk_pattern_retention_days: int = 180
    reputation_batch_size: int = 200

    # ==========================================================================
    # CACHING
    # ==========================================================================
    cache_capacity: int = 512  # Max cached risk reports
    cache_ttl: int = 900  # Cache TTL in seconds (15 minutes)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TRUSTSHIELD_",
        extra="ignore",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "prod"

    @property
    def cors_origins_list(self) -> list:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @staticmethod
    def _split(value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def vpn_cidrs_list(self) -> List[str]:
        return self._split(self.vpn_cidrs)

    @property
    def proxy_cidrs_list(self) -> List[str]:
        return self._split(self.proxy_cidrs)

    @property
    def tor_exit_nodes_list(self) -> List[str]:
        return self._split(self.tor_exit_nodes)

    @property
    def datacenter_cidrs_list(self) -> List[str]:
        return self._split(self.datacenter_cidrs)


settings = Settings()
