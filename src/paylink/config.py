"""Configuration management for the payment link ledger.

Two layers:
    Settings      - process settings loaded from the environment (.env aware)
    Policy objects - explicit, immutable behaviour knobs validated on creation

Rules for policy objects:
    1. Immutable after creation (frozen dataclasses).
    2. Validated in __post_init__, never at use time.
    3. No hidden defaults that move value: the fee rate and retry policy are
       always visible on the object that applies them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv


@dataclass(frozen=True)
class FeePolicy:
    """
    Fee applied to a link when the creator does not pass an explicit fee.

    Attributes:
        rate: Fraction of the requested amount kept as fee. Default 0.01 (1%).
        quantum: Smallest representable unit; the computed fee is rounded
            down to it. Default 1e-9 (nine decimal places).
    """

    rate: Decimal = Decimal("0.01")
    quantum: Decimal = Decimal("0.000000001")

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.rate < 0 or self.rate >= 1:
            raise ValueError("fee rate must be in [0, 1)")
        if self.quantum <= 0:
            raise ValueError("fee quantum must be positive")


@dataclass(frozen=True)
class ClaimRetryPolicy:
    """
    In-place retry of transient engine failures while the claim gate is held.

    The engine may need time before a freshly funded link becomes claimable.
    That delay is expressed as transient failures plus backoff here, never as
    a fixed sleep before claiming.

    Attributes:
        max_attempts: Total engine calls per claim request. Default 1
            (no in-place retry: the gate is released after the first
            transient failure and the caller retries).
        backoff_seconds: Delay before the second attempt. Default 2.0.
        backoff_multiplier: Growth factor between attempts. Default 2.0.
        max_backoff_seconds: Upper bound for a single delay. Default 30.0.
    """

    max_attempts: int = 1
    backoff_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_attempts > 10:
            raise ValueError("max_attempts cannot exceed 10")
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff delays cannot be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def delay_before(self, attempt: int) -> float:
        """Delay in seconds before the given attempt (attempt 1 has none)."""
        if attempt <= 1:
            return 0.0
        delay = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 2))
        return min(delay, self.max_backoff_seconds)


@dataclass(frozen=True)
class LedgerConfig:
    """
    Link ledger behaviour configuration.

    Attributes:
        fee: Fee policy for links created without an explicit fee.
        claim_retry: Retry policy for transient engine failures.
        allowed_assets: Asset identifiers accepted at creation.
            None accepts any well-formed identifier.
        share_base_url: Base URL used to build shareable link URLs.
        stuck_claim_minutes: Age after which a link still in `claiming`
            is reported as stuck by the metrics collector. Default 15.
    """

    fee: FeePolicy = field(default_factory=FeePolicy)
    claim_retry: ClaimRetryPolicy = field(default_factory=ClaimRetryPolicy)
    allowed_assets: frozenset[str] | None = None
    share_base_url: str = "http://localhost:8000/claim"
    stuck_claim_minutes: int = 15

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.allowed_assets is not None and not self.allowed_assets:
            raise ValueError("allowed_assets cannot be empty; use None to allow any")
        if self.stuck_claim_minutes < 1:
            raise ValueError("stuck_claim_minutes must be at least 1")


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    database_url_sync: str
    host: str
    port: int
    debug: bool
    log_level: str
    engine: str
    relayer_url: str | None
    relayer_timeout_seconds: float
    ledger: LedgerConfig

    @property
    def HOST(self) -> str:
        """Alias for host."""
        return self.host

    @property
    def PORT(self) -> int:
        """Alias for port."""
        return self.port

    @property
    def DEBUG(self) -> bool:
        """Alias for debug."""
        return self.debug

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        assets = os.getenv("PAYLINK_ALLOWED_ASSETS", "").strip()
        allowed_assets = (
            frozenset(a.strip() for a in assets.split(",") if a.strip()) if assets else None
        )

        engine = os.getenv("PAYLINK_ENGINE", "stub").lower()
        if engine not in ("stub", "relayer"):
            raise ValueError(f"PAYLINK_ENGINE must be 'stub' or 'relayer', got {engine!r}")

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./paylink.db"),
            database_url_sync=os.getenv("DATABASE_URL_SYNC", "sqlite:///./paylink.db"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            engine=engine,
            relayer_url=os.getenv("PAYLINK_RELAYER_URL") or None,
            relayer_timeout_seconds=float(os.getenv("PAYLINK_RELAYER_TIMEOUT", "60")),
            ledger=LedgerConfig(
                fee=FeePolicy(rate=Decimal(os.getenv("PAYLINK_FEE_RATE", "0.01"))),
                claim_retry=ClaimRetryPolicy(
                    max_attempts=int(os.getenv("PAYLINK_CLAIM_RETRY_ATTEMPTS", "1")),
                    backoff_seconds=float(os.getenv("PAYLINK_CLAIM_RETRY_BACKOFF", "2.0")),
                ),
                allowed_assets=allowed_assets,
                share_base_url=os.getenv(
                    "PAYLINK_SHARE_BASE_URL", "http://localhost:8000/claim"
                ),
                stuck_claim_minutes=int(os.getenv("PAYLINK_STUCK_CLAIM_MINUTES", "15")),
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()
