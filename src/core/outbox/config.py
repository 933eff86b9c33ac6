"""
Outbox Configuration

Environment Variables:
    OUTBOX_ENABLED: Master switch for the outbox (default: true)
    OUTBOX_PROCESSOR_ENABLED: Run the dispatcher in this process (default: true)
    OUTBOX_POLL_INTERVAL: Seconds to sleep when a poll finds nothing (default: 1.0)
    OUTBOX_BATCH_SIZE: Max events claimed per poll (default: 100)
    OUTBOX_WORKERS: Independent polling loops per process (default: 1)
    OUTBOX_DELIVERY_CONCURRENCY: Concurrent deliveries per batch (default: 10)
    OUTBOX_DELIVERY_TIMEOUT: Per-attempt timeout in seconds (default: 10.0)
    OUTBOX_DEFAULT_MAX_RETRIES: max_retries for producers that pass none (default: 5)
    OUTBOX_BACKOFF_BASE / OUTBOX_BACKOFF_MULTIPLIER / OUTBOX_BACKOFF_CAP:
        Retry backoff shape (defaults: 5.0 / 2.0 / 900.0)
    OUTBOX_RECLAIM_AFTER_SECONDS: Requeue PROCESSING rows older than this on
        every poll (default: unset, disabled). Must exceed
        OUTBOX_DELIVERY_TIMEOUT * ceil(OUTBOX_BATCH_SIZE / OUTBOX_DELIVERY_CONCURRENCY)
    OUTBOX_STALE_AFTER_SECONDS: Age after which a PROCESSING row counts as
        stuck for stats and admin requeue (default: 300)
    OUTBOX_DELIVERY_MODE: "http" (default) or "log". Log mode acknowledges
        every event without sending it and is meant for local development only
    OUTBOX_DELIVERY_URL: Default destination URL for HTTP delivery
    OUTBOX_DELIVERY_ROUTES: JSON object mapping event type to destination URL
"""

import json
import math
import os
from typing import Dict, Optional

from .retry_policy import RetryPolicy

DELIVERY_MODES = ("http", "log")


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


def is_outbox_enabled() -> bool:
    """Check if the outbox pattern is enabled."""
    return _env_bool("OUTBOX_ENABLED")


def is_outbox_processor_enabled() -> bool:
    """Check if this instance should run the dispatcher."""
    return _env_bool("OUTBOX_PROCESSOR_ENABLED")


class OutboxConfig:
    """Outbox configuration from environment variables.

    Keyword arguments override the environment, which keeps tests free of
    os.environ juggling.
    """

    def __init__(self, **overrides):
        self.poll_interval = float(os.getenv("OUTBOX_POLL_INTERVAL", "1.0"))
        self.batch_size = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
        self.worker_count = int(os.getenv("OUTBOX_WORKERS", "1"))
        self.delivery_concurrency = int(os.getenv("OUTBOX_DELIVERY_CONCURRENCY", "10"))
        self.delivery_timeout = float(os.getenv("OUTBOX_DELIVERY_TIMEOUT", "10.0"))
        self.default_max_retries = int(os.getenv("OUTBOX_DEFAULT_MAX_RETRIES", "5"))
        self.backoff_base = float(os.getenv("OUTBOX_BACKOFF_BASE", "5.0"))
        self.backoff_multiplier = float(os.getenv("OUTBOX_BACKOFF_MULTIPLIER", "2.0"))
        self.backoff_cap = float(os.getenv("OUTBOX_BACKOFF_CAP", "900.0"))
        self.reclaim_after = _env_optional_float("OUTBOX_RECLAIM_AFTER_SECONDS")
        self.stale_after = float(os.getenv("OUTBOX_STALE_AFTER_SECONDS", "300"))
        self.delivery_mode = os.getenv("OUTBOX_DELIVERY_MODE", "http").lower()
        self.delivery_url = os.getenv("OUTBOX_DELIVERY_URL") or None
        self.delivery_routes: Dict[str, str] = json.loads(
            os.getenv("OUTBOX_DELIVERY_ROUTES", "{}")
        )

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"unknown outbox setting: {key}")
            setattr(self, key, value)

        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if self.delivery_concurrency < 1:
            raise ValueError("delivery_concurrency must be >= 1")
        if self.delivery_timeout <= 0:
            raise ValueError("delivery_timeout must be > 0")
        if self.default_max_retries < 0:
            raise ValueError("default_max_retries must be >= 0")
        if self.reclaim_after is not None and self.reclaim_after <= self.max_claim_duration():
            raise ValueError(
                f"reclaim_after must exceed {self.max_claim_duration():g}s, the longest a "
                "batch can legitimately hold its claims"
            )
        if self.delivery_mode not in DELIVERY_MODES:
            raise ValueError(f"delivery_mode must be one of {', '.join(DELIVERY_MODES)}")

    def max_claim_duration(self) -> float:
        """Worst-case seconds between a claim and its last delivery finishing."""
        rounds = math.ceil(self.batch_size / self.delivery_concurrency)
        return self.delivery_timeout * rounds

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_seconds=self.backoff_base,
            multiplier=self.backoff_multiplier,
            cap_seconds=self.backoff_cap,
        )

    def __repr__(self) -> str:
        return (
            f"OutboxConfig(poll_interval={self.poll_interval}, batch_size={self.batch_size}, "
            f"workers={self.worker_count}, concurrency={self.delivery_concurrency}, "
            f"timeout={self.delivery_timeout}, reclaim_after={self.reclaim_after})"
        )
