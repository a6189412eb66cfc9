"""Runtime configuration.

Reads settings from environment variables. A `.env` file at the repo root is
loaded first if it exists.

Variables:
- LEDGER_DB_PATH: SQLite file holding the committed inventory ledger
- METRICS_DB_PATH: Persist metric events to this SQLite file (unset = in-memory only)
- RECONCILE_LOCATION_CONCURRENCY: Locations searched in parallel (default 1)
- RECONCILE_MAX_PAGES_PER_LOCATION: Page budget per location (default 500)
- RECONCILE_SEARCH_PAGE_LIMIT: Invoices requested per page (default 200)
- RECONCILE_SCOPE_DENIAL_TTL_SECONDS: Expire permission denials (unset = never)
- RECONCILE_ANOMALY_THRESHOLD: Consecutive no-progress runs before alerting (default 3)
- SQUARE_BASE_URL, SQUARE_API_VERSION, SQUARE_TIMEOUT_SECONDS, SQUARE_MAX_RETRIES
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from connectors.square.square_client import RetryConfig, SquareApiConfig

REPO_ROOT = Path(__file__).resolve().parents[1]

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

DEFAULT_LEDGER_DB_PATH = REPO_ROOT / "committed_inventory.db"


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class ReconciliationConfig:
    """Tuning for a reconciliation pass."""
    location_concurrency: int = 1
    max_pages_per_location: int = 500
    search_page_limit: int = 200
    scope_denial_ttl_seconds: Optional[float] = None
    anomaly_threshold: int = 3
    ledger_db_path: Path = field(default_factory=lambda: DEFAULT_LEDGER_DB_PATH)
    metrics_db_path: Optional[Path] = None

    def __post_init__(self):
        if self.location_concurrency < 1:
            raise ValueError("location_concurrency must be >= 1")
        if self.max_pages_per_location < 1:
            raise ValueError("max_pages_per_location must be >= 1")
        if self.anomaly_threshold < 1:
            raise ValueError("anomaly_threshold must be >= 1")

    @classmethod
    def from_env(cls) -> "ReconciliationConfig":
        return cls(
            location_concurrency=_env_int("RECONCILE_LOCATION_CONCURRENCY", 1),
            max_pages_per_location=_env_int("RECONCILE_MAX_PAGES_PER_LOCATION", 500),
            search_page_limit=_env_int("RECONCILE_SEARCH_PAGE_LIMIT", 200),
            scope_denial_ttl_seconds=_env_float("RECONCILE_SCOPE_DENIAL_TTL_SECONDS", None),
            anomaly_threshold=_env_int("RECONCILE_ANOMALY_THRESHOLD", 3),
            ledger_db_path=Path(os.getenv("LEDGER_DB_PATH", str(DEFAULT_LEDGER_DB_PATH))),
            metrics_db_path=Path(os.environ["METRICS_DB_PATH"]) if os.getenv("METRICS_DB_PATH") else None,
        )


def square_api_config_from_env() -> SquareApiConfig:
    """Build the Square client configuration from the environment."""
    defaults = SquareApiConfig()
    return SquareApiConfig(
        base_url=os.getenv("SQUARE_BASE_URL", defaults.base_url),
        api_version=os.getenv("SQUARE_API_VERSION", defaults.api_version),
        timeout_seconds=_env_int("SQUARE_TIMEOUT_SECONDS", defaults.timeout_seconds),
        retry_config=RetryConfig(
            max_retries=_env_int("SQUARE_MAX_RETRIES", RetryConfig().max_retries),
        ),
    )
