from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import os

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime configuration loaded at process startup."""

    database_url: str = "sqlite:///finsync.db"
    historical_start_date: date = date(2024, 1, 1)
    transaction_page_size: int = 500
    categorization_model: str = "gpt-5-mini"
    categorization_concurrency: int = 5
    confidence_threshold: int = 60
    isolate_item_failures: bool = True
    sync_lock_ttl_minutes: int = 60


def _int_env(
    name: str, default: int, *, minimum: int, maximum: int | None = None
) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"in [{minimum}, {maximum}]"
        raise ValueError(f"{name} must be {bounds}, got {value}")
    return value


def load_settings_from_env() -> Settings:
    """Load settings from env and validate them."""
    defaults = Settings()

    start_raw = os.environ.get("FINSYNC_HISTORICAL_START_DATE", "").strip()
    if start_raw:
        try:
            historical_start_date = date.fromisoformat(start_raw)
        except ValueError as e:
            raise ValueError(
                "FINSYNC_HISTORICAL_START_DATE must be an ISO date (YYYY-MM-DD)"
            ) from e
    else:
        historical_start_date = defaults.historical_start_date

    model = os.environ.get(
        "FINSYNC_CATEGORIZATION_MODEL", defaults.categorization_model
    ).strip()
    if not model:
        raise ValueError("FINSYNC_CATEGORIZATION_MODEL must not be empty")

    isolate_raw = os.environ.get("FINSYNC_ISOLATE_ITEM_FAILURES", "true")

    return Settings(
        database_url=os.environ.get(
            "FINSYNC_DATABASE_URL", defaults.database_url
        ).strip(),
        historical_start_date=historical_start_date,
        transaction_page_size=_int_env(
            "FINSYNC_TRANSACTION_PAGE_SIZE",
            defaults.transaction_page_size,
            minimum=1,
            maximum=500,
        ),
        categorization_model=model,
        categorization_concurrency=_int_env(
            "FINSYNC_CATEGORIZATION_CONCURRENCY",
            defaults.categorization_concurrency,
            minimum=1,
        ),
        confidence_threshold=_int_env(
            "FINSYNC_CONFIDENCE_THRESHOLD",
            defaults.confidence_threshold,
            minimum=0,
            maximum=100,
        ),
        isolate_item_failures=isolate_raw.strip().lower() in TRUE_VALUES,
        sync_lock_ttl_minutes=_int_env(
            "FINSYNC_SYNC_LOCK_TTL_MINUTES",
            defaults.sync_lock_ttl_minutes,
            minimum=1,
        ),
    )
