"""
Configuration for the analytics engine.

Defaults live on the pydantic models below; ``load_settings`` layers ``.env``
and ``TRAINING_DASHBOARD_*`` environment variables on top of them.
"""

from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "TRAINING_DASHBOARD_"


class FetchConfig(BaseModel):
    page_size: int = 1000
    """Rows per page request; the store caps requests at 1000 rows"""

    max_concurrency: int = 4
    """Pages in flight per table fetch when the source allows random access"""

    key_batch_size: int = 1000
    """Largest key list sent in one set-membership filter"""


class CacheConfig(BaseModel):
    default_ttl_seconds: float = 300.0
    license_ttl_seconds: float = 600.0
    years_ttl_seconds: float = 600.0


class TableNames(BaseModel):
    participant: str = "participant"
    enrollment: str = "participant_course"
    course: str = "course"
    offering: str = "course_location_date"
    offering_alternates: List[str] = Field(default_factory=lambda: ["course_location_data"])
    payment: str = "payment"
    license: str = "participant_license"


class AggregationConfig(BaseModel):
    moving_average_window: int = 7
    license_current_years: int = 2
    recent_update_days: int = 30
    status_aliases_path: Optional[str] = None
    """JSON file (canonical label -> variants) replacing the bundled alias table"""


class AnalyticsSettings(BaseModel):
    fetch: FetchConfig = FetchConfig()
    cache: CacheConfig = CacheConfig()
    tables: TableNames = TableNames()
    aggregation: AggregationConfig = AggregationConfig()
    database_url: Optional[str] = None


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = _env(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings(load_env_file: bool = True) -> AnalyticsSettings:
    if load_env_file:
        load_dotenv()

    cfg = AnalyticsSettings()
    cfg.fetch = FetchConfig(
        page_size=_env_int("PAGE_SIZE", cfg.fetch.page_size),
        max_concurrency=_env_int("MAX_CONCURRENCY", cfg.fetch.max_concurrency),
        key_batch_size=_env_int("KEY_BATCH_SIZE", cfg.fetch.key_batch_size),
    )
    cfg.cache = CacheConfig(
        default_ttl_seconds=_env_float("CACHE_TTL_SECONDS", cfg.cache.default_ttl_seconds),
        license_ttl_seconds=_env_float("LICENSE_CACHE_TTL_SECONDS", cfg.cache.license_ttl_seconds),
        years_ttl_seconds=_env_float("YEARS_CACHE_TTL_SECONDS", cfg.cache.years_ttl_seconds),
    )
    cfg.tables = TableNames(
        participant=_env("TABLE_PARTICIPANT") or cfg.tables.participant,
        enrollment=_env("TABLE_ENROLLMENT") or cfg.tables.enrollment,
        course=_env("TABLE_COURSE") or cfg.tables.course,
        offering=_env("TABLE_OFFERING") or cfg.tables.offering,
        offering_alternates=_env_list("TABLE_OFFERING_ALTERNATES", cfg.tables.offering_alternates),
        payment=_env("TABLE_PAYMENT") or cfg.tables.payment,
        license=_env("TABLE_LICENSE") or cfg.tables.license,
    )
    cfg.aggregation = AggregationConfig(
        moving_average_window=_env_int("MOVING_AVERAGE_WINDOW", cfg.aggregation.moving_average_window),
        license_current_years=_env_int("LICENSE_CURRENT_YEARS", cfg.aggregation.license_current_years),
        recent_update_days=_env_int("RECENT_UPDATE_DAYS", cfg.aggregation.recent_update_days),
        status_aliases_path=_env("STATUS_ALIASES_PATH") or cfg.aggregation.status_aliases_path,
    )
    cfg.database_url = _env("DATABASE_URL") or cfg.database_url
    return cfg
