"""
Analytics aggregation engine of the training dashboard.

Pulls complete tables out of a store that only serves fixed-size pages,
rebuilds the participant / enrollment / course / payment / license
relationships in memory and folds them into the revenue, enrollment,
geographic and license figures the dashboard renders.
"""

from .cache import ResultCache, cache_key  # noqa: F401
from .errors import AnalyticsError, ConfigError, FetchError, ParseError  # noqa: F401
from .fetcher import BulkFetcher  # noqa: F401
from .indexes import EntityIndexes, index_grouped, index_unique  # noqa: F401
from .models import (  # noqa: F401
    Course,
    CourseOffering,
    DateRange,
    Enrollment,
    JoinResult,
    License,
    Participant,
    Payment,
    serialize,
)
from .repository import SQLTableSource, build_source_from_settings  # noqa: F401
from .service import AnalyticsService  # noqa: F401
from .settings import AnalyticsSettings, load_settings  # noqa: F401
from .source import Filter, InMemoryTableSource, Sort, TableSource  # noqa: F401
