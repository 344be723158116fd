from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import ConfigError, FetchError
from .models import DateRange, serialize
from .repository import build_source_from_settings
from .service import AnalyticsService
from .settings import AnalyticsSettings, load_settings
from .source import InMemoryTableSource

logger = logging.getLogger(__name__)

app = FastAPI(title="Training Dashboard Analytics API", version="0.1.0")

_settings: Optional[AnalyticsSettings] = None
_service: Optional[AnalyticsService] = None


class AnalyticsResponse(BaseModel):
    data: Any
    source: str


class InlineRequest(BaseModel):
    metric: str
    tables: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    now: Optional[datetime] = None
    granularity: str = "day"
    year: Optional[int] = None
    states: List[str] = Field(default_factory=list)
    city: Optional[str] = None
    state: Optional[str] = None


def get_settings() -> AnalyticsSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_service(settings: AnalyticsSettings = Depends(get_settings)) -> AnalyticsService:
    global _service
    if _service is None:
        source = build_source_from_settings(settings)
        if source is None:
            raise HTTPException(
                status_code=503,
                detail=(
                    "TRAINING_DASHBOARD_DATABASE_URL is not configured; "
                    "POST table snapshots to /analytics/inline for ad-hoc queries."
                ),
            )
        _service = AnalyticsService(source, settings)
    return _service


@app.exception_handler(FetchError)
async def _fetch_error_handler(request: Request, exc: FetchError) -> JSONResponse:
    logger.error("Request %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc), "table": exc.table, "offset": exc.offset})


@app.exception_handler(ConfigError)
async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    return DateRange(start=start, end=end)


def _respond(result: Any, source: str = "database") -> AnalyticsResponse:
    return AnalyticsResponse(data=serialize(result), source=source)


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/analytics/courses", response_model=AnalyticsResponse)
async def courses_endpoint(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.course_analytics(_date_range(start, end)))


@app.get("/analytics/revenue", response_model=AnalyticsResponse)
async def revenue_endpoint(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.revenue_analytics(_date_range(start, end)))


@app.get("/analytics/revenue/trends", response_model=AnalyticsResponse)
async def revenue_trends_endpoint(
    granularity: str = "day",
    window: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.revenue_trends(granularity, _date_range(start, end), window))


@app.get("/analytics/payments", response_model=AnalyticsResponse)
async def payments_endpoint(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.payment_analytics(_date_range(start, end), now))


@app.get("/analytics/payments/enriched", response_model=AnalyticsResponse)
async def enriched_payments_endpoint(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    payment_type: Optional[List[str]] = Query(None),
    payment_method: Optional[List[str]] = Query(None),
    has_approval: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "Date",
    sort_order: str = "desc",
    page: int = 1,
    page_size: Optional[int] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    if sort_order not in ("asc", "desc"):
        raise ConfigError(f"sort_order must be 'asc' or 'desc', got {sort_order!r}")
    amount_range = None
    if min_amount is not None or max_amount is not None:
        amount_range = (
            min_amount if min_amount is not None else Decimal("0"),
            max_amount if max_amount is not None else Decimal("Infinity"),
        )
    result = await service.enriched_payments(
        _date_range(start, end),
        amount_range,
        payment_type or (),
        payment_methods=payment_method or (),
        has_approval=has_approval,
        search=search,
        sort_by=sort_by,
        descending=sort_order == "desc",
        page=page,
        page_size=page_size,
    )
    return _respond(result)


@app.get("/analytics/geographic", response_model=AnalyticsResponse)
async def geographic_endpoint(service: AnalyticsService = Depends(get_service)) -> AnalyticsResponse:
    return _respond(await service.geographic_analytics())


@app.get("/analytics/geographic/states", response_model=AnalyticsResponse)
async def state_comparison_endpoint(
    state: Optional[List[str]] = Query(None),
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.state_comparison(state or ()))


@app.get("/analytics/geographic/cities/{city}", response_model=AnalyticsResponse)
async def city_details_endpoint(
    city: str,
    state: Optional[str] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.city_details(city, state))


@app.get("/analytics/licenses", response_model=AnalyticsResponse)
async def licenses_endpoint(
    now: Optional[datetime] = None,
    profession: Optional[str] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.license_analytics(now, profession))


@app.get("/analytics/enrollment/trends", response_model=AnalyticsResponse)
async def enrollment_trends_endpoint(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.enrollment_trends(_date_range(start, end)))


@app.get("/analytics/dashboard", response_model=AnalyticsResponse)
async def dashboard_endpoint(
    now: Optional[datetime] = None,
    service: AnalyticsService = Depends(get_service),
) -> AnalyticsResponse:
    return _respond(await service.dashboard_summary(now))


@app.get("/analytics/years", response_model=AnalyticsResponse)
async def years_endpoint(service: AnalyticsService = Depends(get_service)) -> AnalyticsResponse:
    return _respond(await service.available_years())


@app.get("/analytics/years/{year}/enrollments", response_model=AnalyticsResponse)
async def enrollments_by_year_endpoint(year: int, service: AnalyticsService = Depends(get_service)) -> AnalyticsResponse:
    return _respond(await service.enrollments_by_year(year))


@app.get("/analytics/years/{year}/revenue", response_model=AnalyticsResponse)
async def revenue_by_year_endpoint(year: int, service: AnalyticsService = Depends(get_service)) -> AnalyticsResponse:
    return _respond(await service.revenue_by_year(year))


@app.get("/analytics/years/{year}/courses", response_model=AnalyticsResponse)
async def courses_by_year_endpoint(year: int, service: AnalyticsService = Depends(get_service)) -> AnalyticsResponse:
    return _respond(await service.courses_offered_by_year(year))


def _inline_queries(
    service: AnalyticsService, request: InlineRequest
) -> Dict[str, Callable[[], Awaitable[Any]]]:
    date_range = _date_range(request.start, request.end)

    def _year() -> int:
        if request.year is None:
            raise ConfigError(f"metric '{request.metric}' requires a year")
        return request.year

    return {
        "courses": lambda: service.course_analytics(date_range),
        "revenue": lambda: service.revenue_analytics(date_range),
        "revenue_trends": lambda: service.revenue_trends(request.granularity, date_range),
        "payments": lambda: service.payment_analytics(date_range, request.now),
        "enriched_payments": lambda: service.enriched_payments(date_range),
        "geographic": lambda: service.geographic_analytics(),
        "state_comparison": lambda: service.state_comparison(request.states),
        "city_details": lambda: service.city_details(request.city or "", request.state),
        "licenses": lambda: service.license_analytics(request.now),
        "enrollment_trends": lambda: service.enrollment_trends(date_range),
        "dashboard": lambda: service.dashboard_summary(request.now),
        "years": lambda: service.available_years(),
        "enrollments_by_year": lambda: service.enrollments_by_year(_year()),
        "revenue_by_year": lambda: service.revenue_by_year(_year()),
        "courses_by_year": lambda: service.courses_offered_by_year(_year()),
    }


@app.post("/analytics/inline", response_model=AnalyticsResponse)
async def inline_endpoint(
    request: InlineRequest,
    settings: AnalyticsSettings = Depends(get_settings),
) -> AnalyticsResponse:
    """Compute one metric family over table snapshots sent in the request body."""

    names = settings.tables
    tables: Dict[str, List[Dict[str, Any]]] = {
        name: []
        for name in (names.participant, names.enrollment, names.course, names.payment, names.license)
    }
    tables.update(request.tables)
    if not any(name in tables for name in (names.offering, *names.offering_alternates)):
        tables[names.offering] = []

    service = AnalyticsService(InMemoryTableSource(tables), settings)
    queries = _inline_queries(service, request)
    if request.metric not in queries:
        raise ConfigError(f"Unknown metric '{request.metric}', expected one of {', '.join(sorted(queries))}")
    return _respond(await queries[request.metric](), source="inline")
