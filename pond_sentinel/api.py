"""HTTP surface for the pond monitoring core.

GET   /health
POST  /api/v1/ponds                                register a pond
GET   /api/v1/ponds/{pond}/survival                survival state
GET   /api/v1/ponds/{pond}/survival/curve          cumulative survival points
GET   /api/v1/ponds/{pond}/survival/forecast       daily survival projection
GET   /api/v1/ponds/{pond}/forecast                baseline + live ABW forecast
GET   /api/v1/ponds/{pond}/days-to-target          days or an unavailability reason
GET   /api/v1/ponds/{pond}/findings                visible findings (post-snooze)
POST  /api/v1/ponds/{pond}/findings/{key}/resolve
POST  /api/v1/ponds/{pond}/findings/{key}/snooze
POST  /api/v1/ponds/{pond}/mortality               record mortality
PATCH /api/v1/ponds/{pond}/mortality/{entry_id}    correct a mortality rate
POST  /api/v1/ponds/{pond}/growth                  record ABW
PUT   /api/v1/ponds/{pond}/growth/target           set target weight
POST  /api/v1/ponds/{pond}/feeding                 record feeding
POST  /api/v1/ponds/{pond}/readings                push a live reading
POST  /api/v1/ponds/{pond}/cycle                   start a new stocking cycle
GET   /api/v1/ponds/{pond}/daily-metrics/{date}    daily aggregate
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import NotFoundError, PondSentinelError, TransientIOError, ValidationError
from .growth import ForecastUnavailable
from .models import (
    DailyMetrics,
    FeedingEvent,
    Finding,
    ForecastResult,
    GrowthMeasurement,
    GrowthSetup,
    LiveReading,
    MortalityEntry,
    Pond,
    SnoozeEntry,
    SurvivalPoint,
    SurvivalState,
    UtcDatetime,
)
from .monitor import PondMonitor
from .settings import PondSettings, get_settings

logger = logging.getLogger("sentinel.api")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    code: str
    message: str
    detail: str | None = None
    field: str | None = None


class MortalityCreate(BaseModel):
    mortality_rate_percent: float
    period_date: UtcDatetime | None = None
    notes: str | None = None


class MortalityCorrection(BaseModel):
    mortality_rate_percent: float


class GrowthCreate(BaseModel):
    abw_grams: float
    recorded_at: UtcDatetime | None = None
    note: str | None = None


class TargetUpdate(BaseModel):
    target_weight_grams: float | None = None


class FeedingCreate(BaseModel):
    feed_given_g: float
    suggested_g: float | None = None
    fed_at: UtcDatetime | None = None
    auto_logged: bool = False


class SnoozeRequest(BaseModel):
    user_id: str
    hours: float | None = None
    pond_only: bool = Field(
        default=False, description="Snooze in this pond only instead of every pond."
    )


class CycleRequest(BaseModel):
    initial_stocked: int | None = Field(default=None, ge=0)


class DaysToTargetResponse(BaseModel):
    days: int | None = None
    status: str  # "ok" or a ForecastUnavailable value


class ResolveResponse(BaseModel):
    key: str
    resolved: bool


class ReadingResponse(BaseModel):
    evaluated: bool


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def create_ponds_router(monitor: PondMonitor) -> APIRouter:
    router = APIRouter(prefix="/api/v1", tags=["ponds"])

    @router.post("/ponds", response_model=Pond, status_code=201)
    async def register_pond(pond: Pond) -> Pond:
        registered = await monitor.ponds.register(pond)
        if monitor.is_monitoring:
            monitor.start_monitoring([registered.id])
        return registered

    @router.get("/ponds/{pond}/survival", response_model=SurvivalState)
    async def get_survival(pond: str) -> SurvivalState:
        return await monitor.get_survival(pond)

    @router.get("/ponds/{pond}/survival/curve", response_model=list[SurvivalPoint])
    async def get_survival_curve(pond: str) -> list[SurvivalPoint]:
        return await monitor.get_survival_curve(pond)

    @router.get("/ponds/{pond}/survival/forecast", response_model=list[float])
    async def get_survival_forecast(
        pond: str, days: int | None = Query(default=None, ge=0, le=365)
    ) -> list[float]:
        return await monitor.get_survival_forecast(pond, days=days)

    @router.get("/ponds/{pond}/forecast", response_model=ForecastResult)
    async def get_forecast(
        pond: str, horizon: int | None = Query(default=None, ge=0, le=200)
    ) -> ForecastResult:
        return await monitor.get_forecast(pond, horizon)

    @router.get("/ponds/{pond}/days-to-target", response_model=DaysToTargetResponse)
    async def days_to_target(pond: str) -> DaysToTargetResponse:
        result = await monitor.days_to_target(pond)
        if isinstance(result, ForecastUnavailable):
            return DaysToTargetResponse(days=None, status=result.value)
        return DaysToTargetResponse(days=result, status="ok")

    @router.get("/ponds/{pond}/findings", response_model=list[Finding])
    async def list_findings(
        pond: str,
        user_id: str | None = None,
        limit: int | None = Query(default=None, ge=1, le=500),
    ) -> list[Finding]:
        return await monitor.visible_findings(pond, user_id, limit)

    @router.post("/ponds/{pond}/findings/{key}/resolve", response_model=ResolveResponse)
    async def resolve_finding(pond: str, key: str) -> ResolveResponse:
        return ResolveResponse(key=key, resolved=await monitor.resolve_finding(pond, key))

    @router.post("/ponds/{pond}/findings/{key}/snooze", response_model=SnoozeEntry)
    async def snooze_finding(pond: str, key: str, body: SnoozeRequest) -> SnoozeEntry:
        await monitor.ponds.resolve(pond)
        return await monitor.snooze_finding(
            body.user_id, key, body.hours, pond if body.pond_only else None
        )

    @router.post("/ponds/{pond}/mortality", response_model=MortalityEntry, status_code=201)
    async def record_mortality(pond: str, body: MortalityCreate) -> MortalityEntry:
        return await monitor.record_mortality(
            pond, body.mortality_rate_percent, body.period_date, body.notes
        )

    @router.patch("/ponds/{pond}/mortality/{entry_id}", response_model=MortalityEntry)
    async def correct_mortality(
        pond: str, entry_id: str, body: MortalityCorrection
    ) -> MortalityEntry:
        return await monitor.correct_mortality(pond, entry_id, body.mortality_rate_percent)

    @router.post("/ponds/{pond}/growth", response_model=GrowthMeasurement, status_code=201)
    async def record_growth(pond: str, body: GrowthCreate) -> GrowthMeasurement:
        return await monitor.record_growth_measurement(
            pond, body.abw_grams, body.recorded_at, body.note
        )

    @router.put("/ponds/{pond}/growth/target", response_model=GrowthSetup)
    async def set_target(pond: str, body: TargetUpdate) -> GrowthSetup:
        return await monitor.set_target_weight(pond, body.target_weight_grams)

    @router.post("/ponds/{pond}/feeding", response_model=FeedingEvent, status_code=201)
    async def record_feeding(pond: str, body: FeedingCreate) -> FeedingEvent:
        return await monitor.record_feeding(
            pond, body.feed_given_g, body.suggested_g, body.fed_at, body.auto_logged
        )

    @router.post("/ponds/{pond}/readings", response_model=ReadingResponse)
    async def push_reading(pond: str, reading: LiveReading) -> ReadingResponse:
        # Unknown ponds must 404 here; on_reading itself never raises
        await monitor.ponds.resolve(pond)
        return ReadingResponse(evaluated=await monitor.on_reading(pond, reading))

    @router.post("/ponds/{pond}/cycle", status_code=204)
    async def start_new_cycle(pond: str, body: CycleRequest) -> None:
        await monitor.start_new_cycle(pond, body.initial_stocked)

    @router.get("/ponds/{pond}/daily-metrics/{date_key}", response_model=DailyMetrics)
    async def daily_metrics(pond: str, date_key: str) -> DailyMetrics:
        pond_id = await monitor.ponds.resolve(pond)
        metrics = await monitor.daily.get(pond_id, date_key)
        if metrics is None:
            raise NotFoundError(f"no metrics for {pond_id} on {date_key}")
        return metrics

    return router


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: PondSettings | None = None,
    monitor: PondMonitor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Background evaluation for every registered pond runs for the lifetime
    of the app (startup to shutdown).
    """
    if settings is None:
        settings = get_settings()
    if monitor is None:
        monitor = PondMonitor.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ponds = await monitor.ponds.list()
        monitor.start_monitoring([p.id for p in ponds])
        try:
            yield
        finally:
            monitor.stop_monitoring()

    app = FastAPI(
        title="Pond Sentinel",
        version="0.1.0",
        description="Growth forecasting and insight lifecycle for aquaculture ponds.",
        lifespan=lifespan,
    )
    app.state.monitor = monitor

    origins = ["*"] if settings.dev_mode else ["http://localhost:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------

    def _error(status: int, code: str, message: str, exc: Exception, field=None):
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(
                code=code, message=message, detail=str(exc), field=field
            ).model_dump(),
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(422, "VALIDATION_ERROR", "Input rejected", exc, exc.field)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, "NOT_FOUND", "Resource not found", exc)

    @app.exception_handler(TransientIOError)
    async def transient_error_handler(request: Request, exc: TransientIOError) -> JSONResponse:
        logger.warning("Store unavailable: %s", exc)
        return _error(503, "STORE_UNAVAILABLE", "Document store unavailable", exc)

    @app.exception_handler(PondSentinelError)
    async def sentinel_error_handler(request: Request, exc: PondSentinelError) -> JSONResponse:
        logger.exception("Unhandled pond_sentinel error: %s", exc)
        return _error(500, "INTERNAL_ERROR", "An unexpected error occurred", exc)

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                code="INTERNAL_ERROR",
                message="An unexpected error occurred",
                detail=str(exc) if settings.dev_mode else None,
            ).model_dump(),
        )

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "store": type(monitor.store).__name__,
            "species": monitor.rules.species,
            "monitoring": monitor.is_monitoring,
        }

    app.include_router(create_ponds_router(monitor))
    return app
