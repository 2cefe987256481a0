"""Pond Sentinel: growth forecasting and insight lifecycle for aquaculture ponds.

Turns periodic mortality, growth and feeding logs plus a live water feed
into a survival state, a harvest forecast and a set of findings with a
managed lifecycle (upsert by key, opposite-state clearing, expiry,
per-user snoozes).

Usage:
    from pond_sentinel import PondMonitor, Pond, get_settings

    monitor = PondMonitor.from_settings(get_settings())
    await monitor.ponds.register(Pond(id="pond-1", initial_stocked=1000))
    await monitor.record_mortality("pond-1", 5.0)
    await monitor.on_reading("pond-1", LiveReading(ts=now_ms, temp_c=32.0))
    findings = await monitor.visible_findings("pond-1", user_id="u1")
"""

from .document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    SupabaseDocumentStore,
    create_store,
)
from .errors import NotFoundError, PondSentinelError, TransientIOError, ValidationError
from .growth import ForecastUnavailable, GrowthModel, GrowthStage
from .insight_store import InsightStore, OfflineClearer
from .live_forecast import apply_multiplier, growth_multiplier, survival_risk_multiplier
from .models import (
    Category,
    Finding,
    FindingStatus,
    ForecastResult,
    GrowthMeasurement,
    GrowthSetup,
    LiveReading,
    MortalityEntry,
    Pond,
    Severity,
    SignalState,
    SnoozeEntry,
    SurvivalState,
)
from .monitor import PondMonitor
from .rules_config import RuleSet, default_rules, load_rules
from .scheduler import Clock, DelayedCall, IntervalTask, ManualClock, SystemClock
from .settings import PondSettings, get_settings
from .snooze import SnoozeOverlay
from .survival import compute_survival

__all__ = [
    "Category",
    "Clock",
    "DelayedCall",
    "DocumentStore",
    "Finding",
    "FindingStatus",
    "ForecastResult",
    "ForecastUnavailable",
    "GrowthMeasurement",
    "GrowthModel",
    "GrowthSetup",
    "GrowthStage",
    "InMemoryDocumentStore",
    "InsightStore",
    "IntervalTask",
    "LiveReading",
    "ManualClock",
    "MortalityEntry",
    "NotFoundError",
    "OfflineClearer",
    "Pond",
    "PondMonitor",
    "PondSentinelError",
    "PondSettings",
    "RuleSet",
    "Severity",
    "SignalState",
    "SnoozeEntry",
    "SnoozeOverlay",
    "SupabaseDocumentStore",
    "SurvivalState",
    "SystemClock",
    "TransientIOError",
    "ValidationError",
    "apply_multiplier",
    "compute_survival",
    "create_store",
    "default_rules",
    "get_settings",
    "growth_multiplier",
    "load_rules",
    "survival_risk_multiplier",
]
