"""Daily water-quality aggregates.

Every ingested reading is folded into one document per local calendar day
(``daily_metrics/{pond_id}/days/{YYYY-MM-DD}``) holding a running count,
per-signal sums and averages, plus the same figures per 4-hour bucket
("00", "04", ... "20"). Concurrent ingestion calls go through a single
store transaction per document, so no sample is lost.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from .document_store import DocumentStore
from .models import DailyMetrics, LiveReading, MetricBucket
from .rules import WATER_SIGNALS

logger = logging.getLogger("sentinel.daily_metrics")


def _fold(
    bucket: dict[str, Any],
    values: dict[str, float],
) -> dict[str, Any]:
    count = bucket.get("count", 0) + 1
    samples = dict(bucket.get("samples", {}))
    sums = dict(bucket.get("sum", {}))
    for signal, value in values.items():
        samples[signal] = samples.get(signal, 0) + 1
        sums[signal] = sums.get(signal, 0.0) + value
    avg = {signal: round(sums[signal] / samples[signal], 3) for signal in sums}
    return {**bucket, "count": count, "samples": samples, "sum": sums, "avg": avg}


class DailyMetricsAggregator:
    def __init__(self, store: DocumentStore, tz_name: str = "Asia/Manila"):
        self.store = store
        self.tz_name = tz_name
        self.tz = ZoneInfo(tz_name)

    @staticmethod
    def collection(pond_id: str) -> str:
        return f"daily_metrics/{pond_id}/days"

    def keys_for(self, ts_ms: int) -> tuple[str, str]:
        """(date key, 4-hour bucket key) for an epoch-ms timestamp."""
        local = datetime.fromtimestamp(ts_ms / 1000, tz=self.tz)
        return local.strftime("%Y-%m-%d"), f"{(local.hour // 4) * 4:02d}"

    async def record(self, pond_id: str, reading: LiveReading) -> DailyMetrics | None:
        values = {
            signal: value
            for signal in WATER_SIGNALS
            if (value := reading.value_for(signal)) is not None
        }
        if not values:
            return None
        date_key, bucket_key = self.keys_for(reading.ts)

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            doc = _fold(cur or {"date": date_key, "tz": self.tz_name}, values)
            buckets = dict(doc.get("buckets_4h", {}))
            buckets[bucket_key] = _fold(buckets.get(bucket_key, {}), values)
            doc["buckets_4h"] = buckets
            doc["last_sample_at"] = reading.ts
            return doc

        data = await self.store.transaction(self.collection(pond_id), date_key, write)
        return DailyMetrics.model_validate(data)

    async def get(self, pond_id: str, date_key: str) -> DailyMetrics | None:
        data = await self.store.get(self.collection(pond_id), date_key)
        return DailyMetrics.model_validate(data) if data is not None else None

    async def daily_averages(self, pond_id: str, date_key: str) -> dict[str, float]:
        """Per-signal averages for a day; empty when nothing was recorded."""
        metrics = await self.get(pond_id, date_key)
        return dict(metrics.avg) if metrics else {}

    async def bucket(self, pond_id: str, date_key: str, bucket_key: str) -> MetricBucket | None:
        metrics = await self.get(pond_id, date_key)
        if metrics is None:
            return None
        return metrics.buckets_4h.get(bucket_key)
