"""Insight Store & Lifecycle Engine.

One document per (pond, key) in ``insights/{pond_id}/items``. Lifecycle:

    active --resolve--> resolved       explicit, opposite-state, offline sweep
    active --expiry---> resolved       auto_resolve_at elapsed (sweep)
    resolved --upsert--> active        a fresh detection re-activates the key

Upsert is idempotent: re-detecting an active condition writes nothing, so
``created_at`` keeps the first detection time and duplicate ticks from
several sessions are harmless.

Per-signal band memory (the only cross-call state the evaluators need)
lives next to the findings in ``signal_state/{pond_id}/items``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from .document_store import Document, DocumentStore, Unsubscribe
from .models import Finding, FindingStatus, SignalMemory, SignalState
from .rules import FindingDraft, RuleOutcome, all_water_keys
from .scheduler import Clock, DelayedCall, SystemClock

logger = logging.getLogger("sentinel.insights")


class _Unchanged(Exception):
    """Aborts a transaction that has nothing to write."""


def insights_collection(pond_id: str) -> str:
    return f"insights/{pond_id}/items"


def signal_collection(pond_id: str) -> str:
    return f"signal_state/{pond_id}/items"


def _to_finding(doc: Document) -> Finding:
    return Finding.model_validate(doc.data)


class InsightStore:
    """Materializes evaluator outcomes into persisted findings."""

    def __init__(self, store: DocumentStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock or SystemClock()

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    async def upsert(self, pond_id: str, draft: FindingDraft) -> bool:
        """Activate ``draft.key`` unless it is already active.

        Returns True when a document was written.
        """
        now_ms = self.clock.now_ms()
        finding = draft.to_finding(pond_id, now_ms)

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            if cur is not None and cur.get("status") == FindingStatus.ACTIVE.value:
                raise _Unchanged
            return finding.model_dump(mode="json")

        try:
            await self.store.transaction(insights_collection(pond_id), draft.key, write)
        except _Unchanged:
            logger.debug("Finding %s/%s already active, skipped", pond_id, draft.key)
            return False
        logger.info(
            "Finding activated: %s/%s (%s)", pond_id, draft.key, finding.severity.value
        )
        return True

    async def resolve(self, pond_id: str, key: str) -> bool:
        """Mark ``key`` resolved. Missing or already-resolved keys are a no-op."""

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            if cur is None or cur.get("status") == FindingStatus.RESOLVED.value:
                raise _Unchanged
            cur["status"] = FindingStatus.RESOLVED.value
            return cur

        try:
            await self.store.transaction(insights_collection(pond_id), key, write)
        except _Unchanged:
            logger.debug("Resolve of %s/%s skipped (absent or resolved)", pond_id, key)
            return False
        logger.info("Finding resolved: %s/%s", pond_id, key)
        return True

    async def resolve_many(self, pond_id: str, keys: Iterable[str]) -> list[str]:
        resolved = []
        for key in keys:
            if await self.resolve(pond_id, key):
                resolved.append(key)
        return resolved

    async def apply(self, pond_id: str, outcome: RuleOutcome) -> None:
        """Upsert the emitted drafts, then resolve the cleared keys."""
        for draft in outcome.emit:
            await self.upsert(pond_id, draft)
        await self.resolve_many(pond_id, outcome.resolve)

    async def clear_water(self, pond_id: str) -> list[str]:
        """Resolve every water key, recovered notices included."""
        resolved = await self.resolve_many(pond_id, all_water_keys())
        if resolved:
            logger.info("Cleared %d water findings for %s", len(resolved), pond_id)
        return resolved

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    async def get(self, pond_id: str, key: str) -> Finding | None:
        data = await self.store.get(insights_collection(pond_id), key)
        return Finding.model_validate(data) if data is not None else None

    async def list(
        self,
        pond_id: str,
        status: FindingStatus | None = None,
    ) -> list[Finding]:
        """Findings for a pond, newest first."""
        docs = await self.store.list(
            insights_collection(pond_id), order_by="created_at", descending=True
        )
        findings = [_to_finding(d) for d in docs]
        if status is not None:
            findings = [f for f in findings if f.status is status]
        return findings

    async def subscribe(
        self,
        pond_id: str,
        callback: Callable[[list[Finding]], Any],
    ) -> Unsubscribe:
        """Deliver the pond's findings (newest first) now and after every write."""

        def on_snapshot(docs: list[Document]) -> Any:
            return callback([_to_finding(d) for d in docs])

        return await self.store.subscribe(
            insights_collection(pond_id),
            on_snapshot,
            order_by="created_at",
            descending=True,
        )

    # -----------------------------------------------------------------
    # Expiry
    # -----------------------------------------------------------------

    async def sweep_expired(self, pond_id: str) -> list[str]:
        """Resolve active findings whose ``auto_resolve_at`` has passed."""
        now_ms = self.clock.now_ms()
        expired = [
            f.key
            for f in await self.list(pond_id, FindingStatus.ACTIVE)
            if f.is_expired(now_ms)
        ]
        return await self.resolve_many(pond_id, expired)

    # -----------------------------------------------------------------
    # Signal memory
    # -----------------------------------------------------------------

    async def get_signal_state(self, pond_id: str, signal: str) -> SignalState | None:
        data = await self.store.get(signal_collection(pond_id), signal)
        return SignalMemory.model_validate(data).state if data else None

    async def set_signal_state(
        self, pond_id: str, signal: str, state: SignalState
    ) -> bool:
        """Remember the band state. Writes only when it changed."""
        memory = SignalMemory(
            pond_id=pond_id, signal=signal, state=state, updated_at=self.clock.now_ms()
        )

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            if cur is not None and cur.get("state") == state.value:
                raise _Unchanged
            return memory.model_dump(mode="json")

        try:
            await self.store.transaction(signal_collection(pond_id), signal, write)
        except _Unchanged:
            return False
        return True

    async def apply_signal(
        self, pond_id: str, signal: str, outcome: RuleOutcome
    ) -> None:
        """Apply a water outcome and record its band state."""
        await self.apply(pond_id, outcome)
        if outcome.state is not None:
            await self.set_signal_state(pond_id, signal, outcome.state)


class OfflineClearer:
    """Clears water findings once a device has stayed offline for a grace delay.

    Going offline schedules the clear; coming back online before the delay
    elapses cancels it, so short gaps in the feed do not flap findings.
    """

    def __init__(
        self,
        insights: InsightStore,
        delay_seconds: float,
        clock: Clock | None = None,
    ):
        self.insights = insights
        self.delay_seconds = delay_seconds
        self.clock = clock or insights.clock
        self._online: dict[str, bool] = {}
        self._pending: dict[str, DelayedCall] = {}

    def is_pending(self, pond_id: str) -> bool:
        call = self._pending.get(pond_id)
        return call is not None and call.pending

    def on_connectivity(self, pond_id: str, online: bool) -> None:
        was_online = self._online.get(pond_id, True)
        self._online[pond_id] = online

        if online:
            call = self._pending.pop(pond_id, None)
            if call is not None and call.cancel():
                logger.info("Device %s back online, offline clear cancelled", pond_id)
            return

        if was_online and not self.is_pending(pond_id):
            logger.info(
                "Device %s offline, clearing water findings in %ss",
                pond_id,
                self.delay_seconds,
            )
            self._pending[pond_id] = DelayedCall(
                self.delay_seconds,
                lambda: self._clear(pond_id),
                clock=self.clock,
                name=f"offline-clear:{pond_id}",
            )

    async def _clear(self, pond_id: str) -> None:
        self._pending.pop(pond_id, None)
        await self.insights.clear_water(pond_id)

    def cancel_all(self) -> None:
        for call in self._pending.values():
            call.cancel()
        self._pending.clear()
