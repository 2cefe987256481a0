"""Pond directory and append-only log repositories.

All logs are keyed by the pond's canonical id. Viewer-specific aliases are
mapped to that id by ``PondDirectory.resolve`` before anything else runs.

Collections:
    ponds                          Pond documents, id = canonical pond id
    pond_aliases                   {"pond_id": canonical} per alias
    mortality_ledger               {"entries": {id: MortalityEntry}}, id = pond id
    growth/{pond_id}/history       GrowthMeasurement
    growth_setup                   GrowthSetup, id = pond id
    feeding/{pond_id}/events       FeedingEvent
    devices                        {"last_seen": epoch ms, "online": bool}
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from .document_store import DocumentStore
from .errors import NotFoundError, ValidationError
from .models import FeedingEvent, GrowthMeasurement, GrowthSetup, MortalityEntry, Pond

logger = logging.getLogger("sentinel.logs")

# Receives the pond's current entries; returns the rate to store or raises.
Admission = Callable[[list[MortalityEntry]], float]


# ---------------------------------------------------------------------------
# Pond directory
# ---------------------------------------------------------------------------


class PondDirectory:
    PONDS = "ponds"
    ALIASES = "pond_aliases"

    def __init__(self, store: DocumentStore):
        self.store = store

    async def register(self, pond: Pond) -> Pond:
        if not pond.id:
            raise ValidationError("pond id is required", field="id")
        await self.store.set(self.PONDS, pond.id, pond.model_dump(mode="json"))
        for alias in pond.aliases:
            await self.store.set(self.ALIASES, alias, {"pond_id": pond.id})
        logger.info("Pond registered: %s (stocked=%d)", pond.id, pond.initial_stocked)
        return pond

    async def link_alias(self, alias: str, pond_id: str) -> None:
        pond = await self.get(pond_id)
        if alias not in pond.aliases:
            await self.store.update(
                self.PONDS, pond_id, {"aliases": [*pond.aliases, alias]}
            )
        await self.store.set(self.ALIASES, alias, {"pond_id": pond_id})
        logger.info("Alias %s linked to pond %s", alias, pond_id)

    async def resolve(self, pond_or_alias: str) -> str:
        """Canonical id for a pond id or viewer alias.

        Raises:
            NotFoundError: If neither a pond nor an alias matches.
        """
        if await self.store.get(self.PONDS, pond_or_alias) is not None:
            return pond_or_alias
        alias = await self.store.get(self.ALIASES, pond_or_alias)
        if alias and alias.get("pond_id"):
            return alias["pond_id"]
        raise NotFoundError(f"pond {pond_or_alias} not found")

    async def get(self, pond_id: str) -> Pond:
        data = await self.store.get(self.PONDS, pond_id)
        if data is None:
            raise NotFoundError(f"pond {pond_id} not found")
        return Pond.model_validate(data)

    async def list(self) -> list[Pond]:
        return [Pond.model_validate(d.data) for d in await self.store.list(self.PONDS)]

    async def set_initial_stocked(self, pond_id: str, initial_stocked: int) -> None:
        if initial_stocked < 0:
            raise ValidationError(
                "initial stocked count cannot be negative", field="initial_stocked"
            )
        try:
            await self.store.update(self.PONDS, pond_id, {"initial_stocked": initial_stocked})
        except NotFoundError:
            raise NotFoundError(f"pond {pond_id} not found") from None


# ---------------------------------------------------------------------------
# Append-only logs
# ---------------------------------------------------------------------------


class MortalityLog:
    """All mortality entries of a pond live in one ledger document.

    Admission checks run inside the ledger transaction, so two writers on
    the same pond can never both pass the cumulative cap.
    """

    COLLECTION = "mortality_ledger"

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _entries(pond_id: str, ledger: dict[str, Any] | None) -> list[MortalityEntry]:
        items = (ledger or {}).get("entries", {})
        entries = [
            MortalityEntry.model_validate({**data, "id": entry_id, "pond_id": pond_id})
            for entry_id, data in items.items()
        ]
        return sorted(entries, key=lambda e: e.period_date)

    async def list(self, pond_id: str) -> list[MortalityEntry]:
        """Entries in chronological order of ``period_date``."""
        return self._entries(pond_id, await self.store.get(self.COLLECTION, pond_id))

    async def append(
        self, entry: MortalityEntry, admit: Admission | None = None
    ) -> MortalityEntry:
        """Store ``entry``. ``admit`` sees the current entries and returns the
        rate to store, or raises to reject."""
        entry_id = uuid.uuid4().hex
        stored: list[MortalityEntry] = []

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            ledger = cur or {"entries": {}}
            rate = entry.mortality_rate_percent
            if admit is not None:
                rate = admit(self._entries(entry.pond_id, ledger))
            new = entry.model_copy(update={"id": entry_id, "mortality_rate_percent": rate})
            ledger["entries"][entry_id] = new.model_dump(mode="json", exclude={"id"})
            stored[:] = [new]
            return ledger

        await self.store.transaction(self.COLLECTION, entry.pond_id, write)
        return stored[0]

    async def update_rate(
        self,
        pond_id: str,
        entry_id: str,
        rate: float,
        admit: Admission | None = None,
    ) -> MortalityEntry:
        """Correction path. The entry must belong to ``pond_id``."""
        updated: list[MortalityEntry] = []

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            if cur is None or entry_id not in cur.get("entries", {}):
                raise NotFoundError(f"mortality entry {entry_id} not found for pond {pond_id}")
            new_rate = admit(self._entries(pond_id, cur)) if admit is not None else rate
            cur["entries"][entry_id]["mortality_rate_percent"] = new_rate
            updated[:] = [
                MortalityEntry.model_validate(
                    {**cur["entries"][entry_id], "id": entry_id, "pond_id": pond_id}
                )
            ]
            return cur

        await self.store.transaction(self.COLLECTION, pond_id, write)
        return updated[0]

    async def clear(self, pond_id: str) -> int:
        count = len(await self.list(pond_id))
        await self.store.delete(self.COLLECTION, pond_id)
        return count


class GrowthLog:
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def collection(pond_id: str) -> str:
        return f"growth/{pond_id}/history"

    async def list(self, pond_id: str) -> list[GrowthMeasurement]:
        docs = await self.store.list(self.collection(pond_id))
        items = [GrowthMeasurement.model_validate({**d.data, "id": d.id}) for d in docs]
        return sorted(items, key=lambda m: m.recorded_at)

    async def append(self, measurement: GrowthMeasurement) -> GrowthMeasurement:
        data = measurement.model_dump(mode="json", exclude={"id"})
        item_id = await self.store.add(self.collection(measurement.pond_id), data)
        return measurement.model_copy(update={"id": item_id})

    async def clear(self, pond_id: str) -> int:
        return await self.store.delete_collection(self.collection(pond_id))


class GrowthSetupStore:
    COLLECTION = "growth_setup"

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, pond_id: str) -> GrowthSetup | None:
        data = await self.store.get(self.COLLECTION, pond_id)
        return GrowthSetup.model_validate(data) if data is not None else None

    async def save(self, setup: GrowthSetup) -> GrowthSetup:
        await self.store.set(self.COLLECTION, setup.pond_id, setup.model_dump(mode="json"))
        return setup

    async def set_target(self, pond_id: str, target_weight_grams: float | None) -> GrowthSetup:
        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            base = cur or GrowthSetup(pond_id=pond_id, current_abw=0).model_dump(mode="json")
            base["target_weight_grams"] = target_weight_grams
            return base

        return GrowthSetup.model_validate(
            await self.store.transaction(self.COLLECTION, pond_id, write)
        )

    async def clear(self, pond_id: str) -> bool:
        return await self.store.delete(self.COLLECTION, pond_id)


class FeedingLog:
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def collection(pond_id: str) -> str:
        return f"feeding/{pond_id}/events"

    async def list(self, pond_id: str) -> list[FeedingEvent]:
        docs = await self.store.list(self.collection(pond_id))
        events = [FeedingEvent.model_validate({**d.data, "id": d.id}) for d in docs]
        return sorted(events, key=lambda e: e.fed_at)

    async def append(self, event: FeedingEvent) -> FeedingEvent:
        data = event.model_dump(mode="json", exclude={"id"})
        event_id = await self.store.add(self.collection(event.pond_id), data)
        return event.model_copy(update={"id": event_id})


class HeartbeatStore:
    COLLECTION = "devices"

    def __init__(self, store: DocumentStore):
        self.store = store

    async def record(self, pond_id: str, now_ms: int, online: bool = True) -> None:
        patch: dict[str, Any] = {"online": online}
        if online:
            patch["last_seen"] = now_ms
        await self.store.set_merge(self.COLLECTION, pond_id, patch)

    async def last_seen(self, pond_id: str) -> int | None:
        data = await self.store.get(self.COLLECTION, pond_id)
        return (data or {}).get("last_seen")
