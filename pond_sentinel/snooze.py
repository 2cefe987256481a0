"""Snooze Overlay.

Per-user, per-finding timed suppression applied at read time. Snoozes
never touch the finding documents; a snoozed finding stays ``active`` in
the store and reappears on its own once ``until`` passes.

Storage is one document per user in ``snoozes``:

    {"keys": {"temp_high": 1700000000000, "pond-1:do_low": 1700000360000}}

A bare key suppresses that finding in every pond the user sees; a
``{pond_id}:{key}`` entry suppresses it in one pond only. Writes merge a
single key so concurrent snoozes of different findings never clobber each
other. Expired entries are pruned lazily; the read-time ``until > now``
check is what decides visibility.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from .document_store import Document, DocumentStore, Unsubscribe
from .errors import ValidationError
from .models import Finding, FindingStatus, SnoozeEntry
from .scheduler import Clock, SystemClock

logger = logging.getLogger("sentinel.snooze")

COLLECTION = "snoozes"


def scoped_key(pond_id: str | None, key: str) -> str:
    return f"{pond_id}:{key}" if pond_id else key


def is_snoozed(
    snoozes: dict[str, int],
    pond_id: str,
    key: str,
    now_ms: int,
) -> bool:
    for candidate in (scoped_key(pond_id, key), key):
        until = snoozes.get(candidate)
        if until is not None and until > now_ms:
            return True
    return False


def visible(
    findings: Iterable[Finding],
    snoozes: dict[str, int],
    now_ms: int,
    limit: int | None = None,
) -> list[Finding]:
    """Active, unexpired, unsnoozed findings.

    Ordered by severity (error first) then newest first.
    """
    shown = [
        f
        for f in findings
        if f.status is FindingStatus.ACTIVE
        and not f.is_expired(now_ms)
        and not is_snoozed(snoozes, f.pond_id, f.key, now_ms)
    ]
    shown.sort(key=lambda f: (-f.severity.rank, -f.created_at))
    return shown[:limit] if limit is not None else shown


class SnoozeOverlay:
    def __init__(self, store: DocumentStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock or SystemClock()

    async def set_snooze(
        self, user_id: str, finding_key: str, until_ms: int
    ) -> SnoozeEntry:
        """Merge one key into the user's snooze map."""
        await self.store.set_merge(COLLECTION, user_id, {"keys": {finding_key: until_ms}})
        logger.info("Snooze set: user=%s key=%s until=%d", user_id, finding_key, until_ms)
        return SnoozeEntry(user_id=user_id, finding_key=finding_key, until=until_ms)

    async def set_snoozes(self, user_id: str, entries: dict[str, int]) -> None:
        if entries:
            await self.store.set_merge(COLLECTION, user_id, {"keys": dict(entries)})

    async def snooze_for(
        self,
        user_id: str,
        finding_key: str,
        hours: float,
        pond_id: str | None = None,
    ) -> SnoozeEntry:
        """Snooze for ``hours`` from now.

        Raises:
            ValidationError: If ``hours`` is not positive.
        """
        if hours is None or hours <= 0:
            raise ValidationError("snooze hours must be positive", field="hours")
        until = self.clock.now_ms() + int(hours * 3_600_000)
        return await self.set_snooze(user_id, scoped_key(pond_id, finding_key), until)

    async def clear_snooze(
        self, user_id: str, finding_key: str, pond_id: str | None = None
    ) -> None:
        key = scoped_key(pond_id, finding_key)

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            cur = cur or {"keys": {}}
            cur.setdefault("keys", {}).pop(key, None)
            return cur

        await self.store.transaction(COLLECTION, user_id, write)

    async def load(self, user_id: str) -> dict[str, int]:
        data = await self.store.get(COLLECTION, user_id)
        return dict((data or {}).get("keys", {}))

    async def prune_expired(self, user_id: str) -> int:
        """Drop entries whose ``until`` is in the past. Returns how many."""
        now_ms = self.clock.now_ms()
        removed = 0

        def write(cur: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal removed
            keys = (cur or {}).get("keys", {})
            kept = {k: v for k, v in keys.items() if v >= now_ms}
            removed = len(keys) - len(kept)
            return {**(cur or {}), "keys": kept}

        await self.store.transaction(COLLECTION, user_id, write)
        if removed:
            logger.debug("Pruned %d expired snoozes for %s", removed, user_id)
        return removed

    async def subscribe(
        self,
        user_id: str,
        callback: Callable[[dict[str, int]], Any],
    ) -> Unsubscribe:
        """Deliver the user's snooze map now and after every snooze write."""

        def on_snapshot(docs: list[Document]) -> Any:
            for doc in docs:
                if doc.id == user_id:
                    return callback(dict(doc.data.get("keys", {})))
            return callback({})

        return await self.store.subscribe(COLLECTION, on_snapshot)
