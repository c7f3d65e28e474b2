import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .models import ExclusionEntry, ExclusionReason
from .settings import BackoffPolicy

lib_logger = logging.getLogger("quota_broker")


class ExclusionLedger:
    """
    Time-boxed exclusions of bindings after rate-limit or transient failures.

    An entry keeps a binding out of selection until `retry_at`. Refreshing an
    entry that is still on file grows the cooldown along the backoff curve;
    once an expired entry is swept away the next exclusion starts over at the
    base cooldown.
    """

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.time,
        on_change: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._on_change = on_change
        self._entries: Dict[int, ExclusionEntry] = {}
        self._lock = asyncio.Lock()

    async def _changed(self, persist: bool) -> None:
        if persist and self._on_change is not None:
            await self._on_change()

    def _cooldown(self, reason: ExclusionReason, retry_count: int, cooldown: Optional[float]) -> float:
        if reason.is_transient:
            return cooldown if cooldown is not None else self.policy.transient_seconds
        return self.policy.cooldown_for(retry_count, base=cooldown)

    async def exclude(
        self,
        binding_id: int,
        reason: ExclusionReason,
        cooldown: Optional[float] = None,
        persist: bool = True,
    ) -> ExclusionEntry:
        """
        Exclude a binding or refresh its exclusion.

        Args:
            binding_id: Binding to exclude
            reason: Why. `transient_error` gets a fixed short cooldown.
            cooldown: Base cooldown in seconds (e.g. a provider Retry-After).
                Quota-class reasons still grow it with the retry count.

        Returns:
            The stored entry
        """
        async with self._lock:
            now = self._clock()
            previous = self._entries.get(binding_id)
            retry_count = previous.retry_count + 1 if previous else 1
            seconds = max(0.0, float(self._cooldown(reason, retry_count, cooldown)))
            entry = ExclusionEntry(
                binding_id=binding_id,
                reason=reason,
                excluded_at=now,
                retry_at=now + seconds,
                retry_count=retry_count,
            )
            self._entries[binding_id] = entry

        lib_logger.info(
            f"Excluded binding {binding_id} for {seconds:.0f}s "
            f"(reason: {reason.value}, attempt #{retry_count})"
        )
        await self._changed(persist)
        return entry

    def is_excluded(self, binding_id: int) -> bool:
        entry = self._entries.get(binding_id)
        return entry is not None and entry.is_active(self._clock())

    def get(self, binding_id: int) -> Optional[ExclusionEntry]:
        return self._entries.get(binding_id)

    def remaining(self, binding_id: int) -> float:
        entry = self._entries.get(binding_id)
        return entry.remaining(self._clock()) if entry else 0.0

    def entries(self, active_only: bool = False) -> List[ExclusionEntry]:
        now = self._clock()
        return [
            e
            for e in sorted(self._entries.values(), key=lambda e: e.binding_id)
            if not active_only or e.is_active(now)
        ]

    async def clear(self, binding_id: int, persist: bool = True) -> bool:
        """Remove an exclusion immediately, e.g. after a call succeeds again."""
        async with self._lock:
            removed = self._entries.pop(binding_id, None)
        if removed is None:
            return False
        lib_logger.info(f"Cleared exclusion of binding {binding_id}")
        await self._changed(persist)
        return True

    async def clear_all(self, persist: bool = True) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            await self._changed(persist)
        return count

    async def sweep_expired(self, persist: bool = True) -> int:
        """Delete entries whose retry time has passed. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [bid for bid, e in self._entries.items() if not e.is_active(now)]
            for bid in expired:
                del self._entries[bid]
        if expired:
            lib_logger.debug(f"Swept {len(expired)} expired exclusion(s)")
            await self._changed(persist)
        return len(expired)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, data: Mapping[str, Any]) -> int:
        """
        Replace the ledger with persisted entries. Malformed entries are
        skipped with a warning. Returns the number of entries loaded.
        """
        self._entries.clear()
        for key, raw in (data or {}).items():
            try:
                binding_id = int(key)
                if not isinstance(raw, Mapping):
                    raise TypeError(f"expected object, got {type(raw).__name__}")
                self._entries[binding_id] = ExclusionEntry.from_dict(binding_id, raw)
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.warning(f"Skipping malformed exclusion entry '{key}': {e}")
        return len(self._entries)

    def dump(self) -> Dict[str, Dict[str, Any]]:
        return {str(bid): entry.to_dict() for bid, entry in sorted(self._entries.items())}
