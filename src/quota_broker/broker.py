import asyncio
import itertools
import time
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .catalog import BindingRecord, CredentialCatalog, Lease
from .catalog_loader import apply_catalog_file
from .error_handler import (
    ClassifiedError,
    FailureKind,
    NoAvailableCandidateError,
    UnknownBindingError,
    classify_error,
    mask_credential,
)
from .exclusion_ledger import ExclusionLedger
from .metrics import (
    observe_exclusion,
    observe_failure,
    observe_no_candidate,
    observe_selection,
)
from .model_limits import ModelLimits
from .models import (
    Candidate,
    Credential,
    ExclusionEntry,
    ExclusionReason,
    ModelBinding,
    Provider,
    Requirement,
    ScopeOrder,
    UsageDocument,
    UsageStatus,
    WindowKind,
    to_iso,
)
from .settings import BrokerSettings
from .storage import MemoryStateStore, StateStore
from .usage_tracker import UsageTracker

lib_logger = logging.getLogger("quota_broker")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

BindingRef = Union[Candidate, ModelBinding, int]

_AUTO_DISABLED_PREFIX = "Automatically disabled: "


class QuotaBroker:
    """
    Decides which (credential, model) pair serves the next request.

    Selection filters the catalog down to bindings that are active, visible
    to the caller's tenant, not excluded and not exhausted, orders them by
    scope, provider preference and priority, and round-robins between equal
    candidates. The winner gets an in-flight reservation (a lease) taken
    under its binding lock, so concurrent callers cannot overshoot a limit.

    Callers report exactly one outcome per candidate:

        candidate = await broker.select_candidate(Requirement(model="gemini-2.5-flash"))
        try:
            response = await call_provider(candidate.api_key, candidate.model_name)
        except Exception as e:
            await broker.report_error(candidate, e)
            raise
        await broker.record_usage(candidate, tokens_consumed=response.usage.total_tokens)

    The broker never retries on its own; see FailoverExecutor for a loop.
    State is loaded lazily from the StateStore on first use and saved after
    every mutation.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        settings: Optional[BrokerSettings] = None,
        model_limits: Optional[ModelLimits] = None,
        clock: Callable[[], float] = time.time,
        configure_logging: bool = False,
    ):
        if configure_logging:
            # Hand library records to the host application's handlers.
            lib_logger.propagate = True
            if lib_logger.hasHandlers():
                lib_logger.handlers.clear()
                lib_logger.addHandler(logging.NullHandler())

        self.settings = settings or BrokerSettings()
        self.model_limits = model_limits or ModelLimits.from_file(self.settings.model_limits_file)
        self.store = store if store is not None else MemoryStateStore()
        self._clock = clock

        self.catalog = CredentialCatalog(self.model_limits)
        self.tracker = UsageTracker(
            self.model_limits,
            clock=clock,
            safety_margin=self.settings.safety_margin,
            on_change=self.persist,
        )
        self.ledger = ExclusionLedger(self.settings.backoff, clock=clock, on_change=self.persist)

        self._selection_seq = itertools.count(1)
        self._last_lease_id = 0
        self._initialized = asyncio.Event()
        self._init_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _lazy_init(self):
        """Loads the catalog and ledger from the store on first use."""
        async with self._init_lock:
            if not self._initialized.is_set():
                state = await self.store.load()
                self.catalog.load(state.get("credentials") or [], state.get("bindings") or [])
                self.ledger.load(state.get("exclusions") or {})
                self._initialized.set()
                lib_logger.info(
                    f"Broker loaded {len(self.catalog.credentials())} credential(s), "
                    f"{len(self.catalog.bindings())} binding(s), "
                    f"{len(self.ledger.entries())} exclusion(s)"
                )

    async def initialize(self):
        await self._lazy_init()

    async def persist(self):
        """Saves the full state snapshot to the store."""
        async with self._persist_lock:
            await self.store.save(self.snapshot())

    def snapshot(self) -> Dict[str, Any]:
        state: Dict[str, Any] = dict(self.catalog.dump())
        state["exclusions"] = self.ledger.dump()
        return state

    async def close(self):
        await self.store.close()

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @staticmethod
    def _is_visible(credential: Credential, tenant_id: Optional[str]) -> bool:
        return credential.is_central or credential.tenant_id == tenant_id

    def _eligible(self, requirement: Requirement) -> List[Tuple[BindingRecord, Credential]]:
        """Bindings that could serve the requirement, ignoring exclusions and usage."""
        pool = []
        for record in self.catalog.records():
            binding = record.binding
            if not binding.is_enabled or binding.id in requirement.exclude_binding_ids:
                continue
            if requirement.capability and requirement.capability not in binding.capabilities:
                continue
            if not requirement.matches_model(binding.model_name):
                continue
            credential = self.catalog.get_credential(binding.credential_id)
            if not credential.is_active or not self._is_visible(credential, requirement.tenant_id):
                continue
            if (
                requirement.strict_provider
                and requirement.provider is not None
                and credential.provider is not requirement.provider
            ):
                continue
            pool.append((record, credential))
        return pool

    def _is_available(self, record: BindingRecord, requirement: Requirement) -> bool:
        if self.ledger.is_excluded(record.binding.id):
            return False
        return not self.tracker.is_exhausted(
            record.binding,
            predicted_tokens=requirement.predicted_tokens,
            pending_requests=record.in_flight,
            pending_tokens=record.pending_tokens,
        )

    def _sort_key(self, item: Tuple[BindingRecord, Credential], requirement: Requirement):
        record, credential = item
        scope_order = requirement.scope_order or self.settings.scope_order
        if scope_order is ScopeOrder.TENANT_FIRST:
            scope_rank = 1 if credential.is_central else 0
        elif scope_order is ScopeOrder.CENTRAL_FIRST:
            scope_rank = 0 if credential.is_central else 1
        else:
            scope_rank = 0

        preferred = requirement.provider or self.settings.preferred_provider
        provider_rank = 0 if preferred is None or credential.provider is preferred else 1

        return (
            scope_rank,
            provider_rank,
            credential.priority,
            record.binding.priority,
            record.last_selected_seq,
            record.binding.id,
        )

    def _earliest_recovery(self, pool: Iterable[Tuple[BindingRecord, Credential]]) -> Optional[float]:
        waits = [
            max(
                self.ledger.remaining(record.binding.id),
                self.tracker.time_until_available(record.binding),
            )
            for record, _ in pool
        ]
        return min(waits) if waits else None

    async def earliest_recovery(self, requirement: Optional[Requirement] = None) -> Optional[float]:
        """Seconds until some binding for `requirement` can be selected again. None if none exists."""
        await self._lazy_init()
        return self._earliest_recovery(self._eligible(requirement or Requirement()))

    async def select_candidate(self, requirement: Optional[Requirement] = None) -> Candidate:
        """
        Reserve the best available (credential, binding) pair.

        Args:
            requirement: What the caller needs. Defaults to any chat model.

        Returns:
            A Candidate holding a lease. Report its outcome with record_usage,
            report_error, exclude or release.

        Raises:
            NoAvailableCandidateError: Nothing can serve the requirement right now
        """
        await self._lazy_init()
        requirement = requirement or Requirement()
        description = requirement.describe()

        pool = self._eligible(requirement)
        if not pool:
            observe_no_candidate()
            raise NoAvailableCandidateError(
                f"No active credential serves {description}", requirement=description
            )

        available = [item for item in pool if self._is_available(item[0], requirement)]
        available.sort(key=lambda item: self._sort_key(item, requirement))

        for record, credential in available:
            binding = record.binding
            async with record.lock:
                # Another task may have taken the last slot while we waited.
                if not (
                    credential.is_active
                    and binding.is_enabled
                    and self._is_available(record, requirement)
                ):
                    continue
                now = self._clock()
                self._last_lease_id += 1
                lease_id = self._last_lease_id
                record.leases[lease_id] = Lease(
                    reserved_at=now, predicted_tokens=max(0, requirement.predicted_tokens)
                )
                record.last_selected_seq = next(self._selection_seq)
                in_flight = record.in_flight

            lib_logger.info(
                f"Selected {credential.provider.value} credential "
                f"{mask_credential(credential.secret)} for {binding.model_name} "
                f"(binding {binding.id}, in-flight {in_flight})"
            )
            observe_selection(credential.provider.value, binding.model_name)
            return Candidate(
                credential=credential, binding=binding, lease_id=lease_id, selected_at=now
            )

        retry_after = self._earliest_recovery(pool)
        observe_no_candidate()
        lib_logger.warning(
            f"All {len(pool)} binding(s) for {description} are excluded or exhausted"
            + (f"; earliest recovery in {retry_after:.0f}s" if retry_after else "")
        )
        raise NoAvailableCandidateError(
            f"All {len(pool)} binding(s) for {description} are excluded or exhausted",
            requirement=description,
            retry_after=retry_after,
        )

    # ------------------------------------------------------------------
    # Outcome reporting
    # ------------------------------------------------------------------

    def _record_for(self, ref: BindingRef) -> BindingRecord:
        if isinstance(ref, Candidate):
            return self.catalog.get_record(ref.binding.id)
        if isinstance(ref, ModelBinding):
            return self.catalog.get_record(ref.id)
        return self.catalog.get_record(int(ref))

    @staticmethod
    def _drop_lease(record: BindingRecord, ref: BindingRef) -> Optional[Lease]:
        if isinstance(ref, Candidate):
            return record.leases.pop(ref.lease_id, None)
        return None

    def _mark_excluded(self, record: BindingRecord) -> None:
        record.excluded_after_lease = self._last_lease_id

    @staticmethod
    def _selected_after_exclusion(record: BindingRecord, ref: BindingRef) -> bool:
        return isinstance(ref, Candidate) and ref.lease_id > record.excluded_after_lease

    async def record_usage(self, candidate: BindingRef, tokens_consumed: int = 0) -> UsageStatus:
        """
        Report a successful call. Releases the lease and adds one request and
        `tokens_consumed` tokens to the windows.

        An exclusion on the binding is cleared only when `candidate` was
        selected after that exclusion was made. A success from an older call,
        or one recorded by binding id, leaves the exclusion and its backoff
        alone.
        """
        await self._lazy_init()
        record = self._record_for(candidate)
        async with record.lock:
            self._drop_lease(record, candidate)
            status = await self.tracker.record_usage(record.binding, tokens_consumed, persist=False)
            cleared_by_success = self._selected_after_exclusion(record, candidate)
        if cleared_by_success:
            await self.ledger.clear(record.binding.id, persist=False)
        await self.persist()

        if status.exhausted:
            lib_logger.info(
                f"Binding {record.binding.id} ({record.binding.model_name}) reached its "
                f"{'/'.join(w.value for w in status.exhausted_windows)} limit"
            )
        return status

    async def exclude(
        self,
        candidate: BindingRef,
        reason: ExclusionReason,
        cooldown: Optional[float] = None,
    ) -> ExclusionEntry:
        """Release the lease (if any) and take the binding out of rotation for a while."""
        await self._lazy_init()
        record = self._record_for(candidate)
        async with record.lock:
            self._drop_lease(record, candidate)
            self._mark_excluded(record)
        entry = await self.ledger.exclude(record.binding.id, reason, cooldown)
        observe_exclusion(reason.value)
        return entry

    async def report_rate_limited(
        self,
        candidate: BindingRef,
        retry_after: Optional[float] = None,
        window: Optional[WindowKind] = None,
        reason: ExclusionReason = ExclusionReason.RATE_LIMITED,
    ) -> ExclusionEntry:
        """
        The provider refused with a rate-limit or quota error. The named
        window (RPM when unknown) is marked exhausted and the binding is
        excluded with quota backoff, using `retry_after` as the base cooldown
        when the provider supplied one.
        """
        await self._lazy_init()
        record = self._record_for(candidate)
        async with record.lock:
            self._drop_lease(record, candidate)
            await self.tracker.mark_exhausted_now(
                record.binding, window or WindowKind.RPM, persist=False
            )
            self._mark_excluded(record)
        entry = await self.ledger.exclude(record.binding.id, reason, cooldown=retry_after)
        observe_exclusion(reason.value)
        lib_logger.warning(
            f"Binding {record.binding.id} ({record.binding.model_name}) rate limited "
            f"on {(window or WindowKind.RPM).value}; retry at {to_iso(entry.retry_at)}"
        )
        return entry

    async def report_transient_failure(
        self, candidate: BindingRef, cooldown: Optional[float] = None
    ) -> ExclusionEntry:
        return await self.exclude(candidate, ExclusionReason.TRANSIENT_ERROR, cooldown)

    async def count_abandoned(self, record: BindingRecord, lease: Lease) -> None:
        """
        Charge an attempt that never reported back: one request plus the
        tokens predicted for it. The caller must hold `record.lock`.
        """
        await self.tracker.record_usage(record.binding, lease.predicted_tokens, persist=False)

    async def release(self, candidate: Candidate, attempted: bool = True) -> bool:
        """
        Give up on a candidate without an outcome, e.g. when the caller was
        cancelled mid-call.

        The provider has usually seen the request by then, so the attempt is
        still charged (one request plus the predicted tokens) unless
        `attempted` is False, meaning the request was never sent.

        Returns:
            False if the lease was already gone
        """
        await self._lazy_init()
        try:
            record = self._record_for(candidate)
        except UnknownBindingError:
            return False
        async with record.lock:
            lease = self._drop_lease(record, candidate)
            if lease is not None and attempted:
                await self.count_abandoned(record, lease)
        if lease is not None and attempted:
            await self.persist()
        return lease is not None

    async def deactivate_credential(self, credential_id: str, reason: str) -> Credential:
        """
        Turn a credential off until an operator re-activates it. All of its
        bindings drop out of selection immediately.
        """
        await self._lazy_init()
        credential = self.catalog.get_credential(credential_id)
        if not credential.is_active:
            return credential
        credential.is_active = False
        credential.description = f"{_AUTO_DISABLED_PREFIX}{reason}"
        lib_logger.warning(
            f"Deactivated {credential.provider.value} credential "
            f"{mask_credential(credential.secret)}: {reason}"
        )
        await self.persist()
        return credential

    async def disable_binding(self, binding_id: int, reason: str) -> ModelBinding:
        await self._lazy_init()
        binding = self.catalog.get_binding(binding_id)
        if binding.is_enabled:
            binding.is_enabled = False
            lib_logger.warning(f"Disabled binding {binding_id} ({binding.model_name}): {reason}")
            await self.persist()
        return binding

    @staticmethod
    def _deactivation_reason(classified: ClassifiedError) -> str:
        text = str(classified.original_exception).lower()
        if "leaked" in text:
            return "LEAKED_KEY"
        if classified.status_code == 403:
            return "403_PERMISSION_DENIED"
        return "INVALID_KEY"

    async def report_error(self, candidate: Candidate, error: Exception) -> ClassifiedError:
        """
        Classify an upstream exception and apply the matching outcome.

        Returns:
            The classification, so callers can decide whether to try again
        """
        classified = classify_error(error)
        observe_failure(classified.kind.value)
        kind = classified.kind

        if kind is FailureKind.QUOTA_EXHAUSTED:
            await self.report_rate_limited(
                candidate,
                classified.retry_after,
                classified.window,
                reason=ExclusionReason.QUOTA_EXHAUSTED,
            )
        elif kind is FailureKind.RATE_LIMITED:
            await self.report_rate_limited(candidate, classified.retry_after, classified.window)
        elif kind is FailureKind.CREDENTIAL_INVALID:
            await self.release(candidate)
            await self.deactivate_credential(
                candidate.credential.id, self._deactivation_reason(classified)
            )
        elif kind is FailureKind.MODEL_UNAVAILABLE:
            await self.release(candidate)
            await self.disable_binding(
                candidate.binding.id,
                f"model unavailable (HTTP {classified.status_code or 'n/a'})",
            )
        elif kind is FailureKind.REQUEST_ERROR:
            # The provider still counted the call against the key.
            await self.record_usage(candidate, 0)
        else:
            await self.report_transient_failure(candidate, classified.retry_after)

        lib_logger.info(
            f"{mask_credential(candidate.api_key)} / {candidate.model_name}: {classified}"
        )
        return classified

    # ------------------------------------------------------------------
    # Catalog administration
    # ------------------------------------------------------------------

    async def add_credential(
        self,
        provider: Union[Provider, str],
        secret: str,
        priority: int = 1,
        tenant_id: Optional[str] = None,
        name: str = "",
        description: str = "",
        is_active: bool = True,
        credential_id: Optional[str] = None,
        models: Iterable[str] = (),
    ) -> Credential:
        await self._lazy_init()
        async with self.catalog.structure_lock:
            credential = self.catalog.add_credential(
                Provider.parse(provider),
                secret,
                priority=priority,
                tenant_id=tenant_id,
                name=name,
                description=description,
                is_active=is_active,
                credential_id=credential_id,
            )
            for model_name in models:
                self.catalog.add_binding(credential.id, model_name)
        await self.persist()
        return credential

    async def update_credential(self, credential_id: str, **changes: Any) -> Credential:
        await self._lazy_init()
        credential = self.catalog.update_credential(credential_id, **changes)
        await self.persist()
        return credential

    async def activate_credential(self, credential_id: str) -> Credential:
        await self._lazy_init()
        credential = self.catalog.get_credential(credential_id)
        credential.is_active = True
        if credential.description.startswith(_AUTO_DISABLED_PREFIX):
            credential.description = ""
        lib_logger.info(f"Activated credential {mask_credential(credential.secret)}")
        await self.persist()
        return credential

    async def add_binding(
        self,
        credential_id: str,
        model_name: str,
        priority: int = 1,
        capabilities: Optional[Iterable[str]] = None,
        is_enabled: bool = True,
        limits: Optional[Mapping[str, int]] = None,
    ) -> ModelBinding:
        """
        Bind a model to a credential. Window limits default to the model's
        documented limits; `limits` overrides individual windows.
        """
        await self._lazy_init()
        window_limits = self.model_limits.for_model(model_name)
        window_limits.update(limits or {})
        async with self.catalog.structure_lock:
            binding = self.catalog.add_binding(
                credential_id,
                model_name,
                priority=priority,
                capabilities=capabilities,
                is_enabled=is_enabled,
                usage=UsageDocument.fresh(window_limits),
            )
        await self.persist()
        return binding

    async def set_binding_enabled(self, binding_id: int, enabled: bool) -> ModelBinding:
        await self._lazy_init()
        binding = self.catalog.get_binding(binding_id)
        binding.is_enabled = enabled
        await self.persist()
        return binding

    async def seed_model(
        self,
        provider: Union[Provider, str],
        model_name: str,
        priority: int = 1,
        capabilities: Optional[Iterable[str]] = None,
    ) -> List[ModelBinding]:
        """
        Add a model to every credential of `provider` that does not have it
        yet. Returns the bindings that were created.
        """
        await self._lazy_init()
        provider = Provider.parse(provider)
        created = []
        async with self.catalog.structure_lock:
            for credential in self.catalog.credentials():
                if credential.provider is not provider:
                    continue
                if self.catalog.find_binding(credential.id, model_name) is not None:
                    continue
                created.append(
                    self.catalog.add_binding(
                        credential.id, model_name, priority=priority, capabilities=capabilities
                    )
                )
        if created:
            lib_logger.info(
                f"Seeded {model_name} on {len(created)} {provider.value} credential(s)"
            )
            await self.persist()
        return created

    async def clear_exclusions(self, binding_id: Optional[int] = None) -> int:
        await self._lazy_init()
        if binding_id is None:
            return await self.ledger.clear_all()
        return 1 if await self.ledger.clear(binding_id) else 0

    async def load_catalog_file(self, path) -> Dict[str, int]:
        return await apply_catalog_file(self, path)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def binding_state(self, record: BindingRecord, credential: Credential) -> str:
        if not credential.is_active or not record.binding.is_enabled:
            return "disabled"
        if self.ledger.is_excluded(record.binding.id):
            return "excluded"
        if self.tracker.is_exhausted(record.binding):
            return "exhausted"
        return "healthy"

    def health_counts(self) -> Dict[str, int]:
        counts = {"healthy": 0, "exhausted": 0, "excluded": 0, "disabled": 0}
        for record in self.catalog.records():
            credential = self.catalog.get_credential(record.binding.credential_id)
            counts[self.binding_state(record, credential)] += 1
        counts["inactive_credentials"] = sum(
            1 for c in self.catalog.credentials() if not c.is_active
        )
        counts["corrupt_usage"] = sum(1 for b in self.catalog.bindings() if b.usage_corrupt)
        return counts

    def _binding_status(self, record: BindingRecord, credential: Credential) -> Dict[str, Any]:
        binding = record.binding
        entry = self.ledger.get(binding.id)
        now = self._clock()
        return {
            "id": binding.id,
            "model": binding.model_name,
            "state": self.binding_state(record, credential),
            "enabled": binding.is_enabled,
            "priority": binding.priority,
            "capabilities": sorted(binding.capabilities),
            "in_flight": record.in_flight,
            "exhausted_windows": [w.value for w in self.tracker.exhausted_windows(binding)],
            "usage": binding.usage.to_dict(),
            "usage_corrupt": binding.usage_corrupt,
            "exclusion": (
                dict(entry.to_dict(), remaining_seconds=round(entry.remaining(now), 1))
                if entry and entry.is_active(now)
                else None
            ),
        }

    async def get_status(self) -> Dict[str, Any]:
        """Health snapshot of every credential and binding. Secrets are masked."""
        await self._lazy_init()
        credentials = []
        for credential in self.catalog.credentials():
            credentials.append(
                {
                    "id": credential.id,
                    "name": credential.name,
                    "provider": credential.provider.value,
                    "key": mask_credential(credential.secret),
                    "active": credential.is_active,
                    "priority": credential.priority,
                    "tenant_id": credential.tenant_id,
                    "description": credential.description,
                    "bindings": [
                        self._binding_status(record, credential)
                        for record in self.catalog.records()
                        if record.binding.credential_id == credential.id
                    ],
                }
            )
        return {
            "timestamp": to_iso(self._clock()),
            "summary": self.health_counts(),
            "credentials": credentials,
        }

    async def get_quota_summary(
        self, model_name: str, tenant_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Aggregate quota of one model across every binding visible to a tenant.

        Returns None if no active credential carries the model. Otherwise
        returns per-window totals (used, limit, percentage) and the bindings
        that could be selected right now.
        """
        await self._lazy_init()
        pool = self._eligible(Requirement(capability="", model=model_name, tenant_id=tenant_id))
        if not pool:
            return None

        now = self._clock()
        totals = {kind: {"used": 0, "limit": 0} for kind in WindowKind}
        available = []
        for record, credential in pool:
            for window in record.binding.usage.windows():
                totals[window.kind]["used"] += 0 if window.is_expired(now) else window.used
                totals[window.kind]["limit"] += max(0, window.limit)
            if self._is_available(record, Requirement(capability="")):
                available.append(
                    {
                        "binding_id": record.binding.id,
                        "credential_id": credential.id,
                        "credential_name": credential.name,
                        "provider": credential.provider.value,
                        "priority": record.binding.priority,
                    }
                )

        windows = {}
        for kind, total in totals.items():
            limit = total["limit"]
            windows[kind.value] = {
                "used": total["used"],
                "limit": limit,
                "percentage": round(total["used"] / limit * 100, 2) if limit > 0 else 0.0,
            }
        return {
            "model": model_name,
            "windows": windows,
            "available_bindings": available,
            "total_bindings": len(pool),
        }

    async def list_exclusions(self, active_only: bool = True) -> List[Dict[str, Any]]:
        await self._lazy_init()
        now = self._clock()
        result = []
        for entry in self.ledger.entries(active_only=active_only):
            item = {"binding_id": entry.binding_id, **entry.to_dict()}
            item["remaining_seconds"] = round(entry.remaining(now), 1)
            try:
                item["model"] = self.catalog.get_binding(entry.binding_id).model_name
            except UnknownBindingError:
                item["model"] = None
            result.append(item)
        return result
