import asyncio
import uuid
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .error_handler import UnknownBindingError, mask_credential
from .model_limits import ModelLimits
from .models import Credential, ModelBinding, Provider, UsageDocument

lib_logger = logging.getLogger("quota_broker")


@dataclass
class Lease:
    """An admitted request that has not reported its outcome yet."""

    reserved_at: float
    predicted_tokens: int = 0


@dataclass
class BindingRecord:
    """
    Runtime state of one binding: the persisted binding plus its lock,
    round-robin stamp and in-flight reservations.
    """

    binding: ModelBinding
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_selected_seq: int = 0
    leases: Dict[int, Lease] = field(default_factory=dict)
    # Newest lease id handed out when the binding was last excluded
    excluded_after_lease: int = 0

    @property
    def in_flight(self) -> int:
        return len(self.leases)

    @property
    def pending_tokens(self) -> int:
        return sum(lease.predicted_tokens for lease in self.leases.values())

    def expired_leases(self, now: float, ttl: float) -> List[int]:
        return [lid for lid, lease in self.leases.items() if now - lease.reserved_at >= ttl]


class CredentialCatalog:
    """
    Credential store and model catalog.

    Bindings live in an arena keyed by a stable integer id; credentials are
    keyed by their string id. Structural edits (adding credentials or bindings)
    go through `structure_lock`; per-binding state is guarded by each
    record's own lock.
    """

    def __init__(self, model_limits: Optional[ModelLimits] = None):
        self.model_limits = model_limits or ModelLimits()
        self._credentials: Dict[str, Credential] = {}
        self._records: Dict[int, BindingRecord] = {}
        self._next_binding_id = 1
        self.structure_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def add_credential(
        self,
        provider: Provider,
        secret: str,
        priority: int = 1,
        tenant_id: Optional[str] = None,
        name: str = "",
        description: str = "",
        is_active: bool = True,
        credential_id: Optional[str] = None,
    ) -> Credential:
        credential_id = credential_id or uuid.uuid4().hex
        if credential_id in self._credentials:
            raise ValueError(f"Credential '{credential_id}' already exists")
        credential = Credential(
            id=credential_id,
            provider=Provider.parse(provider),
            secret=secret,
            is_active=is_active,
            priority=priority,
            tenant_id=tenant_id,
            name=name,
            description=description,
        )
        self._credentials[credential_id] = credential
        lib_logger.info(
            f"Added {credential.provider.value} credential {mask_credential(secret)} "
            f"(priority {priority}, {'tenant ' + tenant_id if tenant_id else 'central'})"
        )
        return credential

    def get_credential(self, credential_id: str) -> Credential:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise KeyError(f"Unknown credential '{credential_id}'") from None

    def find_credential_by_secret(self, secret: str) -> Optional[Credential]:
        for credential in self._credentials.values():
            if credential.secret == secret:
                return credential
        return None

    def credentials(self) -> List[Credential]:
        return list(self._credentials.values())

    def update_credential(self, credential_id: str, **changes: Any) -> Credential:
        credential = self.get_credential(credential_id)
        allowed = {"secret", "is_active", "priority", "tenant_id", "name", "description"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update credential field(s): {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(credential, key, value)
        return credential

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def add_binding(
        self,
        credential_id: str,
        model_name: str,
        priority: int = 1,
        capabilities: Optional[Iterable[str]] = None,
        is_enabled: bool = True,
        usage: Optional[UsageDocument] = None,
    ) -> ModelBinding:
        self.get_credential(credential_id)
        if self.find_binding(credential_id, model_name) is not None:
            raise ValueError(f"Model '{model_name}' is already bound to credential '{credential_id}'")
        binding = ModelBinding(
            id=self._next_binding_id,
            credential_id=credential_id,
            model_name=model_name,
            usage=usage or UsageDocument.fresh(self.model_limits.for_model(model_name)),
            is_enabled=is_enabled,
            priority=priority,
            capabilities=frozenset(capabilities) if capabilities else frozenset({"chat"}),
        )
        self._records[binding.id] = BindingRecord(binding=binding)
        self._next_binding_id += 1
        return binding

    def get_record(self, binding_id: int) -> BindingRecord:
        try:
            return self._records[binding_id]
        except KeyError:
            raise UnknownBindingError(binding_id) from None

    def get_binding(self, binding_id: int) -> ModelBinding:
        return self.get_record(binding_id).binding

    def find_binding(self, credential_id: str, model_name: str) -> Optional[ModelBinding]:
        for record in self._records.values():
            b = record.binding
            if b.credential_id == credential_id and b.model_name == model_name:
                return b
        return None

    def records(self) -> List[BindingRecord]:
        return [self._records[bid] for bid in sorted(self._records)]

    def bindings(self) -> List[ModelBinding]:
        return [record.binding for record in self.records()]

    def bindings_for_credential(self, credential_id: str) -> List[ModelBinding]:
        return [b for b in self.bindings() if b.credential_id == credential_id]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, credentials: Iterable[Any], bindings: Iterable[Any]) -> None:
        """
        Replace the catalog with persisted entries.

        Malformed credentials and bindings are skipped with a warning; a
        binding whose usage document cannot be parsed is kept with a fresh
        document and flagged `usage_corrupt` for the reconciliation sweep.
        """
        self._credentials.clear()
        self._records.clear()

        for raw in credentials:
            try:
                if not isinstance(raw, Mapping):
                    raise TypeError(f"expected object, got {type(raw).__name__}")
                credential = Credential.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.warning(f"Skipping malformed credential entry: {e}")
                continue
            self._credentials[credential.id] = credential

        for raw in bindings:
            try:
                binding = self._binding_from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.warning(f"Skipping malformed binding entry: {e}")
                continue
            if binding.credential_id not in self._credentials:
                lib_logger.warning(
                    f"Skipping binding {binding.id}: unknown credential '{binding.credential_id}'"
                )
                continue
            if binding.id in self._records:
                lib_logger.warning(f"Skipping duplicate binding id {binding.id}")
                continue
            self._records[binding.id] = BindingRecord(binding=binding)

        self._next_binding_id = max(self._records, default=0) + 1

    def _binding_from_dict(self, raw: Any) -> ModelBinding:
        if not isinstance(raw, Mapping):
            raise TypeError(f"expected object, got {type(raw).__name__}")
        binding_id = int(raw["id"])
        model_name = str(raw["modelName"])
        parsed = UsageDocument.parse(raw.get("usage"), self.model_limits.for_model(model_name))
        if not parsed.is_valid:
            lib_logger.warning(
                f"Usage document of binding {binding_id} ({model_name}) is corrupt "
                f"({parsed.error}); treating it as fresh until repaired"
            )
        capabilities = raw.get("capabilities") or ["chat"]
        return ModelBinding(
            id=binding_id,
            credential_id=str(raw["credentialId"]),
            model_name=model_name,
            usage=parsed.document,
            is_enabled=bool(raw.get("isEnabled", True)),
            priority=int(raw.get("priority", 1)),
            capabilities=frozenset(str(c) for c in capabilities),
            usage_corrupt=not parsed.is_valid,
        )

    def dump(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "credentials": [c.to_dict() for c in self._credentials.values()],
            "bindings": [b.to_dict() for b in self.bindings()],
        }
