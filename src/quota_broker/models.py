# src/quota_broker/models.py
"""
Core data model for the quota broker.

Credentials own model bindings; every binding carries a usage document with
four rate-limit windows. The persisted form of the usage document is a JSON
string (the layout below is the only bit-exact contract of this package):

    {
      "rpm": {"used": 3, "limit": 15, "windowStart": "2025-01-01T10:00:00+00:00"},
      "rph": {"used": 3, "limit": 600, "windowStart": "..."},
      "rpd": {"used": 3, "limit": 1500, "windowStart": "..."},
      "tpm": {"used": 4200, "limit": 1000000, "windowStart": null},
      "exhaustedAt": "..."            # optional
    }

Parsing never raises: a malformed document comes back as a fresh one with
``is_valid = False`` so callers can decide whether to repair it.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union


class Provider(str, Enum):
    """Upstream AI providers a credential can belong to."""

    GOOGLE = "GOOGLE"
    DEEPSEEK = "DEEPSEEK"
    GROQ = "GROQ"
    HUGGINGFACE = "HUGGINGFACE"
    OPENAI = "OPENAI"
    OPENROUTER = "OPENROUTER"
    OLLAMA = "OLLAMA"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Union[str, "Provider", None]) -> "Provider":
        if isinstance(value, Provider):
            return value
        if not value:
            return cls.GOOGLE
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.OTHER


class WindowKind(str, Enum):
    RPM = "rpm"
    RPH = "rph"
    RPD = "rpd"
    TPM = "tpm"

    @property
    def duration(self) -> int:
        return WINDOW_DURATIONS[self]

    @property
    def counts_tokens(self) -> bool:
        return self is WindowKind.TPM


WINDOW_DURATIONS: Dict[WindowKind, int] = {
    WindowKind.RPM: 60,
    WindowKind.RPH: 60 * 60,
    WindowKind.RPD: 24 * 60 * 60,
    WindowKind.TPM: 60,
}

REQUEST_WINDOWS: Tuple[WindowKind, ...] = (WindowKind.RPM, WindowKind.RPH, WindowKind.RPD)


class ExclusionReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    TRANSIENT_ERROR = "transient_error"
    VALIDATION_FAILED = "validation_failed"

    @property
    def is_transient(self) -> bool:
        return self is ExclusionReason.TRANSIENT_ERROR


class ScopeOrder(str, Enum):
    """How tenant-private credentials rank against shared ("central") ones."""

    TENANT_FIRST = "tenant_first"
    CENTRAL_FIRST = "central_first"
    MIXED = "mixed"


# =============================================================================
# TIMESTAMP HELPERS
# =============================================================================


def to_iso(ts: Optional[float]) -> Optional[str]:
    """Format a Unix timestamp as an ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[float]:
    """
    Parse a persisted timestamp.

    Accepts None, Unix seconds (int/float), or ISO-8601 strings (a trailing
    "Z" is understood). Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    raise ValueError(f"Invalid timestamp: {value!r}")


# =============================================================================
# USAGE WINDOWS
# =============================================================================


@dataclass
class UsageWindow:
    """One rolling rate-limit bucket."""

    kind: WindowKind
    used: int = 0
    limit: int = 0
    window_start: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return (
            self.window_start is not None
            and now >= self.window_start + self.kind.duration
        )

    def roll(self, now: float) -> bool:
        """Reset the counter if the window has elapsed. Returns True if rolled."""
        if self.is_expired(now):
            self.used = 0
            self.window_start = None
            return True
        return False

    def add(self, amount: int, now: float) -> None:
        self.roll(now)
        if self.window_start is None:
            self.window_start = now
        self.used += amount

    def is_exhausted(
        self,
        now: float,
        pending: int = 0,
        predicted: int = 0,
        safety_margin: float = 1.0,
    ) -> bool:
        """
        A window with no limit never exhausts. An expired window is fresh.

        `pending` is admitted-but-unrecorded usage (in-flight requests): the
        window is full once used + pending reaches the limit. `predicted` is
        the size of the next call: it must fit under the limit.
        """
        if self.limit <= 0:
            return False
        used = (0 if self.is_expired(now) else self.used) + pending
        threshold = self.limit * safety_margin
        if used >= threshold:
            return True
        return predicted > 0 and used + predicted > threshold

    def resets_at(self) -> Optional[float]:
        if self.window_start is None:
            return None
        return self.window_start + self.kind.duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "windowStart": to_iso(self.window_start),
        }


@dataclass
class ParsedUsage:
    document: "UsageDocument"
    is_valid: bool
    error: Optional[str] = None


@dataclass
class UsageDocument:
    """The four windows of a binding plus the optional exhaustion stamp."""

    rpm: UsageWindow
    rph: UsageWindow
    rpd: UsageWindow
    tpm: UsageWindow
    exhausted_at: Optional[float] = None

    @classmethod
    def fresh(cls, limits: Mapping[str, int]) -> "UsageDocument":
        return cls(
            **{
                kind.value: UsageWindow(kind=kind, limit=int(limits.get(kind.value, 0) or 0))
                for kind in WindowKind
            }
        )

    def window(self, kind: WindowKind) -> UsageWindow:
        return getattr(self, kind.value)

    def windows(self) -> List[UsageWindow]:
        return [self.rpm, self.rph, self.rpd, self.tpm]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {w.kind.value: w.to_dict() for w in self.windows()}
        if self.exhausted_at is not None:
            data["exhaustedAt"] = to_iso(self.exhausted_at)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def parse(cls, raw: Any, default_limits: Mapping[str, int]) -> ParsedUsage:
        """
        Build a document from a persisted value (JSON string, dict or None).

        None/empty is a valid "never used" document. Anything unparsable gives
        a fresh document flagged invalid. Windows that are present and well
        formed are kept even when a sibling is broken.
        """
        fresh = cls.fresh(default_limits)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return ParsedUsage(fresh, True)

        data = raw
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, ValueError) as e:
                return ParsedUsage(fresh, False, f"invalid JSON: {e}")

        if not isinstance(data, dict):
            return ParsedUsage(fresh, False, f"expected object, got {type(data).__name__}")

        problems: List[str] = []
        for kind in WindowKind:
            entry = data.get(kind.value)
            if entry is None:
                problems.append(f"missing '{kind.value}'")
                continue
            try:
                window = _parse_window(kind, entry, default_limits)
            except (TypeError, ValueError) as e:
                problems.append(f"bad '{kind.value}': {e}")
                continue
            setattr(fresh, kind.value, window)

        try:
            fresh.exhausted_at = parse_timestamp(data.get("exhaustedAt"))
        except ValueError as e:
            problems.append(f"bad 'exhaustedAt': {e}")

        if problems:
            return ParsedUsage(fresh, False, "; ".join(problems))
        return ParsedUsage(fresh, True)


def _parse_window(kind: WindowKind, entry: Any, default_limits: Mapping[str, int]) -> UsageWindow:
    if not isinstance(entry, dict):
        raise TypeError(f"expected object, got {type(entry).__name__}")
    used = entry.get("used", 0)
    limit = entry.get("limit", default_limits.get(kind.value, 0))
    for name, value in (("used", used), ("limit", limit)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"'{name}' must be a number")
        if value < 0:
            raise ValueError(f"'{name}' must not be negative")
    return UsageWindow(
        kind=kind,
        used=int(used),
        limit=int(limit),
        window_start=parse_timestamp(entry.get("windowStart")),
    )


# =============================================================================
# CATALOG ENTITIES
# =============================================================================


@dataclass
class Credential:
    id: str
    provider: Provider
    secret: str
    is_active: bool = True
    priority: int = 1
    tenant_id: Optional[str] = None
    name: str = ""
    description: str = ""

    @property
    def is_central(self) -> bool:
        return self.tenant_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "secret": self.secret,
            "isActive": self.is_active,
            "priority": self.priority,
            "tenantId": self.tenant_id,
            "name": self.name,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Credential":
        return cls(
            id=str(data["id"]),
            provider=Provider.parse(data.get("provider")),
            secret=str(data.get("secret", "")),
            is_active=bool(data.get("isActive", True)),
            priority=int(data.get("priority", 1)),
            tenant_id=data.get("tenantId"),
            name=data.get("name") or "",
            description=data.get("description") or "",
        )


@dataclass
class ModelBinding:
    id: int
    credential_id: str
    model_name: str
    usage: UsageDocument
    is_enabled: bool = True
    priority: int = 1
    capabilities: FrozenSet[str] = frozenset({"chat"})
    usage_corrupt: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "credentialId": self.credential_id,
            "modelName": self.model_name,
            "isEnabled": self.is_enabled,
            "priority": self.priority,
            "capabilities": sorted(self.capabilities),
            "usage": self.usage.to_json(),
        }


@dataclass
class ExclusionEntry:
    binding_id: int
    reason: ExclusionReason
    excluded_at: float
    retry_at: float
    retry_count: int = 1

    def is_active(self, now: float) -> bool:
        return self.retry_at > now

    def remaining(self, now: float) -> float:
        return max(0.0, self.retry_at - now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason.value,
            "excludedAt": to_iso(self.excluded_at),
            "retryAt": to_iso(self.retry_at),
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, binding_id: int, data: Mapping[str, Any]) -> "ExclusionEntry":
        retry_at = parse_timestamp(data["retryAt"])
        excluded_at = parse_timestamp(data.get("excludedAt")) or retry_at
        if retry_at is None:
            raise ValueError("retryAt is required")
        return cls(
            binding_id=binding_id,
            reason=ExclusionReason(data.get("reason", ExclusionReason.RATE_LIMITED.value)),
            excluded_at=excluded_at,
            retry_at=retry_at,
            retry_count=int(data.get("retryCount", 1)),
        )


# =============================================================================
# SELECTION
# =============================================================================


@dataclass
class Requirement:
    """
    What the caller needs from the next candidate.

    `model` matches a model name exactly; `model_family` matches by prefix
    (e.g. "gemini-2.5"). Both None means any model with the capability.
    `provider` is a preference unless `strict_provider` is set.
    """

    capability: str = "chat"
    model: Optional[str] = None
    model_family: Optional[str] = None
    provider: Optional[Provider] = None
    strict_provider: bool = False
    tenant_id: Optional[str] = None
    scope_order: Optional[ScopeOrder] = None
    predicted_tokens: int = 0
    exclude_binding_ids: FrozenSet[int] = frozenset()

    def matches_model(self, model_name: str) -> bool:
        if self.model and model_name != self.model:
            return False
        if self.model_family and not model_name.startswith(self.model_family):
            return False
        return True

    def describe(self) -> str:
        parts = [f"capability={self.capability}"]
        if self.model:
            parts.append(f"model={self.model}")
        if self.model_family:
            parts.append(f"family={self.model_family}")
        if self.provider:
            parts.append(f"provider={self.provider.value}{'!' if self.strict_provider else ''}")
        if self.tenant_id:
            parts.append(f"tenant={self.tenant_id}")
        return ", ".join(parts)


@dataclass
class Candidate:
    """A reserved (credential, binding) pair handed to the caller."""

    credential: Credential
    binding: ModelBinding
    lease_id: int
    selected_at: float = field(default_factory=time.time)

    @property
    def model_name(self) -> str:
        return self.binding.model_name

    @property
    def api_key(self) -> str:
        return self.credential.secret


@dataclass
class UsageStatus:
    exhausted: bool
    exhausted_windows: List[WindowKind] = field(default_factory=list)
