from .broker import QuotaBroker
from .error_handler import (
    ClassifiedError,
    FailureKind,
    NoAvailableCandidateError,
    UnknownBindingError,
    classify_error,
)
from .failover import FailoverExecutor
from .model_limits import ModelLimits
from .models import (
    Candidate,
    Credential,
    ExclusionReason,
    ModelBinding,
    Provider,
    Requirement,
    ScopeOrder,
    WindowKind,
)
from .reconciliation import ReconciliationSweep, SweepReport
from .settings import BackoffPolicy, BrokerSettings
from .storage import JsonFileStateStore, MemoryStateStore, StateStore
from .usage_tracker import UsageTracker, estimate_token_count

__all__ = [
    "QuotaBroker",
    "FailoverExecutor",
    "ReconciliationSweep",
    "SweepReport",
    "BrokerSettings",
    "BackoffPolicy",
    "ModelLimits",
    "UsageTracker",
    "estimate_token_count",
    "StateStore",
    "MemoryStateStore",
    "JsonFileStateStore",
    "Candidate",
    "Credential",
    "ModelBinding",
    "Requirement",
    "Provider",
    "ScopeOrder",
    "WindowKind",
    "ExclusionReason",
    "FailureKind",
    "ClassifiedError",
    "classify_error",
    "NoAvailableCandidateError",
    "UnknownBindingError",
]
