import os
from typing import Mapping, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest


_METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"


if _METRICS_ENABLED:
    SELECTIONS_TOTAL = Counter(
        "quota_broker_selections_total",
        "Candidates handed out by the broker",
        labelnames=("provider", "model"),
    )

    NO_CANDIDATE_TOTAL = Counter(
        "quota_broker_no_candidate_total",
        "Selections that found no available candidate",
    )

    EXCLUSIONS_TOTAL = Counter(
        "quota_broker_exclusions_total",
        "Bindings excluded after a failure",
        labelnames=("reason",),
    )

    FAILURES_TOTAL = Counter(
        "quota_broker_failures_total",
        "Upstream failures reported to the broker, by classification",
        labelnames=("kind",),
    )

    BINDINGS = Gauge(
        "quota_broker_bindings",
        "Bindings by health state at the last reconciliation sweep",
        labelnames=("state",),
    )

    INACTIVE_CREDENTIALS = Gauge(
        "quota_broker_inactive_credentials",
        "Credentials deactivated at the last reconciliation sweep",
    )
else:  # pragma: no cover
    SELECTIONS_TOTAL = None
    NO_CANDIDATE_TOTAL = None
    EXCLUSIONS_TOTAL = None
    FAILURES_TOTAL = None
    BINDINGS = None
    INACTIVE_CREDENTIALS = None


def observe_selection(provider: str, model: str) -> None:
    if SELECTIONS_TOTAL:
        SELECTIONS_TOTAL.labels(provider=provider, model=model).inc()


def observe_no_candidate() -> None:
    if NO_CANDIDATE_TOTAL:
        NO_CANDIDATE_TOTAL.inc()


def observe_exclusion(reason: str) -> None:
    if EXCLUSIONS_TOTAL:
        EXCLUSIONS_TOTAL.labels(reason=reason).inc()


def observe_failure(kind: str) -> None:
    if FAILURES_TOTAL:
        FAILURES_TOTAL.labels(kind=kind).inc()


def set_health_counts(counts: Mapping[str, int]) -> None:
    if not BINDINGS:
        return
    for state in ("healthy", "exhausted", "excluded", "disabled"):
        BINDINGS.labels(state=state).set(counts.get(state, 0))
    if INACTIVE_CREDENTIALS:
        INACTIVE_CREDENTIALS.set(counts.get("inactive_credentials", 0))


def metrics_payload() -> Optional[bytes]:
    if not _METRICS_ENABLED:
        return None
    return generate_latest()


__all__ = [
    "CONTENT_TYPE_LATEST",
    "observe_selection",
    "observe_no_candidate",
    "observe_exclusion",
    "observe_failure",
    "set_health_counts",
    "metrics_payload",
]
