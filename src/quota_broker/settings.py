import os
import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, TypeVar

from .models import Provider, ScopeOrder

lib_logger = logging.getLogger("quota_broker")

T = TypeVar("T")


@dataclass
class BackoffPolicy:
    """
    Cooldown curve for exclusions.

    Quota-class exclusions wait `base * factor ** (retry_count - 1)` seconds,
    capped at `cap_seconds`. Transient failures use the fixed
    `transient_seconds` and never grow.
    """

    base_seconds: float = 60.0
    factor: float = 2.0
    cap_seconds: float = 3600.0
    transient_seconds: float = 15.0

    def cooldown_for(self, retry_count: int, base: Optional[float] = None) -> float:
        start = self.base_seconds if base is None else base
        exponent = max(0, retry_count - 1)
        return min(start * (self.factor ** exponent), max(self.cap_seconds, start))


@dataclass
class BrokerSettings:
    state_file: Optional[str] = None
    model_limits_file: Optional[str] = None
    sweep_interval_seconds: int = 3600
    exhausted_flag_ttl_seconds: int = 60
    lease_ttl_seconds: int = 120
    safety_margin: float = 1.0
    max_attempts: int = 5
    scope_order: ScopeOrder = ScopeOrder.TENANT_FIRST
    preferred_provider: Optional[Provider] = None
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BrokerSettings":
        """
        Build settings from BROKER_* environment variables.

        Invalid values are logged and replaced with the default, the same way
        a bad interval never stops the process from starting.
        """
        env = os.environ if env is None else env
        defaults = cls()
        backoff_defaults = BackoffPolicy()

        def read(name: str, parse: Callable[[str], T], default: T) -> T:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return parse(raw.strip())
            except ValueError:
                lib_logger.warning(f"Invalid {name} '{raw}'. Falling back to {default}.")
                return default

        def positive_int(raw: str) -> int:
            value = int(raw)
            if value <= 0:
                raise ValueError(raw)
            return value

        def positive_float(raw: str) -> float:
            value = float(raw)
            if value <= 0:
                raise ValueError(raw)
            return value

        def margin(raw: str) -> float:
            value = float(raw)
            if not 0 < value <= 1:
                raise ValueError(raw)
            return value

        def provider(raw: str) -> Provider:
            return Provider(raw.upper())

        return cls(
            state_file=env.get("BROKER_STATE_FILE") or defaults.state_file,
            model_limits_file=env.get("BROKER_MODEL_LIMITS_FILE") or defaults.model_limits_file,
            sweep_interval_seconds=read(
                "BROKER_SWEEP_INTERVAL", positive_int, defaults.sweep_interval_seconds
            ),
            exhausted_flag_ttl_seconds=read(
                "BROKER_EXHAUSTED_FLAG_TTL", positive_int, defaults.exhausted_flag_ttl_seconds
            ),
            lease_ttl_seconds=read("BROKER_LEASE_TTL", positive_int, defaults.lease_ttl_seconds),
            safety_margin=read("BROKER_SAFETY_MARGIN", margin, defaults.safety_margin),
            max_attempts=read("BROKER_MAX_ATTEMPTS", positive_int, defaults.max_attempts),
            scope_order=read("BROKER_SCOPE_ORDER", ScopeOrder, defaults.scope_order),
            preferred_provider=read(
                "BROKER_PREFERRED_PROVIDER", provider, defaults.preferred_provider
            ),
            backoff=BackoffPolicy(
                base_seconds=read(
                    "BROKER_BACKOFF_BASE", positive_float, backoff_defaults.base_seconds
                ),
                factor=read("BROKER_BACKOFF_FACTOR", positive_float, backoff_defaults.factor),
                cap_seconds=read(
                    "BROKER_BACKOFF_CAP", positive_float, backoff_defaults.cap_seconds
                ),
                transient_seconds=read(
                    "BROKER_TRANSIENT_COOLDOWN",
                    positive_float,
                    backoff_defaults.transient_seconds,
                ),
            ),
        )
