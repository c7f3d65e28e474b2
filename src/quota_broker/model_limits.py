import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import yaml

lib_logger = logging.getLogger("quota_broker")

# Fallback used for any model without a documented entry.
DEFAULT_LIMITS: Dict[str, int] = {"rpm": 10, "rph": 600, "rpd": 250, "tpm": 250000}

# Free-tier limits as published by the providers. Matched by exact name first,
# then by the longest prefix, so "gemini-2.5-flash-preview-05-20" resolves to
# the "gemini-2.5-flash" entry.
BUILTIN_MODEL_LIMITS: Dict[str, Dict[str, int]] = {
    "gemini-2.5-pro": {"rpm": 5, "rph": 300, "rpd": 100, "tpm": 250000},
    "gemini-2.5-flash": {"rpm": 10, "rph": 600, "rpd": 250, "tpm": 250000},
    "gemini-2.5-flash-lite": {"rpm": 15, "rph": 900, "rpd": 1000, "tpm": 250000},
    "gemini-2.0-flash": {"rpm": 15, "rph": 900, "rpd": 200, "tpm": 1000000},
    "gemini-2.0-flash-lite": {"rpm": 30, "rph": 1800, "rpd": 200, "tpm": 1000000},
    "deepseek-chat": {"rpm": 60, "rph": 3600, "rpd": 0, "tpm": 0},
    "llama-3.3-70b-versatile": {"rpm": 30, "rph": 1000, "rpd": 1000, "tpm": 12000},
    "llama-3.1-8b-instant": {"rpm": 30, "rph": 1800, "rpd": 14400, "tpm": 6000},
}


class ModelLimits:
    """
    Provider-documented per-model rate limits.

    Limits are looked up when a binding is created without a usage document
    and when the reconciliation sweep rewrites a corrupt one. A YAML file can
    override or extend the built-in table:

        defaults: {rpm: 10, rph: 600, rpd: 250, tpm: 250000}
        models:
          gemini-2.5-flash: {rpm: 10, rpd: 250}
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, Mapping[str, int]]] = None,
        defaults: Optional[Mapping[str, int]] = None,
    ):
        self._defaults = dict(DEFAULT_LIMITS)
        if defaults:
            self._defaults.update({k: int(v) for k, v in defaults.items()})
        self._limits: Dict[str, Dict[str, int]] = {
            name: dict(values) for name, values in BUILTIN_MODEL_LIMITS.items()
        }
        for name, values in (overrides or {}).items():
            merged = dict(self._limits.get(name, self._defaults))
            merged.update({k: int(v) for k, v in values.items()})
            self._limits[name] = merged

    @classmethod
    def from_file(cls, path: Optional[Union[str, Path]]) -> "ModelLimits":
        """Load overrides from YAML. A missing or unreadable file falls back to built-ins."""
        if not path:
            return cls()
        path = Path(path)
        if not path.exists():
            lib_logger.debug(f"Model limits file {path} not found, using built-in limits")
            return cls()
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            lib_logger.warning(f"Could not read model limits file {path}: {e}. Using built-in limits.")
            return cls()
        models = data.get("models") or {}
        lib_logger.info(f"Loaded limits for {len(models)} model(s) from {path.name}")
        return cls(overrides=models, defaults=data.get("defaults"))

    def for_model(self, model_name: str) -> Dict[str, int]:
        if model_name in self._limits:
            return dict(self._limits[model_name])
        best = None
        for name in self._limits:
            if model_name.startswith(name) and (best is None or len(name) > len(best)):
                best = name
        if best is not None:
            return dict(self._limits[best])
        return dict(self._defaults)

    @property
    def defaults(self) -> Dict[str, int]:
        return dict(self._defaults)
