"""
YAML catalog files.

A catalog file declares credentials and the models bound to them:

    credentials:
      - id: gemini-main                 # optional, stable id across reloads
        provider: GOOGLE
        api_key_env: GEMINI_API_KEY_1   # or `secret: "..."`
        priority: 1
        tenant_id: null                 # null = shared with every tenant
        name: Main Gemini key
        models:
          - gemini-2.5-flash
          - name: gemini-2.5-pro
            priority: 2
            capabilities: [chat, vision]
            limits: {rpm: 5}

Applying a file is idempotent: existing credentials (matched by id, then
by secret) are updated in place and only missing bindings are added.
"""

import os
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union

import yaml

from .models import Provider

if TYPE_CHECKING:
    from .broker import QuotaBroker

lib_logger = logging.getLogger("quota_broker")


class CatalogLoadError(Exception):
    """Raised when a catalog file cannot be read or has the wrong shape."""
    pass


def read_catalog_file(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise CatalogLoadError(f"Catalog file not found: {path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise CatalogLoadError(f"Failed to read catalog file {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("credentials", []), list):
        raise CatalogLoadError(f"{path}: expected a mapping with a 'credentials' list")
    return data


def _resolve_secret(entry: Mapping[str, Any], env: Mapping[str, str]) -> Optional[str]:
    if entry.get("api_key_env"):
        return env.get(str(entry["api_key_env"])) or None
    secret = entry.get("secret")
    return str(secret) if secret else None


def _priority(raw: Mapping[str, Any]) -> int:
    value = raw.get("priority", 1)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid priority: {value!r}") from None


def _model_entry(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        return {"name": raw, "priority": 1}
    if isinstance(raw, Mapping) and raw.get("name"):
        return dict(raw, priority=_priority(raw))
    raise ValueError(f"invalid model entry: {raw!r}")


async def apply_catalog(
    broker: "QuotaBroker",
    data: Mapping[str, Any],
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, int]:
    """
    Apply a parsed catalog to the broker.

    Returns:
        Counts: credentials_added, credentials_updated, bindings_added, skipped
    """
    env = os.environ if env is None else env
    counts = {"credentials_added": 0, "credentials_updated": 0, "bindings_added": 0, "skipped": 0}
    await broker.initialize()

    for index, entry in enumerate(data.get("credentials") or []):
        if not isinstance(entry, Mapping):
            lib_logger.warning(f"Catalog entry #{index} is not a mapping, skipping")
            counts["skipped"] += 1
            continue

        secret = _resolve_secret(entry, env)
        if not secret:
            source = entry.get("api_key_env") or "secret"
            lib_logger.warning(f"Catalog entry #{index}: no key found in '{source}', skipping")
            counts["skipped"] += 1
            continue

        try:
            priority = _priority(entry)
        except ValueError as e:
            lib_logger.warning(f"Catalog entry #{index}: {e}, skipping")
            counts["skipped"] += 1
            continue

        fields = {
            "priority": priority,
            "tenant_id": entry.get("tenant_id"),
            "name": str(entry.get("name") or ""),
        }
        credential = None
        if entry.get("id"):
            try:
                credential = broker.catalog.get_credential(str(entry["id"]))
            except KeyError:
                credential = None
        if credential is None:
            credential = broker.catalog.find_credential_by_secret(secret)

        if credential is None:
            credential = await broker.add_credential(
                Provider.parse(entry.get("provider")),
                secret,
                credential_id=str(entry["id"]) if entry.get("id") else None,
                **fields,
            )
            counts["credentials_added"] += 1
        else:
            await broker.update_credential(credential.id, secret=secret, **fields)
            counts["credentials_updated"] += 1

        for raw_model in entry.get("models") or []:
            try:
                model = _model_entry(raw_model)
            except ValueError as e:
                lib_logger.warning(f"Catalog entry #{index}: {e}")
                counts["skipped"] += 1
                continue
            if broker.catalog.find_binding(credential.id, model["name"]) is not None:
                continue
            await broker.add_binding(
                credential.id,
                model["name"],
                priority=model["priority"],
                capabilities=model.get("capabilities"),
                limits=model.get("limits"),
            )
            counts["bindings_added"] += 1

    lib_logger.info(
        f"Catalog applied: {counts['credentials_added']} credential(s) added, "
        f"{counts['credentials_updated']} updated, {counts['bindings_added']} binding(s) added"
    )
    return counts


async def apply_catalog_file(
    broker: "QuotaBroker",
    path: Union[str, Path],
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, int]:
    return await apply_catalog(broker, read_catalog_file(path), env)
