"""Load, validate, and hot-reload the exercise sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  It is the
one-time "capability negotiation" for the engine: the field mapping tables,
the significant-field set used for conflict detection, and bulk pacing.  At
startup it is loaded once and cached.  Call ``reload_sync_config()`` to
re-read from disk.

Usage::

    from src.exercise_sync.config_loader import get_sync_config

    config = get_sync_config()
    config.significant_fields      # ['name', 'description', 'category']
    config.bulk.pause_every        # 5
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.exercise_sync.field_mapper import TRANSFORMS, FieldMapping

logger = logging.getLogger("exercise_sync.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class BulkConfig:
    pause_every: int
    pause_ms: int

    @property
    def pause_seconds(self) -> float:
        return self.pause_ms / 1000.0


@dataclass
class DiscoveryConfig:
    calendar_days: int


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:            Config schema version string.
        outbound:           local → remote mapping table, in application order.
        inbound:            remote → local mapping table.
        significant_fields: Local fields compared by conflict detection.
        bulk:               Bulk remote-write pacing.
        discovery:          Discovery window settings.
    """

    version: str
    outbound: list[FieldMapping]
    inbound: list[FieldMapping]
    significant_fields: list[str]
    bulk: BulkConfig
    discovery: DiscoveryConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _build_table(
    entries: Any, section: str, errors: list[str]
) -> list[FieldMapping]:
    table: list[FieldMapping] = []
    if not isinstance(entries, list) or not entries:
        errors.append(f"field_mappings.{section} must be a non-empty list")
        return table

    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"field_mappings.{section}[{i}] must be a mapping")
            continue
        local_field = entry.get("local")
        remote_field = entry.get("remote")
        if not local_field or not remote_field:
            errors.append(
                f"field_mappings.{section}[{i}] needs both 'local' and 'remote'"
            )
            continue
        transform = entry.get("transform")
        if transform is not None and transform not in TRANSFORMS:
            errors.append(
                f"field_mappings.{section}[{i}] uses unknown transform {transform!r} "
                f"(available: {sorted(TRANSFORMS)})"
            )
            continue
        table.append(FieldMapping(str(local_field), str(remote_field), transform))
    return table


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Raises:
        ConfigValidationError: If required sections are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    fm_raw = raw.get("field_mappings") or {}
    outbound = _build_table(fm_raw.get("outbound"), "outbound", errors)
    inbound = _build_table(fm_raw.get("inbound"), "inbound", errors)

    if inbound and not any(e.local_field == "external_id" for e in inbound):
        errors.append("field_mappings.inbound must map a remote field to 'external_id'")

    significant = raw.get("significant_fields", ["name", "description", "category"])
    if not isinstance(significant, list) or not all(isinstance(f, str) for f in significant):
        errors.append("significant_fields must be a list of field names")
        significant = []

    bulk_raw = raw.get("bulk") or {}
    try:
        bulk = BulkConfig(
            pause_every=int(bulk_raw.get("pause_every", 5)),
            pause_ms=int(bulk_raw.get("pause_ms", 1000)),
        )
    except (TypeError, ValueError):
        errors.append("bulk.pause_every and bulk.pause_ms must be integers")
        bulk = BulkConfig(pause_every=5, pause_ms=1000)
    if bulk.pause_every < 1:
        errors.append(f"bulk.pause_every = {bulk.pause_every} must be >= 1")
    if bulk.pause_ms < 0:
        errors.append(f"bulk.pause_ms = {bulk.pause_ms} must be >= 0")

    disc_raw = raw.get("discovery") or {}
    discovery = DiscoveryConfig(calendar_days=int(disc_raw.get("calendar_days", 90)))

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        outbound=outbound,
        inbound=inbound,
        significant_fields=list(significant),
        bulk=bulk,
        discovery=discovery,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Cached instance with reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the cached SyncConfig, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Re-read the config; on validation failure the old config is kept and the error re-raised."""
    global _config
    new_config = load_sync_config(path)
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
