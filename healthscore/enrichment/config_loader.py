"""Load, validate, and hot-reload the enrichment extraction tables.

The tables live in ``enrichment_config.yaml`` alongside this module.  They are
loaded once and cached; ``reload_enrichment_config()`` re-reads them from disk
without a restart.

Usage::

    from healthscore.enrichment.config_loader import get_enrichment_config

    config = get_enrichment_config()
    config.canonical_contributor_key("respiratory", "oxy")   # "oxygen_saturation"
    config.is_sample_array_key("heart_rate_samples")         # True
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from healthscore.enrichment.base import METRICS

logger = logging.getLogger("healthscore.enrichment.config")

_CONFIG_PATH = Path(__file__).parent / "enrichment_config.yaml"


@dataclass
class EnrichmentConfig:
    """Validated, in-memory form of ``enrichment_config.yaml``.

    Attributes:
        version:                Config schema version string.
        enrichment_event_types: Event categories the extractor reads.
        ignored_event_types:    Categories acknowledged without extraction.
        enrichment_paths:       Dotted paths to an entry's enrichment object.
        date_fields:            Dotted paths to an entry's date, in priority order.
        score_aliases:          metric → score field names, first wins.
        contributor_fields:     metric → contributor map field name.
        contributor_aliases:    metric → alternate key → canonical key.
        sample_array_keys:      Keys dropped in enrichment-only mode.
    """

    version: str
    enrichment_event_types: frozenset[str]
    ignored_event_types: frozenset[str]
    enrichment_paths: list[tuple[str, ...]]
    date_fields: list[tuple[str, ...]]
    score_aliases: dict[str, list[str]]
    contributor_fields: dict[str, str]
    contributor_aliases: dict[str, dict[str, str]]
    sample_array_keys: frozenset[str]
    _raw: dict = field(default_factory=dict, repr=False)

    def canonical_contributor_key(self, metric: str, key: str) -> str:
        """Return the canonical name for a contributor key (itself if not an alias)."""
        return self.contributor_aliases.get(metric, {}).get(key, key)

    def is_alias(self, metric: str, key: str) -> bool:
        return key in self.contributor_aliases.get(metric, {})

    def is_sample_array_key(self, key: str) -> bool:
        return key in self.sample_array_keys

    def is_enrichment_event(self, event_type: str) -> bool:
        return event_type in self.enrichment_event_types


class ConfigValidationError(ValueError):
    """Raised when enrichment_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Enrichment config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _split_paths(values: Any, section: str, errors: list[str]) -> list[tuple[str, ...]]:
    if not isinstance(values, list) or not values:
        errors.append(f"'{section}' must be a non-empty list of dotted paths")
        return []
    paths = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{section} entry {value!r} must be a non-empty string")
            continue
        paths.append(tuple(value.strip().split(".")))
    return paths


def _validate_and_build(raw: dict) -> EnrichmentConfig:
    """Validate the raw YAML dict and construct an EnrichmentConfig.

    Raises:
        ConfigValidationError: If required sections are missing or inconsistent.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    event_types = raw.get("enrichment_event_types") or []
    if not event_types:
        errors.append("'enrichment_event_types' section is missing or empty")
    ignored = raw.get("ignored_event_types") or []
    overlap = set(event_types) & set(ignored)
    if overlap:
        errors.append(
            f"event types both extracted and ignored: {sorted(overlap)}"
        )

    enrichment_paths = _split_paths(raw.get("enrichment_paths"), "enrichment_paths", errors)
    date_fields = _split_paths(raw.get("date_fields"), "date_fields", errors)

    # ── Scores ──
    score_raw = raw.get("score_aliases") or {}
    score_aliases: dict[str, list[str]] = {}
    for metric in METRICS:
        names = score_raw.get(metric)
        if not names or not isinstance(names, list):
            errors.append(f"score_aliases.{metric} must be a non-empty list")
            continue
        score_aliases[metric] = [str(n) for n in names]

    contributor_fields: dict[str, str] = {}
    fields_raw = raw.get("contributor_fields") or {}
    for metric in METRICS:
        name = fields_raw.get(metric)
        if not name:
            errors.append(f"Missing required key '{metric}' in section 'contributor_fields'")
            continue
        contributor_fields[metric] = str(name)

    # ── Contributor aliases: invert canonical → [aliases] into alias → canonical ──
    aliases_raw = raw.get("contributor_aliases") or {}
    contributor_aliases: dict[str, dict[str, str]] = {m: {} for m in METRICS}
    for metric, table in aliases_raw.items():
        if metric not in METRICS:
            errors.append(f"contributor_aliases.{metric} is not a known metric")
            continue
        if not isinstance(table, dict):
            errors.append(f"contributor_aliases.{metric} must be a mapping of canonical→aliases")
            continue
        for canonical, alternates in table.items():
            for alias in alternates or []:
                if alias in table:
                    errors.append(
                        f"contributor_aliases.{metric}: '{alias}' is both canonical and an alias"
                    )
                existing = contributor_aliases[metric].get(alias)
                if existing and existing != canonical:
                    errors.append(
                        f"contributor_aliases.{metric}: '{alias}' maps to both "
                        f"'{existing}' and '{canonical}'"
                    )
                contributor_aliases[metric][alias] = canonical

    sample_keys = raw.get("sample_array_keys") or []
    if not sample_keys:
        errors.append("'sample_array_keys' section is missing or empty")

    if errors:
        raise ConfigValidationError(
            f"enrichment_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return EnrichmentConfig(
        version=version,
        enrichment_event_types=frozenset(event_types),
        ignored_event_types=frozenset(ignored),
        enrichment_paths=enrichment_paths,
        date_fields=date_fields,
        score_aliases=score_aliases,
        contributor_fields=contributor_fields,
        contributor_aliases=contributor_aliases,
        sample_array_keys=frozenset(sample_keys),
        _raw=raw,
    )


def load_enrichment_config(path: Path | None = None) -> EnrichmentConfig:
    """Load and validate the enrichment config from disk."""
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded enrichment config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: EnrichmentConfig | None = None
_config_lock = threading.Lock()


def get_enrichment_config() -> EnrichmentConfig:
    """Return the global EnrichmentConfig, loading it on first call. Thread-safe."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_enrichment_config()
    return _config


def reload_enrichment_config(path: Path | None = None) -> EnrichmentConfig:
    """Re-read the config from disk and replace the global instance.

    If validation fails the old config is retained and the error propagates.
    """
    global _config
    new_config = load_enrichment_config(path)
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded enrichment config: %s → %s", old_version, new_config.version)
    return new_config
