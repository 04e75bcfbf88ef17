"""Engine configuration: rule toggles and params, propagation policy, and layer globs."""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml

from dbtlint.doc_sync.propagation import PropagationPolicy
from dbtlint.graph.rule_engine import (
    VALID_CATEGORIES,
    VALID_SEVERITIES,
    VALID_SUITES,
    RuleConfig,
    RuleRegistry,
    default_registry,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_POLICY_FIELDS: tuple[str, ...] = (
    "fill_from_upstream",
    "propagate_docs_blocks",
    "force_inherit",
    "allow_transformed_source",
)
_LAYER_NAMES: frozenset[str] = frozenset({"staging", "intermediate", "marts"})

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when a configuration document is malformed."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """Already-parsed configuration handed to the core."""

    rules: dict[str, RuleConfig] = field(default_factory=dict)
    policy: PropagationPolicy = field(default_factory=PropagationPolicy)
    layers: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def default(cls, registry: RuleRegistry | None = None) -> EngineConfig:
        """Every rule at its default enabled state and params."""
        registry = registry or default_registry()
        return cls(
            rules={
                rule.id: RuleConfig(enabled=rule.enabled_by_default)
                for rule in registry.rules()
            }
        )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_rule_value(rule_id: str, value: object) -> RuleConfig:
    if isinstance(value, bool):
        return RuleConfig(enabled=value)
    if not isinstance(value, Mapping):
        msg = f"Rule '{rule_id}': value must be a bool or a table"
        raise ConfigError(msg)

    settings = dict(value)
    enabled = settings.pop("enabled", True)
    if not isinstance(enabled, bool):
        msg = f"Rule '{rule_id}': 'enabled' must be a bool"
        raise ConfigError(msg)

    severity = settings.pop("severity", None)
    if severity is not None:
        severity = str(severity)
        if severity not in VALID_SEVERITIES:
            msg = (
                f"Rule '{rule_id}': invalid severity '{severity}', "
                f"must be one of {sorted(VALID_SEVERITIES)}"
            )
            raise ConfigError(msg)

    return RuleConfig(enabled=enabled, severity=severity, params=settings)


def _parse_suites(data: Mapping[str, Any], registry: RuleRegistry) -> dict[str, RuleConfig]:
    """Parse ``[<suite>.<category>.rules]`` tables into rule configs."""
    configs: dict[str, RuleConfig] = {}
    for suite in sorted(VALID_SUITES):
        suite_data = data.get(suite)
        if suite_data is None:
            continue
        if not isinstance(suite_data, Mapping):
            msg = f"'{suite}' must be a table"
            raise ConfigError(msg)

        for category, category_data in suite_data.items():
            if category not in VALID_CATEGORIES:
                msg = (
                    f"'{suite}': invalid category '{category}', "
                    f"must be one of {sorted(VALID_CATEGORIES)}"
                )
                raise ConfigError(msg)
            if not isinstance(category_data, Mapping) or not isinstance(
                category_data.get("rules", {}), Mapping
            ):
                msg = f"'{suite}.{category}.rules' must be a table"
                raise ConfigError(msg)

            for rule_id, value in category_data.get("rules", {}).items():
                if rule_id not in registry:
                    msg = f"'{suite}.{category}.rules': unknown rule '{rule_id}'"
                    raise ConfigError(msg)
                if rule_id in configs:
                    msg = f"Rule '{rule_id}' is configured more than once"
                    raise ConfigError(msg)
                rule = registry.get(rule_id)
                if rule.suite != suite or rule.category != category:
                    logger.warning(
                        "Rule '%s' belongs to [%s.%s.rules], found under [%s.%s.rules]",
                        rule_id,
                        rule.suite,
                        rule.category,
                        suite,
                        category,
                    )
                configs[rule_id] = _parse_rule_value(rule_id, value)
    return configs


def _parse_policy(data: object) -> PropagationPolicy:
    if data is None:
        return PropagationPolicy()
    if not isinstance(data, Mapping):
        msg = "'policy' must be a table"
        raise ConfigError(msg)
    unknown = sorted(set(data) - set(_POLICY_FIELDS))
    if unknown:
        msg = f"'policy': unknown option(s) {unknown}, expected {list(_POLICY_FIELDS)}"
        raise ConfigError(msg)
    values: dict[str, bool] = {}
    for name in _POLICY_FIELDS:
        if name in data:
            if not isinstance(data[name], bool):
                msg = f"'policy.{name}' must be a bool"
                raise ConfigError(msg)
            values[name] = data[name]
    return PropagationPolicy(**values)


def _parse_layers(data: object) -> dict[str, tuple[str, ...]]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        msg = "'layers' must be a table"
        raise ConfigError(msg)
    layers: dict[str, tuple[str, ...]] = {}
    for layer, globs in data.items():
        if layer not in _LAYER_NAMES:
            msg = f"'layers': invalid layer '{layer}', must be one of {sorted(_LAYER_NAMES)}"
            raise ConfigError(msg)
        if isinstance(globs, str):
            layers[layer] = (globs,)
        elif isinstance(globs, list):
            layers[layer] = tuple(str(g) for g in globs)
        else:
            msg = f"'layers.{layer}' must be a string or a list of strings"
            raise ConfigError(msg)
    return layers


def parse_config(
    data: Mapping[str, Any], *, registry: RuleRegistry | None = None
) -> EngineConfig:
    """Validate an already-loaded configuration mapping."""
    registry = registry or default_registry()
    known = {"policy", "layers", *VALID_SUITES}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"unknown top-level section(s) {unknown}, expected {sorted(known)}"
        raise ConfigError(msg)
    return EngineConfig(
        rules=_parse_suites(data, registry),
        policy=_parse_policy(data.get("policy")),
        layers=_parse_layers(data.get("layers")),
    )


def load_config(path: Path, *, registry: RuleRegistry | None = None) -> EngineConfig:
    """Read a ``.toml`` or ``.yml``/``.yaml`` configuration file.

    Raises ``ConfigError`` when the file cannot be read or does not validate.
    """
    try:
        if path.suffix == ".toml":
            with path.open("rb") as fh:
                data: object = tomllib.load(fh)
        elif path.suffix in (".yml", ".yaml"):
            with path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        else:
            msg = f"{path.name}: unsupported configuration format '{path.suffix}'"
            raise ConfigError(msg)
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        msg = f"{path.name}: {exc}"
        raise ConfigError(msg) from exc

    if not isinstance(data, Mapping):
        msg = f"{path.name} must be a mapping"
        raise ConfigError(msg)
    try:
        return parse_config(data, registry=registry)
    except ConfigError as exc:
        msg = f"{path.name}: {exc}"
        raise ConfigError(msg) from exc
