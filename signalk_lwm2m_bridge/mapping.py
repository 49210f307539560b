"""
Signal K path -> LwM2M resource mapping table.

The mapping file is loaded once at startup:

    {
      "version": "1.0",
      "description": "...",
      "mappings": [
        {"signalkPath": "environment.water.temperature",
         "object_id": 3303, "instance_id": 0, "resource_id": 5700,
         "conversion": "kelvin_to_celsius", "period": 5000},
        {"signalkPath": "notifications.*", "object_id": 3336,
         "template_mapping": true,
         "instance_mapping": {"mob": 0, "fire": 1},
         "resources": {"5750": "uuid", "6051": "position.latitude"}},
        {"signalkPath": "helpers.3gpp_ts_23032_velocity",
         "object_id": 6, "instance_id": 0, "resource_id": 6}
      ]
    }

Entries lacking any of object/instance/resource id are collected only.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .constants import (
    DEFAULT_SUBSCRIPTION_FORMAT,
    DEFAULT_SUBSCRIPTION_MIN_PERIOD,
    DEFAULT_SUBSCRIPTION_PERIOD,
    DEFAULT_SUBSCRIPTION_POLICY,
    HELPER_PATH_PREFIX,
    TEMPLATE_WILDCARD_SUFFIX,
)
from .conversions import resolve_conversion
from .errors import ConfigurationError, UnknownConversion
from .helpers import get_helper

logger = logging.getLogger(__name__)


# ===================== NESTED FIELD ACCESS =====================
def extract_nested_value(tree: Any, dotted_path: str) -> Any:
    """
    Follow a dotted path through nested dicts (and lists, by index).

    Missing intermediate keys resolve to None; this never raises.

    Example:
        >>> extract_nested_value({"position": {"latitude": 60.1}}, "position.latitude")
        60.1
        >>> extract_nested_value({"position": None}, "position.latitude") is None
        True
    """
    current = tree
    for key in dotted_path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


# ===================== SUBSCRIPTION SETTINGS =====================
@dataclass(frozen=True)
class SubscriptionSettings:
    period: int = DEFAULT_SUBSCRIPTION_PERIOD
    format: str = DEFAULT_SUBSCRIPTION_FORMAT
    policy: str = DEFAULT_SUBSCRIPTION_POLICY
    min_period: int = DEFAULT_SUBSCRIPTION_MIN_PERIOD

    def merged(self, overrides: Mapping[str, Any]) -> "SubscriptionSettings":
        return SubscriptionSettings(
            period=overrides.get("period", self.period),
            format=overrides.get("format", self.format),
            policy=overrides.get("policy", self.policy),
            min_period=overrides.get("minPeriod", self.min_period),
        )

    def for_path(self, path: str) -> Dict[str, Any]:
        return {
            "path": path,
            "period": self.period,
            "format": self.format,
            "policy": self.policy,
            "minPeriod": self.min_period,
        }


_OVERRIDE_TYPES = {"period": int, "format": str, "policy": str, "minPeriod": int}


def is_valid_id(value) -> bool:
    """True for plain integers; bool is rejected."""
    return isinstance(value, int) and not isinstance(value, bool)


def is_valid_override(key: str, value) -> bool:
    expected = _OVERRIDE_TYPES[key]
    return isinstance(value, expected) and not isinstance(value, bool)


# ===================== MAPPING ENTRY =====================
@dataclass(frozen=True)
class MappingEntry:
    signal_path: str
    object_id: Optional[int] = None
    instance_id: Optional[int] = None
    resource_id: Optional[int] = None
    conversion: Optional[str] = None
    description: str = ""
    template_mapping: bool = False
    instance_mapping: Dict[str, int] = field(default_factory=dict)
    resources: Dict[str, str] = field(default_factory=dict)
    subscription_overrides: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return None not in (self.object_id, self.instance_id, self.resource_id)

    @property
    def is_helper(self) -> bool:
        return self.signal_path.startswith(HELPER_PATH_PREFIX)

    @property
    def helper_type(self) -> Optional[str]:
        return self.signal_path[len(HELPER_PATH_PREFIX):] if self.is_helper else None

    @property
    def template_prefix(self) -> Optional[str]:
        # "notifications.*" -> "notifications."
        if not self.template_mapping:
            return None
        return self.signal_path[:-1]

    def matches_template(self, path: str) -> bool:
        prefix = self.template_prefix
        if not prefix or not path:
            return False
        return path.startswith(prefix) and path != self.signal_path

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "MappingEntry":
        where = f"mapping #{index}"
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"{where}: expected an object, got {type(data).__name__}")

        path = data.get("signalkPath")
        if not isinstance(path, str) or not path.strip():
            raise ConfigurationError(f"{where}: 'signalkPath' is required")
        path = path.strip()
        where = f"mapping #{index} ({path})"

        ids = {}
        for key in ("object_id", "instance_id", "resource_id"):
            value = data.get(key)
            if value is not None and not is_valid_id(value):
                raise ConfigurationError(f"{where}: '{key}' must be an integer")
            ids[key] = value

        conversion = data.get("conversion")
        if conversion is not None:
            if not isinstance(conversion, str):
                raise ConfigurationError(f"{where}: 'conversion' must be a string")
            try:
                resolve_conversion(conversion)
            except UnknownConversion as e:
                logger.warning(f"{where}: {e}, values will be passed through unchanged")

        overrides = {}
        for key in _OVERRIDE_TYPES:
            if key in data:
                if not is_valid_override(key, data[key]):
                    raise ConfigurationError(f"{where}: '{key}' must be {_OVERRIDE_TYPES[key].__name__}")
                overrides[key] = data[key]

        template = bool(data.get("template_mapping", False))
        instance_mapping: Dict[str, int] = {}
        resources: Dict[str, str] = {}
        if template:
            if not path.endswith(TEMPLATE_WILDCARD_SUFFIX):
                raise ConfigurationError(f"{where}: template paths must end with '{TEMPLATE_WILDCARD_SUFFIX}'")
            if ids["object_id"] is None:
                raise ConfigurationError(f"{where}: template mappings need 'object_id'")
            raw_instances = data.get("instance_mapping")
            raw_resources = data.get("resources")
            if not isinstance(raw_instances, Mapping) or not raw_instances:
                raise ConfigurationError(f"{where}: template mappings need 'instance_mapping'")
            if not isinstance(raw_resources, Mapping) or not raw_resources:
                raise ConfigurationError(f"{where}: template mappings need 'resources'")
            for kind, instance_id in raw_instances.items():
                if not is_valid_id(instance_id):
                    raise ConfigurationError(f"{where}: instance for '{kind}' must be an integer")
                instance_mapping[str(kind)] = instance_id
            for resource_id, source in raw_resources.items():
                if not str(resource_id).isdigit() or not isinstance(source, str):
                    raise ConfigurationError(f"{where}: invalid resource entry {resource_id!r}: {source!r}")
                resources[str(resource_id)] = source

        return cls(
            signal_path=path,
            object_id=ids["object_id"],
            instance_id=ids["instance_id"],
            resource_id=ids["resource_id"],
            conversion=conversion,
            description=str(data.get("description", "")),
            template_mapping=template,
            instance_mapping=instance_mapping,
            resources=resources,
            subscription_overrides=overrides,
        )


# ===================== MAPPING TABLE =====================
class MappingTable:
    """Ordered mapping entries plus the lookups the dispatcher needs."""

    def __init__(self, entries, version: str = "", description: str = ""):
        self.entries: Tuple[MappingEntry, ...] = tuple(entries)
        self.version = version
        self.description = description

        self.template_entries = tuple(e for e in self.entries if e.template_mapping)
        self.helper_entries = tuple(e for e in self.entries if e.is_helper and not e.template_mapping)

        self._exact: Dict[str, MappingEntry] = {}
        for entry in self.entries:
            if entry.template_mapping or entry.is_helper:
                continue
            # first entry wins for duplicated paths
            self._exact.setdefault(entry.signal_path, entry)

        for entry in self.helper_entries:
            if get_helper(entry.helper_type) is None:
                logger.warning(f"Unknown helper type '{entry.helper_type}' in {entry.signal_path} - ignored")

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def find_template(self, path: str) -> Optional[MappingEntry]:
        for entry in self.template_entries:
            if entry.matches_template(path):
                return entry
        return None

    def find_exact(self, path: str) -> Optional[MappingEntry]:
        return self._exact.get(path)

    def helpers_for_input(self, path: str):
        """Yield (entry, helper definition) pairs that consume ``path``."""
        for entry in self.helper_entries:
            helper = get_helper(entry.helper_type)
            if helper is not None and path in helper.inputs:
                yield entry, helper

    def subscription_paths(self) -> List[str]:
        """Every distinct wire path to subscribe to, in mapping order."""
        paths: Dict[str, None] = {}
        for entry in self.entries:
            if entry.is_helper and not entry.template_mapping:
                helper = get_helper(entry.helper_type)
                if helper is not None:
                    for path in helper.inputs:
                        paths.setdefault(path, None)
                continue
            paths.setdefault(entry.signal_path, None)
        return list(paths)

    def subscriptions(self, defaults: SubscriptionSettings) -> List[Dict[str, Any]]:
        """Per-path delivery settings: first mapping override for a path wins over defaults."""
        overrides: Dict[str, Dict[str, Any]] = {}
        for entry in self.entries:
            if entry.subscription_overrides and not entry.is_helper:
                overrides.setdefault(entry.signal_path, entry.subscription_overrides)
        return [
            defaults.merged(overrides.get(path, {})).for_path(path)
            for path in self.subscription_paths()
        ]

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "MappingTable":
        if not isinstance(document, Mapping):
            raise ConfigurationError("mapping configuration must be a JSON object")
        raw = document.get("mappings")
        if not isinstance(raw, list):
            raise ConfigurationError("mapping configuration needs a 'mappings' list")
        entries = [MappingEntry.from_dict(item, i) for i, item in enumerate(raw)]
        return cls(
            entries,
            version=str(document.get("version", "")),
            description=str(document.get("description", "")),
        )

    @classmethod
    def load(cls, path: Path) -> "MappingTable":
        try:
            with open(path, "r", encoding="utf-8") as fh:
                document = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load mapping config from {path}: {e}") from e

        table = cls.from_dict(document)
        for entry in table.template_entries:
            logger.info(f"Template mapping for {entry.signal_path} (Object {entry.object_id})")
            instances = ", ".join(f"{kind}→{iid}" for kind, iid in entry.instance_mapping.items())
            logger.info(f"   Instance mapping: {instances}")
        logger.info(f"Loaded mapping config: {len(table)} mappings")
        return table
