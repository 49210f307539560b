"""
Dispatch engine: turns Signal K deltas into LwM2M ``change`` commands.

For every (path, value) of a delta, in arrival order:

1. remember it in the HelperAccumulator;
2. fire helpers that consume this path and have enough input;
3. route template (notification) matches to the template processor, stop;
4. otherwise look up the exact mapping, convert, validate, forward.

Errors are isolated per value: one bad value is logged and the next one is
processed normally.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, NamedTuple, Optional, Tuple

from .constants import (
    EMERGENCY_COORDINATE_RESOURCES,
    FALLBACK_LATITUDE,
    FALLBACK_LONGITUDE,
    TEMPLATE_IDENTIFIER_SENTINEL,
)
from .conversions import CONVERSIONS, apply_conversion
from .helpers import HelperAccumulator, HelperDefinition
from .mandatory import MandatoryResourceCache, ValidationPolicy
from .mapping import MappingEntry, MappingTable, extract_nested_value

logger = logging.getLogger(__name__)


class PathValue(NamedTuple):
    path: str
    value: Any


def iter_path_values(delta: Mapping[str, Any]) -> Iterator[PathValue]:
    """
    Flatten a Signal K delta into (path, value) pairs, preserving order.

    Messages that are not deltas (e.g. the server hello) yield nothing.

    Example:
        >>> delta = {"updates": [{"values": [{"path": "a", "value": 1}, {"path": "b", "value": 2}]}]}
        >>> [pv.path for pv in iter_path_values(delta)]
        ['a', 'b']
    """
    updates = delta.get("updates") if isinstance(delta, Mapping) else None
    if not isinstance(updates, list):
        return
    for update in updates:
        values = update.get("values") if isinstance(update, Mapping) else None
        if not isinstance(values, list):
            continue
        for item in values:
            if isinstance(item, Mapping) and isinstance(item.get("path"), str):
                yield PathValue(item["path"], item.get("value"))


def ensure_emergency_coordinates(
    resources: Mapping[str, Any],
    latitude_id: str,
    longitude_id: str,
) -> Tuple[Dict[str, Any], bool]:
    """
    Fill absent or null coordinates with (0.0, 0.0).

    Returns:
        (new resource map, whether anything was filled)

    Example:
        >>> ensure_emergency_coordinates({"5750": "uuid-1"}, "6051", "6052")
        ({'5750': 'uuid-1', '6051': 0.0, '6052': 0.0}, True)
    """
    filled = dict(resources)
    changed = False
    if filled.get(latitude_id) is None:
        filled[latitude_id] = FALLBACK_LATITUDE
        changed = True
    if filled.get(longitude_id) is None:
        filled[longitude_id] = FALLBACK_LONGITUDE
        changed = True
    return filled, changed


@dataclass
class DispatchStats:
    values_processed: int = 0
    commands_sent: int = 0
    updates_discarded: int = 0
    errors: int = 0


class DispatchEngine:
    def __init__(
        self,
        mapping: MappingTable,
        mandatory: MandatoryResourceCache,
        sink,
        single_resource_policy: ValidationPolicy = ValidationPolicy.ADVISORY,
        template_policy: ValidationPolicy = ValidationPolicy.BLOCKING,
        emergency_coordinates: Optional[Mapping[int, Tuple[str, str]]] = None,
        debug_messages: bool = False,
    ):
        self.mapping = mapping
        self.mandatory = mandatory
        self.sink = sink
        self.single_resource_policy = ValidationPolicy(single_resource_policy)
        self.template_policy = ValidationPolicy(template_policy)
        self.emergency_coordinates = dict(
            EMERGENCY_COORDINATE_RESOURCES if emergency_coordinates is None else emergency_coordinates
        )
        self.debug_messages = debug_messages
        self.accumulator = HelperAccumulator()
        self.stats = DispatchStats()
        self._closed = False

    def close(self) -> None:
        """After this no further values are processed."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def handle_delta(self, delta: Mapping[str, Any]) -> None:
        for path, value in iter_path_values(delta):
            if self._closed:
                return
            try:
                self.process_value(path, value)
            except Exception as e:
                self.stats.errors += 1
                logger.error(f"Error processing {path}: {e!r}")

    def process_value(self, path: str, value: Any) -> None:
        self.stats.values_processed += 1
        self.accumulator.record(path, value)
        if self.debug_messages:
            logger.debug(f"Signal K value: {path} = {value!r}")

        self._process_helpers(path)

        template = self.mapping.find_template(path)
        if template is not None:
            self._process_template(path, value, template)
            return

        entry = self.mapping.find_exact(path)
        if entry is None:
            return  # not interested in this path directly
        if not entry.is_complete:
            logger.debug(f"{path}: {value!r} (no LwM2M mapping - data collection only)")
            return

        converted = apply_conversion(value, entry.conversion) if entry.conversion else value
        logger.debug(
            f"{path}: {value!r} → LwM2M {entry.object_id}/{entry.instance_id}/{entry.resource_id}: {converted!r}"
        )
        self._forward_single(entry, converted)

    # ===================== HELPERS =====================
    def _process_helpers(self, path: str) -> None:
        for entry, helper in self.mapping.helpers_for_input(path):
            try:
                self._run_helper(entry, helper)
            except Exception as e:
                self.stats.errors += 1
                logger.error(f"Error processing helper {helper.name}: {e!r}")

    def _run_helper(self, entry: MappingEntry, helper: HelperDefinition) -> None:
        values = helper.collect(self.accumulator)
        if not helper.is_sufficient(values):
            return
        output = CONVERSIONS[helper.conversion](helper.build_input(values))
        logger.debug(f"Helper {helper.name} from {values} → {output}")
        if entry.is_complete:
            self._forward_single(entry, output)

    # ===================== SINGLE RESOURCE =====================
    def _forward_single(self, entry: MappingEntry, value: Any) -> None:
        if value is None:
            self.stats.updates_discarded += 1
            logger.warning(f"{entry.signal_path}: no value after conversion, nothing sent")
            return

        result = self.mandatory.validate(entry.object_id, {str(entry.resource_id): value})
        if not result.valid:
            if self.single_resource_policy is ValidationPolicy.BLOCKING:
                logger.error(
                    f"Mandatory resource validation failed for {result.object_name} (Object {entry.object_id}):"
                )
                for missing in result.missing_mandatory:
                    logger.error(f"   Missing: Resource {missing}")
                logger.error("   Skipping update to prevent LwM2M client errors")
                self.stats.updates_discarded += 1
                return
            logger.warning(f"Single resource update for {result.object_name} (Object {entry.object_id}):")
            for missing in result.missing_mandatory:
                logger.warning(f"   Note: Resource {missing} is mandatory but not provided in this update")

        self._send(entry.object_id, entry.instance_id, entry.resource_id, value)

    # ===================== TEMPLATES =====================
    def _process_template(self, path: str, value: Any, entry: MappingEntry) -> None:
        remainder = path[len(entry.template_prefix):]
        kind, _, identifier = remainder.partition(".")
        if not kind or not identifier:
            logger.warning(f"Invalid notification path format: {path}")
            return

        instance_id = entry.instance_mapping.get(kind)
        if instance_id is None:
            logger.info(f"Unknown notification type '{kind}' - not in instance mapping")
            return

        logger.info(f"Processing notification: {kind} ({identifier}) → Object {entry.object_id}/Instance {instance_id}")

        resources: Dict[str, Any] = {}
        for resource_id, source in entry.resources.items():
            if source == TEMPLATE_IDENTIFIER_SENTINEL:
                extracted = identifier
            else:
                extracted = extract_nested_value(value, source)
            if extracted is None:
                logger.debug(f"  Resource {resource_id} ({source}): (no data)")
                continue
            resources[resource_id] = extracted
            logger.debug(f"  Resource {resource_id} ({source}): {extracted!r}")

        coordinates = self.emergency_coordinates.get(entry.object_id)
        if coordinates is not None:
            resources, filled = ensure_emergency_coordinates(resources, *coordinates)
            if filled:
                logger.info("GPS coordinates unavailable - using fallback coordinates (0.0, 0.0) for emergency notification")

        result = self.mandatory.validate(entry.object_id, resources)
        if not result.valid:
            log = logger.error if self.template_policy is ValidationPolicy.BLOCKING else logger.warning
            log(f"Mandatory resource validation failed for {result.object_name} (Object {entry.object_id}):")
            for missing in result.missing_mandatory:
                log(f"   Missing: Resource {missing}")
            if self.template_policy is ValidationPolicy.BLOCKING:
                logger.error("   Skipping update to prevent LwM2M client errors")
                self.stats.updates_discarded += 1
                return
        else:
            logger.debug(f"Mandatory resource validation passed for {result.object_name}")

        for resource_id, extracted in resources.items():
            self._send(entry.object_id, instance_id, int(resource_id), extracted)

    def _send(self, object_id: int, instance_id: int, resource_id: int, value: Any) -> None:
        self.sink.update_object_resource(object_id, instance_id, resource_id, value)
        self.stats.commands_sent += 1
