"""
Mandatory resource cache and validator.

LwM2M object schemas (``lwm2m-object-<id>.xml``) declare, per resource,
whether it is Mandatory or Optional. Scanning them on every update would be
slow, so the mandatory ids are extracted once, persisted to a JSON snapshot
and served from memory:

    {
      "version": "1.0",
      "generatedAt": "...",
      "objects": {
        "3336": {"objectId": "3336", "objectName": "...",
                 "mandatoryResources": ["6051", "6052"], "lastUpdated": "..."}
      }
    }

The in-memory map is replaced as a whole, never mutated in place, so a
validation always sees either the old or the new cache.
"""

import json
import logging
import os
import re
import tempfile
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .constants import MANDATORY_CACHE_VERSION, OBJECT_SCHEMA_PATTERN
from .errors import ValidationFailure

logger = logging.getLogger(__name__)

_SCHEMA_FILE_RE = re.compile(OBJECT_SCHEMA_PATTERN)


def iso_utc_ms() -> str:
    """
    Generate ISO 8601 UTC timestamp with millisecond precision.

    Example:
        >>> iso_utc_ms().endswith('Z')
        True
    """
    t = time.time()
    whole = int(t)
    ms = int((t - whole) * 1000)
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(whole)) + f".{ms:03d}Z"


@dataclass(frozen=True)
class MandatoryResourceInfo:
    object_id: str
    object_name: str
    mandatory_resources: Tuple[str, ...]
    last_updated: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objectId": self.object_id,
            "objectName": self.object_name,
            "mandatoryResources": list(self.mandatory_resources),
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MandatoryResourceInfo":
        resources = data["mandatoryResources"]
        if not isinstance(resources, list):
            raise ValueError("mandatoryResources must be a list")
        return cls(
            object_id=str(data["objectId"]),
            object_name=str(data.get("objectName") or f"Object {data['objectId']}"),
            mandatory_resources=tuple(str(r) for r in resources),
            last_updated=str(data.get("lastUpdated", "")),
        )


class ValidationPolicy(str, Enum):
    ADVISORY = "advisory"   # log missing resources, forward anyway
    BLOCKING = "blocking"   # log missing resources, discard the update


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    missing_mandatory: List[str] = field(default_factory=list)
    object_name: str = ""

    def raise_for_missing(self, object_id: int) -> None:
        if not self.valid:
            raise ValidationFailure(object_id, self.object_name, self.missing_mandatory)


# ===================== SCHEMA SCANNING =====================
def _local(tag: str) -> str:
    # strip "{namespace}" prefixes
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in element:
        if _local(child.tag) == name:
            return (child.text or "").strip()
    return None


def parse_object_schema(xml_path: Path, object_id: str) -> MandatoryResourceInfo:
    """
    Extract the object name and mandatory resource ids from one schema file.

    Raises:
        ET.ParseError: the file is not well-formed XML
        OSError: the file cannot be read
    """
    root = ET.parse(xml_path).getroot()
    obj = next((el for el in root.iter() if _local(el.tag) == "Object"), root)
    object_name = _child_text(obj, "Name") or f"Object {object_id}"

    mandatory = []
    for item in obj.iter():
        if _local(item.tag) != "Item":
            continue
        resource_id = (item.get("ID") or "").strip()
        flag = _child_text(item, "Mandatory")
        if resource_id and flag and flag.lower() == "mandatory":
            mandatory.append(resource_id)

    return MandatoryResourceInfo(
        object_id=object_id,
        object_name=object_name,
        mandatory_resources=tuple(mandatory),
        last_updated=iso_utc_ms(),
    )


def scan_object_schemas(schema_dir: Path) -> Dict[str, MandatoryResourceInfo]:
    """Parse every ``lwm2m-object-<id>.xml`` in ``schema_dir``."""
    schema_dir = Path(schema_dir)
    objects: Dict[str, MandatoryResourceInfo] = {}

    logger.info(f"Scanning for LwM2M object specifications in {schema_dir}")
    try:
        files = sorted(p for p in schema_dir.iterdir() if _SCHEMA_FILE_RE.match(p.name))
    except OSError as e:
        logger.error(f"Cannot list schema directory {schema_dir}: {e}")
        return objects

    logger.info(f"Found {len(files)} LwM2M object specifications")
    for xml_path in files:
        object_id = str(int(_SCHEMA_FILE_RE.match(xml_path.name).group(1)))
        if object_id in objects:
            logger.warning(f"Duplicate specification for Object {object_id} ignored: {xml_path.name}")
            continue
        try:
            info = parse_object_schema(xml_path, object_id)
        except (ET.ParseError, OSError) as e:
            logger.error(f"Error parsing {xml_path.name}: {e}")
            continue
        objects[object_id] = info
        if info.mandatory_resources:
            logger.info(
                f"Object {object_id} ({info.object_name}): {len(info.mandatory_resources)} "
                f"mandatory resources [{', '.join(info.mandatory_resources)}]"
            )
        else:
            logger.info(f"Object {object_id} ({info.object_name}): No mandatory resources")
    return objects


# ===================== SNAPSHOT PERSISTENCE =====================
def write_cache_file(cache_file: Path, objects: Mapping[str, MandatoryResourceInfo]) -> None:
    """Persist the whole cache as one unit (temp file + atomic rename)."""
    cache_file = Path(cache_file)
    document = {
        "version": MANDATORY_CACHE_VERSION,
        "generatedAt": iso_utc_ms(),
        "objects": {oid: info.to_dict() for oid, info in objects.items()},
    }
    cache_file.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".mandatory-", suffix=".json", dir=cache_file.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2)
        os.replace(tmp_name, cache_file)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def read_cache_file(cache_file: Path) -> Dict[str, MandatoryResourceInfo]:
    """
    Load a persisted snapshot.

    Raises:
        OSError: the file is missing or unreadable
        ValueError: the content is not a valid snapshot
    """
    with open(cache_file, "r", encoding="utf-8") as fh:
        document = json.load(fh)
    objects = document.get("objects") if isinstance(document, dict) else None
    if not isinstance(objects, dict):
        raise ValueError("snapshot has no 'objects' table")
    try:
        return {str(oid): MandatoryResourceInfo.from_dict(info) for oid, info in objects.items()}
    except (KeyError, TypeError) as e:
        raise ValueError(f"malformed object entry: {e!r}") from e


# ===================== CACHE =====================
class MandatoryResourceCache:
    """
    Per-object mandatory resource ids with O(1) lookup.

    Built lazily on first use if ``initialize()`` was not called, so no
    validation is ever answered from an empty, not-yet-loaded cache.
    """

    def __init__(self, schema_dir: Path, cache_file: Path):
        self.schema_dir = Path(schema_dir)
        self.cache_file = Path(cache_file)
        self._objects: Optional[Dict[str, MandatoryResourceInfo]] = None
        self._lock = threading.Lock()

    @classmethod
    def from_objects(cls, objects: Mapping[Any, MandatoryResourceInfo]) -> "MandatoryResourceCache":
        """Build an already-loaded cache without touching the filesystem."""
        cache = cls(schema_dir=Path("."), cache_file=Path("mandatory-resources.json"))
        cache._objects = {str(k): v for k, v in objects.items()}
        return cache

    def initialize(self) -> None:
        logger.info("Initializing mandatory resources cache...")
        with self._lock:
            self._objects = self._load_or_generate()
        logger.info(f"Mandatory resources cache ready ({len(self._objects)} objects)")

    def regenerate(self) -> None:
        """Rebuild from the schema files and swap the result in."""
        with self._lock:
            self._objects = self._generate()

    def _load_or_generate(self) -> Dict[str, MandatoryResourceInfo]:
        if self.cache_file.exists():
            try:
                objects = read_cache_file(self.cache_file)
                logger.info(f"Loaded mandatory resources cache ({len(objects)} objects)")
                return objects
            except (OSError, ValueError) as e:
                logger.warning(f"Error loading mandatory resources cache, regenerating: {e}")
        logger.info("Generating new mandatory resources cache...")
        return self._generate()

    def _generate(self) -> Dict[str, MandatoryResourceInfo]:
        objects = scan_object_schemas(self.schema_dir)
        try:
            write_cache_file(self.cache_file, objects)
            logger.info(f"Saved mandatory resources cache to {self.cache_file}")
        except OSError as e:
            logger.error(f"Could not save mandatory resources cache to {self.cache_file}: {e}")
        return objects

    def _snapshot(self) -> Dict[str, MandatoryResourceInfo]:
        objects = self._objects
        if objects is None:
            with self._lock:
                if self._objects is None:
                    self._objects = self._load_or_generate()
                objects = self._objects
        return objects

    def get(self, object_id) -> Optional[MandatoryResourceInfo]:
        return self._snapshot().get(str(object_id))

    def __len__(self) -> int:
        return len(self._snapshot())

    def validate(self, object_id: int, resources: Mapping[str, Any]) -> ValidationResult:
        """
        Check that every mandatory resource of ``object_id`` is present.

        Args:
            object_id: LwM2M object id
            resources: resource id (string) -> value being sent

        Returns:
            ValidationResult; unknown objects pass with a warning

        Example:
            >>> info = MandatoryResourceInfo("3336", "Location", ("6051", "6052"))
            >>> cache = MandatoryResourceCache.from_objects({"3336": info})
            >>> cache.validate(3336, {"5750": "uuid-1"}).missing_mandatory
            ['6051', '6052']
        """
        info = self.get(object_id)
        if info is None:
            logger.warning(f"No specification found for Object {object_id} - skipping mandatory validation")
            return ValidationResult(valid=True, missing_mandatory=[], object_name=f"Object {object_id}")

        provided = {str(k) for k in resources}
        missing = [rid for rid in info.mandatory_resources if rid not in provided]
        return ValidationResult(valid=not missing, missing_mandatory=missing, object_name=info.object_name)
