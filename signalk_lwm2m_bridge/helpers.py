"""
Synthetic "helper" values computed from several Signal K paths.

A helper mapping uses a path such as ``helpers.3gpp_ts_23032_velocity``
that never appears on the wire. Its inputs are subscribed to separately,
remembered in the HelperAccumulator, and combined whenever one of them
changes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .conversions import ConversionKind

SPEED_OVER_GROUND = "navigation.speedOverGround"
COURSE_OVER_GROUND_TRUE = "navigation.courseOverGroundTrue"


class HelperAccumulator:
    """Last value seen for every path, whether or not the path is mapped."""

    def __init__(self):
        self._values: Dict[str, Any] = {}

    def record(self, path: str, value: Any) -> None:
        self._values[path] = value

    def get(self, path: str, default: Any = None) -> Any:
        return self._values.get(path, default)

    def __contains__(self, path: str) -> bool:
        return path in self._values

    def __len__(self) -> int:
        return len(self._values)


@dataclass(frozen=True)
class HelperDefinition:
    name: str
    inputs: Tuple[str, ...]
    conversion: ConversionKind
    is_sufficient: Callable[[Mapping[str, Any]], bool]
    build_input: Callable[[Mapping[str, Any]], Any]

    def collect(self, accumulator: HelperAccumulator) -> Dict[str, Any]:
        return {path: accumulator.get(path) for path in self.inputs}


def _speed_present(values: Mapping[str, Any]) -> bool:
    return values.get(SPEED_OVER_GROUND) is not None


def _navigation_velocity(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "speedOverGround": values.get(SPEED_OVER_GROUND),
        "courseOverGround": values.get(COURSE_OVER_GROUND_TRUE),
        "verticalSpeed": None,
    }


HELPERS: Dict[str, HelperDefinition] = {
    "3gpp_ts_23032_velocity": HelperDefinition(
        name="3gpp_ts_23032_velocity",
        inputs=(SPEED_OVER_GROUND, COURSE_OVER_GROUND_TRUE),
        conversion=ConversionKind.GPP_VELOCITY_NAVIGATION,
        is_sufficient=_speed_present,
        build_input=_navigation_velocity,
    ),
}


def get_helper(name: str) -> Optional[HelperDefinition]:
    return HELPERS.get(name)
