"""
Conversion registry: named, pure value transforms referenced from the
mapping file by their ``conversion`` key.

Unit conversions return None when the input is not numeric. Velocity
conversions always return a 12-character hex string.
"""

import logging
import math
from enum import Enum
from typing import Any, Callable, Dict

from .constants import KELVIN_OFFSET, MPS_TO_KMH, MPS_TO_KTS
from .errors import UnknownConversion
from .gad_velocity import VelocityData, velocity_to_hex

logger = logging.getLogger(__name__)


class ConversionKind(str, Enum):
    NONE = "none"
    KELVIN_TO_CELSIUS = "kelvin_to_celsius"
    RADIANS_TO_DEGREES = "radians_to_degrees"
    MPS_TO_KNOTS = "meters_per_second_to_knots"
    MPS_TO_KMH = "meters_per_second_to_kmh"
    RATIO_TO_PERCENTAGE = "ratio_to_percentage"
    GPP_VELOCITY = "3gpp_ts_23032_velocity"
    GPP_VELOCITY_FROM_SPEED = "3gpp_ts_23032_velocity_from_speed"
    GPP_VELOCITY_NAVIGATION = "3gpp_ts_23032_velocity_navigation"


def _as_float(raw):
    if isinstance(raw, bool):
        raise TypeError("boolean is not a measurement")
    return float(raw)


# ===================== UNIT CONVERSIONS (number -> number) =====================
def identity(raw):
    return raw


def kelvin_to_celsius(raw):
    try: return _as_float(raw) - KELVIN_OFFSET
    except (TypeError, ValueError) as e:
        logger.debug(f"Conversion kelvin_to_celsius failed for {raw!r}: {e}")
        return None


def radians_to_degrees(raw):
    try: return math.degrees(_as_float(raw))
    except (TypeError, ValueError) as e:
        logger.debug(f"Conversion radians_to_degrees failed for {raw!r}: {e}")
        return None


def mps_to_knots(raw):
    try: return _as_float(raw) * MPS_TO_KTS
    except (TypeError, ValueError) as e:
        logger.debug(f"Conversion meters_per_second_to_knots failed for {raw!r}: {e}")
        return None


def mps_to_kmh(raw):
    try: return _as_float(raw) * MPS_TO_KMH
    except (TypeError, ValueError) as e:
        logger.debug(f"Conversion meters_per_second_to_kmh failed for {raw!r}: {e}")
        return None


def ratio_to_percentage(raw):
    try: return _as_float(raw) * 100.0
    except (TypeError, ValueError) as e:
        logger.debug(f"Conversion ratio_to_percentage failed for {raw!r}: {e}")
        return None


# ===================== 3GPP VELOCITY CONVERSIONS (-> hex str) =====================
def velocity_any_to_gad_hex(raw: Any) -> str:
    """
    Encode either a bare speed (m/s) or a Signal K velocity object
    ``{speedOverGround, courseOverGround, verticalSpeed}``.

    Example:
        >>> velocity_any_to_gad_hex(10)
        '048000080000'
    """
    if isinstance(raw, dict):
        data = VelocityData(
            speed_over_ground=raw.get("speedOverGround"),
            course_over_ground=raw.get("courseOverGround"),
            vertical_speed=raw.get("verticalSpeed"),
        )
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        data = VelocityData(speed_over_ground=raw)
    else:
        data = VelocityData()
    return velocity_to_hex(data)


def speed_to_gad_hex(raw: Any) -> str:
    """Speed only: bearing is reported as 0 (unknown)."""
    return velocity_to_hex(VelocityData(speed_over_ground=raw, vertical_speed=0))


def navigation_to_gad_hex(raw: Any) -> str:
    """
    Combined navigation input from the helper processor. Vertical speed is
    always zero for surface vessels.
    """
    raw = raw if isinstance(raw, dict) else {}
    return velocity_to_hex(VelocityData(
        speed_over_ground=raw.get("speedOverGround") or 0,
        course_over_ground=raw.get("courseOverGround"),
        vertical_speed=0,
    ))


# ===================== REGISTRY =====================
CONVERSIONS: Dict[ConversionKind, Callable[[Any], Any]] = {
    ConversionKind.NONE: identity,
    ConversionKind.KELVIN_TO_CELSIUS: kelvin_to_celsius,
    ConversionKind.RADIANS_TO_DEGREES: radians_to_degrees,
    ConversionKind.MPS_TO_KNOTS: mps_to_knots,
    ConversionKind.MPS_TO_KMH: mps_to_kmh,
    ConversionKind.RATIO_TO_PERCENTAGE: ratio_to_percentage,
    ConversionKind.GPP_VELOCITY: velocity_any_to_gad_hex,
    ConversionKind.GPP_VELOCITY_FROM_SPEED: speed_to_gad_hex,
    ConversionKind.GPP_VELOCITY_NAVIGATION: navigation_to_gad_hex,
}


def resolve_conversion(name: str) -> ConversionKind:
    """
    Map a conversion name from the mapping file onto its kind.

    Raises:
        UnknownConversion: if no conversion is registered under ``name``
    """
    try:
        return ConversionKind(name)
    except ValueError:
        raise UnknownConversion(f"Unknown conversion type: {name}") from None


def apply_conversion(value: Any, name: str) -> Any:
    """
    Apply the named conversion to a value.

    Unknown names are not fatal: the value is passed through unchanged and a
    warning is logged.

    Example:
        >>> apply_conversion(0.5, "ratio_to_percentage")
        50.0
        >>> apply_conversion(5, "foo")
        5
    """
    try:
        kind = resolve_conversion(name)
    except UnknownConversion as e:
        logger.warning(f"{e}, using value as-is")
        return value
    return CONVERSIONS[kind](value)
