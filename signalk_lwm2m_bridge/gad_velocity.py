"""
3GPP TS 23.032 (Universal Geographical Area Description) velocity encoding.

Turns Signal K navigation data into the "Horizontal with Vertical Velocity
and Uncertainty" GAD shape and packs it into the 6-byte binary layout used
by mobile networks:

    horizontal speed        11 bits  (km/h, 0-2047)
    bearing                  9 bits  (degrees, 0-359)
    vertical speed           8 bits  (km/h, 0-255)
    vertical direction       1 bit   (1 = up)
    horizontal uncertainty   8 bits  (km/h, 0 = unknown)
    vertical uncertainty     8 bits  (km/h, 0 = unknown)
    padding                  3 bits

Every function here is pure and never raises: out-of-range input is clamped.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional

from .constants import (
    GAD_BEARING_MAX,
    GAD_HORIZONTAL_SPEED_MAX,
    GAD_UNCERTAINTY_MAX,
    GAD_VELOCITY_LENGTH,
    GAD_VERTICAL_SPEED_MAX,
    MPS_TO_KMH,
)


@dataclass(frozen=True)
class VelocityData:
    speed_over_ground: Optional[float] = None   # m/s
    course_over_ground: Optional[float] = None  # radians
    vertical_speed: Optional[float] = None      # m/s, positive = up


@dataclass(frozen=True)
class GADVelocity:
    horizontal_speed: int        # km/h
    bearing: int                 # degrees
    vertical_speed: int          # km/h
    vertical_direction: bool     # True = up
    horizontal_uncertainty: int  # km/h
    vertical_uncertainty: int    # km/h


def clamp(v, lo, hi):
    """
    Clamp a value between minimum and maximum bounds.

    Example:
        >>> clamp(3000, 0, 2047)
        2047
        >>> clamp(-5, 0, 255)
        0
    """
    return max(lo, min(hi, v))


def round_half_up(x: float) -> int:
    """Round to the nearest integer, halves away from zero for positive input."""
    return int(math.floor(x + 0.5))


def _finite_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f):
        return None
    return f


def encode_gad_velocity(velocity: VelocityData) -> GADVelocity:
    """
    Convert Signal K velocity data into a GAD velocity structure.

    Args:
        velocity: speed over ground (m/s), course over ground (radians, may be
            absent) and vertical speed (m/s)

    Returns:
        GADVelocity with every field clamped into its declared range

    Example:
        >>> g = encode_gad_velocity(VelocityData(10.0, math.pi / 2, 0.0))
        >>> (g.horizontal_speed, g.bearing, g.vertical_speed)
        (36, 90, 0)
    """
    speed = _finite_or_none(velocity.speed_over_ground) or 0.0
    horizontal_kmh = clamp(speed * MPS_TO_KMH, 0.0, float(GAD_HORIZONTAL_SPEED_MAX))
    horizontal_speed = clamp(round_half_up(horizontal_kmh), 0, GAD_HORIZONTAL_SPEED_MAX)

    # 0 doubles as "unknown" when there is no course
    bearing = 0
    course = _finite_or_none(velocity.course_over_ground)
    if course is not None and math.isfinite(course):
        degrees = math.degrees(course) % 360.0
        bearing = clamp(round_half_up(degrees), 0, GAD_BEARING_MAX)

    vertical = _finite_or_none(velocity.vertical_speed) or 0.0
    vertical_kmh = clamp(abs(vertical) * MPS_TO_KMH, 0.0, float(GAD_VERTICAL_SPEED_MAX))
    vertical_speed = clamp(round_half_up(vertical_kmh), 0, GAD_VERTICAL_SPEED_MAX)

    return GADVelocity(
        horizontal_speed=horizontal_speed,
        bearing=bearing,
        vertical_speed=vertical_speed,
        vertical_direction=True,  # fixed "up" for surface vessels
        horizontal_uncertainty=0,
        vertical_uncertainty=0,
    )


def pack_gad_velocity(gad: GADVelocity) -> bytes:
    """
    Pack a GAD velocity MSB-first into its 6-byte wire form.

    Example:
        >>> pack_gad_velocity(GADVelocity(36, 90, 0, True, 0, 0)).hex().upper()
        '0485A0080000'
    """
    bits = clamp(int(gad.horizontal_speed), 0, GAD_HORIZONTAL_SPEED_MAX)
    bits = (bits << 9) | clamp(int(gad.bearing), 0, GAD_BEARING_MAX)
    bits = (bits << 8) | clamp(int(gad.vertical_speed), 0, GAD_VERTICAL_SPEED_MAX)
    bits = (bits << 1) | (1 if gad.vertical_direction else 0)
    bits = (bits << 8) | clamp(int(gad.horizontal_uncertainty), 0, GAD_UNCERTAINTY_MAX)
    bits = (bits << 8) | clamp(int(gad.vertical_uncertainty), 0, GAD_UNCERTAINTY_MAX)
    bits <<= 3  # left-align the 45 used bits
    return bits.to_bytes(GAD_VELOCITY_LENGTH, "big")


def unpack_gad_velocity(data: bytes) -> GADVelocity:
    """Inverse of pack_gad_velocity; used for diagnostics and tests."""
    if len(data) != GAD_VELOCITY_LENGTH:
        raise ValueError(f"GAD velocity must be {GAD_VELOCITY_LENGTH} bytes, got {len(data)}")
    bits = int.from_bytes(data, "big") >> 3
    vertical_uncertainty = bits & 0xFF
    bits >>= 8
    horizontal_uncertainty = bits & 0xFF
    bits >>= 8
    vertical_direction = bool(bits & 0x1)
    bits >>= 1
    vertical_speed = bits & 0xFF
    bits >>= 8
    bearing = bits & 0x1FF
    bits >>= 9
    return GADVelocity(
        horizontal_speed=bits & 0x7FF,
        bearing=bearing,
        vertical_speed=vertical_speed,
        vertical_direction=vertical_direction,
        horizontal_uncertainty=horizontal_uncertainty,
        vertical_uncertainty=vertical_uncertainty,
    )


def velocity_to_hex(velocity: VelocityData) -> str:
    """Encode and pack velocity data, returning 12 upper-case hex characters."""
    return pack_gad_velocity(encode_gad_velocity(velocity)).hex().upper()
