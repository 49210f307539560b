"""
Tests for the conversion registry.

This module tests unit conversions, the 3GPP velocity conversions and how
unknown conversion names are handled.
"""

import logging
import math

import pytest
from signalk_lwm2m_bridge.conversions import (
    CONVERSIONS,
    ConversionKind,
    apply_conversion,
    kelvin_to_celsius,
    mps_to_kmh,
    mps_to_knots,
    navigation_to_gad_hex,
    radians_to_degrees,
    ratio_to_percentage,
    resolve_conversion,
    speed_to_gad_hex,
    velocity_any_to_gad_hex,
)
from signalk_lwm2m_bridge.errors import UnknownConversion


class TestUnitConversions:
    """Tests for number to number conversions."""

    def test_kelvin_to_celsius(self):
        assert kelvin_to_celsius(293.15) == pytest.approx(20.0)
        assert kelvin_to_celsius(0) == pytest.approx(-273.15)

    def test_radians_to_degrees(self):
        assert radians_to_degrees(math.pi) == pytest.approx(180.0)

    def test_mps_to_knots(self):
        assert mps_to_knots(1) == pytest.approx(1.94384)

    def test_mps_to_kmh(self):
        assert mps_to_kmh(10) == pytest.approx(36.0)

    def test_ratio_to_percentage(self):
        assert ratio_to_percentage(0.5) == pytest.approx(50.0)

    def test_numeric_strings_are_accepted(self):
        assert mps_to_kmh("2") == pytest.approx(7.2)

    def test_invalid_input_returns_none(self):
        assert kelvin_to_celsius(None) is None
        assert radians_to_degrees("north") is None
        assert mps_to_knots({"value": 1}) is None
        assert ratio_to_percentage(True) is None


class TestVelocityConversions:
    """Tests for the conversions that produce GAD hex strings."""

    def test_bare_speed(self):
        assert velocity_any_to_gad_hex(10) == "048000080000"

    def test_velocity_object(self):
        raw = {"speedOverGround": 10.0, "courseOverGround": math.pi / 2}
        assert velocity_any_to_gad_hex(raw) == "0485A0080000"

    def test_unusable_input_encodes_zero_velocity(self):
        assert velocity_any_to_gad_hex("garbage") == "000000080000"
        assert velocity_any_to_gad_hex(None) == "000000080000"

    def test_speed_only(self):
        assert speed_to_gad_hex(10) == "048000080000"

    def test_navigation(self):
        raw = {"speedOverGround": 10.0, "courseOverGround": math.pi / 2, "verticalSpeed": 5.0}
        # vertical speed is ignored for surface vessels
        assert navigation_to_gad_hex(raw) == "0485A0080000"

    def test_navigation_without_speed(self):
        assert navigation_to_gad_hex({"speedOverGround": None}) == "000000080000"
        assert navigation_to_gad_hex(None) == "000000080000"


class TestRegistry:
    """Tests for lookup and application by name."""

    def test_every_kind_is_registered(self):
        assert set(CONVERSIONS) == set(ConversionKind)

    def test_resolve_known_name(self):
        assert resolve_conversion("kelvin_to_celsius") is ConversionKind.KELVIN_TO_CELSIUS
        assert resolve_conversion("3gpp_ts_23032_velocity") is ConversionKind.GPP_VELOCITY

    def test_resolve_unknown_name_raises(self):
        with pytest.raises(UnknownConversion):
            resolve_conversion("foo")

    def test_apply_by_name(self):
        assert apply_conversion(0.5, "ratio_to_percentage") == pytest.approx(50.0)
        assert apply_conversion(10, "3gpp_ts_23032_velocity_from_speed") == "048000080000"

    def test_none_conversion_is_identity(self):
        value = {"latitude": 60.1}
        assert apply_conversion(value, "none") is value

    def test_unknown_name_passes_value_through(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert apply_conversion(5, "foo") == 5
        assert "Unknown conversion type: foo" in caplog.text
