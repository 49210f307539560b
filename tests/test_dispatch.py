"""
Tests for the dispatch engine.

This module feeds Signal K deltas through the engine and checks the LwM2M
commands that reach the sink for exact, template and helper mappings.
"""

import logging
import math

import pytest
from signalk_lwm2m_bridge.dispatch import (
    DispatchEngine,
    ensure_emergency_coordinates,
    iter_path_values,
)
from signalk_lwm2m_bridge.mandatory import ValidationPolicy
from signalk_lwm2m_bridge.mapping import MappingTable

from tests.conftest import RecordingSink, delta, sample_mapping_document

MOB_ALARM = {
    "state": "emergency",
    "message": "Person overboard",
    "timestamp": "2024-01-01T12:00:00.000Z",
    "position": {"latitude": 60.1, "longitude": 24.9},
}


@pytest.fixture
def engine(mapping, mandatory_cache, sink):
    return DispatchEngine(mapping, mandatory_cache, sink)


class TestIterPathValues:
    """Tests for flattening deltas."""

    def test_order_is_preserved(self):
        message = {"updates": [
            {"values": [{"path": "a", "value": 1}, {"path": "b", "value": 2}]},
            {"values": [{"path": "c", "value": 3}]},
        ]}
        assert [tuple(pv) for pv in iter_path_values(message)] == [("a", 1), ("b", 2), ("c", 3)]

    def test_non_delta_messages_yield_nothing(self):
        hello = {"name": "signalk-server", "version": "2.0.0", "self": "vessels.urn:mrn:imo:mmsi:0"}
        assert list(iter_path_values(hello)) == []

    def test_malformed_entries_skipped(self):
        message = {"updates": [None, {"values": "x"}, {"values": [{"value": 1}, {"path": "a", "value": 2}]}]}
        assert [pv.path for pv in iter_path_values(message)] == ["a"]


class TestEmergencyCoordinates:
    """Tests for the notification position fallback."""

    def test_fills_missing(self):
        filled, changed = ensure_emergency_coordinates({"5750": "id"}, "6051", "6052")
        assert changed
        assert filled == {"5750": "id", "6051": 0.0, "6052": 0.0}

    def test_keeps_existing(self):
        present = {"6051": 60.1, "6052": 24.9}
        filled, changed = ensure_emergency_coordinates(present, "6051", "6052")
        assert not changed
        assert filled == present


class TestSingleResource:
    """Tests for exact path mappings."""

    def test_conversion_applied(self, engine, sink):
        engine.handle_delta(delta(("environment.water.temperature", 293.15)))
        assert len(sink.calls) == 1
        object_id, instance_id, resource_id, value = sink.calls[0]
        assert (object_id, instance_id, resource_id) == (3303, 0, 5700)
        assert value == pytest.approx(20.0)

    def test_collect_only_sends_nothing(self, engine, sink):
        position = {"latitude": 60.1, "longitude": 24.9}
        engine.handle_delta(delta(("navigation.position", position)))
        assert sink.calls == []
        assert engine.accumulator.get("navigation.position") == position

    def test_unmapped_path_is_remembered(self, engine, sink):
        engine.handle_delta(delta(("environment.wind.speedApparent", 4.2)))
        assert sink.calls == []
        assert "environment.wind.speedApparent" in engine.accumulator

    def test_values_forwarded_in_order(self, engine, sink):
        engine.handle_delta(delta(
            ("environment.outside.humidity", 0.5),
            ("environment.water.temperature", 283.15),
        ))
        assert [call[0] for call in sink.calls] == [3304, 3303]

    def test_advisory_validation_still_sends(self, engine, sink, caplog):
        with caplog.at_level(logging.WARNING):
            engine.handle_delta(delta(("environment.outside.humidity", 0.5)))
        assert len(sink.calls) == 1
        assert sink.calls[0][3] == pytest.approx(50.0)
        assert "Resource 5701 is mandatory" in caplog.text

    def test_blocking_validation_discards(self, mapping, mandatory_cache, sink):
        engine = DispatchEngine(
            mapping, mandatory_cache, sink, single_resource_policy=ValidationPolicy.BLOCKING
        )
        engine.handle_delta(delta(("environment.outside.humidity", 0.5)))
        assert sink.calls == []
        assert engine.stats.updates_discarded == 1

    def test_failed_conversion_sends_nothing(self, engine, sink):
        engine.handle_delta(delta(("environment.water.temperature", "warm")))
        assert sink.calls == []
        assert engine.stats.updates_discarded == 1

    def test_unknown_conversion_passes_value(self, mandatory_cache, sink, caplog):
        table = MappingTable.from_dict({"mappings": [
            {"signalkPath": "tanks.fuel.0.currentLevel", "object_id": 3305, "instance_id": 0,
             "resource_id": 5700, "conversion": "foo"},
        ]})
        engine = DispatchEngine(table, mandatory_cache, sink)
        with caplog.at_level(logging.WARNING):
            engine.handle_delta(delta(("tanks.fuel.0.currentLevel", 0.75)))
        assert sink.calls == [(3305, 0, 5700, 0.75)]
        assert "Unknown conversion type: foo" in caplog.text


class TestTemplates:
    """Tests for per-occurrence notification mappings."""

    def test_notification_resources(self, engine, sink):
        engine.handle_delta(delta(("notifications.mob.abc-123", MOB_ALARM)))
        assert sink.commands == [
            "change /3336/0/5750 abc-123",
            "change /3336/0/5518 2024-01-01T12:00:00.000Z",
            "change /3336/0/6051 60.1",
            "change /3336/0/6052 24.9",
        ]

    def test_instance_from_notification_type(self, engine, sink):
        engine.handle_delta(delta(("notifications.fire.engine-room", MOB_ALARM)))
        assert {call[1] for call in sink.calls} == {1}

    def test_identifier_keeps_remaining_segments(self, engine, sink):
        engine.handle_delta(delta(("notifications.mob.abc.def", MOB_ALARM)))
        assert sink.calls[0] == (3336, 0, 5750, "abc.def")

    def test_missing_position_uses_fallback(self, engine, sink):
        alarm = {"state": "emergency", "timestamp": "2024-01-01T12:00:00.000Z"}
        engine.handle_delta(delta(("notifications.mob.abc-123", alarm)))
        sent = {call[2]: call[3] for call in sink.calls}
        assert sent[6051] == 0.0
        assert sent[6052] == 0.0
        assert sent[5750] == "abc-123"

    def test_unknown_type_sends_nothing(self, engine, sink):
        engine.handle_delta(delta(("notifications.navigation.anchor", MOB_ALARM)))
        assert sink.calls == []

    def test_path_without_identifier_sends_nothing(self, engine, sink):
        engine.handle_delta(delta(("notifications.mob", MOB_ALARM)))
        assert sink.calls == []

    def test_template_takes_precedence_over_exact(self, mandatory_cache, sink):
        table = MappingTable.from_dict({"mappings": [
            {"signalkPath": "notifications.mob.abc", "object_id": 3303, "instance_id": 0, "resource_id": 5700},
        ] + sample_mapping_document()["mappings"][:1]})
        engine = DispatchEngine(table, mandatory_cache, sink)
        engine.handle_delta(delta(("notifications.mob.abc", MOB_ALARM)))
        assert sink.calls
        assert {call[0] for call in sink.calls} == {3336}

    def test_blocking_discards_whole_update(self, mapping, mandatory_cache, sink):
        engine = DispatchEngine(mapping, mandatory_cache, sink, emergency_coordinates={})
        engine.handle_delta(delta(("notifications.mob.abc-123", {"state": "alarm"})))
        assert sink.calls == []
        assert engine.stats.updates_discarded == 1

    def test_advisory_template_sends_what_it_has(self, mapping, mandatory_cache, sink):
        engine = DispatchEngine(
            mapping, mandatory_cache, sink,
            template_policy=ValidationPolicy.ADVISORY,
            emergency_coordinates={},
        )
        engine.handle_delta(delta(("notifications.mob.abc-123", {"timestamp": "t"})))
        assert sink.commands == ["change /3336/0/5750 abc-123", "change /3336/0/5518 t"]


class TestHelpers:
    """Tests for the derived velocity value."""

    def test_fires_on_speed_alone(self, engine, sink):
        engine.handle_delta(delta(("navigation.speedOverGround", 10.0)))
        assert sink.calls[0] == (6, 0, 4, "048000080000")
        assert sink.calls[1][:3] == (6, 0, 6)
        assert sink.calls[1][3] == pytest.approx(36.0)

    def test_course_update_refires_with_bearing(self, engine, sink):
        engine.handle_delta(delta(("navigation.speedOverGround", 10.0)))
        engine.handle_delta(delta(("navigation.courseOverGroundTrue", math.pi / 2)))
        assert sink.calls[-1] == (6, 0, 4, "0485A0080000")
        assert len(sink.calls) == 3

    def test_course_without_speed_is_insufficient(self, engine, sink):
        engine.handle_delta(delta(("navigation.courseOverGroundTrue", math.pi / 2)))
        assert sink.calls == []

    def test_unrelated_path_does_not_fire(self, engine, sink):
        engine.handle_delta(delta(("navigation.speedOverGround", 10.0)))
        before = len(sink.calls)
        engine.handle_delta(delta(("navigation.position", {"latitude": 1.0, "longitude": 2.0})))
        assert len(sink.calls) == before


class TestErrorIsolation:
    """Tests for per-value failure handling and shutdown."""

    def test_failure_does_not_stop_later_values(self, mapping, mandatory_cache):
        sink = RecordingSink(fail_first=1)
        engine = DispatchEngine(mapping, mandatory_cache, sink)
        engine.handle_delta(delta(
            ("environment.water.temperature", 293.15),
            ("environment.outside.humidity", 0.5),
        ))
        assert [call[0] for call in sink.calls] == [3304]
        assert engine.stats.errors == 1

    def test_closed_engine_ignores_deltas(self, engine, sink):
        engine.close()
        engine.handle_delta(delta(("environment.water.temperature", 293.15)))
        assert engine.closed
        assert sink.calls == []
        assert engine.stats.values_processed == 0

    def test_stats(self, engine):
        engine.handle_delta(delta(
            ("environment.water.temperature", 293.15),
            ("navigation.position", {"latitude": 1.0, "longitude": 2.0}),
        ))
        assert engine.stats.values_processed == 2
        assert engine.stats.commands_sent == 1
