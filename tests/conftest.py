"""Shared fakes: a recording command sink and a scripted WebSocket server."""

import asyncio
import json

import pytest

from signalk_lwm2m_bridge.lwm2m import format_change_command
from signalk_lwm2m_bridge.mandatory import MandatoryResourceCache, MandatoryResourceInfo
from signalk_lwm2m_bridge.mapping import MappingTable


class RecordingSink:
    """Stands in for the LwM2M client; keeps every command it is given."""

    def __init__(self, fail_first: int = 0):
        self.calls = []
        self.commands = []
        self._fail_first = fail_first

    def update_object_resource(self, object_id, instance_id, resource_id, value):
        if self._fail_first > 0:
            self._fail_first -= 1
            raise RuntimeError("sink failure")
        self.calls.append((object_id, instance_id, resource_id, value))
        self.commands.append(format_change_command(object_id, instance_id, resource_id, value))
        return True


class FakeWebSocket:
    """Yields scripted frames; with hold_open it then blocks until closed."""

    def __init__(self, messages=(), hold_open=False):
        self.sent = []
        self.closed = False
        self._messages = list(messages)
        self._hold_open = hold_open
        self._closed_event = asyncio.Event()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self._closed_event.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        if self._hold_open:
            await self._closed_event.wait()


class _FakeConnection:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, *exc):
        if isinstance(self.outcome, FakeWebSocket):
            self.outcome.closed = True
        return False


class FakeConnector:
    """Replacement for websockets.connect; each call consumes one outcome."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        outcome = self.outcomes.pop(0) if self.outcomes else ConnectionRefusedError("connection refused")
        return _FakeConnection(outcome)


def delta(*pairs):
    return {
        "context": "vessels.self",
        "updates": [{
            "source": {"label": "test"},
            "timestamp": "2024-01-01T00:00:00.000Z",
            "values": [{"path": p, "value": v} for p, v in pairs],
        }],
    }


def sample_mapping_document():
    return {
        "version": "1.0",
        "description": "test mappings",
        "mappings": [
            {
                "signalkPath": "notifications.*",
                "object_id": 3336,
                "template_mapping": True,
                "instance_mapping": {"mob": 0, "fire": 1},
                "resources": {
                    "5750": "uuid",
                    "5518": "timestamp",
                    "6051": "position.latitude",
                    "6052": "position.longitude",
                },
                "period": 0,
                "policy": "instant",
            },
            {
                "signalkPath": "environment.water.temperature",
                "object_id": 3303, "instance_id": 0, "resource_id": 5700,
                "conversion": "kelvin_to_celsius",
                "period": 5000,
            },
            {
                "signalkPath": "environment.outside.humidity",
                "object_id": 3304, "instance_id": 0, "resource_id": 5700,
                "conversion": "ratio_to_percentage",
            },
            {"signalkPath": "navigation.position"},
            {
                "signalkPath": "navigation.speedOverGround",
                "object_id": 6, "instance_id": 0, "resource_id": 6,
                "conversion": "meters_per_second_to_kmh",
            },
            {"signalkPath": "navigation.courseOverGroundTrue"},
            {
                "signalkPath": "helpers.3gpp_ts_23032_velocity",
                "object_id": 6, "instance_id": 0, "resource_id": 4,
            },
        ],
    }


@pytest.fixture
def mapping():
    return MappingTable.from_dict(sample_mapping_document())


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def mandatory_cache():
    return MandatoryResourceCache.from_objects({
        "3336": MandatoryResourceInfo("3336", "Location", ("6051", "6052")),
        "3303": MandatoryResourceInfo("3303", "Temperature", ("5700",)),
        "3304": MandatoryResourceInfo("3304", "Humidity", ("5700", "5701")),
    })
