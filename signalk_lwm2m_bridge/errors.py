"""
Exception hierarchy for the bridge.

Transport problems drive the reconnect sequence, configuration problems stop
startup, and per-message problems are logged and isolated to that message.
"""


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConnectionFailure(BridgeError):
    """The upstream Signal K connection could not be opened or was lost."""


class ConfigurationError(BridgeError):
    """Missing or invalid system/mapping configuration detected at startup."""


class ValidationFailure(BridgeError):
    """An update lacks resources that its LwM2M object declares mandatory."""

    def __init__(self, object_id: int, object_name: str, missing):
        self.object_id = object_id
        self.object_name = object_name
        self.missing = list(missing)
        super().__init__(
            f"{object_name} (Object {object_id}) missing mandatory resources: {', '.join(self.missing)}"
        )


class UnknownConversion(BridgeError):
    """A mapping names a conversion that is not registered."""


class MalformedMessage(BridgeError):
    """An inbound stream message could not be decoded."""
