#!/usr/bin/env python3

"""
Constants for Signal K to LwM2M Bridge
Centralized configuration values and magic numbers.

Part of the Signal K to LwM2M Bridge project.
"""

# =============================================================================
# SIGNAL K CONNECTION DEFAULTS
# =============================================================================

DEFAULT_SIGNALK_SERVER = "localhost:3000"      # host:port of the Signal K server
SIGNALK_STREAM_PATH = "/signalk/v1/stream?subscribe=none"
SIGNALK_SELF_CONTEXT = "vessels.self"
DEFAULT_RECONNECT_DELAY_MS = 5000              # Delay between reconnect attempts
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10            # Consecutive failures before giving up
WS_OPEN_TIMEOUT = 4                            # Handshake timeout (seconds)
SUBSCRIBE_SETTLE_DELAY = 0.1                   # Pause between unsubscribe-all and subscribe


# =============================================================================
# SUBSCRIPTION DEFAULTS
# =============================================================================

DEFAULT_SUBSCRIPTION_PERIOD = 1000             # ms
DEFAULT_SUBSCRIPTION_FORMAT = "delta"
DEFAULT_SUBSCRIPTION_POLICY = "ideal"
DEFAULT_SUBSCRIPTION_MIN_PERIOD = 200          # ms


# =============================================================================
# LWM2M CLIENT DEFAULTS
# =============================================================================

DEFAULT_LWM2M_CLIENT_PATH = "/home/pi/wakaama/my-client-project/udp/build/my-lwm2m-client"
DEFAULT_LWM2M_CLIENT_OPTIONS = "-h localhost -p 5683 -4"
LWM2M_READY_MARKERS = ("STATE_READY", "> ")
LWM2M_QUIT_GRACE_PERIOD = 2.0                  # seconds before SIGTERM after 'quit'
LWM2M_READ_CHUNK_SIZE = 1024
LWM2M_MAX_WRITE_BUFFER = 64 * 1024             # bytes queued on the client stdin before commands are dropped


# =============================================================================
# FILES
# =============================================================================

DEFAULT_SYSTEM_CONFIG = "config/default.json"
DEFAULT_MAPPING_CONFIG = "config/signalk-lwm2m-mapping.json"
DEFAULT_SCHEMA_DIR = "config"
DEFAULT_MANDATORY_CACHE_FILE = "config/mandatory-resources.json"
OBJECT_SCHEMA_PATTERN = r"^lwm2m-object-(\d+)\.xml$"
MANDATORY_CACHE_VERSION = "1.0"


# =============================================================================
# STATUS
# =============================================================================

DEFAULT_STATUS_LOG_INTERVAL = 30.0             # seconds


# =============================================================================
# MAPPING
# =============================================================================

HELPER_PATH_PREFIX = "helpers."
TEMPLATE_WILDCARD_SUFFIX = ".*"
TEMPLATE_IDENTIFIER_SENTINEL = "uuid"          # extraction path that yields the occurrence id

# Objects whose notifications must never be blocked by a missing position:
# object id -> (latitude resource id, longitude resource id)
EMERGENCY_COORDINATE_RESOURCES = {
    3336: ("6051", "6052"),
}
FALLBACK_LATITUDE = 0.0                        # Equator
FALLBACK_LONGITUDE = 0.0                       # Prime Meridian


# =============================================================================
# UNIT CONVERSION FACTORS
# =============================================================================

KELVIN_OFFSET = 273.15
MPS_TO_KTS = 1.94384
MPS_TO_KMH = 3.6


# =============================================================================
# 3GPP TS 23.032 VELOCITY FIELD LIMITS
# =============================================================================

GAD_HORIZONTAL_SPEED_MAX = 2047                # 11 bits, km/h
GAD_BEARING_MAX = 359                          # 9 bits, degrees (360-511 invalid)
GAD_VERTICAL_SPEED_MAX = 255                   # 8 bits, km/h
GAD_UNCERTAINTY_MAX = 255                      # 8 bits, km/h
GAD_VELOCITY_LENGTH = 6                        # bytes (45 bits used, 3 padding)
