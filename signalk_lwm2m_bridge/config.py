"""
Logging setup and configuration loading.

Configuration is layered: built-in defaults, then the JSON system config
file (``config/default.json``), then environment variables (optionally read
from a ``.env`` file). Example:

    export SIGNALK_SERVER="rpi.local:3000"
    export LOG_LEVEL=DEBUG
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .constants import (
    DEFAULT_LWM2M_CLIENT_OPTIONS,
    DEFAULT_LWM2M_CLIENT_PATH,
    DEFAULT_MANDATORY_CACHE_FILE,
    DEFAULT_MAPPING_CONFIG,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY_MS,
    DEFAULT_SCHEMA_DIR,
    DEFAULT_SIGNALK_SERVER,
    DEFAULT_STATUS_LOG_INTERVAL,
    DEFAULT_SYSTEM_CONFIG,
    SIGNALK_STREAM_PATH,
)
from .errors import ConfigurationError
from .mandatory import ValidationPolicy
from .mapping import SubscriptionSettings

logger = logging.getLogger(__name__)


# ===================== LOGGING CONFIGURATION =====================
def setup_logging():
    """Configure logging system with appropriate handlers and formatters."""
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    # File handler (optional, only if LOG_FILE is set)
    handlers = [console_handler]
    log_file = os.getenv("LOG_FILE")
    if log_file:
        try:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            print(f"Warning: Could not create log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True
    )

    bridge_logger = logging.getLogger("signalk_lwm2m_bridge")
    bridge_logger.setLevel(log_level)
    return bridge_logger


# ===================== CONFIGURATION =====================
@dataclass(frozen=True)
class BridgeConfig:
    signalk_server: str = DEFAULT_SIGNALK_SERVER
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY_MS / 1000.0  # seconds
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    subscription: SubscriptionSettings = SubscriptionSettings()
    lwm2m_client_path: str = DEFAULT_LWM2M_CLIENT_PATH
    lwm2m_client_options: str = DEFAULT_LWM2M_CLIENT_OPTIONS
    mapping_config: Path = Path(DEFAULT_MAPPING_CONFIG)
    schema_dir: Path = Path(DEFAULT_SCHEMA_DIR)
    mandatory_cache_file: Path = Path(DEFAULT_MANDATORY_CACHE_FILE)
    single_resource_policy: ValidationPolicy = ValidationPolicy.ADVISORY
    template_policy: ValidationPolicy = ValidationPolicy.BLOCKING
    status_log_interval: float = DEFAULT_STATUS_LOG_INTERVAL
    debug_messages: bool = False

    @property
    def stream_url(self) -> str:
        return f"ws://{self.signalk_server}{SIGNALK_STREAM_PATH}"


def _section(document: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = document.get(name, {})
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"'{name}' section must be an object")
    return value


def _int(value: Any, name: str, minimum: int = 0) -> int:
    try:
        if isinstance(value, bool):
            raise ValueError("boolean")
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
    if result < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {result}")
    return result


def _float(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if result <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {result}")
    return result


def _policy(value: Any, name: str) -> ValidationPolicy:
    try:
        return ValidationPolicy(str(value).lower())
    except ValueError:
        choices = ", ".join(p.value for p in ValidationPolicy)
        raise ConfigurationError(f"{name} must be one of {choices}, got {value!r}") from None


def _flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def read_system_config(path: Path, required: bool) -> Mapping[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"System config not found: {path}")
        logger.warning(f"System config {path} not found, using defaults")
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            document = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load system config from {path}: {e}") from e
    if not isinstance(document, Mapping):
        raise ConfigurationError(f"System config {path} must be a JSON object")
    return document


def load_config(config_path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """
    Build the effective configuration.

    Args:
        config_path: system config file; falls back to $BRIDGE_CONFIG, then
            config/default.json (which may be absent)
        env: environment mapping, os.environ when omitted

    Raises:
        ConfigurationError: unreadable file or invalid value
    """
    if env is None:
        load_dotenv(override=False)
        env = os.environ

    explicit = config_path or env.get("BRIDGE_CONFIG")
    document = read_system_config(Path(explicit or DEFAULT_SYSTEM_CONFIG), required=bool(explicit))

    signalk = _section(document, "signalk")
    lwm2m = _section(document, "lwm2m")
    validation = _section(document, "validation")
    files = _section(document, "files")
    subscription = signalk.get("subscription", {})
    if not isinstance(subscription, Mapping):
        raise ConfigurationError("'signalk.subscription' section must be an object")

    defaults = SubscriptionSettings()
    settings = SubscriptionSettings(
        period=_int(subscription.get("period", defaults.period), "signalk.subscription.period"),
        format=str(subscription.get("format", defaults.format)),
        policy=str(subscription.get("policy", defaults.policy)),
        min_period=_int(subscription.get("minPeriod", defaults.min_period), "signalk.subscription.minPeriod"),
    )

    reconnect_ms = env.get("RECONNECT_DELAY", signalk.get("reconnectDelay", DEFAULT_RECONNECT_DELAY_MS))
    max_attempts = env.get("MAX_RECONNECT_ATTEMPTS", signalk.get("maxReconnectAttempts", DEFAULT_MAX_RECONNECT_ATTEMPTS))

    server = env.get("SIGNALK_SERVER", signalk.get("server", DEFAULT_SIGNALK_SERVER))
    if not isinstance(server, str) or not server.strip():
        raise ConfigurationError("signalk.server must be a non-empty 'host:port' string")

    return BridgeConfig(
        signalk_server=server.strip(),
        reconnect_delay=_int(reconnect_ms, "reconnectDelay") / 1000.0,
        max_reconnect_attempts=_int(max_attempts, "maxReconnectAttempts"),
        subscription=settings,
        lwm2m_client_path=str(env.get("LWM2M_CLIENT_PATH", lwm2m.get("clientPath", DEFAULT_LWM2M_CLIENT_PATH))),
        lwm2m_client_options=str(env.get("LWM2M_CLIENT_OPTIONS", lwm2m.get("clientOptions", DEFAULT_LWM2M_CLIENT_OPTIONS))),
        mapping_config=Path(env.get("MAPPING_CONFIG", files.get("mapping", DEFAULT_MAPPING_CONFIG))),
        schema_dir=Path(env.get("SCHEMA_DIR", files.get("schemaDir", DEFAULT_SCHEMA_DIR))),
        mandatory_cache_file=Path(env.get("MANDATORY_CACHE_FILE", files.get("mandatoryCache", DEFAULT_MANDATORY_CACHE_FILE))),
        single_resource_policy=_policy(
            validation.get("singleResourcePolicy", ValidationPolicy.ADVISORY.value), "validation.singleResourcePolicy"
        ),
        template_policy=_policy(
            validation.get("templatePolicy", ValidationPolicy.BLOCKING.value), "validation.templatePolicy"
        ),
        status_log_interval=_float(
            env.get("STATUS_LOG_INTERVAL", DEFAULT_STATUS_LOG_INTERVAL), "STATUS_LOG_INTERVAL"
        ),
        debug_messages=_flag(env.get("DEBUG_SIGNALK_MESSAGES", "false")),
    )


def log_config(config: BridgeConfig) -> None:
    logger.info("=" * 60)
    logger.info("Signal K to LwM2M Bridge Configuration")
    logger.info("=" * 60)
    logger.info(f"Signal K stream: {config.stream_url}")
    logger.info(f"Reconnect: every {config.reconnect_delay:g}s, max {config.max_reconnect_attempts} attempts")
    logger.info(f"LwM2M client: {config.lwm2m_client_path} {config.lwm2m_client_options}")
    logger.info(f"Mapping config: {config.mapping_config}")
    logger.info(f"Mandatory cache: {config.mandatory_cache_file} (schemas in {config.schema_dir})")
    logger.info(
        f"Validation: single resource={config.single_resource_policy.value}, "
        f"template={config.template_policy.value}"
    )
    logger.info(f"Debug Signal K Messages: {config.debug_messages}")
    logger.info("=" * 60)
