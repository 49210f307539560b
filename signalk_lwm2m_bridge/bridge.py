"""
Signal K to LwM2M Bridge - subscribes to a Signal K server and feeds the
mapped values to an LwM2M client as ``change`` commands.

Startup order: configuration, mapping table, mandatory resource cache,
reachability probe, LwM2M client, stream subscription. Any failure before
the subscription starts aborts the process.
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import List, Optional

from .config import BridgeConfig, load_config, log_config, setup_logging
from .dispatch import DispatchEngine
from .errors import ConfigurationError, ConnectionFailure
from .lwm2m import LwM2MController
from .mandatory import MandatoryResourceCache
from .mapping import MappingTable
from .subscription import ConnectionState, SubscriptionManager

logger = logging.getLogger(__name__)


@dataclass
class BridgeContext:
    """Everything constructed once at startup and shared by the components."""
    config: BridgeConfig
    mapping: MappingTable
    mandatory: MandatoryResourceCache
    controller: LwM2MController

    @classmethod
    def from_config(cls, config: BridgeConfig) -> "BridgeContext":
        mapping = MappingTable.load(config.mapping_config)
        mandatory = MandatoryResourceCache(config.schema_dir, config.mandatory_cache_file)
        mandatory.initialize()
        controller = LwM2MController(config.lwm2m_client_path, config.lwm2m_client_options)
        return cls(config=config, mapping=mapping, mandatory=mandatory, controller=controller)


class SignalKLwM2MBridge:
    def __init__(self, context: BridgeContext, connect=None):
        self.context = context
        config = context.config
        self.dispatch = DispatchEngine(
            context.mapping,
            context.mandatory,
            context.controller,
            single_resource_policy=config.single_resource_policy,
            template_policy=config.template_policy,
            debug_messages=config.debug_messages,
        )
        self.subscription = SubscriptionManager(
            url=config.stream_url,
            subscriptions=context.mapping.subscriptions(config.subscription),
            on_delta=self.dispatch.handle_delta,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            connect=connect,
            debug_messages=config.debug_messages,
        )
        self._status_task: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Future] = None

    @property
    def subscribed_paths(self) -> List[str]:
        return self.subscription.subscribed_paths

    def get_mapping(self) -> MappingTable:
        return self.context.mapping

    def is_connected(self) -> bool:
        return self.subscription.is_connected()

    async def start(self) -> None:
        logger.info("Starting Signal K to LwM2M Bridge...")
        await self.subscription.probe()
        await self.context.controller.start()
        logger.info(f"Will subscribe to {len(self.subscribed_paths)} paths: {self.subscribed_paths}")

    async def run(self) -> ConnectionState:
        """Start, then stream until stopped or reconnect attempts run out."""
        await self.start()
        self._status_task = asyncio.create_task(self._status_loop())
        try:
            return await self.subscription.run()
        finally:
            await self.stop()

    async def _status_loop(self) -> None:
        interval = self.context.config.status_log_interval
        while True:
            await asyncio.sleep(interval)
            if self.is_connected():
                stats = self.dispatch.stats
                logger.info(
                    f"Signal K subscriber active, monitoring {len(self.subscribed_paths)} paths "
                    f"({stats.values_processed} values from {len(self.dispatch.accumulator)} paths, {stats.commands_sent} commands sent)"
                )
            else:
                logger.info(f"Signal K subscriber disconnected (state={self.subscription.state.value})")

    async def stop(self) -> None:
        """Every caller waits for the one shutdown sequence to finish."""
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._shutdown)

    async def _teardown(self) -> None:
        logger.info("Stopping Signal K LwM2M Bridge...")
        self.dispatch.close()
        await self.subscription.stop()
        if self._status_task is not None:
            self._status_task.cancel()
            await asyncio.gather(self._status_task, return_exceptions=True)
        await self.context.controller.stop()
        logger.info("Signal K to LwM2M Bridge stopped")


# ===================== MAIN ORCHESTRATOR =====================
def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="signalk-lwm2m-bridge", description="Signal K to LwM2M Bridge")
    parser.add_argument("--config", help="system config JSON (default: $BRIDGE_CONFIG or config/default.json)")
    parser.add_argument(
        "--generate-cache", action="store_true",
        help="rebuild the mandatory resources cache from the object schemas and exit",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    log_config(config)

    if args.generate_cache:
        cache = MandatoryResourceCache(config.schema_dir, config.mandatory_cache_file)
        cache.regenerate()
        logger.info(f"Mandatory resources cache written ({len(cache)} objects)")
        return 0

    try:
        bridge = SignalKLwM2MBridge(BridgeContext.from_config(config))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, lambda: asyncio.ensure_future(bridge.stop()))
    except (NotImplementedError, RuntimeError):
        pass  # not available on Windows event loops

    try:
        state = await bridge.run()
    except (ConfigurationError, ConnectionFailure) as e:
        logger.error(f"Failed to start Signal K subscriber: {e}")
        await bridge.stop()
        return 1
    return 1 if state is ConnectionState.EXHAUSTED else 0


def cli() -> int:
    setup_logging()
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted, bridge stopped")
        return 0
