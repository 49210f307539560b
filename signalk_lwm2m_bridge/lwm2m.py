"""
Controller for the external LwM2M client process.

The client (a Wakaama build) reads one textual command per line on stdin:

    change /<objectId>/<instanceId>/<resourceId> <value>
    update <serverId>
    ls
    quit

Delivery is fire-and-forget: commands issued before the client reports
ready are dropped with a warning.
"""

import asyncio
import json
import logging
import shlex
from typing import Any, List, Optional

from .constants import (
    LWM2M_MAX_WRITE_BUFFER,
    LWM2M_QUIT_GRACE_PERIOD,
    LWM2M_READ_CHUNK_SIZE,
    LWM2M_READY_MARKERS,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def format_value(value: Any) -> str:
    """
    Render a resource value for the client command line.

    Example:
        >>> format_value(True), format_value(12.0), format_value(60.15)
        ('true', '12', '60.15')
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        text = repr(value)
        return text[:-2] if text.endswith(".0") else text
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    # one command per line
    return " ".join(str(value).splitlines())


def format_change_command(object_id: int, instance_id: int, resource_id: int, value: Any) -> str:
    return f"change /{object_id}/{instance_id}/{resource_id} {format_value(value)}"


class LwM2MController:
    """
    Spawns the LwM2M client and writes commands to its stdin.

    Any object exposing ``update_object_resource(object_id, instance_id,
    resource_id, value)`` can stand in for it as the dispatcher's sink.
    """

    def __init__(self, client_path: str, client_options: str = "", args: Optional[List[str]] = None):
        self.client_path = client_path
        self.args = list(args) if args else shlex.split(client_options)
        self.process: Optional[asyncio.subprocess.Process] = None
        self.ready = False
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        if self.process is not None:
            logger.info("LwM2M client already started")
            return
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.client_path, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ConfigurationError(f"Cannot start LwM2M client {self.client_path}: {e}") from e

        logger.info(f"Started LwM2M client {self.client_path} {' '.join(self.args)} (pid={self.process.pid})")
        self._tasks = [
            asyncio.create_task(self._read_stdout(self.process)),
            asyncio.create_task(self._read_stderr(self.process)),
            asyncio.create_task(self._watch_exit(self.process)),
        ]

    async def _read_stdout(self, process) -> None:
        while True:
            chunk = await process.stdout.read(LWM2M_READ_CHUNK_SIZE)
            if not chunk:
                break
            self._handle_output(chunk.decode("utf-8", "replace"))

    def _handle_output(self, output: str) -> None:
        if output.strip():
            logger.debug(f"LwM2M: {output.strip()}")
        if not self.ready and any(marker in output for marker in LWM2M_READY_MARKERS):
            self.ready = True
            logger.info("LwM2M client ready - will receive Signal K data")

    async def _read_stderr(self, process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            logger.error(f"LwM2M Error: {line.decode('utf-8', 'replace').rstrip()}")

    async def _watch_exit(self, process) -> None:
        code = await process.wait()
        self.ready = False
        logger.info(f"LwM2M client exited with code {code}")

    def send_command(self, command: str) -> bool:
        """
        Single point of contact with the client. Returns False when the
        command was dropped.
        """
        process = self.process
        if process is None or not self.ready or process.stdin is None or process.stdin.is_closing():
            logger.warning(f"LwM2M client not ready, dropping command: {command}")
            return False
        backlog = process.stdin.transport.get_write_buffer_size()
        if backlog > LWM2M_MAX_WRITE_BUFFER:
            logger.warning(f"LwM2M client not reading stdin ({backlog} bytes queued), dropping command: {command}")
            return False
        process.stdin.write((command + "\n").encode("utf-8"))
        return True

    def update_object_resource(self, object_id: int, instance_id: int, resource_id: int, value: Any) -> bool:
        return self.send_command(format_change_command(object_id, instance_id, resource_id, value))

    def list_objects(self) -> bool:
        return self.send_command("ls")

    def trigger_update(self, server_id: int) -> bool:
        return self.send_command(f"update {server_id}")

    async def stop(self) -> None:
        process = self.process
        if process is None:
            return
        self.send_command("quit")
        try:
            await asyncio.wait_for(process.wait(), timeout=LWM2M_QUIT_GRACE_PERIOD)
        except asyncio.TimeoutError:
            logger.warning("LwM2M client did not quit in time, sending SIGTERM")
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            await process.wait()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.process = None
        self.ready = False
