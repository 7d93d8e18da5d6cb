"""
Status probing

A prober answers one question, "what does this node say it is right now",
and either returns a fresh NodeStatus or raises. ``UnreachableError`` means
the process or network is gone; ``MalformedResponseError`` means the node
answered but not in a form we understand, which usually indicates a version
mismatch and is logged loudly.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Optional

from ..core.errors import MalformedResponseError, UnreachableError
from ..core.metrics import AGENT_PROBE_FAILURES
from . import protocol
from .schemas import NodeStatus, parse_porcelain, status_from_code

logger = logging.getLogger(__name__)


class StatusProber(ABC):
    """Queries a node's personality, connection state and metadata version"""

    @abstractmethod
    async def _query(self) -> NodeStatus:
        ...

    async def probe(self) -> NodeStatus:
        try:
            return await self._query()
        except UnreachableError:
            AGENT_PROBE_FAILURES.labels(kind="unreachable").inc()
            raise
        except MalformedResponseError as e:
            AGENT_PROBE_FAILURES.labels(kind="malformed").inc()
            logger.critical(f"Malformed status response, protocol mismatch suspected: {e}")
            raise


class RpcStatusProber(StatusProber):
    """Probes over the binary status RPC"""

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    async def _query(self) -> NodeStatus:
        async with protocol.Connection(self.host, self.port, self.timeout) as connection:
            return await self.probe_over(connection)

    async def probe_over(self, connection: protocol.Connection) -> NodeStatus:
        """Probe using an already open connection"""
        message_id = random.getrandbits(32)
        payload = await connection.send_and_receive(
            protocol.build_metadataserver_status(message_id),
            protocol.MATOCL_METADATASERVER_STATUS,
        )
        reply_id, status, metadata_version = protocol.parse_metadataserver_status(payload)
        if reply_id != message_id:
            raise MalformedResponseError(f"status reply id {reply_id} does not match request {message_id}")
        node_status = status_from_code(status, metadata_version)
        logger.debug(f"Probed {connection.address}: {node_status}")
        return node_status


class PorcelainStatusProber(StatusProber):
    """Probes by running the admin tool's porcelain status query"""

    def __init__(self, host: str, port: int, admin_binary: str = "lizardfs-admin", timeout: float = 5.0):
        self.host = host
        self.port = port
        self.admin_binary = admin_binary
        self.timeout = timeout

    async def _query(self) -> NodeStatus:
        command = [self.admin_binary, "metadataserver-status", "--porcelain", self.host, str(self.port)]
        output = await self._run(command)
        lines = [line for line in output.splitlines() if line.strip()]
        if len(lines) != 1:
            raise MalformedResponseError(f"expected one status line from {self.admin_binary}, got {len(lines)}")
        return parse_porcelain(lines[0])

    async def _run(self, command) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise UnreachableError(f"cannot run {command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise UnreachableError(f"{command[0]} timed out after {self.timeout}s") from e

        if process.returncode != 0:
            raise UnreachableError(
                f"{command[0]} exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")


def create_prober(mode: str, host: str, port: int, timeout: float,
                  admin_binary: Optional[str] = None) -> StatusProber:
    if mode == "porcelain":
        return PorcelainStatusProber(host, port, admin_binary or "lizardfs-admin", timeout)
    return RpcStatusProber(host, port, timeout)
