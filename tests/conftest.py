"""
Shared pytest fixtures for mdsha tests.

Provides an in-process fake metadata server speaking the control protocol,
plus scripted fakes for the prober, the server process and the retry sleep so
the role controller can be driven without real time delays.
"""

import asyncio
import hmac
import os
import struct
from pathlib import Path
from typing import List, Optional, Union

import pytest

from mdsha.cluster import protocol
from mdsha.cluster.prober import StatusProber
from mdsha.cluster.schemas import ConnectionState, NodeStatus, Personality
from mdsha.core.utils.security import challenge_digest
from mdsha.failover.controller import RetryPolicy, RoleController
from mdsha.failover.overlay import ConfigOverlay
from mdsha.failover.process import MetadataServerProcess
from mdsha.failover.scoring import RecordingScoreReporter

BASE_CONFIG = """\
# metadata server configuration
WORKING_USER = mfs
WORKING_GROUP = mfs
PERSONALITY = ha-cluster-managed
DATA_PATH = /var/lib/mfs
MATOCL_LISTEN_PORT = 9421
"""

SECRET = "s3cret"


def verify_digest(challenge: bytes, secret: str, digest: bytes) -> bool:
    return hmac.compare_digest(challenge_digest(challenge, secret), digest)


def node_status(personality: str, connection: str, version: int) -> NodeStatus:
    return NodeStatus(
        personality=Personality(personality),
        connection=ConnectionState(connection),
        metadata_version=version,
    )


# =============================================================================
# Fake metadata server
# =============================================================================


class FakeMetadataServer:
    """Answers status, admin registration and become-master requests"""

    def __init__(self, secret: str = SECRET):
        self.secret = secret
        self.status_code = protocol.METADATASERVER_STATUS_SHADOW_CONNECTED
        self.metadata_version = 42
        self.become_master_status = protocol.STATUS_OK
        self.accept_promotion = True
        self.send_nop = False
        self.corrupt_message_id = False
        self.become_master_calls = 0
        self.status_calls = 0
        self.port: Optional[int] = None
        self._server = None

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        self._server.close()
        await self._server.wait_closed()

    def _reply(self, writer, message_type: int, body: bytes = b""):
        writer.write(protocol.build_packet(message_type, body))

    async def _handle(self, reader, writer):
        challenge = None
        authenticated = False
        try:
            while True:
                header = await reader.readexactly(protocol.HEADER.size)
                message_type, length = protocol.HEADER.unpack(header)
                body = (await reader.readexactly(length))[4:]

                if self.send_nop:
                    writer.write(protocol.HEADER.pack(protocol.ANTOAN_NOP, 0))

                if message_type == protocol.CLTOMA_METADATASERVER_STATUS:
                    self.status_calls += 1
                    (message_id,) = struct.unpack(">I", body)
                    if self.corrupt_message_id:
                        message_id = (message_id + 1) % 2 ** 32
                    self._reply(writer, protocol.MATOCL_METADATASERVER_STATUS,
                                struct.pack(">IBQ", message_id, self.status_code, self.metadata_version))
                elif message_type == protocol.CLTOMA_ADMIN_REGISTER_CHALLENGE:
                    challenge = os.urandom(32)
                    self._reply(writer, protocol.MATOCL_ADMIN_REGISTER_CHALLENGE, challenge)
                elif message_type == protocol.CLTOMA_ADMIN_REGISTER_RESPONSE:
                    authenticated = challenge is not None and verify_digest(challenge, self.secret, body)
                    self._reply(writer, protocol.MATOCL_ADMIN_REGISTER_RESPONSE,
                                bytes([protocol.STATUS_OK if authenticated else 37]))
                elif message_type == protocol.CLTOMA_ADMIN_BECOME_MASTER:
                    self.become_master_calls += 1
                    status = self.become_master_status if authenticated else 1
                    if status == protocol.STATUS_OK and self.accept_promotion:
                        self.status_code = protocol.METADATASERVER_STATUS_MASTER
                    self._reply(writer, protocol.MATOCL_ADMIN_BECOME_MASTER, bytes([status]))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest.fixture
async def fake_server():
    server = FakeMetadataServer()
    await server.start()
    yield server
    await server.stop()


# =============================================================================
# Controller fakes
# =============================================================================


class ScriptedProber(StatusProber):
    """Returns queued statuses in order, repeating the last one"""

    def __init__(self, *script: Union[NodeStatus, Exception]):
        self.script: List[Union[NodeStatus, Exception]] = list(script)
        self.calls = 0

    def push(self, *script: Union[NodeStatus, Exception]):
        self.script.extend(script)

    async def _query(self) -> NodeStatus:
        self.calls += 1
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeProcess(MetadataServerProcess):
    """Records lifecycle calls and flips liveness like the real daemon would"""

    def __init__(self, alive: bool = True):
        self.alive = alive
        self.calls: List[str] = []
        self.start_ok = True
        self.stop_ok = True
        self.reload_ok = True
        self.kill_ok = True

    async def is_alive(self) -> bool:
        return self.alive

    async def start(self) -> bool:
        self.calls.append("start")
        if self.start_ok:
            self.alive = True
        return self.start_ok

    async def stop(self) -> bool:
        self.calls.append("stop")
        if self.stop_ok:
            self.alive = False
        return self.stop_ok

    async def reload(self) -> bool:
        self.calls.append("reload")
        return self.reload_ok

    async def kill(self) -> bool:
        self.calls.append("kill")
        if self.kill_ok:
            self.alive = False
        return self.kill_ok


class FakePromotionClient:
    """Records become-master requests; optionally fails with ``error``"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.secrets: List[str] = []

    async def promote(self, secret: str):
        self.secrets.append(secret)
        if self.error is not None:
            raise self.error


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def base_config(tmp_path) -> Path:
    path = tmp_path / "mfsmaster.cfg"
    path.write_text(BASE_CONFIG)
    return path


@pytest.fixture
def overlay(tmp_path, base_config) -> ConfigOverlay:
    return ConfigOverlay(tmp_path / "data" / "mfsmaster-ha.cfg", base_config, lock_timeout=0.5,
                         poll_interval=0.05)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_controller(tmp_path, overlay, sleep):
    def _make(prober: StatusProber, process: Optional[FakeProcess] = None, attempts: int = 3,
              promotion=None, secret: Optional[str] = SECRET):
        return RoleController(
            prober=prober,
            process=process or FakeProcess(alive=True),
            overlay=overlay,
            reporter=RecordingScoreReporter(),
            data_dir=tmp_path / "data",
            retry=RetryPolicy(attempts=attempts, interval=1.0, sleep=sleep),
            node_name="mds-a",
            promotion=promotion if promotion is not None else FakePromotionClient(),
            secret=secret,
        )
    return _make
