"""
Metadata server control protocol

Only the messages needed to query status and to promote a shadow are
implemented. Every packet is ``type:u32, length:u32, payload`` in network
byte order; payloads start with a ``version:u32`` that is always zero for
the messages below.
"""

import asyncio
import logging
import struct
from typing import Tuple

from ..core.errors import MalformedResponseError, UnreachableError

logger = logging.getLogger(__name__)

HEADER = struct.Struct(">II")
VERSION = struct.Struct(">I")
MAX_PACKET_SIZE = 1024 * 1024

# Message types
ANTOAN_NOP = 0
CLTOMA_METADATASERVER_STATUS = 1500
MATOCL_METADATASERVER_STATUS = 1501
CLTOMA_ADMIN_REGISTER_CHALLENGE = 1502
MATOCL_ADMIN_REGISTER_CHALLENGE = 1503
CLTOMA_ADMIN_REGISTER_RESPONSE = 1504
MATOCL_ADMIN_REGISTER_RESPONSE = 1505
CLTOMA_ADMIN_BECOME_MASTER = 1506
MATOCL_ADMIN_BECOME_MASTER = 1507

# Metadata server status codes
METADATASERVER_STATUS_MASTER = 1
METADATASERVER_STATUS_SHADOW_CONNECTED = 2
METADATASERVER_STATUS_SHADOW_DISCONNECTED = 3

STATUS_OK = 0

STATUS_NAMES = {
    0: "OK",
    1: "Operation not permitted",
    3: "No such file or directory",
    4: "Permission denied",
    6: "Invalid argument",
    11: "Resource locked",
    16: "Operation not completed",
    18: "Operation not started",
    19: "Wrong version",
    26: "Can't connect",
    28: "Disconnected",
    33: "Read-only file system",
    36: "Password is needed",
    37: "Bad password",
}


def status_name(status: int) -> str:
    return STATUS_NAMES.get(status, f"Unknown status ({status})")


def build_packet(message_type: int, body: bytes = b"") -> bytes:
    payload = VERSION.pack(0) + body
    return HEADER.pack(message_type, len(payload)) + payload


def build_metadataserver_status(message_id: int) -> bytes:
    return build_packet(CLTOMA_METADATASERVER_STATUS, struct.pack(">I", message_id))


def build_register_challenge() -> bytes:
    return build_packet(CLTOMA_ADMIN_REGISTER_CHALLENGE)


def build_register_response(digest: bytes) -> bytes:
    return build_packet(CLTOMA_ADMIN_REGISTER_RESPONSE, digest)


def build_become_master() -> bytes:
    return build_packet(CLTOMA_ADMIN_BECOME_MASTER)


def _strip_version(message_type: int, payload: bytes) -> bytes:
    if len(payload) < VERSION.size:
        raise MalformedResponseError(f"packet {message_type} too short for version field")
    (version,) = VERSION.unpack_from(payload)
    if version != 0:
        raise MalformedResponseError(f"packet {message_type} has unsupported version {version}")
    return payload[VERSION.size:]


def parse_metadataserver_status(payload: bytes) -> Tuple[int, int, int]:
    """Return ``(message_id, status, metadata_version)``"""
    body = _strip_version(MATOCL_METADATASERVER_STATUS, payload)
    if len(body) != 13:
        raise MalformedResponseError(f"metadataserver status body has {len(body)} bytes, expected 13")
    return struct.unpack(">IBQ", body)


def parse_register_challenge(payload: bytes) -> bytes:
    body = _strip_version(MATOCL_ADMIN_REGISTER_CHALLENGE, payload)
    if len(body) != 32:
        raise MalformedResponseError(f"challenge has {len(body)} bytes, expected 32")
    return body


def parse_status(message_type: int, payload: bytes) -> int:
    body = _strip_version(message_type, payload)
    if len(body) != 1:
        raise MalformedResponseError(f"status reply {message_type} has {len(body)} bytes, expected 1")
    return body[0]


class Connection:
    """One TCP connection to a node's control endpoint, every call bounded by ``timeout``"""

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader = None
        self._writer = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    async def open(self):
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout
            )
        except asyncio.TimeoutError as e:
            raise UnreachableError(f"timed out connecting to {self.address}") from e
        except OSError as e:
            raise UnreachableError(f"cannot connect to {self.address}: {e}") from e

    async def close(self):
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            pass
        self._writer = None
        self._reader = None

    async def __aenter__(self) -> "Connection":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def send_and_receive(self, packet: bytes, expected_type: int) -> bytes:
        """Send a packet and return the payload of the first reply of ``expected_type``"""
        if self._writer is None:
            raise UnreachableError(f"connection to {self.address} is not open")
        try:
            self._writer.write(packet)
            await asyncio.wait_for(self._writer.drain(), self.timeout)
            while True:
                header = await asyncio.wait_for(self._reader.readexactly(HEADER.size), self.timeout)
                message_type, length = HEADER.unpack(header)
                if length > MAX_PACKET_SIZE:
                    raise MalformedResponseError(f"packet {message_type} from {self.address} is {length} bytes")
                payload = await asyncio.wait_for(self._reader.readexactly(length), self.timeout)
                if message_type == ANTOAN_NOP:
                    continue
                if message_type != expected_type:
                    raise MalformedResponseError(
                        f"expected packet {expected_type} from {self.address}, got {message_type}"
                    )
                return payload
        except asyncio.TimeoutError as e:
            raise UnreachableError(f"timed out waiting for {self.address}") from e
        except asyncio.IncompleteReadError as e:
            raise UnreachableError(f"{self.address} closed the connection") from e
        except OSError as e:
            raise UnreachableError(f"connection to {self.address} failed: {e}") from e
