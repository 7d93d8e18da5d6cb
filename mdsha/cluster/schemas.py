"""
Typed node status

Status comes from either the binary status RPC or the admin tool's porcelain
output. Both are validated into the same frozen model; anything that does
not parse cleanly is a ``MalformedResponseError`` rather than a default.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.errors import MalformedResponseError
from . import protocol

UINT64_MAX = 2 ** 64 - 1


class Personality(str, Enum):
    """Role a metadata server process runs as"""
    MASTER = "master"
    SHADOW = "shadow"


class ConnectionState(str, Enum):
    """Connection state reported alongside the personality"""
    RUNNING = "running"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class NodeStatus(BaseModel):
    """One probe result, never reused across probes"""
    model_config = ConfigDict(frozen=True)

    personality: Personality = Field(..., description="Current personality")
    connection: ConnectionState = Field(..., description="Connection state")
    metadata_version: int = Field(..., ge=0, le=UINT64_MAX, description="Applied metadata version")

    @property
    def is_master(self) -> bool:
        return self.personality == Personality.MASTER


_STATUS_CODES = {
    protocol.METADATASERVER_STATUS_MASTER: (Personality.MASTER, ConnectionState.RUNNING),
    protocol.METADATASERVER_STATUS_SHADOW_CONNECTED: (Personality.SHADOW, ConnectionState.CONNECTED),
    protocol.METADATASERVER_STATUS_SHADOW_DISCONNECTED: (Personality.SHADOW, ConnectionState.DISCONNECTED),
}


def status_from_code(status: int, metadata_version: int) -> NodeStatus:
    """Translate the status RPC's code into a NodeStatus"""
    try:
        personality, connection = _STATUS_CODES[status]
    except KeyError:
        raise MalformedResponseError(f"unknown metadata server status code {status}") from None
    return NodeStatus(personality=personality, connection=connection, metadata_version=metadata_version)


def parse_porcelain(line: str) -> NodeStatus:
    """Parse ``personality<TAB>connection-state<TAB>metadata-version``"""
    fields = line.rstrip("\r\n").split("\t")
    if len(fields) != 3:
        raise MalformedResponseError(f"expected 3 tab-separated fields, got {len(fields)}: {line!r}")
    personality, connection, version = fields
    if not (version.isascii() and version.isdigit()):
        raise MalformedResponseError(f"metadata version is not a non-negative integer: {version!r}")
    try:
        return NodeStatus(personality=personality, connection=connection, metadata_version=int(version))
    except ValidationError as e:
        raise MalformedResponseError(f"invalid porcelain status {line!r}: {e}") from e
