"""
Authenticated admin channel

Privileged commands need an admin registration on the connection first:
the client asks for a challenge, answers with a digest of the shared secret
and the challenge, and the node replies with a status. A rejected digest is
a ``WrongSecretError`` and must not be retried with the same secret.
"""

import logging
from typing import Optional

from ..core.errors import MalformedResponseError, MdshaError, WrongSecretError
from ..core.utils.security import challenge_digest
from . import protocol

logger = logging.getLogger(__name__)


class AuthSession:
    """Authenticated connection good for exactly one privileged command"""

    def __init__(self, connection: protocol.Connection):
        self._connection: Optional[protocol.Connection] = connection

    @property
    def used(self) -> bool:
        return self._connection is None

    async def command(self, packet: bytes, expected_type: int) -> int:
        """Send the privileged command and return the node's status code"""
        if self._connection is None:
            raise MdshaError("admin session already used")
        connection, self._connection = self._connection, None
        try:
            payload = await connection.send_and_receive(packet, expected_type)
            return protocol.parse_status(expected_type, payload)
        finally:
            await connection.close()

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "AuthSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class AuthChannel:
    """Opens authenticated sessions to one node"""

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    async def authenticate(self, secret: str) -> AuthSession:
        connection = protocol.Connection(self.host, self.port, self.timeout)
        await connection.open()
        try:
            payload = await connection.send_and_receive(
                protocol.build_register_challenge(), protocol.MATOCL_ADMIN_REGISTER_CHALLENGE
            )
            challenge = protocol.parse_register_challenge(payload)

            payload = await connection.send_and_receive(
                protocol.build_register_response(challenge_digest(challenge, secret)),
                protocol.MATOCL_ADMIN_REGISTER_RESPONSE,
            )
            status = protocol.parse_status(protocol.MATOCL_ADMIN_REGISTER_RESPONSE, payload)
        except MalformedResponseError as e:
            logger.critical(f"Malformed admin registration reply from {connection.address}: {e}")
            await connection.close()
            raise
        except BaseException:
            await connection.close()
            raise

        if status != protocol.STATUS_OK:
            await connection.close()
            logger.error(f"Admin registration on {connection.address} refused: {protocol.status_name(status)}")
            raise WrongSecretError(f"{connection.address} rejected the admin secret")

        logger.debug(f"Admin session established with {connection.address}")
        return AuthSession(connection)
