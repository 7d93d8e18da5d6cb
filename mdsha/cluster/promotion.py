"""
Promotion client

Tells a shadow to become master and then checks that it actually did. A
node answering OK has only *attempted* the transition; the follow-up probe
is what makes the promotion count.
"""

import logging
from typing import Optional

from ..core.errors import RejectedError, UnauthorizedError, VerificationFailedError, WrongSecretError
from ..core.metrics import AGENT_PROMOTIONS
from . import protocol
from .auth import AuthChannel
from .prober import RpcStatusProber, StatusProber

logger = logging.getLogger(__name__)


class PromotionClient:
    """authenticate -> become master -> verify"""

    def __init__(self, host: str, port: int, timeout: float = 5.0,
                 auth: Optional[AuthChannel] = None, prober: Optional[StatusProber] = None):
        self.host = host
        self.port = port
        self.auth = auth or AuthChannel(host, port, timeout)
        self.prober = prober or RpcStatusProber(host, port, timeout)

    async def promote(self, secret: str):
        address = f"{self.host}:{self.port}"
        logger.info(f"Promoting metadata server {address}")

        try:
            session = await self.auth.authenticate(secret)
        except WrongSecretError as e:
            AGENT_PROMOTIONS.labels(outcome="unauthorized").inc()
            raise UnauthorizedError(str(e)) from e

        async with session:
            status = await session.command(
                protocol.build_become_master(), protocol.MATOCL_ADMIN_BECOME_MASTER
            )
        if status != protocol.STATUS_OK:
            AGENT_PROMOTIONS.labels(outcome="rejected").inc()
            logger.error(f"{address} refused to become master: {protocol.status_name(status)}")
            raise RejectedError(status, f"{address} rejected promotion: {protocol.status_name(status)}")

        node_status = await self.prober.probe()
        if not node_status.is_master:
            AGENT_PROMOTIONS.labels(outcome="verification_failed").inc()
            logger.critical(
                f"{address} accepted become-master but still reports {node_status.personality.value}"
            )
            raise VerificationFailedError(
                f"{address} claimed success but reports personality {node_status.personality.value}"
            )

        AGENT_PROMOTIONS.labels(outcome="success").inc()
        logger.info(f"{address} is now master at metadata version {node_status.metadata_version}")
