"""
Metadata Server Role Controller

State machine behind the resource agent actions. The cluster coordinator
decides *which* node should be master; the controller performs the
mechanical part on this node and reports a promotion score on every
monitor:

- master, running ............................ 1000
- shadow, connected to a master ............... 100
- shadow, still disconnected after waiting .... 5 (has metadata) / 1 (empty)

An empty disconnected shadow still scores 1 so a freshly bootstrapped
cluster always has a promotable candidate.

A shadow holding metadata is promoted over the authenticated admin channel
(become-master, then a verifying probe) before its overlay is switched to
master and reloaded. A shadow that never received metadata (version 0)
cannot be promoted in place; the process is restarted as master instead.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set

from ..cluster.prober import StatusProber, create_prober
from ..cluster.promotion import PromotionClient
from ..cluster.schemas import ConnectionState, NodeStatus, Personality
from ..core.config import AgentConfig
from ..core.errors import (
    ConfigError,
    ConfigurationError,
    InvalidTransitionError,
    MdshaError,
    PromotionFailedError,
    RoleError,
    StartFailedError,
    UnexpectedStatusError,
    UnreachableError,
)
from .overlay import NO_MASTER_HOST, ConfigOverlay
from .process import MetadataServerProcess, MfsmasterProcess
from .scoring import ScoreReporter, create_score_reporter

logger = logging.getLogger(__name__)

SCORE_MASTER = 1000
SCORE_SHADOW_CONNECTED = 100
SCORE_SHADOW_DISCONNECTED = 5
SCORE_SHADOW_EMPTY = 1

METADATA_FILE = "metadata.mfs"
METADATA_BACKUP_FILE = "metadata.mfs.back"
LOCK_MARKER_FILE = "metadata.mfs.lock"
EMPTY_METADATA = "MFSM NEW"

NOTIFY_PRE_PROMOTE = "pre-promote"
NOTIFY_POST_DEMOTE = "post-demote"


class RoleState(Enum):
    """Role of this node as seen by the coordinator"""
    NOT_RUNNING = "not_running"
    RUNNING_MASTER = "running_master"
    RUNNING_SHADOW = "running_shadow"
    FAILED_MASTER = "failed_master"


RUNNING_STATES = {RoleState.RUNNING_MASTER, RoleState.RUNNING_SHADOW}


@dataclass
class MonitorResult:
    """Outcome of evaluating the node once"""
    state: RoleState
    score: Optional[int] = None
    status: Optional[NodeStatus] = None
    degraded: bool = False


@dataclass
class RetryPolicy:
    """Fixed number of attempts spaced by a fixed interval"""
    attempts: int = 10
    interval: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)

    async def pause(self):
        await self.sleep(self.interval)


class RoleController:
    """Drives one metadata server instance through its role transitions"""

    def __init__(self, prober: StatusProber, process: MetadataServerProcess,
                 overlay: ConfigOverlay, reporter: ScoreReporter, data_dir: Path,
                 retry: Optional[RetryPolicy] = None, node_name: Optional[str] = None,
                 user: Optional[str] = None, group: Optional[str] = None,
                 promotion: Optional[PromotionClient] = None, secret: Optional[str] = None):
        self.prober = prober
        self.process = process
        self.overlay = overlay
        self.reporter = reporter
        self.data_dir = Path(data_dir)
        self.retry = retry or RetryPolicy()
        self.node_name = node_name
        self.user = user
        self.group = group
        self.promotion = promotion
        self.secret = secret

    @classmethod
    def from_config(cls, config: AgentConfig, node_name: Optional[str] = None) -> "RoleController":
        overlay = ConfigOverlay(
            config.overlay_path, config.config_file,
            lock_timeout=config.lock_timeout, user=config.user, group=config.group,
        )
        prober = create_prober(config.probe_mode, config.host, config.port,
                               config.probe_timeout, config.admin_binary)
        return cls(
            prober=prober,
            process=MfsmasterProcess(config.master_binary, config.overlay_path, config.command_timeout),
            overlay=overlay,
            reporter=create_score_reporter(),
            data_dir=config.data_dir,
            retry=RetryPolicy(attempts=config.connect_retries, interval=config.retry_interval),
            node_name=node_name,
            user=config.user,
            group=config.group,
            promotion=PromotionClient(config.host, config.port, config.probe_timeout, prober=prober),
            secret=config.read_secret(),
        )

    @property
    def lock_marker(self) -> Path:
        return self.data_dir / LOCK_MARKER_FILE

    # Monitoring

    async def monitor(self) -> MonitorResult:
        """Determine the current state and report the promotion score"""
        result = await self._evaluate(wait_for_connection=True)
        if result.score is None:
            await self.reporter.clear()
        else:
            await self.reporter.report(result.score)
        return result

    async def _evaluate(self, wait_for_connection: bool) -> MonitorResult:
        if not await self.process.is_alive():
            if self.lock_marker.exists():
                logger.warning(f"Metadata server is down and left {self.lock_marker} behind")
                return MonitorResult(RoleState.FAILED_MASTER)
            return MonitorResult(RoleState.NOT_RUNNING)

        status = await self.prober.probe()
        result = self._classify(status)
        if result is not None:
            return result

        if not wait_for_connection:
            return self._disconnected_result(status)

        for attempt in range(1, self.retry.attempts + 1):
            await self.retry.pause()
            status = await self.prober.probe()
            result = self._classify(status)
            if result is not None:
                logger.info(f"Shadow state settled after {attempt} retries: {result.state.value}")
                return result

        result = self._disconnected_result(status)
        logger.warning(
            f"Shadow still disconnected after {self.retry.attempts} retries "
            f"(metadata version {status.metadata_version}), reporting score {result.score}"
        )
        return result

    def _classify(self, status: NodeStatus) -> Optional[MonitorResult]:
        """Map a status onto a state; ``None`` means a disconnected shadow"""
        if status.personality == Personality.MASTER and status.connection == ConnectionState.RUNNING:
            return MonitorResult(RoleState.RUNNING_MASTER, SCORE_MASTER, status)
        if status.personality == Personality.SHADOW:
            if status.connection == ConnectionState.CONNECTED:
                return MonitorResult(RoleState.RUNNING_SHADOW, SCORE_SHADOW_CONNECTED, status)
            if status.connection == ConnectionState.DISCONNECTED:
                return None
        raise UnexpectedStatusError(status.personality.value, status.connection.value)

    def _disconnected_result(self, status: NodeStatus) -> MonitorResult:
        score = SCORE_SHADOW_DISCONNECTED if status.metadata_version > 0 else SCORE_SHADOW_EMPTY
        return MonitorResult(RoleState.RUNNING_SHADOW, score, status, degraded=True)

    async def _await_state(self, accepted: Set[RoleState]) -> Optional[MonitorResult]:
        """Poll until the node reaches one of ``accepted`` or the retry budget runs out"""
        result = None
        for attempt in range(self.retry.attempts + 1):
            if attempt:
                await self.retry.pause()
            try:
                result = await self._evaluate(wait_for_connection=False)
            except UnreachableError as e:
                logger.debug(f"Node not answering yet: {e}")
                continue
            if result.state in accepted:
                return result
        if result is not None:
            logger.error(f"Node settled in {result.state.value}, expected one of "
                         f"{sorted(s.value for s in accepted)}")
        return None

    # Lifecycle actions

    async def start(self) -> MonitorResult:
        current = await self._evaluate(wait_for_connection=False)
        if current.state in RUNNING_STATES:
            logger.info(f"Metadata server already running as {current.state.value}")
            return current

        if current.state == RoleState.FAILED_MASTER:
            logger.warning("Starting over a crashed metadata server, clearing its lock marker")
            self._clear_lock_marker()

        return await self._start_as_shadow()

    async def _start_as_shadow(self) -> MonitorResult:
        self._prepare_data_dir()
        await self.overlay.apply_async(personality=Personality.SHADOW, master_host=NO_MASTER_HOST)
        if not await self.process.start():
            raise StartFailedError("metadata server failed to start")

        result = await self._await_state(RUNNING_STATES)
        if result is None:
            raise StartFailedError("metadata server did not come up in a running role")
        await self.reporter.report(result.score)
        logger.info(f"Metadata server started as {result.state.value}")
        return result

    async def stop(self) -> MonitorResult:
        if not await self.process.is_alive():
            await self.reporter.clear()
            logger.info("Metadata server not running, nothing to stop")
            return MonitorResult(RoleState.NOT_RUNNING)

        await self._stop_process()
        await self.reporter.clear()
        logger.info("Metadata server stopped")
        return MonitorResult(RoleState.NOT_RUNNING)

    async def _stop_process(self):
        if await self.process.stop() and not await self.process.is_alive():
            return

        logger.warning("Graceful stop failed, killing metadata server")
        await self.process.kill()
        if await self.process.is_alive():
            raise RoleError("metadata server survived kill")
        # A killed server leaves its lock behind; the shadow resyncs from the master anyway
        self._clear_lock_marker()

    async def promote(self) -> MonitorResult:
        current = await self._evaluate(wait_for_connection=False)
        if current.state == RoleState.RUNNING_MASTER:
            logger.info("Already running as master")
            return current
        if current.state != RoleState.RUNNING_SHADOW:
            logger.error(f"Refusing to promote from {current.state.value}")
            raise InvalidTransitionError("promote", current.state.value)

        if current.status.metadata_version == 0:
            # A store that never received metadata cannot be promoted in place
            logger.info("Shadow has no metadata, restarting it as master")
            await self.overlay.apply_async(personality=Personality.MASTER)
            await self._stop_process()
            self._clear_lock_marker()
            self._prepare_data_dir()
            if not await self.process.start():
                raise PromotionFailedError("metadata server failed to restart as master")
        else:
            logger.info(f"Promoting shadow at metadata version {current.status.metadata_version}")
            await self._promote_over_admin_channel()
            await self.overlay.apply_async(personality=Personality.MASTER)
            if not await self.process.reload():
                raise PromotionFailedError("metadata server reload failed")

        result = await self._await_state({RoleState.RUNNING_MASTER})
        if result is None:
            raise PromotionFailedError("metadata server did not become master")
        await self.reporter.report(result.score)
        logger.info("Promotion to master complete")
        return result

    async def _promote_over_admin_channel(self):
        """Send become-master over the authenticated channel, verified by a probe"""
        if self.promotion is None or not self.secret:
            raise ConfigurationError("promoting a shadow with metadata needs the admin password")
        await self.promotion.promote(self.secret)

    async def demote(self) -> MonitorResult:
        current = await self._evaluate(wait_for_connection=False)
        if current.state == RoleState.RUNNING_SHADOW:
            logger.info("Already running as shadow")
            return current
        if current.state != RoleState.RUNNING_MASTER:
            logger.error(f"Refusing to demote from {current.state.value}")
            raise InvalidTransitionError("demote", current.state.value)

        # Stop first so the node cannot accept master writes while demoting
        logger.info("Demoting master: stopping before restarting as shadow")
        await self._stop_process()
        return await self._start_as_shadow()

    async def notify(self, event: str, new_master_hint: Optional[str] = None) -> MonitorResult:
        """React to a cluster-wide role change of some node"""
        current = await self._evaluate(wait_for_connection=False)
        if current.state != RoleState.RUNNING_SHADOW:
            logger.debug(f"Ignoring {event} notification in state {current.state.value}")
            return current

        if event == NOTIFY_PRE_PROMOTE:
            if not new_master_hint:
                logger.warning("pre-promote notification without a master hint")
                return current
            if new_master_hint == self.node_name:
                logger.debug("This node is the one being promoted, keeping its overlay")
                return current
            master_host = new_master_hint
        elif event == NOTIFY_POST_DEMOTE:
            master_host = NO_MASTER_HOST
        else:
            logger.debug(f"Ignoring {event} notification")
            return current

        logger.info(f"{event}: pointing shadow at {master_host}")
        try:
            await self.overlay.apply_async(master_host=master_host)
            if not await self.process.reload():
                raise RoleError("metadata server reload failed")
        except MdshaError as e:
            logger.error(f"Failed to follow {event} notification: {e}")
            raise
        return current

    async def reload(self) -> MonitorResult:
        """Re-apply the base configuration to a running server"""
        if not await self.process.is_alive():
            logger.info("Metadata server not running, nothing to reload")
            return MonitorResult(RoleState.NOT_RUNNING)
        await self.overlay.apply_async(rebase=True)
        if not await self.process.reload():
            raise RoleError("metadata server reload failed")
        return await self._evaluate(wait_for_connection=False)

    # Data directory

    def _prepare_data_dir(self):
        metadata = self.data_dir / METADATA_FILE
        backup = self.data_dir / METADATA_BACKUP_FILE
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            if not metadata.exists() and not backup.exists():
                logger.info(f"No metadata in {self.data_dir}, creating an empty store")
                metadata.write_text(EMPTY_METADATA)
            if self.user or self.group:
                shutil.chown(self.data_dir, user=self.user, group=self.group)
                if metadata.exists():
                    shutil.chown(metadata, user=self.user, group=self.group)
        except (OSError, LookupError) as e:
            raise ConfigError(f"cannot prepare data directory {self.data_dir}: {e}") from e

    def _clear_lock_marker(self):
        try:
            self.lock_marker.unlink()
            logger.info(f"Removed stale lock {self.lock_marker}")
        except FileNotFoundError:
            pass
