"""
Promotion score reporting

The coordinator persists scores; this module only hands them over. Pacemaker
takes them through ``crm_master`` with a reboot lifetime, so a rebooted node
starts without a stale preference.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from typing import List, Optional

from ..core.metrics import AGENT_SCORE

logger = logging.getLogger(__name__)


class ScoreReporter(ABC):
    """Hands promotion scores to the cluster coordinator"""

    @abstractmethod
    async def report(self, score: int):
        ...

    @abstractmethod
    async def clear(self):
        ...


class PacemakerScoreReporter(ScoreReporter):
    """Reports scores with ``crm_master``"""

    def __init__(self, binary: str = "crm_master", timeout: float = 10.0):
        self.binary = binary
        self.timeout = timeout

    async def report(self, score: int):
        AGENT_SCORE.set(score)
        await self._run(["-l", "reboot", "-v", str(score)])

    async def clear(self):
        AGENT_SCORE.set(0)
        await self._run(["-l", "reboot", "-D"])

    async def _run(self, args: List[str]):
        # A lost score update is corrected by the next monitor
        command = [self.binary, "-Q", *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
            )
            _, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.binary} timed out")
            process.kill()
            await process.wait()
            return
        except OSError as e:
            logger.warning(f"Cannot run {self.binary}: {e}")
            return
        if process.returncode != 0:
            logger.warning(f"{' '.join(command)} failed: {stderr.decode(errors='replace').strip()}")


class RecordingScoreReporter(ScoreReporter):
    """Keeps scores in memory, used when no coordinator is present"""

    def __init__(self):
        self.score: Optional[int] = None
        self.history: List[Optional[int]] = []

    async def report(self, score: int):
        AGENT_SCORE.set(score)
        self.score = score
        self.history.append(score)

    async def clear(self):
        AGENT_SCORE.set(0)
        self.score = None
        self.history.append(None)


def create_score_reporter() -> ScoreReporter:
    if shutil.which("crm_master"):
        return PacemakerScoreReporter()
    logger.debug("crm_master not found, keeping scores in memory")
    return RecordingScoreReporter()
